import os

import pytest

from flagengine.core.config import reset_settings

# Environment variables that may be modified by tests
_ENV_VARS_TO_ISOLATE = [
    "FLAGENGINE_ENVIRONMENT",
    "FLAGENGINE_SNAPSHOT_URL",
    "FLAGENGINE_SNAPSHOT_PATH",
    "FLAGENGINE_REFRESH_INTERVAL_SECONDS",
    "FLAGENGINE_MAX_STALENESS_SECONDS",
    "FLAGENGINE_MAX_DEPENDENCY_DEPTH",
    "FLAGENGINE_ANALYTICS_ENABLED",
    "FLAGENGINE_ANALYTICS_SINK_URL",
    "FLAGENGINE_LOG_JSON",
    "FLAGENGINE_LOG_LEVEL",
]


@pytest.fixture(autouse=True)
def env_isolation():
    """Isolate environment variables and cached settings between tests."""
    backup = {k: os.environ.get(k) for k in _ENV_VARS_TO_ISOLATE}
    reset_settings()
    try:
        yield
    finally:
        for k, v in backup.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v
        reset_settings()


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()
