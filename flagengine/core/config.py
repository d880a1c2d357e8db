"""Runtime settings for the flag engine service and SDK."""

from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    ENVIRONMENT: str = "production"
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # Propagation cache
    SNAPSHOT_URL: Optional[str] = None  # pull from a remote distribution endpoint when set
    SNAPSHOT_PATH: Optional[str] = None  # last-known-good snapshot file
    REFRESH_INTERVAL_SECONDS: float = 30.0
    FETCH_TIMEOUT_SECONDS: float = 5.0
    FETCH_MAX_ATTEMPTS: int = 3
    BACKOFF_MAX_SECONDS: float = 300.0
    MAX_STALENESS_SECONDS: float = 600.0

    # Evaluator
    MAX_DEPENDENCY_DEPTH: int = 8

    # Analytics
    ANALYTICS_ENABLED: bool = True
    ANALYTICS_QUEUE_SIZE: int = 10000
    ANALYTICS_BATCH_SIZE: int = 500
    ANALYTICS_FLUSH_INTERVAL_SECONDS: float = 5.0
    ANALYTICS_SINK_URL: Optional[str] = None

    model_config = {
        "env_prefix": "FLAGENGINE_",
        "env_file": ".env",
        "case_sensitive": False,
    }


_settings_cache: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings()
    return _settings_cache


def reset_settings() -> None:
    """Drop the cached settings so the next call re-reads the environment."""
    global _settings_cache
    _settings_cache = None
