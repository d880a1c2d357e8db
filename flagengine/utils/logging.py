"""Structured logging setup for the flag engine."""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Optional

# Structured fields passed through ``extra=`` by engine modules
_STRUCTURED_FIELDS = [
    "flag",
    "reason",
    "version",
    "snapshot_version",
    "error_code",
    "staleness_seconds",
    "consecutive_failures",
    "dropped",
    "batch_size",
    "source",
]


class JsonFormatter(logging.Formatter):
    def __init__(self, service_name: str = "flagengine", environment: str = "production"):
        super().__init__()
        self.service_name = service_name
        self.environment = environment

    def format(self, record: logging.LogRecord) -> str:
        data = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
            "service": self.service_name,
            "environment": self.environment,
        }
        for attr in _STRUCTURED_FIELDS:
            if hasattr(record, attr):
                data[attr] = getattr(record, attr)
        if record.exc_info:
            data["exception"] = self.formatException(record.exc_info)
        return json.dumps(data, ensure_ascii=False, default=str)


def setup_logging(
    level: Optional[str] = None,
    json_output: Optional[bool] = None,
    environment: Optional[str] = None,
) -> None:
    """Install a single stdout handler on the root logger.

    Unset arguments are read from settings.
    """
    from flagengine.core.config import get_settings

    settings = get_settings()
    level = level or settings.LOG_LEVEL
    json_output = settings.LOG_JSON if json_output is None else json_output

    root = logging.getLogger()
    root.setLevel(level.upper())
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    if json_output:
        handler.setFormatter(
            JsonFormatter(environment=environment or settings.ENVIRONMENT)
        )
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
    root.addHandler(handler)
