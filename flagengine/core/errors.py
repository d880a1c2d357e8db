"""Shared error codes and exception types for the flag engine.

Write-path problems raise; read-path problems are resolved to a value and a
reason code and only ever reach callers through logs and metrics.
"""

from __future__ import annotations

from enum import Enum
from typing import Iterable, List, Optional


class ErrorCode(str, Enum):
    VALIDATION_FAILED = "VALIDATION_FAILED"
    UNKNOWN_FLAG = "UNKNOWN_FLAG"
    STALE_SNAPSHOT = "STALE_SNAPSHOT"
    SNAPSHOT_FETCH_FAILED = "SNAPSHOT_FETCH_FAILED"  # Source unreachable or returned an error
    SNAPSHOT_DECODE_FAILED = "SNAPSHOT_DECODE_FAILED"  # Payload was not a usable snapshot
    ANALYTICS_SINK_FAILED = "ANALYTICS_SINK_FAILED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class FlagEngineError(Exception):
    """Base class for flag engine errors."""

    def __init__(self, code: ErrorCode, message: str) -> None:
        super().__init__(message)
        self.code = code

    def __str__(self) -> str:
        return f"{self.code.value}: {super().__str__()}"


class ValidationError(FlagEngineError):
    """A flag definition (or batch) was rejected on write.

    Carries every violation found, not just the first one.
    """

    def __init__(self, violations: Iterable[str]) -> None:
        self.violations: List[str] = list(violations)
        super().__init__(
            ErrorCode.VALIDATION_FAILED,
            "; ".join(self.violations) or "invalid flag definition",
        )

    def to_dict(self) -> dict:
        return {"code": self.code.value, "violations": list(self.violations)}


class SnapshotFetchError(FlagEngineError):
    """A snapshot source could not deliver a snapshot."""

    def __init__(self, message: str, source: Optional[str] = None) -> None:
        super().__init__(ErrorCode.SNAPSHOT_FETCH_FAILED, message)
        self.source = source


class SnapshotDecodeError(FlagEngineError):
    """A snapshot payload could not be decoded."""

    def __init__(self, message: str) -> None:
        super().__init__(ErrorCode.SNAPSHOT_DECODE_FAILED, message)


class StaleSnapshotWarning(Warning):
    """The cached snapshot is older than the configured maximum staleness."""

    code = ErrorCode.STALE_SNAPSHOT

    def __init__(self, staleness_seconds: float, max_staleness_seconds: float) -> None:
        super().__init__(
            f"snapshot is {staleness_seconds:.1f}s old "
            f"(max staleness {max_staleness_seconds:.1f}s)"
        )
        self.staleness_seconds = staleness_seconds
        self.max_staleness_seconds = max_staleness_seconds


__all__ = [
    "ErrorCode",
    "FlagEngineError",
    "SnapshotDecodeError",
    "SnapshotFetchError",
    "StaleSnapshotWarning",
    "ValidationError",
]
