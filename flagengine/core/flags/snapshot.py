"""Immutable flag snapshots and their wire format.

A snapshot is the unit of publication: the store builds a new one on every
write and swaps it in whole, and caches replace theirs whole. Nothing ever
mutates a published snapshot.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional

from flagengine.core.errors import SnapshotDecodeError
from flagengine.core.flags.models import FlagDefinition

logger = logging.getLogger(__name__)

SNAPSHOT_FORMAT_VERSION = 1


def _freeze(flags: Mapping[str, FlagDefinition]) -> Mapping[str, FlagDefinition]:
    return MappingProxyType(dict(flags))


@dataclass(frozen=True)
class Snapshot:
    """A versioned, read-only view of every flag definition."""
    version: int = 0
    flags: Mapping[str, FlagDefinition] = field(default_factory=dict)
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        if not isinstance(self.flags, MappingProxyType):
            object.__setattr__(self, "flags", _freeze(self.flags))

    @classmethod
    def empty(cls) -> "Snapshot":
        return cls(version=0, flags={})

    @classmethod
    def from_definitions(cls, version: int, definitions: Iterable[FlagDefinition]) -> "Snapshot":
        return cls(version=version, flags={d.name: d for d in definitions})

    def get(self, name: str) -> Optional[FlagDefinition]:
        return self.flags.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self.flags

    def __iter__(self) -> Iterator[FlagDefinition]:
        return iter(self.flags.values())

    def __len__(self) -> int:
        return len(self.flags)

    def names(self) -> List[str]:
        return sorted(self.flags)

    def replace_flags(self, definitions: Iterable[FlagDefinition]) -> "Snapshot":
        """New snapshot (version + 1) with ``definitions`` inserted or replaced."""
        merged = dict(self.flags)
        for definition in definitions:
            merged[definition.name] = definition
        return Snapshot(version=self.version + 1, flags=merged)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "format_version": SNAPSHOT_FORMAT_VERSION,
            "version": self.version,
            "generated_at": self.generated_at.isoformat(),
            "flags": [self.flags[name].to_dict() for name in self.names()],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Snapshot":
        """Decode a snapshot. Unknown fields are ignored at every level."""
        if not isinstance(data, dict):
            raise SnapshotDecodeError(f"snapshot must be an object, got {type(data).__name__}")

        format_version = data.get("format_version", SNAPSHOT_FORMAT_VERSION)
        if isinstance(format_version, int) and format_version > SNAPSHOT_FORMAT_VERSION:
            logger.info(
                f"Decoding snapshot format {format_version} with format "
                f"{SNAPSHOT_FORMAT_VERSION} reader; unknown fields ignored"
            )

        try:
            version = int(data.get("version", 0))
            definitions = [FlagDefinition.from_dict(f) for f in data.get("flags", [])]
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise SnapshotDecodeError(f"invalid snapshot payload: {e}") from e

        generated_raw = data.get("generated_at")
        generated_at = datetime.now(timezone.utc)
        if generated_raw:
            try:
                generated_at = datetime.fromisoformat(generated_raw)
            except (TypeError, ValueError):
                logger.warning(f"Ignoring malformed snapshot timestamp: {generated_raw!r}")

        return cls(
            version=version,
            flags={d.name: d for d in definitions},
            generated_at=generated_at,
        )

    @classmethod
    def from_json(cls, payload: str) -> "Snapshot":
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            raise SnapshotDecodeError(f"snapshot is not valid JSON: {e}") from e
        return cls.from_dict(data)
