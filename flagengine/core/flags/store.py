"""Flag Store.

Authoritative holder of flag definitions:
- Validates writes (all violations reported at once)
- Versions definitions and keeps their history
- Publishes immutable snapshots by swapping a single reference
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from flagengine.core.errors import ValidationError
from flagengine.core.flags.models import FlagDefinition
from flagengine.core.flags.snapshot import Snapshot
from flagengine.core.flags.validation import validate_update
from flagengine.utils.metrics import flag_store_snapshot_version, flag_store_updates_total

logger = logging.getLogger(__name__)


class SnapshotListener(ABC):
    """Listener for newly published snapshots."""

    @abstractmethod
    def on_snapshot_published(self, snapshot: Snapshot) -> None:
        """Called after a snapshot becomes current."""
        pass


class LoggingSnapshotListener(SnapshotListener):
    """Listener that logs every publication."""

    def on_snapshot_published(self, snapshot: Snapshot) -> None:
        logger.info(
            f"Published snapshot v{snapshot.version} ({len(snapshot)} flags)",
            extra={"snapshot_version": snapshot.version},
        )


class FlagStore:
    """In-memory, copy-on-write flag store.

    Readers call :meth:`current_snapshot` and get whatever snapshot is
    current at that instant; they never take the write lock. Writers are
    serialized and build the next snapshot off to the side before swapping
    the reference, so a reader sees either the old or the new snapshot in
    full.
    """

    def __init__(self, initial: Optional[Snapshot] = None):
        self._snapshot: Snapshot = initial if initial is not None else Snapshot.empty()
        self._history: Dict[str, List[FlagDefinition]] = {
            d.name: [d] for d in self._snapshot
        }
        self._write_lock = threading.Lock()
        self._listeners: List[SnapshotListener] = []
        flag_store_snapshot_version.set(self._snapshot.version)

    # Listeners

    def add_listener(self, listener: SnapshotListener) -> None:
        """Add a snapshot publication listener."""
        self._listeners.append(listener)

    def remove_listener(self, listener: SnapshotListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, snapshot: Snapshot) -> None:
        for listener in list(self._listeners):
            try:
                listener.on_snapshot_published(snapshot)
            except Exception as e:
                logger.error(f"Snapshot listener error: {e}")

    # Reads

    def current_snapshot(self) -> Snapshot:
        return self._snapshot

    def get(self, name: str) -> Optional[FlagDefinition]:
        return self._snapshot.get(name)

    def list_flags(self) -> List[FlagDefinition]:
        snapshot = self._snapshot
        return [snapshot.flags[name] for name in snapshot.names()]

    def history(self, name: str) -> List[FlagDefinition]:
        """All versions of a flag, oldest first. Empty if the flag never existed."""
        return list(self._history.get(name, ()))

    # Writes

    def apply_update(self, definition: FlagDefinition) -> FlagDefinition:
        """Insert or replace one definition.

        Raises:
            ValidationError: listing every violation. The store is unchanged.
        """
        stored, = self.apply_batch([definition])
        return stored

    def apply_batch(self, definitions: Iterable[FlagDefinition]) -> List[FlagDefinition]:
        """Insert or replace several definitions as one snapshot."""
        incoming = list(definitions)
        if not incoming:
            return []
        return self._commit(lambda previous: incoming)

    def _commit(
        self, build: Callable[[Snapshot], List[FlagDefinition]]
    ) -> List[FlagDefinition]:
        """Validate and publish the definitions ``build`` derives from the current snapshot.

        ``build`` runs under the write lock, so it sees the snapshot the new
        definitions will replace.
        """
        with self._write_lock:
            previous = self._snapshot
            incoming = build(previous)
            if not incoming:
                return []
            violations = validate_update(previous.flags, incoming)
            if violations:
                flag_store_updates_total.labels(status="rejected").inc()
                logger.warning(
                    f"Rejected update of {', '.join(d.name for d in incoming)}: "
                    f"{len(violations)} violation(s)",
                )
                raise ValidationError(violations)

            stamped = [self._stamp(previous, d) for d in incoming]
            snapshot = previous.replace_flags(stamped)
            for definition in stamped:
                self._history.setdefault(definition.name, []).append(definition)
            self._snapshot = snapshot

        flag_store_updates_total.labels(status="accepted").inc()
        flag_store_snapshot_version.set(snapshot.version)
        for definition in stamped:
            logger.info(
                f"Stored flag '{definition.name}' v{definition.version}",
                extra={
                    "flag": definition.name,
                    "version": definition.version,
                    "snapshot_version": snapshot.version,
                },
            )
        self._notify(snapshot)
        return stamped

    @staticmethod
    def _stamp(previous: Snapshot, definition: FlagDefinition) -> FlagDefinition:
        existing = previous.get(definition.name)
        if existing is None:
            return definition.with_version(1)
        # created_at belongs to the first version
        return replace(
            definition.with_version(existing.version + 1),
            created_at=existing.created_at,
        )

    def retire(self, name: str) -> Optional[FlagDefinition]:
        """Publish a retired version: off by default, no rules, disabled.

        Definitions are never deleted. Returns None for unknown flags.
        """

        def build(previous: Snapshot) -> List[FlagDefinition]:
            existing = previous.get(name)
            if existing is None:
                return []
            return [
                replace(
                    existing,
                    default_value=existing.off_value,
                    rules=(),
                    rollout_percentage=0,
                    enabled=False,
                )
            ]

        stored = self._commit(build)
        if not stored:
            return None
        logger.info(f"Retired flag '{name}'", extra={"flag": name})
        return stored[0]

    def load(self, snapshot: Snapshot) -> Tuple[int, int]:
        """Bootstrap from a snapshot, e.g. one fetched from ``GET /flags``.

        Returns (snapshot version, number of flags).
        """
        stored = self.apply_batch(list(snapshot))
        return self._snapshot.version, len(stored)
