"""Service runtime wiring and FastAPI dependencies."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from fastapi import HTTPException

from flagengine.core.config import Settings
from flagengine.core.errors import SnapshotDecodeError, SnapshotFetchError
from flagengine.core.flags.analytics import (
    AnalyticsEmitter,
    HttpAnalyticsSink,
    LoggingAnalyticsSink,
)
from flagengine.core.flags.client import FlagClient
from flagengine.core.flags.evaluator import RuleEvaluator
from flagengine.core.flags.propagation import (
    FileSnapshotSource,
    HttpSnapshotSource,
    PropagationCache,
    SnapshotSource,
    StoreSnapshotSource,
)
from flagengine.core.flags.snapshot import Snapshot
from flagengine.core.flags.store import FlagStore, LoggingSnapshotListener

logger = logging.getLogger(__name__)


@dataclass
class FlagRuntime:
    """Everything one service process needs to manage and evaluate flags."""
    store: FlagStore
    cache: PropagationCache
    client: FlagClient
    emitter: Optional[AnalyticsEmitter] = None

    def start(self) -> None:
        self.cache.start()
        if self.emitter is not None:
            self.emitter.start()

    def stop(self) -> None:
        self.cache.stop()
        if self.emitter is not None:
            self.emitter.stop()
        source = self.cache.source
        if isinstance(source, HttpSnapshotSource):
            source.close()


def _load_store(settings: Settings) -> FlagStore:
    path = settings.SNAPSHOT_PATH
    if settings.SNAPSHOT_URL or not path or not Path(path).exists():
        return FlagStore()
    try:
        snapshot = FileSnapshotSource(path).fetch(settings.FETCH_TIMEOUT_SECONDS)
    except (SnapshotFetchError, SnapshotDecodeError) as e:
        logger.error(f"Ignoring unusable snapshot file {path}: {e}")
        return FlagStore()
    logger.info(f"Flag store loaded {len(snapshot)} flags (v{snapshot.version}) from {path}")
    return FlagStore(initial=snapshot)


def build_runtime(settings: Settings) -> FlagRuntime:
    """Assemble store, cache, emitter and client from settings.

    With ``SNAPSHOT_URL`` set the cache pulls from that remote service;
    otherwise it follows this process's own store, woken on every write.
    """
    store = _load_store(settings)
    store.add_listener(LoggingSnapshotListener())

    source: SnapshotSource
    initial: Optional[Snapshot] = None
    if settings.SNAPSHOT_URL:
        source = HttpSnapshotSource(settings.SNAPSHOT_URL)
    else:
        source = StoreSnapshotSource(store)
        initial = store.current_snapshot()

    cache = PropagationCache(
        source,
        evaluator=RuleEvaluator(
            environment=settings.ENVIRONMENT,
            max_dependency_depth=settings.MAX_DEPENDENCY_DEPTH,
        ),
        refresh_interval=settings.REFRESH_INTERVAL_SECONDS,
        fetch_timeout=settings.FETCH_TIMEOUT_SECONDS,
        max_attempts=settings.FETCH_MAX_ATTEMPTS,
        backoff_max=settings.BACKOFF_MAX_SECONDS,
        max_staleness=settings.MAX_STALENESS_SECONDS,
        snapshot_path=settings.SNAPSHOT_PATH,
        initial=initial,
    )
    if not settings.SNAPSHOT_URL:
        store.add_listener(cache)

    emitter: Optional[AnalyticsEmitter] = None
    if settings.ANALYTICS_ENABLED:
        sink = (
            HttpAnalyticsSink(settings.ANALYTICS_SINK_URL, timeout=settings.FETCH_TIMEOUT_SECONDS)
            if settings.ANALYTICS_SINK_URL
            else LoggingAnalyticsSink()
        )
        emitter = AnalyticsEmitter(
            sink,
            max_queue_size=settings.ANALYTICS_QUEUE_SIZE,
            batch_size=settings.ANALYTICS_BATCH_SIZE,
            flush_interval=settings.ANALYTICS_FLUSH_INTERVAL_SECONDS,
        )

    client = FlagClient(cache, emitter)
    return FlagRuntime(store=store, cache=cache, client=client, emitter=emitter)


_runtime: Optional[FlagRuntime] = None


def set_runtime(runtime: Optional[FlagRuntime]) -> None:
    global _runtime
    _runtime = runtime


def get_runtime() -> FlagRuntime:
    if _runtime is None:
        raise HTTPException(status_code=503, detail="Flag runtime not initialized")
    return _runtime


def get_store() -> FlagStore:
    return get_runtime().store


def get_flag_client() -> FlagClient:
    return get_runtime().client
