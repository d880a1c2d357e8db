"""Propagation Cache.

Keeps a local copy of the flag snapshot close to the caller:
- Pull mode: a background thread polls a snapshot source
- Push mode: store notifications wake the thread for an eager pull
- Last-known-good fallback and an on-disk bootstrap copy
- Fail-safe values for ops and kill-switch flags once data is too stale

Evaluation only ever reads the local snapshot reference.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional

import httpx
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from flagengine.core.errors import (
    SnapshotDecodeError,
    SnapshotFetchError,
    StaleSnapshotWarning,
)
from flagengine.core.flags.evaluator import RuleEvaluator, coerce_fallback
from flagengine.core.flags.models import (
    EvaluationContext,
    EvaluationResult,
    FlagKind,
    Reason,
)
from flagengine.core.flags.snapshot import Snapshot
from flagengine.core.flags.store import FlagStore, SnapshotListener
from flagengine.utils.metrics import (
    flag_cache_refresh_total,
    flag_cache_snapshot_version,
    flag_cache_stale,
    flag_cache_staleness_seconds,
    flag_evaluation_errors_total,
)

logger = logging.getLogger(__name__)

# Kinds that switch to their fail-safe value once the snapshot is too stale
FAIL_SAFE_KINDS = (FlagKind.OPS, FlagKind.KILL_SWITCH)

_FETCH_ERRORS = (SnapshotFetchError, SnapshotDecodeError)


class SnapshotSource(ABC):
    """Somewhere the cache can pull a snapshot from."""

    name: str = "source"

    @abstractmethod
    def fetch(self, timeout: float) -> Snapshot:
        """Fetch the latest snapshot.

        Raises:
            SnapshotFetchError: the source could not be reached.
            SnapshotDecodeError: the payload was not a snapshot.
        """
        pass


class StoreSnapshotSource(SnapshotSource):
    """In-process source reading straight from a FlagStore."""

    name = "store"

    def __init__(self, store: FlagStore):
        self.store = store

    def fetch(self, timeout: float) -> Snapshot:
        return self.store.current_snapshot()


class HttpSnapshotSource(SnapshotSource):
    """Pulls the serialized snapshot from a distribution endpoint."""

    name = "http"

    def __init__(
        self,
        base_url: str,
        path: str = "/api/v1/snapshot",
        client: Optional[httpx.Client] = None,
    ):
        self.base_url = base_url
        self.path = path
        self._client = client or httpx.Client(base_url=base_url)
        self._owns_client = client is None

    def fetch(self, timeout: float) -> Snapshot:
        try:
            resp = self._client.get(self.path, timeout=httpx.Timeout(timeout))
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise SnapshotFetchError(f"GET {self.base_url}{self.path} failed: {e}", self.name) from e

        try:
            data = resp.json()
        except ValueError as e:
            raise SnapshotDecodeError(f"snapshot response is not JSON: {e}") from e
        return Snapshot.from_dict(data)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()


class FileSnapshotSource(SnapshotSource):
    """Reads a snapshot written by :meth:`PropagationCache.persist` or an export job."""

    name = "file"

    def __init__(self, path: str):
        self.path = Path(path)

    def fetch(self, timeout: float) -> Snapshot:
        try:
            content = self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise SnapshotFetchError(f"cannot read {self.path}: {e}", self.name) from e
        return Snapshot.from_json(content)


class PropagationCache(SnapshotListener):
    """Local snapshot cache with bounded staleness and fail-open reads."""

    def __init__(
        self,
        source: SnapshotSource,
        evaluator: Optional[RuleEvaluator] = None,
        refresh_interval: float = 30.0,
        fetch_timeout: float = 5.0,
        max_attempts: int = 3,
        retry_wait_min: float = 0.5,
        retry_wait_max: float = 10.0,
        backoff_max: float = 300.0,
        max_staleness: Optional[float] = 600.0,
        snapshot_path: Optional[str] = None,
        initial: Optional[Snapshot] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the cache.

        Args:
            source: Where snapshots are pulled from
            evaluator: Rule evaluator used for local evaluation
            refresh_interval: Seconds between polls while healthy
            fetch_timeout: Timeout handed to the source for each attempt
            max_attempts: Fetch attempts per refresh cycle
            retry_wait_min: Minimum backoff between attempts in a cycle
            retry_wait_max: Maximum backoff between attempts in a cycle
            backoff_max: Ceiling for the poll delay after failed cycles
            max_staleness: Seconds without a successful refresh before ops and
                kill-switch flags switch to their fail-safe values (None disables)
            snapshot_path: File used for bootstrap and last-known-good persistence
            initial: Snapshot to serve before the first refresh
            clock: Monotonic clock, injectable for tests
        """
        self.source = source
        self.evaluator = evaluator or RuleEvaluator()
        self.refresh_interval = refresh_interval
        self.fetch_timeout = fetch_timeout
        self.max_attempts = max(1, max_attempts)
        self.retry_wait_min = retry_wait_min
        self.retry_wait_max = retry_wait_max
        self.backoff_max = backoff_max
        self.max_staleness = max_staleness
        self.snapshot_path = snapshot_path
        self._clock = clock

        self._snapshot: Optional[Snapshot] = initial
        self._swap_lock = threading.Lock()
        self._started_at = clock()
        self._last_success_at: Optional[float] = None
        self.consecutive_failures = 0
        self.total_failures = 0
        self.last_error: Optional[str] = None
        self.last_warning: Optional[StaleSnapshotWarning] = None
        self._stale_flagged = False
        self._stale_lock = threading.Lock()

        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()

        if initial is not None:
            flag_cache_snapshot_version.set(initial.version)

    # Snapshot access

    @property
    def snapshot(self) -> Optional[Snapshot]:
        return self._snapshot

    @property
    def version(self) -> int:
        snapshot = self._snapshot
        return snapshot.version if snapshot is not None else 0

    def _install(self, snapshot: Snapshot) -> bool:
        """Swap in ``snapshot`` unless it is older than the current one."""
        with self._swap_lock:
            current = self._snapshot
            if current is not None and snapshot.version < current.version:
                logger.warning(
                    f"Ignoring snapshot v{snapshot.version} older than cached v{current.version}",
                    extra={"snapshot_version": snapshot.version},
                )
                return False
            if current is not None and snapshot.version == current.version:
                return False
            self._snapshot = snapshot
        flag_cache_snapshot_version.set(snapshot.version)
        logger.info(
            f"Cache now serving snapshot v{snapshot.version} ({len(snapshot)} flags)",
            extra={"snapshot_version": snapshot.version, "source": self.source.name},
        )
        return True

    # Refresh

    def _sleep(self, seconds: float) -> None:
        # Interruptible by stop()
        self._stop_event.wait(seconds)

    def _fetch_with_retry(self) -> Snapshot:
        for attempt in Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.retry_wait_min, min=self.retry_wait_min, max=self.retry_wait_max),
            retry=retry_if_exception_type(_FETCH_ERRORS),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=self._sleep,
            reraise=True,
        ):
            with attempt:
                return self.source.fetch(self.fetch_timeout)
        raise SnapshotFetchError("no fetch attempt was made", self.source.name)

    def refresh(self) -> bool:
        """Run one fetch cycle. Returns True on success; never raises."""
        try:
            snapshot = self._fetch_with_retry()
        except _FETCH_ERRORS as e:
            self._record_failure(str(e))
            return False
        except Exception as e:
            logger.exception("Unexpected error refreshing flag snapshot")
            self._record_failure(f"{type(e).__name__}: {e}")
            return False

        swapped = self._install(snapshot)
        self._last_success_at = self._clock()
        self.consecutive_failures = 0
        self.last_error = None
        flag_cache_refresh_total.labels(status="success" if swapped else "unchanged").inc()
        flag_cache_staleness_seconds.set(0)
        if swapped and self.snapshot_path:
            self.persist()
        self._check_staleness()
        return True

    def _record_failure(self, error: str) -> None:
        self.consecutive_failures += 1
        self.total_failures += 1
        self.last_error = error
        flag_cache_refresh_total.labels(status="failure").inc()
        staleness = self.staleness_seconds()
        flag_cache_staleness_seconds.set(staleness)
        logger.warning(
            f"Snapshot refresh failed, serving last known snapshot v{self.version}: {error}",
            extra={
                "snapshot_version": self.version,
                "consecutive_failures": self.consecutive_failures,
                "staleness_seconds": round(staleness, 3),
                "source": self.source.name,
            },
        )

    def persist(self) -> bool:
        """Write the current snapshot to ``snapshot_path`` atomically."""
        snapshot = self._snapshot
        if snapshot is None or not self.snapshot_path:
            return False
        path = Path(self.snapshot_path)
        tmp = path.with_suffix(path.suffix + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(snapshot.to_dict()), encoding="utf-8")
            os.replace(tmp, path)
            return True
        except OSError as e:
            logger.error(f"Failed to persist snapshot to {path}: {e}")
            return False

    def load_bootstrap(self) -> bool:
        """Serve the persisted snapshot until the first successful refresh."""
        if not self.snapshot_path or not Path(self.snapshot_path).exists():
            return False
        try:
            snapshot = FileSnapshotSource(self.snapshot_path).fetch(self.fetch_timeout)
        except _FETCH_ERRORS as e:
            logger.error(f"Bootstrap snapshot unusable: {e}")
            return False
        installed = self._install(snapshot)
        if installed:
            logger.info(f"Bootstrapped from {self.snapshot_path}")
        return installed

    # Background pull loop

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the background refresh thread."""
        if self.running:
            return
        if self._snapshot is None:
            self.load_bootstrap()
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="flag-cache-refresh", daemon=True
        )
        self._thread.start()
        logger.info(f"Flag cache refresh started ({self.source.name}, every {self.refresh_interval}s)")

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the background refresh thread."""
        self._stop_event.set()
        self._wake_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("Flag cache refresh stopped")

    def _next_delay(self) -> float:
        if self.consecutive_failures == 0:
            return self.refresh_interval
        return min(self.refresh_interval * (2 ** self.consecutive_failures), self.backoff_max)

    def _run(self) -> None:
        while not self._stop_event.is_set():
            self._wake_event.clear()
            self.refresh()
            if self._stop_event.is_set():
                break
            self._wake_event.wait(self._next_delay())

    # Push mode

    def on_snapshot_published(self, snapshot: Snapshot) -> None:
        self.notify(snapshot.version)

    def notify(self, version: int) -> None:
        """A newer snapshot exists upstream; pull it eagerly."""
        if self._snapshot is not None and version <= self._snapshot.version:
            return
        if self.running:
            self._wake_event.set()
        else:
            self.refresh()

    # Staleness

    def staleness_seconds(self) -> float:
        reference = self._last_success_at if self._last_success_at is not None else self._started_at
        return max(0.0, self._clock() - reference)

    def is_stale(self) -> bool:
        if self.max_staleness is None:
            return False
        return self.staleness_seconds() > self.max_staleness

    def _check_staleness(self) -> bool:
        with self._stale_lock:
            stale = self.is_stale()
            changed = stale != self._stale_flagged
            if changed:
                self._stale_flagged = stale
                flag_cache_stale.set(1 if stale else 0)
        if not changed:
            return stale

        if stale:
            warning = StaleSnapshotWarning(self.staleness_seconds(), self.max_staleness or 0.0)
            self.last_warning = warning
            logger.warning(
                f"{type(warning).__name__}: {warning}; ops and kill-switch flags use fail-safe values",
                extra={
                    "error_code": warning.code.value,
                    "staleness_seconds": round(warning.staleness_seconds, 3),
                    "snapshot_version": self.version,
                },
            )
        else:
            logger.info("Flag snapshot fresh again", extra={"snapshot_version": self.version})
        return stale

    def status(self) -> Dict[str, Any]:
        staleness = self.staleness_seconds()
        flag_cache_staleness_seconds.set(staleness)
        return {
            "source": self.source.name,
            "version": self.version,
            "loaded": self._snapshot is not None,
            "running": self.running,
            "staleness_seconds": round(staleness, 3),
            "stale": self.is_stale(),
            "consecutive_failures": self.consecutive_failures,
            "total_failures": self.total_failures,
            "last_error": self.last_error,
        }

    # Evaluation

    def evaluate(
        self,
        flag_name: str,
        context: Optional[EvaluationContext] = None,
        fallback: Any = False,
    ) -> EvaluationResult:
        """Evaluate against the local snapshot. Never blocks on I/O, never raises."""
        snapshot = self._snapshot
        return self._evaluate_on(snapshot, self._check_staleness_safe(), flag_name, context, fallback)

    def bulk_evaluate(
        self,
        flag_names: Iterable[str],
        context: Optional[EvaluationContext] = None,
        fallback: Any = False,
    ) -> Dict[str, EvaluationResult]:
        """Evaluate several flags against one snapshot."""
        snapshot = self._snapshot
        stale = self._check_staleness_safe()
        return {
            name: self._evaluate_on(snapshot, stale, name, context, fallback)
            for name in flag_names
        }

    def _check_staleness_safe(self) -> bool:
        try:
            return self._check_staleness()
        except Exception:
            logger.exception("Staleness check failed")
            flag_evaluation_errors_total.labels(stage="cache").inc()
            return False

    def _evaluate_on(
        self,
        snapshot: Optional[Snapshot],
        stale: bool,
        flag_name: str,
        context: Optional[EvaluationContext],
        fallback: Any,
    ) -> EvaluationResult:
        if snapshot is None:
            return EvaluationResult(flag_name, coerce_fallback(fallback), Reason.UNKNOWN_FLAG, 0)

        if stale:
            flag = snapshot.get(flag_name)
            if (
                flag is not None
                and flag.kind in FAIL_SAFE_KINDS
                and flag.fail_safe_value is not None
            ):
                reason = Reason.KILL_SWITCH if flag.kind == FlagKind.KILL_SWITCH else Reason.DEFAULT
                return EvaluationResult(flag_name, flag.fail_safe_value, reason, flag.version)

        return self.evaluator.evaluate(snapshot, flag_name, context, fallback)
