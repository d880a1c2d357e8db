"""Analytics Emitter.

Buffers evaluation records and ships them to a sink in batches from a
background thread. The evaluation path only ever appends to a bounded
queue; when the queue is full the oldest record is dropped and counted.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

import httpx

from flagengine.core.flags.models import EvaluationContext, EvaluationResult
from flagengine.utils.metrics import (
    flag_analytics_dropped_total,
    flag_analytics_enqueued_total,
    flag_analytics_failed_total,
    flag_analytics_flushed_total,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EvaluationRecord:
    """One evaluation as reported to analytics."""
    flag_name: str
    value: Any
    reason: str
    flag_version: int
    subject_id: Optional[str] = None
    rule_id: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_result(
        cls,
        result: EvaluationResult,
        context: Optional[EvaluationContext] = None,
    ) -> "EvaluationRecord":
        return cls(
            flag_name=result.flag_name,
            value=result.value.value,
            reason=result.reason.value,
            flag_version=result.flag_version,
            subject_id=context.subject_id if context else None,
            rule_id=result.rule_id,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "flag": self.flag_name,
            "value": self.value,
            "reason": self.reason,
            "version": self.flag_version,
            "subject_id": self.subject_id,
            "rule_id": self.rule_id,
            "timestamp": self.timestamp.isoformat(),
        }


class AnalyticsSink(ABC):
    """Destination for batches of evaluation records."""

    @abstractmethod
    def send(self, records: List[EvaluationRecord]) -> None:
        """Deliver a batch. Raise on failure; the batch is then discarded."""
        pass

    def close(self) -> None:
        pass


class LoggingAnalyticsSink(AnalyticsSink):
    """Writes a one-line summary per batch to the log."""

    def send(self, records: List[EvaluationRecord]) -> None:
        counts: Dict[str, int] = {}
        for record in records:
            counts[record.flag_name] = counts.get(record.flag_name, 0) + 1
        logger.info(
            f"Analytics batch of {len(records)} evaluations: {counts}",
            extra={"batch_size": len(records)},
        )


class InMemoryAnalyticsSink(AnalyticsSink):
    """Keeps every batch in memory."""

    def __init__(self):
        self.batches: List[List[EvaluationRecord]] = []

    def send(self, records: List[EvaluationRecord]) -> None:
        self.batches.append(list(records))

    @property
    def records(self) -> List[EvaluationRecord]:
        return [r for batch in self.batches for r in batch]


class HttpAnalyticsSink(AnalyticsSink):
    """POSTs batches as JSON to an ingestion endpoint."""

    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        client: Optional[httpx.Client] = None,
    ):
        self.url = url
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout))
        self._owns_client = client is None

    def send(self, records: List[EvaluationRecord]) -> None:
        resp = self._client.post(self.url, json={"events": [r.to_dict() for r in records]})
        resp.raise_for_status()

    def close(self) -> None:
        if self._owns_client:
            self._client.close()


class AnalyticsEmitter:
    """Bounded, batching, drop-oldest analytics queue."""

    def __init__(
        self,
        sink: Optional[AnalyticsSink] = None,
        max_queue_size: int = 10000,
        batch_size: int = 500,
        flush_interval: float = 5.0,
    ):
        self.sink = sink or LoggingAnalyticsSink()
        self.max_queue_size = max(1, max_queue_size)
        self.batch_size = max(1, batch_size)
        self.flush_interval = flush_interval

        self._queue: Deque[EvaluationRecord] = deque()
        self._lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self._wake_event = threading.Event()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self.dropped_count = 0
        self.flushed_count = 0
        self.failed_count = 0

    @property
    def pending(self) -> int:
        return len(self._queue)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def emit(
        self,
        result: EvaluationResult,
        context: Optional[EvaluationContext] = None,
    ) -> None:
        """Queue one evaluation. Never blocks on I/O, never raises."""
        try:
            record = EvaluationRecord.from_result(result, context)
        except Exception as e:
            logger.error(f"Could not build analytics record for '{result.flag_name}': {e}")
            return

        dropped = False
        with self._lock:
            if len(self._queue) >= self.max_queue_size:
                self._queue.popleft()
                self.dropped_count += 1
                dropped = True
            self._queue.append(record)
            size = len(self._queue)

        flag_analytics_enqueued_total.inc()
        if dropped:
            flag_analytics_dropped_total.inc()
            # Log the first drop and then every thousandth
            if self.dropped_count == 1 or self.dropped_count % 1000 == 0:
                logger.warning(
                    f"Analytics queue full, dropped {self.dropped_count} record(s) so far",
                    extra={"dropped": self.dropped_count},
                )
        if size >= self.batch_size:
            self._wake_event.set()

    def _take_batch(self) -> List[EvaluationRecord]:
        with self._lock:
            count = min(self.batch_size, len(self._queue))
            return [self._queue.popleft() for _ in range(count)]

    def flush(self) -> int:
        """Send everything queued right now. Returns the number of records delivered."""
        delivered = 0
        with self._flush_lock:
            while True:
                batch = self._take_batch()
                if not batch:
                    break
                try:
                    self.sink.send(batch)
                except Exception as e:
                    self.failed_count += len(batch)
                    flag_analytics_failed_total.inc(len(batch))
                    logger.error(
                        f"Analytics sink failed, discarding batch of {len(batch)}: {e}",
                        extra={"batch_size": len(batch), "error_code": "ANALYTICS_SINK_FAILED"},
                    )
                    continue
                delivered += len(batch)
                self.flushed_count += len(batch)
                flag_analytics_flushed_total.inc(len(batch))
        return delivered

    def start(self) -> None:
        """Start the background flush thread."""
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="flag-analytics-flush", daemon=True
        )
        self._thread.start()
        logger.info(f"Analytics emitter started (batch {self.batch_size}, every {self.flush_interval}s)")

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the flush thread and deliver whatever is still queued."""
        self._stop_event.set()
        self._wake_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None
        self.flush()
        self.sink.close()
        logger.info(
            f"Analytics emitter stopped (flushed={self.flushed_count}, "
            f"failed={self.failed_count}, dropped={self.dropped_count})"
        )

    def _run(self) -> None:
        while not self._stop_event.is_set():
            self._wake_event.wait(self.flush_interval)
            self._wake_event.clear()
            self.flush()
