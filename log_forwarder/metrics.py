"""Thread-safe pipeline counters and periodic reporting."""

import logging
import threading
import time

logger = logging.getLogger(__name__)

# Reasons a whole batch is lost; counted in batches.
BATCH_DROP_REASONS = (
    "permanent", "retries_exhausted", "evicted", "abandoned", "encoding", "internal",
)
# Reasons a line is lost before it joins a batch; counted in records.
RECORD_DROP_REASONS = ("ingress_full",)


class AgentMetrics:
    """Counters shared by the tailers, dispatcher and exporter."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records_tailed = 0
        self._records_delivered = 0
        self._records_dropped = 0
        self._batches_delivered = 0
        self._batches_dropped = 0
        self._retries = 0
        self._rotations = 0
        self._truncations = 0
        self._file_errors = 0
        self._batch_drop_reasons: dict = {reason: 0 for reason in BATCH_DROP_REASONS}
        self._record_drop_reasons: dict = {reason: 0 for reason in RECORD_DROP_REASONS}
        self._send_time_total_ms = 0.0
        self._send_time_max_ms = 0.0
        self._start_time = time.monotonic()

    def record_tailed(self, count: int = 1) -> None:
        with self._lock:
            self._records_tailed += count

    def record_rotation(self) -> None:
        with self._lock:
            self._rotations += 1

    def record_truncation(self) -> None:
        with self._lock:
            self._truncations += 1

    def record_file_error(self) -> None:
        with self._lock:
            self._file_errors += 1

    def record_retry(self) -> None:
        with self._lock:
            self._retries += 1

    def record_delivered(self, record_count: int, send_time_ms: float) -> None:
        with self._lock:
            self._batches_delivered += 1
            self._records_delivered += record_count
            self._send_time_total_ms += send_time_ms
            self._send_time_max_ms = max(self._send_time_max_ms, send_time_ms)

    def record_dropped_batch(self, record_count: int, reason: str) -> None:
        """Count a whole batch as lost."""
        with self._lock:
            self._batches_dropped += 1
            self._records_dropped += record_count
            self._batch_drop_reasons[reason] = self._batch_drop_reasons.get(reason, 0) + 1

    def record_dropped_records(self, record_count: int, reason: str) -> None:
        """Count records lost before they were assigned to a batch."""
        with self._lock:
            self._records_dropped += record_count
            self._record_drop_reasons[reason] = self._record_drop_reasons.get(reason, 0) + record_count

    @property
    def batches_evicted(self) -> int:
        with self._lock:
            return self._batch_drop_reasons["evicted"]

    def snapshot(self) -> dict:
        """Return a point-in-time copy of every counter."""
        with self._lock:
            return {
                "records_tailed": self._records_tailed,
                "records_delivered": self._records_delivered,
                "records_dropped": self._records_dropped,
                "batches_delivered": self._batches_delivered,
                "batches_dropped": self._batches_dropped,
                "batches_evicted": self._batch_drop_reasons["evicted"],
                "retries": self._retries,
                "rotations": self._rotations,
                "truncations": self._truncations,
                "file_errors": self._file_errors,
                "batch_drop_reasons": dict(self._batch_drop_reasons),
                "record_drop_reasons": dict(self._record_drop_reasons),
                "avg_send_time_ms": (
                    self._send_time_total_ms / self._batches_delivered
                    if self._batches_delivered else 0.0
                ),
                "max_send_time_ms": self._send_time_max_ms,
                "uptime_seconds": time.monotonic() - self._start_time,
            }


def format_snapshot(snapshot: dict) -> str:
    return (
        f"tailed={snapshot['records_tailed']} "
        f"delivered={snapshot['records_delivered']} "
        f"dropped={snapshot['records_dropped']} "
        f"batches_ok={snapshot['batches_delivered']} "
        f"batches_dropped={snapshot['batches_dropped']} "
        f"evicted={snapshot['batches_evicted']} "
        f"retries={snapshot['retries']} "
        f"avg_send={snapshot['avg_send_time_ms']:.1f}ms"
    )


class MetricsReporter:
    """Background thread that periodically logs a metrics summary."""

    def __init__(self, metrics: AgentMetrics, interval: float, shutdown_event: threading.Event):
        self._metrics = metrics
        self._interval = interval
        self._shutdown = shutdown_event
        self._thread: threading.Thread | None = None

    def start(self):
        if self._interval <= 0:
            return
        self._thread = threading.Thread(target=self._report_loop, name="metrics-reporter", daemon=True)
        self._thread.start()

    def stop(self):
        if self._thread:
            self._thread.join(timeout=5)

    def _report_loop(self):
        while not self._shutdown.is_set():
            self._shutdown.wait(self._interval)
            if self._shutdown.is_set():
                break
            logger.info("[metrics] %s", format_snapshot(self._metrics.snapshot()))
