"""Dispatcher: batches LogRecords, gates them on the rate limiter, applies backpressure.

A single thread owns all of the state here: the batch being accumulated, the
queue of sealed batches waiting to go out and the token bucket. Exporter
workers only touch the in-flight counter, through ``_on_done``.

Backpressure is lossy: at most ``max_pending_batches`` batches may be queued
or in flight. Sealing one more evicts the oldest queued batch.
"""

import logging
import queue
import threading
import time
from collections import deque

from log_forwarder.config import Config
from log_forwarder.metrics import AgentMetrics
from log_forwarder.models import Batch, BatchState, LogRecord
from log_forwarder.rate_limiter import TokenBucket

logger = logging.getLogger(__name__)

_IDLE_WAIT = 0.5
_BUSY_WAIT = 0.05
_DRAIN_LIMIT = 1000


class Dispatcher(threading.Thread):
    def __init__(
        self,
        config: Config,
        ingress: queue.Queue,
        exporter,
        rate_limiter: TokenBucket | None = None,
        metrics: AgentMetrics | None = None,
        clock=None,
    ):
        super().__init__(name="dispatcher", daemon=True)
        self._config = config
        self._ingress = ingress
        self._exporter = exporter
        self._clock = clock or time.monotonic
        self._limiter = rate_limiter or TokenBucket(config.rate_limit, time_func=self._clock)
        self._metrics = metrics or AgentMetrics()
        self._batch_size = min(config.batch_size, int(self._limiter.capacity))
        self._flush_interval = config.flush_interval
        self._max_pending = config.max_pending_batches
        self._max_in_flight = config.export_workers

        self._current: Batch | None = None
        self._ready: deque[Batch] = deque()
        self._in_flight = 0
        self._next_id = 0
        self._token_wait: float | None = None
        self._lock = threading.Lock()
        self._stop_event = threading.Event()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def batch_size(self) -> int:
        return self._batch_size

    @property
    def accumulating_count(self) -> int:
        return len(self._current) if self._current is not None else 0

    @property
    def ready_batches(self) -> list[Batch]:
        return list(self._ready)

    @property
    def in_flight(self) -> int:
        with self._lock:
            return self._in_flight

    @property
    def pending_count(self) -> int:
        """Batches queued for sending plus batches in flight."""
        return len(self._ready) + self.in_flight

    # ------------------------------------------------------------------
    # Batch assembly
    # ------------------------------------------------------------------

    def add(self, record: LogRecord):
        """Append *record* to the accumulating batch; seal it when full."""
        if self._current is None:
            self._next_id += 1
            self._current = Batch(
                batch_id=self._next_id,
                service_name=self._config.service_name,
                host_name=self._config.host_name,
                created_at=self._clock(),
            )
        self._current.add(record)
        if len(self._current) >= self._batch_size:
            self.seal("size")

    def seal(self, trigger: str = "size"):
        """Move the accumulating batch to the ready queue."""
        batch = self._current
        if batch is None or not batch.records:
            return
        self._current = None
        batch.state = BatchState.READY
        self._ready.append(batch)
        logger.debug("Sealed batch #%d with %d records (%s)", batch.batch_id, len(batch), trigger)
        self._enforce_bound()

    def seal_if_due(self):
        if self._current is None:
            return
        if self._clock() - self._current.created_at >= self._flush_interval:
            self.seal("timer")

    def _enforce_bound(self):
        while self._ready and self.pending_count > self._max_pending:
            victim = self._ready.popleft()
            victim.state = BatchState.DROPPED
            self._metrics.record_dropped_batch(len(victim), "evicted")
            logger.warning(
                "Backpressure: evicted batch #%d (%d records), %d batches pending",
                victim.batch_id, len(victim), self.pending_count,
            )

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    def dispatch_ready(self) -> float | None:
        """Submit ready batches in creation order while slots and tokens allow.

        Returns the seconds to wait for rate-limiter tokens when the head
        batch is held back by the limiter, otherwise None.
        """
        while self._ready:
            if self.in_flight >= self._max_in_flight:
                return None
            batch = self._ready[0]
            wait = self._limiter.acquire(len(batch))
            if wait > 0:
                return wait
            self._ready.popleft()
            batch.state = BatchState.SENDING
            with self._lock:
                self._in_flight += 1
            try:
                self._exporter.submit(batch, self._on_done)
            except RuntimeError as e:
                with self._lock:
                    self._in_flight -= 1
                batch.state = BatchState.DROPPED
                self._metrics.record_dropped_batch(len(batch), "abandoned")
                logger.error("Exporter unavailable, dropping batch #%d: %s", batch.batch_id, e)
        return None

    def _on_done(self, batch: Batch):
        with self._lock:
            self._in_flight -= 1

    # ------------------------------------------------------------------
    # Thread loop
    # ------------------------------------------------------------------

    def stop(self):
        """Ask the loop to flush what it holds and exit."""
        self._stop_event.set()

    def run(self):
        logger.info("Dispatcher started: batch_size=%d, flush_interval=%.2fs, max_pending=%d",
                    self._batch_size, self._flush_interval, self._max_pending)
        while not self._stop_event.is_set():
            try:
                record = self._ingress.get(timeout=self._next_timeout())
            except queue.Empty:
                pass
            else:
                self.add(record)
                self._drain_ingress(_DRAIN_LIMIT)

            try:
                self.seal_if_due()
                self._token_wait = self.dispatch_ready()
            except Exception:
                logger.exception("Unexpected error in dispatcher loop")
        self._finish()

    def _next_timeout(self) -> float:
        timeout = _IDLE_WAIT
        if self._current is not None:
            due = self._current.created_at + self._flush_interval - self._clock()
            timeout = min(timeout, due)
        if self._ready:
            timeout = min(timeout, self._token_wait if self._token_wait else _BUSY_WAIT)
        return max(timeout, 0.001)

    def _drain_ingress(self, limit: int | None = None):
        taken = 0
        while limit is None or taken < limit:
            try:
                record = self._ingress.get_nowait()
            except queue.Empty:
                return
            self.add(record)
            taken += 1

    def _finish(self):
        """Final best-effort flush, bounded by the shutdown grace period."""
        self._drain_ingress()
        self.seal("shutdown")
        deadline = self._clock() + self._config.shutdown_grace
        logger.info("Dispatcher flushing %d pending batch(es)", self.pending_count)

        while self._ready:
            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            wait = self.dispatch_ready()
            if self._ready:
                time.sleep(min(wait or _BUSY_WAIT, remaining))

        while self._ready:
            batch = self._ready.popleft()
            batch.state = BatchState.DROPPED
            self._metrics.record_dropped_batch(len(batch), "abandoned")
            logger.warning("Shutdown grace expired, abandoning batch #%d (%d records)",
                           batch.batch_id, len(batch))

        self._exporter.close(timeout=max(0.0, deadline - self._clock()))
        logger.info("Dispatcher stopped")
