"""OTLP/HTTP exporter: delivers batches with retry and exponential backoff."""

import logging
import random
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait

import requests

from log_forwarder.config import Config
from log_forwarder.errors import EncodingError, PermanentDeliveryError, TransientDeliveryError
from log_forwarder.metrics import AgentMetrics
from log_forwarder.models import Batch, BatchState
from log_forwarder.otlp import encode_batch

logger = logging.getLogger(__name__)

_DETAIL_LIMIT = 500


def _parse_retry_after(value: str | None) -> float | None:
    """Return seconds from a numeric Retry-After header, else None."""
    if not value:
        return None
    value = value.strip()
    try:
        seconds = float(value)
    except ValueError:
        return None
    return max(seconds, 0.0)


class OtlpHttpExporter:
    """Sends each batch as one POST; retries of a batch run sequentially on one worker.

    Batches are exported concurrently on a small thread pool, so one batch
    sitting in backoff never holds up the others.
    """

    def __init__(
        self,
        config: Config,
        metrics: AgentMetrics | None = None,
        session: requests.Session | None = None,
        sleep=None,
    ):
        self._config = config
        self._metrics = metrics or AgentMetrics()
        self._session = session or requests.Session()
        self._session.headers.update({"Content-Type": "application/json"})
        self._session.headers.update(config.headers)
        self._abandon = threading.Event()
        self._sleep = sleep or self._abandon.wait
        self._executor = ThreadPoolExecutor(
            max_workers=config.export_workers, thread_name_prefix="exporter"
        )
        self._futures: set[Future] = set()
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def submit(self, batch: Batch, on_done=None) -> Future:
        """Export *batch* on a worker thread; *on_done(batch)* runs when it settles."""
        future = self._executor.submit(self._run, batch, on_done)
        with self._lock:
            self._futures.add(future)
        future.add_done_callback(self._forget)
        return future

    def export(self, batch: Batch) -> BatchState:
        """Deliver *batch*, retrying transient failures. Returns the final state."""
        try:
            payload = encode_batch(batch, self._config.detect_severity)
        except EncodingError:
            logger.exception("Dropping batch #%d of %d records: encoding failed",
                             batch.batch_id, len(batch))
            return self._drop(batch, "encoding")

        while True:
            batch.state = BatchState.SENDING
            start = time.monotonic()
            try:
                self.send_once(payload)
            except PermanentDeliveryError as e:
                logger.error(
                    "Collector rejected batch #%d (%d records): HTTP %s %s",
                    batch.batch_id, len(batch), e.status, e.detail,
                )
                return self._drop(batch, "permanent")
            except TransientDeliveryError as e:
                if self._abandon.is_set():
                    return self._abandon_batch(batch)
                if batch.attempt >= self._config.max_retries:
                    logger.error(
                        "Failed to send batch #%d after %d attempts, discarding %d records: %s",
                        batch.batch_id, batch.attempt + 1, len(batch), e,
                    )
                    return self._drop(batch, "retries_exhausted")

                delay = self.backoff_delay(batch.attempt, e.retry_after)
                batch.state = BatchState.RETRYING
                logger.warning(
                    "Send failed for batch #%d (attempt %d/%d): %s, retrying in %.2fs",
                    batch.batch_id, batch.attempt + 1, self._config.max_retries + 1, e, delay,
                )
                self._metrics.record_retry()
                if self._sleep(delay) or self._abandon.is_set():
                    return self._abandon_batch(batch)
                batch.attempt += 1
                continue

            elapsed_ms = (time.monotonic() - start) * 1000
            batch.state = BatchState.DELIVERED
            self._metrics.record_delivered(len(batch), elapsed_ms)
            logger.debug("Delivered batch #%d (%d records, attempt %d) in %.1fms",
                         batch.batch_id, len(batch), batch.attempt, elapsed_ms)
            return batch.state

    def send_once(self, payload: bytes):
        """POST *payload* once and classify the outcome.

        Returns on 2xx. Raises TransientDeliveryError for 429, 5xx and
        connection-level failures, PermanentDeliveryError for anything else.
        """
        try:
            response = self._session.post(
                self._config.endpoint, data=payload, timeout=self._config.request_timeout
            )
        except requests.RequestException as e:
            raise TransientDeliveryError(f"HTTP error: {e}") from e

        status = response.status_code
        if 200 <= status < 300:
            return
        detail = (response.text or "")[:_DETAIL_LIMIT]
        if status == 429:
            raise TransientDeliveryError(
                f"HTTP {status}", status, detail,
                retry_after=_parse_retry_after(response.headers.get("Retry-After")),
            )
        if status >= 500:
            raise TransientDeliveryError(f"HTTP {status}", status, detail)
        raise PermanentDeliveryError(f"HTTP {status}", status, detail)

    def backoff_delay(self, attempt: int, retry_after: float | None = None) -> float:
        """Exponential backoff with jitter, capped at backoff_max.

        Base delay doubles each attempt (base, 2*base, 4*base, ...). A
        server-provided Retry-After wins when present.
        """
        cfg = self._config
        if retry_after is not None:
            return min(retry_after, cfg.backoff_max)
        capped = min(cfg.backoff_base * (2 ** attempt), cfg.backoff_max)
        jitter = random.uniform(1 - cfg.backoff_jitter, 1 + cfg.backoff_jitter)
        return min(capped * jitter, cfg.backoff_max)

    def close(self, timeout: float = 0.0):
        """Wait up to *timeout* for running exports, then abandon the rest."""
        with self._lock:
            pending = set(self._futures)
        if pending:
            done, not_done = wait(pending, timeout=timeout)
            if not_done:
                logger.warning("Abandoning %d batch(es) still in flight", len(not_done))
        self._abandon.set()
        self._executor.shutdown(wait=True)
        self._session.close()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _run(self, batch: Batch, on_done):
        try:
            self.export(batch)
        except Exception:
            logger.exception("Unexpected error exporting batch #%d", batch.batch_id)
            if batch.state not in (BatchState.DELIVERED, BatchState.DROPPED):
                self._drop(batch, "internal")
        finally:
            if on_done is not None:
                on_done(batch)

    def _forget(self, future: Future):
        with self._lock:
            self._futures.discard(future)

    def _drop(self, batch: Batch, reason: str) -> BatchState:
        batch.state = BatchState.DROPPED
        self._metrics.record_dropped_batch(len(batch), reason)
        return batch.state

    def _abandon_batch(self, batch: Batch) -> BatchState:
        logger.warning("Abandoning batch #%d (%d records) during shutdown",
                       batch.batch_id, len(batch))
        return self._drop(batch, "abandoned")
