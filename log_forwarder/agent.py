"""LogForwardingAgent: wires tailers, dispatcher and exporter together."""

import logging
import queue
import threading

from log_forwarder.config import Config
from log_forwarder.dispatcher import Dispatcher
from log_forwarder.exporter import OtlpHttpExporter
from log_forwarder.metrics import AgentMetrics, MetricsReporter, format_snapshot
from log_forwarder.rate_limiter import TokenBucket
from log_forwarder.registry import OffsetRegistry
from log_forwarder.tailer import FileTailer
from log_forwarder.watcher import ChangeNotifier, start_observer

logger = logging.getLogger(__name__)

_REGISTRY_SAVE_INTERVAL = 5.0


class LogForwardingAgent:
    """Owns every pipeline thread.

    Producer side: one FileTailer thread per path, all feeding one bounded
    ingress queue. Consumer side: the Dispatcher thread, which hands sealed
    batches to the exporter's worker pool.
    """

    def __init__(self, config: Config, session=None):
        self._config = config
        self._metrics = AgentMetrics()
        self._tailer_shutdown = threading.Event()
        self._ingress: queue.Queue = queue.Queue(maxsize=config.ingress_capacity)
        self._registry = (
            OffsetRegistry(config.offsets_file) if config.start_position == "resume" else None
        )
        self._tailers = [
            FileTailer(
                path,
                self._ingress,
                self._tailer_shutdown,
                self._metrics,
                poll_interval=config.poll_interval,
                start_position=config.start_position,
                registry=self._registry,
                drain_rotated=config.drain_rotated,
                skip_blank_lines=config.skip_blank_lines,
                max_read_bytes=config.max_read_bytes,
                ingress_timeout=config.ingress_timeout,
            )
            for path in config.log_files
        ]
        self._exporter = OtlpHttpExporter(config, self._metrics, session=session)
        self._dispatcher = Dispatcher(
            config,
            self._ingress,
            self._exporter,
            TokenBucket(config.rate_limit),
            self._metrics,
        )
        self._reporter = MetricsReporter(self._metrics, config.metrics_interval, self._tailer_shutdown)
        self._threads: list[threading.Thread] = []
        self._observer = None
        self._registry_thread: threading.Thread | None = None
        self._started = False

    @property
    def metrics(self) -> AgentMetrics:
        return self._metrics

    @property
    def tailers(self) -> list[FileTailer]:
        return list(self._tailers)

    def file_status(self) -> dict[str, dict]:
        """Per-path state for operational monitoring."""
        status = {}
        for tailer in self._tailers:
            wf = tailer.watched
            status[wf.path] = {
                "state": wf.state.value,
                "offset": wf.offset,
                "generation": wf.generation,
                "error": wf.error,
            }
        return status

    def start(self):
        if self._started:
            return
        self._started = True
        logger.info("Forwarding %d file(s) to %s as service=%s host=%s (rate_limit=%d/s)",
                    len(self._tailers), self._config.endpoint,
                    self._config.service_name, self._config.host_name, self._config.rate_limit)

        self._dispatcher.start()
        for tailer in self._tailers:
            t = threading.Thread(target=tailer.run, name=f"tailer:{tailer.path}", daemon=True)
            t.start()
            self._threads.append(t)

        if self._config.use_notifications:
            self._observer = start_observer(ChangeNotifier(self._tailers))
            if self._observer is None:
                logger.info("Using polling only (interval %.2fs)", self._config.poll_interval)

        if self._registry is not None:
            self._registry_thread = threading.Thread(
                target=self._registry_loop, name="offset-registry", daemon=True
            )
            self._registry_thread.start()

        self._reporter.start()

    def run(self, shutdown_event: threading.Event):
        """Start, block until *shutdown_event* is set, then stop."""
        self.start()
        try:
            shutdown_event.wait()
        finally:
            self.stop()

    def stop(self) -> dict:
        """Stop tailers, flush the dispatcher within the grace period, return final metrics."""
        if not self._started:
            self._exporter.close()
            return self._metrics.snapshot()
        logger.info("Shutting down...")

        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)

        self._tailer_shutdown.set()
        for tailer in self._tailers:
            tailer.wake()
        for t in self._threads:
            t.join(timeout=5)

        self._dispatcher.stop()
        self._dispatcher.join(timeout=self._config.shutdown_grace + self._config.request_timeout + 5)
        if self._dispatcher.is_alive():
            logger.error("Dispatcher did not stop within the grace period")

        self._reporter.stop()
        if self._registry_thread is not None:
            self._registry_thread.join(timeout=5)
        self._save_registry()
        self._started = False

        snapshot = self._metrics.snapshot()
        logger.info("Final stats: %s", format_snapshot(snapshot))
        return snapshot

    def _registry_loop(self):
        while not self._tailer_shutdown.wait(_REGISTRY_SAVE_INTERVAL):
            self._save_registry()

    def _save_registry(self):
        if self._registry is None:
            return
        try:
            self._registry.save()
        except OSError as e:
            logger.warning("Could not save offset registry: %s", e)
