"""Tests for the metrics counters and reporter."""

import logging
import threading
import time

from log_forwarder.metrics import AgentMetrics, MetricsReporter, format_snapshot


class TestAgentMetrics:
    def test_initial_snapshot(self):
        snap = AgentMetrics().snapshot()
        for key in ("records_tailed", "batches_delivered", "batches_dropped", "records_dropped"):
            assert snap[key] == 0
        assert snap["avg_send_time_ms"] == 0.0

    def test_delivery_counters(self):
        m = AgentMetrics()
        m.record_tailed(5)
        m.record_delivered(3, 10.0)
        m.record_delivered(2, 30.0)
        snap = m.snapshot()
        assert snap["records_tailed"] == 5
        assert snap["records_delivered"] == 5
        assert snap["batches_delivered"] == 2
        assert snap["avg_send_time_ms"] == 20.0
        assert snap["max_send_time_ms"] == 30.0

    def test_drop_counters_by_reason(self):
        m = AgentMetrics()
        m.record_dropped_batch(10, "evicted")
        m.record_dropped_batch(4, "permanent")
        m.record_dropped_records(2, "ingress_full")
        snap = m.snapshot()
        assert snap["batches_dropped"] == 2
        assert snap["records_dropped"] == 16
        assert snap["batches_evicted"] == 1
        assert snap["batch_drop_reasons"]["permanent"] == 1
        assert snap["record_drop_reasons"]["ingress_full"] == 2
        assert m.batches_evicted == 1

    def test_drop_reasons_keep_units_apart(self):
        m = AgentMetrics()
        m.record_dropped_batch(50, "evicted")
        m.record_dropped_records(3, "ingress_full")
        snap = m.snapshot()
        assert "ingress_full" not in snap["batch_drop_reasons"]
        assert "evicted" not in snap["record_drop_reasons"]
        assert snap["batch_drop_reasons"]["evicted"] == 1
        assert snap["record_drop_reasons"]["ingress_full"] == 3

    def test_send_time_state_is_bounded(self):
        m = AgentMetrics()
        for i in range(100_000):
            m.record_delivered(1, 1.0 if i else 50.0)
            if i % 1000 == 0:
                m.snapshot()
        snap = m.snapshot()
        assert snap["batches_delivered"] == 100_000
        assert snap["max_send_time_ms"] == 50.0
        assert abs(snap["avg_send_time_ms"] - (100_049 / 100_000)) < 1e-9
        assert not any(isinstance(v, (list, tuple)) for v in vars(m).values())

    def test_thread_safety(self):
        m = AgentMetrics()

        def work():
            for _ in range(1000):
                m.record_tailed()
                m.record_retry()

        threads = [threading.Thread(target=work) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        snap = m.snapshot()
        assert snap["records_tailed"] == 8000
        assert snap["retries"] == 8000

    def test_format_snapshot(self):
        m = AgentMetrics()
        m.record_tailed(3)
        text = format_snapshot(m.snapshot())
        assert "tailed=3" in text
        assert "dropped=0" in text


class TestMetricsReporter:
    def test_logs_periodically(self, caplog):
        m = AgentMetrics()
        m.record_tailed(2)
        shutdown = threading.Event()
        reporter = MetricsReporter(m, 0.05, shutdown)
        with caplog.at_level(logging.INFO, logger="log_forwarder.metrics"):
            reporter.start()
            time.sleep(0.2)
            shutdown.set()
            reporter.stop()
        assert any("tailed=2" in r.getMessage() for r in caplog.records)

    def test_disabled_with_zero_interval(self):
        reporter = MetricsReporter(AgentMetrics(), 0, threading.Event())
        reporter.start()
        assert reporter._thread is None
        reporter.stop()
