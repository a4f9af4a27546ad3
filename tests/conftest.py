"""Shared pytest fixtures: config factory and an in-process OTLP collector."""

import json
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from log_forwarder.config import Config


class _CollectorHandler(BaseHTTPRequestHandler):
    def do_POST(self):
        length = int(self.headers.get("Content-Length", "0"))
        body = self.rfile.read(length)
        status = self.server.next_status()
        if 200 <= status < 300:
            self.server.record(json.loads(body))
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.end_headers()
        self.wfile.write(b"{}")

    def log_message(self, format, *args):
        pass


class FakeCollector(ThreadingHTTPServer):
    """Accepts OTLP/HTTP JSON posts; replies with scripted statuses, then 200."""

    daemon_threads = True

    def __init__(self):
        super().__init__(("127.0.0.1", 0), _CollectorHandler)
        self._lock = threading.Lock()
        self.statuses: list[int] = []
        self.requests = 0
        self.payloads: list[dict] = []

    @property
    def endpoint(self) -> str:
        host, port = self.server_address[:2]
        return f"http://{host}:{port}/v1/logs"

    def next_status(self) -> int:
        with self._lock:
            self.requests += 1
            return self.statuses.pop(0) if self.statuses else 200

    def record(self, payload: dict):
        with self._lock:
            self.payloads.append(payload)

    def bodies(self) -> list[str]:
        with self._lock:
            payloads = list(self.payloads)
        out = []
        for p in payloads:
            for rl in p["resourceLogs"]:
                for sl in rl["scopeLogs"]:
                    out.extend(r["body"]["stringValue"] for r in sl["logRecords"])
        return out

    def wait_for_bodies(self, expected: int, timeout: float = 5.0) -> list[str]:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            bodies = self.bodies()
            if len(bodies) >= expected:
                return bodies
            time.sleep(0.05)
        return self.bodies()


@pytest.fixture
def collector():
    server = FakeCollector()
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.shutdown()
    server.server_close()
    thread.join(timeout=5)


@pytest.fixture
def make_config(tmp_path):
    """Build a Config with fast test-friendly defaults."""

    def _make(**overrides) -> Config:
        values = dict(
            log_files=(str(tmp_path / "app.log"),),
            endpoint="http://127.0.0.1:9/v1/logs",
            service_name="test-service",
            host_name="test-host",
            rate_limit=1000,
            batch_size=10,
            flush_interval=0.1,
            max_pending_batches=10,
            export_workers=2,
            max_retries=3,
            backoff_base=0.01,
            backoff_max=0.1,
            request_timeout=2.0,
            poll_interval=0.05,
            shutdown_grace=2.0,
            start_position="beginning",
            offsets_file=str(tmp_path / "offsets.json"),
            use_notifications=False,
            metrics_interval=0,
        )
        values.update(overrides)
        return Config(**values)

    return _make
