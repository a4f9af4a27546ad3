"""Tests for OTLP JSON encoding and severity detection."""

import json

import pytest

from log_forwarder.errors import EncodingError
from log_forwarder.models import Batch, LogRecord
from log_forwarder.otlp import build_payload, detect_severity, encode_batch


def _batch(*bodies: str, path: str = "/var/log/app.log") -> Batch:
    batch = Batch(batch_id=7, service_name="checkout", host_name="web-01")
    for i, body in enumerate(bodies):
        batch.add(LogRecord(timestamp=1_700_000_000_000_000_000 + i, body=body, source_path=path))
    return batch


class TestDetectSeverity:
    @pytest.mark.parametrize("line, expected", [
        ("2024-01-15 ERROR db down", ("ERROR", 17)),
        ("warning: disk at 91%", ("WARN", 13)),
        ("[WARN] slow request", ("WARN", 13)),
        ("debug: cache miss", ("DEBUG", 8)),
        ("TRACE enter handler", ("TRACE", 4)),
        ("NOTICE config reloaded", ("INFO", 12)),
        ("CRITICAL out of memory", ("FATAL", 21)),
        ("fatal: cannot continue", ("FATAL", 21)),
        ("just some text", ("INFO", 12)),
    ])
    def test_levels(self, line, expected):
        assert detect_severity(line) == expected

    def test_first_keyword_wins(self):
        assert detect_severity("INFO retrying after ERROR") == ("INFO", 12)

    def test_requires_word_boundary(self):
        assert detect_severity("errorless operation") == ("INFO", 12)


class TestBuildPayload:
    def test_single_resource_for_whole_batch(self):
        payload = build_payload(_batch("a", "b", "c"))
        assert len(payload["resourceLogs"]) == 1
        resource = payload["resourceLogs"][0]
        attrs = {a["key"]: a["value"]["stringValue"] for a in resource["resource"]["attributes"]}
        assert attrs == {"service.name": "checkout", "host.name": "web-01"}
        records = resource["scopeLogs"][0]["logRecords"]
        assert [r["body"]["stringValue"] for r in records] == ["a", "b", "c"]

    def test_record_fields(self):
        payload = build_payload(_batch("ERROR boom"))
        record = payload["resourceLogs"][0]["scopeLogs"][0]["logRecords"][0]
        assert record["timeUnixNano"] == "1700000000000000000"
        assert int(record["observedTimeUnixNano"]) > 0
        assert record["severityText"] == "ERROR"
        assert record["severityNumber"] == 17
        assert record["attributes"] == [
            {"key": "log.file", "value": {"stringValue": "/var/log/app.log"}}
        ]

    def test_severity_omitted_when_disabled(self):
        payload = build_payload(_batch("ERROR boom"), detect=False)
        record = payload["resourceLogs"][0]["scopeLogs"][0]["logRecords"][0]
        assert "severityText" not in record
        assert "severityNumber" not in record

    def test_body_kept_verbatim(self):
        line = '  {"level": "info", "msg": "structured?"}  '
        payload = build_payload(_batch(line))
        record = payload["resourceLogs"][0]["scopeLogs"][0]["logRecords"][0]
        assert record["body"]["stringValue"] == line


class TestEncodeBatch:
    def test_produces_utf8_json(self):
        data = encode_batch(_batch("héllo wörld"))
        decoded = json.loads(data.decode("utf-8"))
        body = decoded["resourceLogs"][0]["scopeLogs"][0]["logRecords"][0]["body"]
        assert body["stringValue"] == "héllo wörld"

    def test_unencodable_record_raises(self):
        batch = _batch("ok")
        batch.add(LogRecord(timestamp=1, body="bad \ud800 surrogate", source_path="/x"))
        with pytest.raises(EncodingError):
            encode_batch(batch)
