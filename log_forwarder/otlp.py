"""OTLP/HTTP JSON encoding for log batches."""

import json
import re
import time

from log_forwarder.errors import EncodingError
from log_forwarder.models import Batch, LogRecord

SCOPE_NAME = "otlp-log-forwarder"

_SEVERITY_RE = re.compile(
    r"\b(INFO|ERROR|WARN|WARNING|DEBUG|CRITICAL|FATAL|NOTICE|TRACE)\b", re.IGNORECASE
)

# keyword -> (severityText, severityNumber)
SEVERITY_MAP = {
    "TRACE": ("TRACE", 4),
    "DEBUG": ("DEBUG", 8),
    "INFO": ("INFO", 12),
    "NOTICE": ("INFO", 12),
    "WARN": ("WARN", 13),
    "WARNING": ("WARN", 13),
    "ERROR": ("ERROR", 17),
    "CRITICAL": ("FATAL", 21),
    "FATAL": ("FATAL", 21),
}
DEFAULT_SEVERITY = ("INFO", 12)


def detect_severity(line: str) -> tuple[str, int]:
    """Map the first level keyword in *line* to an OTLP severity."""
    match = _SEVERITY_RE.search(line)
    if match is None:
        return DEFAULT_SEVERITY
    return SEVERITY_MAP.get(match.group(1).upper(), DEFAULT_SEVERITY)


def _attr(key: str, value: str) -> dict:
    return {"key": key, "value": {"stringValue": value}}


def encode_record(record: LogRecord, detect: bool = True, observed_ns: int | None = None) -> dict:
    entry = {
        "timeUnixNano": str(record.timestamp),
        "observedTimeUnixNano": str(observed_ns if observed_ns is not None else record.timestamp),
        "body": {"stringValue": record.body},
        "attributes": [_attr("log.file", record.source_path)],
    }
    if detect:
        text, number = detect_severity(record.body)
        entry["severityText"] = text
        entry["severityNumber"] = number
    return entry


def build_payload(batch: Batch, detect: bool = True) -> dict:
    """Group every record of *batch* under one resource descriptor."""
    observed = time.time_ns()
    return {
        "resourceLogs": [
            {
                "resource": {
                    "attributes": [
                        _attr("service.name", batch.service_name),
                        _attr("host.name", batch.host_name),
                    ]
                },
                "scopeLogs": [
                    {
                        "scope": {"name": SCOPE_NAME},
                        "logRecords": [
                            encode_record(r, detect, observed) for r in batch.records
                        ],
                    }
                ],
            }
        ]
    }


def encode_batch(batch: Batch, detect: bool = True) -> bytes:
    """Serialize *batch* to the request body. Raises EncodingError on failure."""
    try:
        payload = build_payload(batch, detect)
        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    except (TypeError, ValueError, AttributeError) as e:
        raise EncodingError(f"Cannot encode batch #{batch.batch_id}: {e}") from e
