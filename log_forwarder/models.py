"""Data model shared by the tailer, dispatcher and exporter."""

import time
from dataclasses import dataclass, field
from enum import Enum


class FileState(str, Enum):
    OPEN = "open"
    ROTATED = "rotated"
    MISSING = "missing"
    ERRORED = "errored"


class BatchState(str, Enum):
    ACCUMULATING = "accumulating"
    READY = "ready"
    SENDING = "sending"
    RETRYING = "retrying"
    DELIVERED = "delivered"
    DROPPED = "dropped"


@dataclass
class WatchedFile:
    """Bookkeeping for one configured path.

    ``identity`` is ``(st_dev, st_ino)`` of the file currently at ``path``;
    a new identity means the file was rotated and ``generation`` is bumped.
    """

    path: str
    identity: tuple[int, int] | None = None
    offset: int = 0
    generation: int = 0
    state: FileState = FileState.MISSING
    error: str | None = None

    def mark(self, state: FileState, error: str | None = None):
        self.state = state
        self.error = error if state is FileState.ERRORED else None


@dataclass(frozen=True)
class LogRecord:
    timestamp: int       # capture time, ns since epoch
    body: str
    source_path: str
    generation: int = 0


def make_record(body: str, source_path: str, generation: int = 0) -> LogRecord:
    """Create a LogRecord stamped with the current wall-clock time."""
    return LogRecord(
        timestamp=time.time_ns(),
        body=body,
        source_path=source_path,
        generation=generation,
    )


@dataclass
class Batch:
    batch_id: int
    service_name: str
    host_name: str
    records: list[LogRecord] = field(default_factory=list)
    created_at: float = field(default_factory=time.monotonic)
    attempt: int = 0
    state: BatchState = BatchState.ACCUMULATING

    def __len__(self) -> int:
        return len(self.records)

    def add(self, record: LogRecord):
        self.records.append(record)
