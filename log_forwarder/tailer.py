"""Per-file tailer: turns appended bytes into LogRecords.

Each configured path gets its own FileTailer running in its own thread. On
every tick it stats the path and compares the ``(st_dev, st_ino)`` identity
with the one it is reading:

- same identity, file grew: read the new bytes, emit complete lines only
- same identity, file shrank: truncation, start over at offset 0
- new identity: rotation, optionally drain the old handle, then read the new
  file from offset 0
- path absent: MISSING until it shows up again

Offsets are byte offsets into the file and always sit just past the last
newline consumed, so a line that is still being written is never forwarded
half-done.
"""

import logging
import os
import queue
import threading

from log_forwarder.metrics import AgentMetrics
from log_forwarder.models import FileState, WatchedFile, make_record
from log_forwarder.registry import OffsetRegistry

logger = logging.getLogger(__name__)


class FileTailer:
    """Watches one log file and puts a LogRecord on *ingress* for each new line."""

    def __init__(
        self,
        path: str,
        ingress: queue.Queue,
        shutdown_event: threading.Event,
        metrics: AgentMetrics | None = None,
        poll_interval: float = 0.5,
        start_position: str = "end",
        registry: OffsetRegistry | None = None,
        drain_rotated: bool = True,
        skip_blank_lines: bool = True,
        max_read_bytes: int = 1024 * 1024,
        ingress_timeout: float = 1.0,
    ):
        self.watched = WatchedFile(path=os.path.abspath(path))
        self._ingress = ingress
        self._shutdown = shutdown_event
        self._metrics = metrics or AgentMetrics()
        self._poll_interval = poll_interval
        self._start_position = start_position
        self._registry = registry
        self._drain_rotated = drain_rotated
        self._skip_blank = skip_blank_lines
        self._max_read_bytes = max_read_bytes
        self._ingress_timeout = ingress_timeout
        self._file = None
        self._first_poll = True
        self._wake = threading.Event()

    @property
    def path(self) -> str:
        return self.watched.path

    def wake(self):
        """Cut the current poll wait short (file-change notification or shutdown)."""
        self._wake.set()

    def run(self):
        """Tailing loop, blocks until shutdown_event is set."""
        logger.info("Tailing %s (start=%s)", self.path, self._start_position)
        while not self._shutdown.is_set():
            try:
                self.poll_once()
            except Exception:
                logger.exception("Unexpected error while tailing %s", self.path)
            self._wake.wait(self._poll_interval)
            self._wake.clear()
        self._close_file()
        logger.debug("Stopped tailing %s", self.path)

    def poll_once(self) -> int:
        """Run one tick. Returns the number of lines emitted."""
        first = self._first_poll
        self._first_poll = False
        wf = self.watched

        try:
            st = os.stat(self.path)
        except FileNotFoundError:
            return self._handle_missing(first)
        except OSError as e:
            self._set_error(e)
            return 0

        identity = (st.st_dev, st.st_ino)
        emitted = 0

        if wf.identity is None:
            wf.identity = identity
            wf.offset = self._initial_offset(identity, st.st_size) if first else 0
            logger.info("Watching %s from offset %d", self.path, wf.offset)
        elif identity != wf.identity:
            emitted += self._rotate(identity)
        elif st.st_size < wf.offset:
            logger.info("File truncation detected for %s (%d < %d)",
                        self.path, st.st_size, wf.offset)
            self._metrics.record_truncation()
            wf.offset = 0

        if self._file is None and not self._open_file(identity):
            return emitted

        try:
            emitted += self._consume(st.st_size)
        except OSError as e:
            self._close_file()
            self._set_error(e)
            return emitted

        if wf.state is not FileState.OPEN:
            if wf.state is FileState.ERRORED:
                logger.info("Recovered reading %s", self.path)
            wf.mark(FileState.OPEN)
        if self._registry is not None:
            self._registry.update(self.path, wf.offset, identity)
        return emitted

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def _initial_offset(self, identity: tuple[int, int], size: int) -> int:
        if self._start_position == "beginning":
            return 0
        if self._start_position == "resume":
            offset, saved_identity = (
                self._registry.get(self.path) if self._registry else (0, None)
            )
            if saved_identity == identity and offset <= size:
                logger.info("Resuming %s at saved offset %d", self.path, offset)
                return offset
            logger.info("No usable saved offset for %s, reading from start", self.path)
            return 0
        return size

    def _rotate(self, identity: tuple[int, int]) -> int:
        wf = self.watched
        logger.info("File rotation detected for %s (generation %d -> %d)",
                    self.path, wf.generation, wf.generation + 1)
        wf.mark(FileState.ROTATED)
        emitted = 0
        if self._drain_rotated and self._file is not None:
            emitted = self._drain_old_file()
        self._close_file()
        wf.identity = identity
        wf.generation += 1
        wf.offset = 0
        self._metrics.record_rotation()
        return emitted

    def _handle_missing(self, first: bool) -> int:
        wf = self.watched
        if wf.state is FileState.MISSING and not first:
            return 0
        emitted = 0
        if self._file is not None and self._drain_rotated:
            emitted = self._drain_old_file()
        self._close_file()
        if first:
            logger.warning("Waiting for %s to appear", self.path)
        else:
            logger.warning("Watched file disappeared: %s", self.path)
        wf.mark(FileState.MISSING)
        return emitted

    def _set_error(self, exc: OSError):
        wf = self.watched
        reason = f"{type(exc).__name__}: {exc}"
        if wf.state is not FileState.ERRORED or wf.error != reason:
            logger.error("Cannot read %s: %s", self.path, reason)
            self._metrics.record_file_error()
        wf.mark(FileState.ERRORED, reason)

    # ------------------------------------------------------------------
    # File handle and reading
    # ------------------------------------------------------------------

    def _open_file(self, identity: tuple[int, int]) -> bool:
        try:
            f = open(self.path, "rb")
        except FileNotFoundError:
            return False
        except OSError as e:
            self._set_error(e)
            return False

        st = os.fstat(f.fileno())
        if (st.st_dev, st.st_ino) != identity:
            # Replaced between stat() and open(); the next tick sees the new identity.
            f.close()
            return False

        self._file = f
        logger.debug("Opened %s (inode=%d)", self.path, identity[1])
        return True

    def _close_file(self):
        if self._file is not None:
            self._file.close()
            self._file = None

    def _drain_old_file(self) -> int:
        """Read whatever the rotated-away file still holds, partial last line included."""
        try:
            size = os.fstat(self._file.fileno()).st_size
            emitted = self._consume(size, final=True)
        except OSError as e:
            logger.warning("Could not drain rotated file %s: %s", self.path, e)
            return 0
        if emitted:
            logger.info("Drained %d line(s) from rotated %s", emitted, self.path)
        return emitted

    def _consume(self, size: int, final: bool = False) -> int:
        """Read ``[offset, size)`` in bounded chunks and emit complete lines."""
        wf = self.watched
        emitted = 0
        generation = wf.generation
        while wf.offset < size:
            length = min(size - wf.offset, self._max_read_bytes)
            self._file.seek(wf.offset)
            data = self._file.read(length)
            if not data:
                break
            at_end = wf.offset + len(data) >= size
            consumed, lines = self._split_lines(data, final and at_end)
            if consumed == 0:
                break
            # Commit the offset only once the lines are handed off.
            emitted += self._emit_lines(lines, generation)
            wf.offset += consumed
        return emitted

    def _split_lines(self, data: bytes, final: bool) -> tuple[int, list[str]]:
        if final:
            consumed = len(data)
        else:
            last_newline = data.rfind(b"\n")
            if last_newline >= 0:
                consumed = last_newline + 1
            elif len(data) >= self._max_read_bytes:
                # A single line longer than one read; ship it in pieces.
                consumed = len(data)
            else:
                return 0, []

        parts = data[:consumed].split(b"\n")
        if parts and parts[-1] == b"":
            parts.pop()
        lines = [p.rstrip(b"\r").decode("utf-8", errors="replace") for p in parts]
        return consumed, lines

    def _emit_lines(self, lines: list[str], generation: int) -> int:
        if generation < self.watched.generation:
            logger.debug("Discarding %d stale line(s) from generation %d of %s",
                         len(lines), generation, self.path)
            return 0
        emitted = 0
        for line in lines:
            if self._skip_blank and not line.strip():
                continue
            record = make_record(line, self.path, generation)
            try:
                self._ingress.put(record, timeout=self._ingress_timeout)
            except queue.Full:
                logger.warning("Ingress queue full, dropping line from %s", self.path)
                self._metrics.record_dropped_records(1, "ingress_full")
            emitted += 1
        if emitted:
            self._metrics.record_tailed(emitted)
            logger.debug("Read %d line(s) from %s", emitted, self.path)
        return emitted
