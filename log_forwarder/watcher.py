"""watchdog integration: wake tailers as soon as their file changes.

Polling stays the source of truth; notifications only shorten the wait
between ticks. If the observer cannot start, tailers keep polling.
"""

import logging
import os

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

logger = logging.getLogger(__name__)


class ChangeNotifier(FileSystemEventHandler):
    def __init__(self, tailers):
        super().__init__()
        self._tailers = {t.path: t for t in tailers}

    def _wake(self, path):
        if isinstance(path, bytes):
            path = os.fsdecode(path)
        tailer = self._tailers.get(os.path.abspath(path))
        if tailer is not None:
            tailer.wake()

    def on_any_event(self, event):
        if event.is_directory:
            return
        self._wake(event.src_path)
        dest = getattr(event, "dest_path", "")
        if dest:
            self._wake(dest)

    def get_watched_dirs(self) -> set[str]:
        """Unique parent directories of watched files (for Observer scheduling)."""
        return {os.path.dirname(p) for p in self._tailers}


def start_observer(notifier: ChangeNotifier):
    """Schedule *notifier* on every existing parent directory and start it.

    Returns the running Observer, or None when notifications are unavailable.
    """
    observer = Observer()
    scheduled = 0
    for dir_path in sorted(notifier.get_watched_dirs()):
        if not os.path.isdir(dir_path):
            logger.warning("Directory %s does not exist, polling only", dir_path)
            continue
        observer.schedule(notifier, dir_path, recursive=False)
        scheduled += 1
        logger.debug("Watching directory: %s", dir_path)
    if not scheduled:
        return None
    try:
        observer.start()
    except OSError as e:
        logger.warning("File notifications unavailable (%s), falling back to polling", e)
        return None
    return observer
