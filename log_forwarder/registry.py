"""Offset registry: persists tail positions so a restart can resume."""

import json
import logging
import os
import threading

logger = logging.getLogger(__name__)


class OffsetRegistry:
    def __init__(self, registry_file: str):
        self._path = registry_file
        self._data: dict[str, dict] = {}
        self._lock = threading.Lock()
        self._load()

    def _load(self):
        if not os.path.exists(self._path):
            return
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Failed to load offset registry %s: %s", self._path, e)
            return
        if not isinstance(data, dict):
            logger.warning("Ignoring malformed offset registry %s", self._path)
            return
        self._data = data
        logger.info("Loaded offset registry from %s (%d entries)", self._path, len(self._data))

    def save(self):
        """Atomic write: write to tmp file then replace."""
        with self._lock:
            snapshot = {k: dict(v) for k, v in self._data.items()}
        os.makedirs(os.path.dirname(self._path) or ".", exist_ok=True)
        tmp_path = self._path + ".tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(snapshot, f, indent=2)
        os.replace(tmp_path, self._path)

    def get(self, path: str) -> tuple[int, tuple[int, int] | None]:
        """Return ``(offset, identity)`` stored for *path*; ``(0, None)`` if unknown."""
        with self._lock:
            entry = self._data.get(path)
        if not entry:
            return 0, None
        try:
            identity = (int(entry["device"]), int(entry["inode"]))
            return int(entry["offset"]), identity
        except (KeyError, TypeError, ValueError):
            return 0, None

    def update(self, path: str, offset: int, identity: tuple[int, int]):
        with self._lock:
            self._data[path] = {"offset": offset, "device": identity[0], "inode": identity[1]}
