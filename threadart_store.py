"""Small key-value store shared by every studio/player process on the machine.

Values are strings kept in one JSON file. Writes replace the file atomically.
Watchers are notified from :meth:`KeyValueStore.poll`, which the Tk windows call
on a timer, so a player window picks up results written by another process.
"""
import json
import logging
import os
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)

STORE_ENV = "THREADART_STORE"


def default_store_path():
    env = os.environ.get(STORE_ENV)
    if env:
        return Path(env).expanduser()
    return Path.home() / ".threadart" / "storage.json"


class KeyValueStore:
    def __init__(self, path=None):
        self.path = Path(path) if path is not None else default_store_path()
        self._watchers = {}
        self._stamp = None
        self._snapshot = {}
        self._refresh()

    # --- file access ---
    def _file_stamp(self):
        try:
            st = self.path.stat()
        except FileNotFoundError:
            return None
        return (st.st_ino, st.st_mtime_ns, st.st_size)

    def _read(self):
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except UnicodeDecodeError:
            logger.warning("Store file %s is not UTF-8 text, treating it as empty", self.path)
            return {}
        if not text.strip():
            return {}
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            logger.warning("Store file %s is not valid JSON, treating it as empty", self.path)
            return {}
        if not isinstance(data, dict):
            logger.warning("Store file %s does not hold an object, treating it as empty", self.path)
            return {}
        return {k: v for k, v in data.items() if isinstance(v, str)}

    def _write(self, data):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".store-", suffix=".json", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f)
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        self._snapshot = dict(data)
        self._stamp = self._file_stamp()

    def _refresh(self):
        self._snapshot = self._read()
        self._stamp = self._file_stamp()

    # --- key-value API ---
    def get(self, key, default=None):
        return self._read().get(key, default)

    def set(self, key, value):
        if not isinstance(value, str):
            raise ValueError(f"Store values must be strings, got {type(value).__name__}")
        data = self._read()
        data[key] = value
        self._write(data)
        logger.debug("Stored %d characters under %r", len(value), key)

    def set_json(self, key, obj):
        self.set(key, json.dumps(obj))

    def get_json(self, key):
        raw = self.get(key)
        return None if raw is None else json.loads(raw)

    def remove(self, key):
        data = self._read()
        if key in data:
            del data[key]
            self._write(data)
            return True
        return False

    def keys(self):
        return sorted(self._read())

    # --- change notification ---
    def watch(self, key, callback):
        """Call ``callback(new_value)`` from :meth:`poll` whenever ``key`` changes elsewhere."""
        self._watchers.setdefault(key, []).append(callback)

    def unwatch(self, key, callback):
        callbacks = self._watchers.get(key, [])
        if callback in callbacks:
            callbacks.remove(callback)
        if not callbacks:
            self._watchers.pop(key, None)

    def poll(self):
        stamp = self._file_stamp()
        if stamp == self._stamp:
            return []
        old = self._snapshot
        self._refresh()
        changed = [
            k for k in self._watchers
            if self._snapshot.get(k) != old.get(k)
        ]
        for key in changed:
            value = self._snapshot.get(key)
            for callback in list(self._watchers[key]):
                callback(value)
        return changed
