"""
Stores — The two key-value backends behind the staging cache.

  JsonFileStore  Durable text store. All keys live in one JSON file on disk,
                 so staged data survives a restart. Values must be strings.
  MemoryStore    Ephemeral store for objects that cannot be serialized
                 (BOL PDF bytes). Lost when the process exits.

Both expose the same get / set / delete / keys interface so the cache can be
built against either (tests use two MemoryStores).
"""

import json
import os
import tempfile
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


class MemoryStore:
    """In-process dict-backed store."""

    def __init__(self):
        self._data: Dict[str, Any] = {}

    def get(self, key: str) -> Optional[Any]:
        return self._data.get(key)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> List[str]:
        return list(self._data.keys())


class JsonFileStore:
    """Durable text store persisted as a single JSON file.

    The file is re-read on every get() and rewritten on every set()/delete().
    Read-modify-write cycles hold a lock, so threads sharing one store (the
    job poller writing job statuses while the cache is updated) never drop
    each other's keys. Writes go to a temp file that replaces the original,
    so a reader never sees a half-written file. Separate processes pointed at
    the same file are not coordinated (last writer wins).

    Attributes:
        path: Location of the JSON file (parent directories are created).
        debug: If True, print load/save details.
    """

    def __init__(self, path: str, debug: bool = False):
        self.path = path
        self.debug = debug
        self._lock = threading.RLock()

    def _load(self) -> Dict[str, str]:
        if not os.path.exists(self.path):
            return {}

        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            if self.debug:
                print(f"  Could not load store {self.path}: {e}")
            return {}

        return data.get("values", {}) if isinstance(data, dict) else {}

    def _save(self, values: Dict[str, str]) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        payload = {
            "updated_at": datetime.now(timezone.utc).isoformat(),
            "values": values,
        }
        fd, tmp_path = tempfile.mkstemp(prefix=".store-", suffix=".json", dir=directory or ".")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(payload, f, indent=2)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise TypeError("JsonFileStore only stores text values")
        with self._lock:
            values = self._load()
            values[key] = value
            self._save(values)
        if self.debug:
            print(f"  Saved key '{key}' to {self.path}")

    def delete(self, key: str) -> None:
        with self._lock:
            values = self._load()
            if key in values:
                del values[key]
                self._save(values)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._load().keys())
