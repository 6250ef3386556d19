"""
Small key/value stores used for persisted engine state.

The JSON file store keeps every key in a single file under the data
directory. A corrupted file is treated as empty rather than failing startup.
"""
import json
import logging
import os
import threading
from typing import Any, Dict, Optional, Protocol


class KeyValueStore(Protocol):

    def get(self, key: str) -> Optional[Any]:
        ...

    def set(self, key: str, value: Any) -> None:
        ...


class InMemoryKeyValueStore:
    """Process-local store, mostly for tests and ephemeral sessions."""

    def __init__(self):
        self._data: Dict[str, Any] = {}

    def get(self, key: str) -> Optional[Any]:
        return self._data.get(key)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value


class JsonFileKeyValueStore:
    """Key/value store persisted as one JSON object on disk."""

    def __init__(self, file_path: str):
        self.logger = logging.getLogger("kv_store")
        self.file_path = file_path
        self._lock = threading.Lock()
        self._data: Optional[Dict[str, Any]] = None

    def _load(self) -> Dict[str, Any]:
        if self._data is not None:
            return self._data

        self._data = {}
        if os.path.exists(self.file_path):
            try:
                with open(self.file_path, 'r') as f:
                    loaded = json.load(f)
                if isinstance(loaded, dict):
                    self._data = loaded
                else:
                    self.logger.warning(f"Key/value store {self.file_path} is not an object, starting fresh")
            except (json.JSONDecodeError, OSError) as e:
                self.logger.warning(f"Key/value store corrupted, starting fresh: {e}")

        return self._data

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            return self._load().get(key)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            data = self._load()
            data[key] = value
            try:
                directory = os.path.dirname(self.file_path)
                if directory:
                    os.makedirs(directory, exist_ok=True)
                tmp_path = self.file_path + ".tmp"
                with open(tmp_path, 'w') as f:
                    json.dump(data, f)
                os.replace(tmp_path, self.file_path)
            except (OSError, TypeError) as e:
                self.logger.error(f"Failed to save key/value store: {e}")
