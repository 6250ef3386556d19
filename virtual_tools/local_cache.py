"""
Persistent binary cache of tool embeddings computed at runtime.

File layout (little endian):
    [version: u8][type id length: u16][type id: utf-8][dimensions: u32]
    then repeated records of [sha256(name NUL description): 32 bytes][float32 x dimensions]

An in-memory LRU mirrors the file. Anything unexpected while loading (missing
file, truncated bytes, other version, other embedding type) just means the
cache starts cold.
"""
import hashlib
import logging
import os
import struct
import threading
import time
import weakref
from collections import OrderedDict
from typing import Optional

import numpy as np

from config import config
from virtual_tools.types import Embedding, EmbeddingType, Tool

logger = logging.getLogger(__name__)

CACHE_FORMAT_VERSION = 1
KEY_LENGTH = 32
_HEADER_PREFIX = struct.Struct('<BH')
_DIMENSIONS = struct.Struct('<I')
_FLOAT32 = np.dtype('<f4')


class CacheFormatError(ValueError):
    """The cache file does not match what this version writes."""


def tool_cache_key(tool: Tool) -> bytes:
    return hashlib.sha256(f"{tool.name}\0{tool.description}".encode('utf-8')).digest()


class ToolEmbeddingLocalCache:
    """
    Runtime-computed tool embeddings persisted under the data directory.

    Writes are debounced: a burst of set() calls results in a single save
    once the burst has been quiet for `save_debounce_seconds`.
    """

    def __init__(
        self,
        embedding_type: EmbeddingType,
        file_path: Optional[str] = None,
        max_entries: Optional[int] = None,
        save_debounce_seconds: Optional[float] = None
    ):
        self.embedding_type = embedding_type
        self.file_path = file_path or os.path.join(config.paths.data_dir, config.paths.embeddings_cache_file)
        self.max_entries = max_entries or config.embeddings.local_cache_size
        self.save_debounce_seconds = (
            save_debounce_seconds if save_debounce_seconds is not None
            else config.embeddings.save_debounce_seconds
        )

        self._lru: "OrderedDict[bytes, Embedding]" = OrderedDict()
        self._lock = threading.Lock()
        self._key_memo: "weakref.WeakKeyDictionary[Tool, bytes]" = weakref.WeakKeyDictionary()
        self._save_timer: Optional[threading.Timer] = None
        self._save_deadline = 0.0

    async def initialize(self) -> None:
        try:
            with open(self.file_path, 'rb') as f:
                data = f.read()
        except FileNotFoundError:
            logger.debug(f"No tool embeddings cache at {self.file_path}")
            return
        except OSError as e:
            logger.warning(f"Could not read tool embeddings cache, starting empty: {e}")
            return

        try:
            entries = self._decode(data)
        except (CacheFormatError, struct.error, ValueError) as e:
            logger.warning(f"Discarding tool embeddings cache: {e}")
            return

        with self._lock:
            for key, embedding in entries:
                self._lru[key] = embedding
                self._lru.move_to_end(key)
            self._evict_locked()

        logger.info(f"Loaded {len(entries)} cached tool embeddings from {self.file_path}")

    def _key(self, tool: Tool) -> bytes:
        key = self._key_memo.get(tool)
        if key is None:
            key = tool_cache_key(tool)
            self._key_memo[tool] = key
        return key

    def get(self, tool: Tool) -> Optional[Embedding]:
        key = self._key(tool)
        with self._lock:
            embedding = self._lru.get(key)
            if embedding is not None:
                self._lru.move_to_end(key)
            return embedding

    def set(self, tool: Tool, embedding: Embedding) -> None:
        key = self._key(tool)
        with self._lock:
            self._lru[key] = embedding
            self._lru.move_to_end(key)
            self._evict_locked()
        self._schedule_save()

    def _evict_locked(self) -> None:
        while len(self._lru) > self.max_entries:
            self._lru.popitem(last=False)

    def _schedule_save(self) -> None:
        with self._lock:
            self._save_deadline = time.monotonic() + self.save_debounce_seconds
            if self._save_timer is None:
                self._start_timer_locked(self.save_debounce_seconds)

    def _start_timer_locked(self, delay: float) -> None:
        self._save_timer = threading.Timer(delay, self._save_from_timer)
        self._save_timer.daemon = True
        self._save_timer.start()

    def _save_from_timer(self) -> None:
        # Writes that arrived while the timer ran pushed the deadline out
        with self._lock:
            if self._save_timer is None:
                return
            remaining = self._save_deadline - time.monotonic()
            if remaining > 0:
                self._start_timer_locked(remaining)
                return
            self._save_timer = None
        self.save()

    def save(self) -> None:
        """Write the current LRU snapshot to disk."""
        with self._lock:
            snapshot = list(self._lru.items())

        data = self._encode(snapshot)
        try:
            directory = os.path.dirname(self.file_path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            tmp_path = self.file_path + ".tmp"
            with open(tmp_path, 'wb') as f:
                f.write(data)
            os.replace(tmp_path, self.file_path)
            logger.debug(f"Saved {len(snapshot)} tool embeddings to {self.file_path}")
        except OSError as e:
            logger.error(f"Failed to save tool embeddings cache: {e}")

    def dispose(self) -> None:
        """Stop the debounce timer, saving immediately if a save was pending."""
        with self._lock:
            timer, self._save_timer = self._save_timer, None
        if timer is not None:
            timer.cancel()
            self.save()

    def _encode(self, entries) -> bytes:
        type_id = self.embedding_type.id.encode('utf-8')
        dimensions = len(entries[0][1].value) if entries else self.embedding_type.dimensions

        parts = [
            _HEADER_PREFIX.pack(CACHE_FORMAT_VERSION, len(type_id)),
            type_id,
            _DIMENSIONS.pack(dimensions),
        ]
        skipped = 0
        for key, embedding in entries:
            if len(embedding.value) != dimensions:
                skipped += 1
                continue
            parts.append(key)
            parts.append(np.asarray(embedding.value, dtype=_FLOAT32).tobytes())

        if skipped:
            logger.debug(f"Skipped {skipped} embeddings with mismatched dimensions while saving")
        return b''.join(parts)

    def _decode(self, data: bytes):
        offset = 0
        version, type_length = _HEADER_PREFIX.unpack_from(data, offset)
        offset += _HEADER_PREFIX.size
        if version != CACHE_FORMAT_VERSION:
            raise CacheFormatError(f"unsupported cache version {version}")

        type_id = data[offset:offset + type_length].decode('utf-8')
        offset += type_length
        if type_id != self.embedding_type.id:
            raise CacheFormatError(f"cache holds {type_id!r} embeddings, expected {self.embedding_type.id!r}")

        (dimensions,) = _DIMENSIONS.unpack_from(data, offset)
        offset += _DIMENSIONS.size

        record_size = KEY_LENGTH + dimensions * _FLOAT32.itemsize
        body = len(data) - offset
        if record_size == KEY_LENGTH or body % record_size != 0:
            raise CacheFormatError("truncated or malformed records")

        entries = []
        while offset < len(data):
            key = data[offset:offset + KEY_LENGTH]
            offset += KEY_LENGTH
            vector = np.frombuffer(data, dtype=_FLOAT32, count=dimensions, offset=offset)
            offset += dimensions * _FLOAT32.itemsize
            entries.append((key, Embedding(type=self.embedding_type, value=vector.tolist())))

        return entries
