"""
Content-addressed cache of LLM tool categorizations.

Keys hash the sorted (name, description) pairs of a toolset, so any change
to the tools of a toolset is a miss. The last categorization per toolset key
is remembered separately and offered as a stability hint on a miss.
"""
import base64
import hashlib
import logging
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Sequence, Set

from config import config
from utils.kv_store import KeyValueStore
from virtual_tools.types import SummarizedToolCategory, Tool

logger = logging.getLogger(__name__)

GROUP_CACHE_KEY = 'virtToolGroupCache'
GROUP_CACHE_VERSION = 1


def toolset_hash(tools: Sequence[Tool]) -> str:
    entries = sorted(f"{t.name}\0{t.description}" for t in tools)
    digest = hashlib.sha256("\n".join(entries).encode('utf-8')).digest()
    return base64.b64encode(digest).decode('ascii')


class ToolGroupingCache:
    """
    LRU of toolset hash -> categories, persisted as one key/value store entry.

    Stored categories reference tools by name and are rehydrated against the
    tools passed to get().
    """

    def __init__(self, store: KeyValueStore, max_entries: Optional[int] = None):
        self.store = store
        self.max_entries = max_entries or config.grouping.category_cache_size

        self._lru: "OrderedDict[str, List[Dict[str, Any]]]" = OrderedDict()
        self._toolsets: Dict[str, str] = {}
        self._visited: Set[str] = set()
        self._loaded = False
        self._changed = False

    def _load(self) -> None:
        if self._loaded:
            return
        self._loaded = True

        stored = self.store.get(GROUP_CACHE_KEY)
        if not stored:
            return

        try:
            if stored.get("version") != GROUP_CACHE_VERSION:
                logger.info("Tool group cache has an older format, starting fresh")
                return
            for key, value in stored.get("lru", []):
                self._lru[key] = list(value["groups"])
            self._toolsets = dict(stored.get("toolsets", {}))
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Tool group cache corrupted, starting fresh: {e}")
            self._lru.clear()
            self._toolsets = {}

    @staticmethod
    def _serialize(groups: Sequence[SummarizedToolCategory]) -> List[Dict[str, Any]]:
        return [
            {"name": g.name, "summary": g.summary, "tools": [t.name for t in g.tools]}
            for g in groups
        ]

    @staticmethod
    def _hydrate(stored: List[Dict[str, Any]], tools: Sequence[Tool]) -> Optional[List[SummarizedToolCategory]]:
        by_name = {t.name: t for t in tools}
        groups = []
        for entry in stored:
            members = []
            for name in entry["tools"]:
                tool = by_name.get(name)
                if tool is None:
                    return None
                members.append(tool)
            groups.append(SummarizedToolCategory(name=entry["name"], summary=entry["summary"], tools=members))
        return groups

    def get(self, toolset_key: str, tools: Sequence[Tool]) -> Optional[List[SummarizedToolCategory]]:
        """Cached categories for exactly this set of tools, or None."""
        self._load()
        self._visited.add(toolset_key)

        key = toolset_hash(tools)
        stored = self._lru.get(key)
        if stored is None:
            return None

        self._lru.move_to_end(key)
        if self._toolsets.get(toolset_key) != key:
            self._toolsets[toolset_key] = key
            self._changed = True

        try:
            return self._hydrate(stored, tools)
        except (KeyError, TypeError) as e:
            logger.warning(f"Dropping malformed tool group cache entry: {e}")
            del self._lru[key]
            self._changed = True
            return None

    def get_previous(self, toolset_key: str) -> Optional[List[SummarizedToolCategory]]:
        """
        Last categorization stored for a toolset, whatever its tools were.

        Tools are returned as name-only placeholders; callers match them by name.
        """
        self._load()
        key = self._toolsets.get(toolset_key)
        stored = self._lru.get(key) if key else None
        if stored is None:
            return None

        try:
            return [
                SummarizedToolCategory(
                    name=entry["name"],
                    summary=entry["summary"],
                    tools=[Tool(name=name) for name in entry["tools"]]
                )
                for entry in stored
            ]
        except (KeyError, TypeError):
            return None

    def set(self, toolset_key: str, tools: Sequence[Tool], groups: Sequence[SummarizedToolCategory]) -> None:
        self._load()
        self._visited.add(toolset_key)

        key = toolset_hash(tools)
        self._lru[key] = self._serialize(groups)
        self._lru.move_to_end(key)
        self._toolsets[toolset_key] = key
        self._changed = True

    def flush(self) -> None:
        """
        End a grouping pass: forget toolsets not seen since the last flush,
        apply LRU eviction, and persist if anything changed.
        """
        self._load()

        stale = [k for k in self._toolsets if k not in self._visited]
        for toolset_key in stale:
            key = self._toolsets.pop(toolset_key)
            if key not in self._toolsets.values():
                self._lru.pop(key, None)
            self._changed = True
        self._visited.clear()

        while len(self._lru) > self.max_entries:
            self._lru.popitem(last=False)
            self._changed = True
        self._toolsets = {k: v for k, v in self._toolsets.items() if v in self._lru}

        if not self._changed:
            return

        self.store.set(GROUP_CACHE_KEY, {
            "version": GROUP_CACHE_VERSION,
            "lru": [[key, {"groups": groups}] for key, groups in self._lru.items()],
            "toolsets": dict(self._toolsets),
        })
        self._changed = False
        logger.debug(f"[virtual-tools] Persisted {len(self._lru)} tool group cache entries")

    def clear(self) -> None:
        self._lru.clear()
        self._toolsets.clear()
        self._visited.clear()
        self._loaded = True
        self._changed = True
