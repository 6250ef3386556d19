"""
Per-conversation view of the virtual tool tree.

A ToolGrouping owns the tree for one session: it regroups when the tool list
changes, tracks which groups the model activated and when, and trims the
visible list back under the hard limit by collapsing stale groups.
"""
import logging
import os
from typing import Dict, Iterator, List, Optional, Sequence

from config import config
from config.config import GroupingConfig
from utils.cancellation import CancellationToken
from utils.kv_store import JsonFileKeyValueStore, KeyValueStore
from virtual_tools.category_cache import ToolGroupingCache
from virtual_tools.embeddings_computer import ToolEmbeddingsComputer
from virtual_tools.grouper import VirtualToolGrouper, count_visible
from virtual_tools.types import ChatEndpoint, EmbeddingsComputer, Tool
from virtual_tools.virtual_tool import ToolNode, VirtualTool, VirtualToolMetadata, is_virtual

logger = logging.getLogger(__name__)

ROOT_GROUP_NAME = 'root'


class ToolGrouping:
    """Tool tree and activation state for a single conversation."""

    def __init__(
        self,
        grouper: VirtualToolGrouper,
        tools: Sequence[Tool] = (),
        limits: Optional[GroupingConfig] = None
    ):
        self._grouper = grouper
        self.limits = limits or grouper.limits

        self.root = VirtualTool(ROOT_GROUP_NAME, '', 0, VirtualToolMetadata(can_be_collapsed=False))
        self.root.is_expanded = True

        self._tools: List[Tool] = list(tools)
        self._dirty = True
        self._turn = 0
        self._trim_on_next_compute = False

    @property
    def tools(self) -> List[Tool]:
        return list(self._tools)

    @tools.setter
    def tools(self, tools: Sequence[Tool]) -> None:
        tools = list(tools)
        if tools == self._tools:
            return
        self._tools = tools
        self._dirty = True

    @property
    def turn(self) -> int:
        return self._turn

    def did_call(self, tool_name: str) -> Optional[str]:
        """
        Record that the model called `tool_name`.

        Calling a virtual tool activates it. Every group holding the called
        node is marked as used this turn, so a tool that also sits in the
        predicted group still keeps its own group fresh.

        Returns:
            The activation message for a virtual tool, otherwise None
        """
        found = self.root.find(tool_name)
        if found is None:
            return None

        node, _ = found
        for group in self._groups_containing(self.root, tool_name):
            group.last_used_on_turn = self._turn

        if not is_virtual(node):
            return None

        node.is_expanded = True
        node.last_used_on_turn = self._turn
        logger.debug(f"[virtual-tools] Activated {node.name} on turn {self._turn}")
        return "Tools activated: " + ", ".join(item.name for item in node.contents)

    def _groups_containing(self, group: VirtualTool, tool_name: str) -> List[VirtualTool]:
        """Groups below `group` with `tool_name` somewhere in their subtree."""
        found = []
        for item in group.contents:
            if not is_virtual(item):
                continue
            inner = self._groups_containing(item, tool_name)
            if inner or any(child.name == tool_name for child in item.contents):
                found.append(item)
                found.extend(inner)
        return found

    def did_take_turn(self) -> None:
        self._turn += 1

    def did_invalidate_cache(self) -> None:
        """The model's prompt cache was lost; the next compute trims harder."""
        self._trim_on_next_compute = True

    def get_container_for(self, tool_name: str) -> Optional[VirtualTool]:
        found = self.root.find(tool_name)
        if found is None:
            return None
        _, path = found
        if not path or path[-1] is self.root:
            return None
        return path[-1]

    async def compute(self, query: str, token: CancellationToken) -> List[ToolNode]:
        """
        Bring the tree up to date for `query`.

        Returns:
            What the model should be shown: leaf tools plus collapsed groups,
            one entry per name
        """
        await self._update(query, token)

        seen = set()
        visible = []
        for node in self.root.visible():
            if node.name not in seen:
                seen.add(node.name)
                visible.append(node)
        return visible

    async def compute_all(self, query: str, token: CancellationToken) -> List[ToolNode]:
        """Same as compute() but returns the top level of the tree."""
        await self._update(query, token)
        return list(self.root.contents)

    async def _update(self, query: str, token: CancellationToken) -> None:
        if self._dirty:
            await self._grouper.add_groups(query, self.root, self._tools, token)
            if not token.is_cancellation_requested:
                self._dirty = False
        elif len(self._tools) >= self.limits.start_grouping_after_tool_count:
            await self._grouper.recompute_embedding_rankings(query, self.root, token)

        limit = self.limits.trim_threshold if self._trim_on_next_compute else self.limits.hard_tool_limit
        self._trim_on_next_compute = False
        self._collapse_to_limit(limit)

    def _expanded_groups(self, group: VirtualTool) -> Iterator[VirtualTool]:
        for item in group.contents:
            if is_virtual(item) and item.is_expanded:
                yield item
                yield from self._expanded_groups(item)

    def _collapse_to_limit(self, limit: int) -> None:
        visible = count_visible(self.root)
        while visible > limit:
            candidates = [g for g in self._expanded_groups(self.root) if g.metadata.can_be_collapsed]
            if not candidates:
                logger.warning(f"{visible} tools visible but nothing left to collapse (limit {limit})")
                return

            candidates.sort(key=lambda g: (g.last_used_on_turn, -len(g.contents)))
            stale = candidates[0]
            stale.is_expanded = False
            visible = count_visible(self.root)
            logger.debug(f"[virtual-tools] Collapsed {stale.name}, {visible} tools visible")


class ToolGroupingService:
    """
    Hands out one ToolGrouping per session, sharing a single grouper and its
    caches between them.
    """

    def __init__(
        self,
        endpoint: ChatEndpoint,
        embeddings_computer: EmbeddingsComputer,
        store: Optional[KeyValueStore] = None,
        tool_embeddings_computer: Optional[ToolEmbeddingsComputer] = None
    ):
        """
        Initialize the service.

        Args:
            endpoint: Chat collaborator used for categorization
            embeddings_computer: Remote embeddings collaborator
            store: Persistence for the category cache; a JSON file under the
                data directory when omitted
            tool_embeddings_computer: Shared tool embedding lookup
        """
        self.logger = logging.getLogger("tool_grouping_service")
        if store is None:
            store = JsonFileKeyValueStore(os.path.join(config.paths.data_dir, config.paths.kv_store_file))

        self.grouper = VirtualToolGrouper(
            endpoint,
            embeddings_computer,
            tool_embeddings_computer,
            ToolGroupingCache(store)
        )
        self._groupings: Dict[str, ToolGrouping] = {}

    def create(self, session_id: str, tools: Sequence[Tool]) -> ToolGrouping:
        """Get the grouping for a session, creating it or updating its tools."""
        grouping = self._groupings.get(session_id)
        if grouping is None:
            grouping = ToolGrouping(self.grouper, tools)
            self._groupings[session_id] = grouping
            self.logger.info(f"Created tool grouping for session {session_id} with {len(tools)} tools")
        else:
            grouping.tools = tools
        return grouping

    def get(self, session_id: str) -> Optional[ToolGrouping]:
        return self._groupings.get(session_id)

    def remove(self, session_id: str) -> None:
        self._groupings.pop(session_id, None)

    def did_invalidate_cache(self) -> None:
        for grouping in self._groupings.values():
            grouping.did_invalidate_cache()

    def dispose(self) -> None:
        self._groupings.clear()
        self.grouper.tool_embeddings.dispose()
