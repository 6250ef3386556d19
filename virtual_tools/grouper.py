"""
Builds the virtual tool tree for a set of tools.

Tools are partitioned into toolsets by source. Each toolset is categorized by
the LLM (through the category cache), the resulting groups are deduplicated
and merged with the builtin tools, and an embeddings-ranked group of tools
relevant to the current query is placed on top. Finally small groups are
expanded until the visible budget is used.
"""
import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from config import config
from config.config import GroupingConfig
from utils.cancellation import CancellationToken, wait_or_cancelled
from utils.kv_store import InMemoryKeyValueStore
from virtual_tools.category_cache import ToolGroupingCache
from virtual_tools.constants import (
    BUILTIN_TOOLSET_KEY,
    EMBEDDINGS_GROUP_NAME,
    SUMMARY_PREFIX,
    SUMMARY_SUFFIX,
    UNCATEGORIZED_TOOLS_GROUP_NAME,
    VIRTUAL_TOOL_NAME_PREFIX,
)
from virtual_tools.dedup import deduplicate_groups
from virtual_tools.embeddings_computer import ToolEmbeddingsComputer
from virtual_tools.summarizer import divide_tools_into_groups, summarize_tools
from virtual_tools.types import ChatEndpoint, EmbeddingsComputer, SourceKind, SummarizedToolCategory, Tool
from virtual_tools.virtual_tool import (
    ToolNode,
    VirtualTool,
    VirtualToolMetadata,
    is_virtual,
    normalize_group_name,
)

logger = logging.getLogger(__name__)

EMBEDDINGS_GROUP_DESCRIPTION = 'Tools with high predicted relevancy for this query'

GroupRanker = Callable[[VirtualTool], object]


def toolset_key_for(tool: Tool) -> str:
    source = tool.source
    if source is None:
        return BUILTIN_TOOLSET_KEY
    if source.kind is SourceKind.MCP:
        return f"mcp_{source.label}"
    return f"ext_{source.id}"


def count_visible(root: VirtualTool) -> int:
    """Number of entries the model sees: leaves under expanded groups plus one per collapsed group."""
    return sum(1 for _ in root.visible())


class VirtualToolGrouper:
    """
    Turns a flat tool list into a bounded tree of virtual tools.

    Collaborator failures never escape: a toolset that cannot be categorized
    is presented flat, and failed relevance prediction yields an empty
    predicted group.
    """

    def __init__(
        self,
        endpoint: ChatEndpoint,
        embeddings_computer: EmbeddingsComputer,
        tool_embeddings_computer: Optional[ToolEmbeddingsComputer] = None,
        cache: Optional[ToolGroupingCache] = None,
        limits: Optional[GroupingConfig] = None
    ):
        """
        Initialize the grouper.

        Args:
            endpoint: Chat collaborator used for categorization
            embeddings_computer: Remote embeddings collaborator used for the query embedding
            tool_embeddings_computer: Tool embedding lookup; built over
                `embeddings_computer` with the default caches when omitted
            cache: Category cache; an in-memory one when omitted
            limits: Grouping limits; defaults to config.grouping
        """
        self.endpoint = endpoint
        self.embeddings_computer = embeddings_computer
        self.tool_embeddings = tool_embeddings_computer or ToolEmbeddingsComputer(embeddings_computer)
        if cache is None:
            cache = ToolGroupingCache(InMemoryKeyValueStore())
        self.cache = cache
        self.limits = limits or config.grouping

    async def add_groups(self, query: str, root: VirtualTool, tools: Sequence[Tool], token: CancellationToken) -> None:
        """
        Replace root.contents with a grouped view of `tools`.

        Expansion state of groups that keep their name is carried over from
        the previous tree.
        """
        if len(tools) < self.limits.start_grouping_after_tool_count:
            root.contents = list(tools)
            return

        start_time = time.time()
        by_toolset: Dict[str, List[Tool]] = {}
        for tool in tools:
            by_toolset.setdefault(toolset_key_for(tool), []).append(tool)

        previous_groups = {
            node.name: node for node in root.all()
            if is_virtual(node) and node is not root
        }
        builtin = by_toolset.pop(BUILTIN_TOOLSET_KEY, [])
        hints = {key: self._previous_hint(key, toolset) for key, toolset in by_toolset.items()}

        predicted_task = asyncio.ensure_future(self._get_predicted_tools(query, tools, token))

        results = await asyncio.gather(*(
            self._process_toolset(key, toolset, hints.get(key), token)
            for key, toolset in by_toolset.items()
        ))

        if token.is_cancellation_requested:
            predicted_task.cancel()
            return

        self.cache.flush()

        grouped: List[ToolNode] = list(builtin)
        for nodes in results:
            grouped.extend(nodes)
        root.contents = deduplicate_groups(grouped)

        for node in root.all():
            if node is root or not is_virtual(node):
                continue
            previous = previous_groups.get(node.name)
            if previous is not None:
                node.copy_state_from(previous)

        predicted = await self._await_predicted(predicted_task, token)
        self._add_predicted_tools_group(root, predicted)
        self._re_expand_tools_to_hit_budget(
            root,
            self._predicted_first_ranker(predicted),
            self.limits.expand_until_count,
            self.limits.hard_tool_limit
        )

        logger.debug(
            f"[virtual-tools] Grouped {len(tools)} tools into {len(root.contents)} top-level entries "
            f"({count_visible(root)} visible) in {(time.time() - start_time) * 1000:.0f}ms"
        )

    async def recompute_embedding_rankings(self, query: str, root: VirtualTool, token: CancellationToken) -> None:
        """Refresh only the predicted-tools group for a new query."""
        tools = [node for node in root.all() if not is_virtual(node)]
        task = asyncio.ensure_future(self._get_predicted_tools(query, tools, token))
        predicted = await self._await_predicted(task, token)
        if token.is_cancellation_requested:
            return
        self._add_predicted_tools_group(root, predicted)

    def _previous_hint(self, toolset_key: str, tools: Sequence[Tool]) -> Optional[List[SummarizedToolCategory]]:
        previous = self.cache.get_previous(toolset_key)
        if not previous:
            return None

        by_name = {t.name: t for t in tools}
        hint = []
        for category in previous:
            members = [by_name[t.name] for t in category.tools if t.name in by_name]
            if members:
                hint.append(SummarizedToolCategory(name=category.name, summary=category.summary, tools=members))
        return hint or None

    async def _process_toolset(
        self,
        toolset_key: str,
        tools: List[Tool],
        hint: Optional[List[SummarizedToolCategory]],
        token: CancellationToken
    ) -> List[ToolNode]:
        if len(tools) <= self.limits.min_toolset_size_to_group:
            return list(tools)

        categories = self.cache.get(toolset_key, tools)
        if categories is None:
            categories = await self._categorize_with_retries(toolset_key, tools, hint, token)
            if categories is None:
                return list(tools)
            self.cache.set(toolset_key, tools, categories)

        source = tools[0].source
        prefix = normalize_group_name(source.label if source else toolset_key) + "_"
        return self._categories_to_nodes(toolset_key, prefix, categories)

    async def _categorize_with_retries(
        self,
        toolset_key: str,
        tools: List[Tool],
        hint: Optional[List[SummarizedToolCategory]],
        token: CancellationToken
    ) -> Optional[List[SummarizedToolCategory]]:
        retries = self.limits.max_categorization_retries
        for attempt in range(1, retries + 1):
            if token.is_cancellation_requested:
                return None

            try:
                if len(tools) <= self.limits.group_within_toolset:
                    summary = await summarize_tools(self.endpoint, tools, token)
                    categories = [summary] if summary else None
                else:
                    categories = await divide_tools_into_groups(self.endpoint, tools, hint, token)
            except Exception as e:
                logger.error(f"Categorizing toolset {toolset_key} failed (attempt {attempt}/{retries}): {e}")
                categories = None

            if categories:
                return categories

        if not token.is_cancellation_requested:
            logger.warning(f"Giving up categorizing toolset {toolset_key} after {retries} attempts, presenting it flat")
        return None

    @staticmethod
    def _categories_to_nodes(
        toolset_key: str,
        prefix: str,
        categories: Sequence[SummarizedToolCategory]
    ) -> List[ToolNode]:
        nodes: List[ToolNode] = []
        for category in categories:
            if category.name == UNCATEGORIZED_TOOLS_GROUP_NAME:
                nodes.extend(category.tools)
                continue

            nodes.append(VirtualTool(
                VIRTUAL_TOOL_NAME_PREFIX + normalize_group_name(category.name),
                SUMMARY_PREFIX + category.summary + SUMMARY_SUFFIX,
                0,
                VirtualToolMetadata(toolset_key=toolset_key, groups=[category], possible_prefix=prefix),
                list(category.tools)
            ))
        return nodes

    async def _get_predicted_tools(self, query: str, tools: Sequence[Tool], token: CancellationToken) -> List[Tool]:
        if not query or token.is_cancellation_requested:
            return []

        try:
            embedding_type = self.tool_embeddings.embedding_type
            embeddings = await self.embeddings_computer.compute_embeddings(embedding_type, [query], token)
            if token.is_cancellation_requested or embeddings is None or not embeddings.values:
                return []

            candidates: Dict[str, Tool] = {}
            for tool in tools:
                if tool.source is not None and tool.name not in candidates:
                    candidates[tool.name] = tool

            names = await self.tool_embeddings.retrieve_similar_embeddings_for_available_tools(
                embeddings.values[0],
                list(candidates.values()),
                self.limits.predicted_tools_count,
                token
            )
        except Exception as e:
            logger.error(f"Failed to predict relevant tools: {e}")
            return []

        return [candidates[name] for name in names if name in candidates]

    async def _await_predicted(self, task: "asyncio.Task[List[Tool]]", token: CancellationToken) -> List[Tool]:
        if token.is_cancellation_requested:
            task.cancel()
            return []

        timeout = self.limits.embeddings_timeout_seconds
        try:
            completed, predicted = await wait_or_cancelled(asyncio.wait_for(task, timeout), token)
        except asyncio.TimeoutError:
            logger.warning(f"Predicting relevant tools took longer than {timeout}s, skipping")
            return []

        if not completed:
            task.cancel()
            return []
        return predicted or []

    @staticmethod
    def _add_predicted_tools_group(root: VirtualTool, predicted: Sequence[Tool]) -> None:
        group = VirtualTool(
            EMBEDDINGS_GROUP_NAME,
            EMBEDDINGS_GROUP_DESCRIPTION,
            0,
            VirtualToolMetadata(
                toolset_key=EMBEDDINGS_GROUP_NAME,
                was_expanded_by_default=True,
                can_be_collapsed=False
            ),
            list(predicted)
        )
        group.is_expanded = True

        for index, node in enumerate(root.contents):
            if node.name == EMBEDDINGS_GROUP_NAME:
                root.contents[index] = group
                return
        root.contents.insert(0, group)

    @staticmethod
    def _predicted_first_ranker(predicted: Sequence[Tool]) -> GroupRanker:
        rank = {tool.name: index for index, tool in enumerate(predicted)}

        def ranker(group: VirtualTool) -> Tuple[int, int, int]:
            best = min((rank[t.name] for t in group.tools() if t.name in rank), default=None)
            if best is None:
                return 1, len(group.contents), 0
            return 0, best, len(group.contents)

        return ranker

    @staticmethod
    def _re_expand_tools_to_hit_budget(
        root: VirtualTool,
        ranker: Optional[GroupRanker] = None,
        target_limit: Optional[int] = None,
        hard_limit: Optional[int] = None
    ) -> None:
        """
        Expand collapsed top-level groups, best ranked first, while the
        visible count stays within `hard_limit`, until it passes `target_limit`.
        """
        target_limit = target_limit if target_limit is not None else config.grouping.expand_until_count
        hard_limit = hard_limit if hard_limit is not None else config.grouping.hard_tool_limit

        visible = count_visible(root)
        if visible > target_limit:
            return

        candidates = [node for node in root.contents if is_virtual(node) and not node.is_expanded]
        candidates.sort(key=ranker or (lambda group: len(group.contents)))

        for group in candidates:
            next_count = visible - 1 + len(group.contents)
            if next_count > hard_limit:
                break

            group.is_expanded = True
            group.metadata.was_expanded_by_default = True
            visible = next_count
            if visible > target_limit:
                break
