"""
Virtual Tool Grouping Engine

Collapses a large, changing set of tools into a bounded tree of activatable
groups ("virtual tools") so the model is only ever shown a small, relevant
subset.

Components:
- ToolGroupingService / ToolGrouping: per-session tree, activation and trimming
- VirtualToolGrouper: toolset partitioning, LLM categorization, budget expansion
- ToolEmbeddingsComputer: cached tool embeddings and query relevance ranking
- ToolGroupingCache: content-hash keyed cache of categorizations

Usage:
    from virtual_tools import ToolGroupingService

    service = ToolGroupingService(chat_client, embeddings_client)
    grouping = service.create(session_id, tools)
    visible = await grouping.compute(user_query, CancellationToken.NONE)
"""

from .grouper import VirtualToolGrouper
from .tool_grouping import ToolGrouping, ToolGroupingService
from .types import Tool, ToolSource
from .virtual_tool import VirtualTool

__all__ = ['ToolGrouping', 'ToolGroupingService', 'Tool', 'ToolSource', 'VirtualTool', 'VirtualToolGrouper']
