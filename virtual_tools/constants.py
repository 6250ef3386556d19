"""
Limits and well-known names for the virtual tool tree.

The numeric limits are defined with GroupingConfig, which carries the tunable
copies; they are re-exported here next to the names they go with.
"""
from config.config import (
    EXPAND_UNTIL_COUNT,
    GROUP_WITHIN_TOOLSET,
    HARD_TOOL_LIMIT,
    MAX_CATEGORIZATION_RETRIES,
    MIN_TOOLSET_SIZE_TO_GROUP,
    PREDICTED_TOOLS_COUNT,
    START_GROUPING_AFTER_TOOL_COUNT,
    TRIM_THRESHOLD,
)

MAX_GROUPS_PER_CHUNK = 16

VIRTUAL_TOOL_NAME_PREFIX = 'activate_'
EMBEDDINGS_GROUP_NAME = VIRTUAL_TOOL_NAME_PREFIX + 'embeddings'
UNCATEGORIZED_TOOLS_GROUP_NAME = 'uncategorized'
BUILTIN_TOOLSET_KEY = 'builtin'

SUMMARY_PREFIX = (
    'Call this tool when you need access to a new category of tools. '
    'The category of tools is described as follows:\n\n'
)
SUMMARY_SUFFIX = '\n\nBe sure to call this tool if you need a capability related to the above.'

__all__ = [
    'HARD_TOOL_LIMIT', 'START_GROUPING_AFTER_TOOL_COUNT', 'EXPAND_UNTIL_COUNT', 'GROUP_WITHIN_TOOLSET',
    'MIN_TOOLSET_SIZE_TO_GROUP', 'MAX_CATEGORIZATION_RETRIES', 'TRIM_THRESHOLD', 'MAX_GROUPS_PER_CHUNK',
    'PREDICTED_TOOLS_COUNT', 'VIRTUAL_TOOL_NAME_PREFIX', 'EMBEDDINGS_GROUP_NAME',
    'UNCATEGORIZED_TOOLS_GROUP_NAME', 'BUILTIN_TOOLSET_KEY', 'SUMMARY_PREFIX', 'SUMMARY_SUFFIX',
]
