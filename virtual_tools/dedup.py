"""
Name collision resolution for a flat list of tree nodes.
"""
from typing import Dict, List, Sequence

from virtual_tools.virtual_tool import ToolNode, VirtualTool, is_virtual


def _prefixable(node: ToolNode) -> bool:
    return is_virtual(node) and bool(node.metadata.possible_prefix)


def _prefixed_clone(group: VirtualTool) -> VirtualTool:
    clone = group.clone_with_prefix(group.metadata.possible_prefix)
    # A renamed group is never renamed twice
    clone.metadata.possible_prefix = None
    return clone


def _insert(by_name: Dict[str, ToolNode], item: ToolNode) -> None:
    existing = by_name.get(item.name)
    if existing is None:
        by_name[item.name] = item
        return

    if _prefixable(existing):
        del by_name[existing.name]
        _insert(by_name, _prefixed_clone(existing))
        _insert(by_name, item)
    elif _prefixable(item):
        _insert(by_name, _prefixed_clone(item))
    # Otherwise the earlier occupant keeps the name and the item is dropped


def deduplicate_groups(grouped: Sequence[ToolNode]) -> List[ToolNode]:
    """
    Make every name in `grouped` unique.

    Items are processed in order. When two nodes share a name, a group that
    carries a possible_prefix moves aside to its prefixed name; if neither
    can move, the later item is dropped.
    """
    by_name: Dict[str, ToolNode] = {}
    for item in grouped:
        _insert(by_name, item)
    return list(by_name.values())
