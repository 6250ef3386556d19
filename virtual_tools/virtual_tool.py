"""
The virtual tool tree.

A VirtualTool is an activatable group standing in for a collapsed set of
tools. Nodes are either Tool or VirtualTool and are told apart only by their
`kind` discriminant.
"""
import re
from dataclasses import dataclass, field, replace
from typing import Iterator, List, Optional, Tuple, Union

from virtual_tools.constants import VIRTUAL_TOOL_NAME_PREFIX
from virtual_tools.types import NodeKind, SummarizedToolCategory, Tool

ToolNode = Union[Tool, 'VirtualTool']


def normalize_group_name(name: str) -> str:
    return re.sub(r'[^a-zA-Z0-9_]', '_', name).lower()


def is_virtual(node: ToolNode) -> bool:
    return node.kind is NodeKind.VIRTUAL


@dataclass
class VirtualToolMetadata:
    toolset_key: str = ""
    groups: List[SummarizedToolCategory] = field(default_factory=list)
    was_expanded_by_default: bool = False
    can_be_collapsed: bool = True
    # Only read by deduplicate_groups when two nodes want the same name
    possible_prefix: Optional[str] = None


class VirtualTool:
    """A named group of tools and nested groups."""

    kind = NodeKind.VIRTUAL

    def __init__(
        self,
        name: str,
        description: str,
        last_used_on_turn: int = 0,
        metadata: Optional[VirtualToolMetadata] = None,
        contents: Optional[List[ToolNode]] = None
    ):
        self.name = name
        self.description = description
        self.last_used_on_turn = last_used_on_turn
        self.metadata = metadata or VirtualToolMetadata()
        self.contents: List[ToolNode] = contents if contents is not None else []
        self.is_expanded = False

    def __repr__(self) -> str:
        state = "expanded" if self.is_expanded else "collapsed"
        return f"VirtualTool({self.name!r}, {len(self.contents)} items, {state})"

    def tools(self) -> Iterator[Tool]:
        """Depth-first walk over every leaf tool, regardless of expansion."""
        for item in self.contents:
            if is_virtual(item):
                yield from item.tools()
            else:
                yield item

    def all(self) -> Iterator[ToolNode]:
        """Depth-first walk yielding this group, nested groups and leaf tools."""
        yield self
        for item in self.contents:
            if is_virtual(item):
                yield from item.all()
            else:
                yield item

    def visible(self) -> Iterator[ToolNode]:
        """
        Walk what the model sees below this group.

        Expanded groups contribute their children; a collapsed group is
        yielded itself because the model calls it to activate the group.
        """
        for item in self.contents:
            if is_virtual(item) and item.is_expanded:
                yield from item.visible()
            else:
                yield item

    def find(self, name: str) -> Optional[Tuple[ToolNode, List['VirtualTool']]]:
        """
        Find a node by name.

        Returns:
            (node, path) where path lists the enclosing groups from this one
            downwards, or None if nothing has that name.
        """
        if self.name == name:
            return self, []

        for item in self.contents:
            if is_virtual(item):
                found = item.find(name)
                if found:
                    node, path = found
                    return node, [self] + path
            elif item.name == name:
                return item, [self]

        return None

    def clone_with_prefix(self, prefix: str) -> 'VirtualTool':
        suffix = self.name
        if suffix.startswith(VIRTUAL_TOOL_NAME_PREFIX):
            suffix = suffix[len(VIRTUAL_TOOL_NAME_PREFIX):]

        clone = VirtualTool(
            VIRTUAL_TOOL_NAME_PREFIX + prefix + normalize_group_name(suffix),
            self.description,
            self.last_used_on_turn,
            replace(self.metadata, groups=list(self.metadata.groups)),
            list(self.contents)
        )
        clone.is_expanded = self.is_expanded
        return clone

    def copy_state_from(self, other: 'VirtualTool') -> None:
        self.is_expanded = other.is_expanded
        self.metadata.was_expanded_by_default = other.metadata.was_expanded_by_default
        self.last_used_on_turn = other.last_used_on_turn
