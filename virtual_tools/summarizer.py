"""
Prompts and response parsing for LLM tool categorization.

Two requests are supported:
- describing already-formed groups (one name + summary per group), used for
  toolsets small enough to become a single group
- dividing a larger toolset into named categories

Model output is parsed leniently: fenced code blocks are tried first, then
the text starting at the first JSON bracket. Anything unparseable is simply
absent from the result.
"""
import asyncio
import json
import logging
import re
from typing import Any, Dict, List, Optional, Sequence

from utils.cancellation import CancellationToken
from virtual_tools.constants import MAX_GROUPS_PER_CHUNK, UNCATEGORIZED_TOOLS_GROUP_NAME
from virtual_tools.types import ChatEndpoint, SummarizedToolCategory, Tool
from virtual_tools.virtual_tool import normalize_group_name

logger = logging.getLogger(__name__)

_CODE_BLOCK_RE = re.compile(r"```[^\n`]*\n(.*?)```", re.DOTALL)

_BULK_SYSTEM_PROMPT = (
    "Context: You are given multiple groups of tools that have been clustered together based on "
    "semantic similarity. Your task is to provide a descriptive name and summary for each group "
    "that accurately reflects the common functionality and purpose of the tools within that group.\n\n"
    "For each group, analyze the tools and determine what they have in common, what domain or "
    "functionality they serve, and how they might be used together. Create a concise but "
    "descriptive name and a comprehensive summary for each group."
)

_BULK_RESPONSE_SCHEMA = {
    "type": "array",
    "items": {
        "type": "object",
        "required": ["groupIndex", "groupName", "summary"],
        "properties": {
            "groupIndex": {
                "type": "integer",
                "description": "The index of the group as provided above (e.g., \"1\", \"2\", etc.)",
                "example": 1,
            },
            "groupName": {
                "type": "string",
                "description": "A short, descriptive name for the group. It may only contain the "
                               "characters a-z, A-Z, 0-9, and underscores.",
                "example": "file_management_tools",
            },
            "summary": {
                "type": "string",
                "description": "A comprehensive summary of the group capabilities, including what the "
                               "tools do and how they can be used together. This may be up to five "
                               "paragraphs long, be careful not to leave out important details.",
                "example": "These tools provide comprehensive file management capabilities including "
                           "reading, writing, searching, and organizing files and directories.",
            },
        },
    },
}

_DIVIDE_SYSTEM_PROMPT = (
    "Context: There are many tools available for a user. To help the model choose among them, the "
    "tools are organized into categories. Your task is to divide the given tools into a small number "
    "of cohesive categories, each with a name and a summary of what its tools can do. Tools that do "
    f"not fit any category may be placed in a category named \"{UNCATEGORIZED_TOOLS_GROUP_NAME}\"."
)

_DIVIDE_RESPONSE_SCHEMA = {
    "type": "array",
    "items": {
        "type": "object",
        "required": ["name", "summary", "tools"],
        "properties": {
            "name": {
                "type": "string",
                "description": "A short name for the category. It may only contain the characters "
                               "a-z, A-Z, 0-9, and underscores.",
                "example": "github_issues",
            },
            "summary": {
                "type": "string",
                "description": "A summary of the category's capabilities and when to use its tools.",
            },
            "tools": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Exact names of the tools in this category.",
            },
        },
    },
}


def _format_tool(tool: Tool) -> str:
    return f"<tool name={json.dumps(tool.name)}>{tool.description}</tool>"


def extract_json(text: str) -> Optional[Any]:
    """
    Pull the first parseable JSON value out of a model response.

    Fenced code blocks are tried in order; otherwise decoding starts at the
    first '{' or '[' and trailing prose is ignored.
    """
    if not text:
        return None

    for match in _CODE_BLOCK_RE.finditer(text):
        try:
            return json.loads(match.group(1))
        except ValueError:
            continue

    starts = [i for i in (text.find('{'), text.find('[')) if i >= 0]
    if not starts:
        return None

    try:
        value, _ = json.JSONDecoder().raw_decode(text[min(starts):])
        return value
    except ValueError:
        return None


async def _request_json(
    endpoint: ChatEndpoint,
    messages: List[Dict[str, Any]],
    token: CancellationToken
) -> Optional[Any]:
    if token.is_cancellation_requested:
        return None

    response = await endpoint.make_chat_request(messages, token)
    if token.is_cancellation_requested:
        return None

    parsed = extract_json(response)
    if parsed is None:
        logger.debug(f"[virtual-tools] Could not find JSON in categorization response: {response[:200]!r}")
    return parsed


def _bulk_messages(tool_groups: Sequence[Sequence[Tool]]) -> List[Dict[str, Any]]:
    lines = [
        f"You will be given {len(tool_groups)} groups of tools. For each group, provide a name and "
        "summary that describes the group's purpose and capabilities.",
        "",
    ]
    for index, group in enumerate(tool_groups, start=1):
        lines.append(f'<group index="{index}">')
        lines.extend(_format_tool(tool) for tool in group)
        lines.append("</group>")
    lines += [
        "",
        "Your response must follow the JSON schema:",
        "",
        "```",
        json.dumps(_BULK_RESPONSE_SCHEMA, indent=2),
        "```",
        "",
        "Provide descriptions for the groups presented above. You must include the exact groupIndex "
        "as shown in the input. You must generate a description for every group and each groupName "
        "must be unique.",
    ]
    return [
        {"role": "system", "content": _BULK_SYSTEM_PROMPT},
        {"role": "user", "content": "\n".join(lines)},
    ]


async def _describe_chunk(
    endpoint: ChatEndpoint,
    tool_groups: Sequence[Sequence[Tool]],
    token: CancellationToken
) -> List[Optional[SummarizedToolCategory]]:
    output: List[Optional[SummarizedToolCategory]] = [None] * len(tool_groups)
    parsed = await _request_json(endpoint, _bulk_messages(tool_groups), token)
    if isinstance(parsed, dict):
        parsed = [parsed]
    if not isinstance(parsed, list):
        return output

    for item in parsed:
        if not isinstance(item, dict):
            continue
        try:
            index = int(item.get("groupIndex")) - 1
        except (TypeError, ValueError):
            continue
        name, summary = item.get("groupName"), item.get("summary")
        if 0 <= index < len(tool_groups) and isinstance(name, str) and isinstance(summary, str):
            output[index] = SummarizedToolCategory(
                name=normalize_group_name(name),
                summary=summary,
                tools=list(tool_groups[index])
            )

    return output


async def describe_bulk_tool_groups(
    endpoint: ChatEndpoint,
    tool_groups: Sequence[Sequence[Tool]],
    token: CancellationToken
) -> List[Optional[SummarizedToolCategory]]:
    """
    Name and summarize several tool groups, MAX_GROUPS_PER_CHUNK per request.

    Returns:
        One entry per input group, in input order; None where the model gave
        no usable description or the request failed
    """
    chunks = [tool_groups[i:i + MAX_GROUPS_PER_CHUNK] for i in range(0, len(tool_groups), MAX_GROUPS_PER_CHUNK)]
    results = await asyncio.gather(*(_describe_chunk(endpoint, c, token) for c in chunks), return_exceptions=True)

    output: List[Optional[SummarizedToolCategory]] = []
    for chunk, result in zip(chunks, results):
        if isinstance(result, BaseException):
            logger.error(f"Failed to describe {len(chunk)} tool groups: {result}")
            output.extend([None] * len(chunk))
        else:
            output.extend(result)
    return output


async def summarize_tools(
    endpoint: ChatEndpoint,
    tools: Sequence[Tool],
    token: CancellationToken
) -> Optional[SummarizedToolCategory]:
    """Describe a whole toolset as one category. Raises if the request fails."""
    described = await _describe_chunk(endpoint, [tools], token)
    return described[0]


def _divide_messages(
    tools: Sequence[Tool],
    previous: Optional[Sequence[SummarizedToolCategory]]
) -> List[Dict[str, Any]]:
    lines = [f"Divide the following {len(tools)} tools into categories:", ""]
    lines.extend(_format_tool(tool) for tool in tools)

    if previous:
        lines += [
            "",
            "These tools were previously categorized as follows. Keep existing categories and their "
            "names where they still fit, and only add or change categories when needed:",
            "",
        ]
        for category in previous:
            names = ", ".join(t.name for t in category.tools)
            lines.append(f"<category name={json.dumps(category.name)}>{category.summary}\nTools: {names}</category>")

    lines += [
        "",
        "Your response must follow the JSON schema:",
        "",
        "```",
        json.dumps(_DIVIDE_RESPONSE_SCHEMA, indent=2),
        "```",
        "",
        "Every tool must appear in exactly one category and each category name must be unique.",
    ]
    return [
        {"role": "system", "content": _DIVIDE_SYSTEM_PROMPT},
        {"role": "user", "content": "\n".join(lines)},
    ]


async def divide_tools_into_groups(
    endpoint: ChatEndpoint,
    tools: Sequence[Tool],
    previous: Optional[Sequence[SummarizedToolCategory]],
    token: CancellationToken
) -> Optional[List[SummarizedToolCategory]]:
    """
    Ask the model to split a toolset into categories.

    Args:
        endpoint: Chat collaborator
        tools: Tools of one toolset
        previous: Earlier categorization of this toolset, offered as a hint
        token: Cancellation token

    Returns:
        Categories covering every tool (unassigned tools land in the
        uncategorized category), or None when the response had no usable
        categories. Raises if the request itself fails.
    """
    parsed = await _request_json(endpoint, _divide_messages(tools, previous), token)
    if isinstance(parsed, dict):
        parsed = parsed.get("categories", parsed.get("groups", [parsed]))
    if not isinstance(parsed, list):
        return None

    by_name = {t.name: t for t in tools}
    assigned = set()
    categories: Dict[str, SummarizedToolCategory] = {}

    for item in parsed:
        if not isinstance(item, dict):
            continue
        name, summary, members = item.get("name"), item.get("summary"), item.get("tools")
        if not isinstance(name, str) or not isinstance(summary, str) or not isinstance(members, list):
            continue

        category = categories.setdefault(
            normalize_group_name(name),
            SummarizedToolCategory(name=normalize_group_name(name), summary=summary)
        )
        for member in members:
            tool = by_name.get(member) if isinstance(member, str) else None
            if tool is not None and tool.name not in assigned:
                assigned.add(tool.name)
                category.tools.append(tool)

    result = [c for c in categories.values() if c.tools]
    if not result:
        return None

    leftovers = [t for t in tools if t.name not in assigned]
    if leftovers:
        uncategorized = next((c for c in result if c.name == UNCATEGORIZED_TOOLS_GROUP_NAME), None)
        if uncategorized is None:
            uncategorized = SummarizedToolCategory(name=UNCATEGORIZED_TOOLS_GROUP_NAME, summary="")
            result.append(uncategorized)
        uncategorized.tools.extend(leftovers)

    return result
