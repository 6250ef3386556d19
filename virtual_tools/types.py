"""
Shared value types and collaborator protocols for the virtual tool engine.
"""
import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from utils.cancellation import CancellationToken


class NodeKind(enum.Enum):
    """Discriminant carried by every node of the tool tree."""
    TOOL = "tool"
    VIRTUAL = "virtual"


class SourceKind(enum.Enum):
    EXTENSION = "extension"
    MCP = "mcp"


@dataclass(frozen=True)
class ToolSource:
    """Where a non-builtin tool comes from."""
    kind: SourceKind
    id: str
    label: str

    @classmethod
    def extension(cls, extension_id: str, label: Optional[str] = None) -> 'ToolSource':
        return cls(SourceKind.EXTENSION, extension_id, label or extension_id)

    @classmethod
    def mcp(cls, label: str, server_id: Optional[str] = None) -> 'ToolSource':
        return cls(SourceKind.MCP, server_id or label, label)


@dataclass(frozen=True)
class Tool:
    """
    A real, invocable tool as reported by the tool provider.

    Tools are owned by the provider; the engine only arranges them.
    """
    name: str
    description: str = ""
    source: Optional[ToolSource] = None
    tags: Tuple[str, ...] = ()

    kind = NodeKind.TOOL


@dataclass(frozen=True)
class EmbeddingType:
    """Identity of an embedding model; vectors of different types never mix."""
    id: str
    dimensions: int


@dataclass
class Embedding:
    type: EmbeddingType
    value: List[float]


@dataclass
class Embeddings:
    """Batched result from the embeddings collaborator."""
    type: EmbeddingType
    values: List[Embedding] = field(default_factory=list)


@dataclass
class SummarizedToolCategory:
    """One LLM-produced category: a name, a model-facing summary and its tools."""
    name: str
    summary: str
    tools: List[Tool] = field(default_factory=list)


class EmbeddingsComputer(Protocol):
    """Remote embeddings collaborator. May raise on failure."""

    async def compute_embeddings(
        self,
        embedding_type: EmbeddingType,
        texts: Sequence[str],
        token: CancellationToken
    ) -> Optional[Embeddings]:
        ...


class ChatEndpoint(Protocol):
    """Remote chat completion collaborator. Returns the response text, raises on failure."""

    async def make_chat_request(
        self,
        messages: List[Dict[str, Any]],
        token: CancellationToken
    ) -> str:
        ...
