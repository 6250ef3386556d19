"""
Tool embeddings: cache lookup, batched computation of misses, and ranking.

ToolEmbeddingsComputer answers "which of these tools are closest to this
query embedding?". Embeddings come from an ordered list of caches first
(pre-computed bundle, then the persistent local cache); anything missing is
computed in a single batched call and written back to every cache.
"""
import asyncio
import logging
import os
import time
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

import numpy as np

from config import config
from utils.cancellation import CancellationToken, wait_or_cancelled
from virtual_tools.local_cache import ToolEmbeddingLocalCache
from virtual_tools.precomputed_cache import PreComputedToolEmbeddingsCache
from virtual_tools.types import Embedding, EmbeddingsComputer, EmbeddingType, Tool

logger = logging.getLogger(__name__)


class ToolEmbeddingsCache(Protocol):

    async def initialize(self) -> None:
        ...

    def get(self, tool: Tool) -> Optional[Embedding]:
        ...

    def set(self, tool: Tool, embedding: Embedding) -> None:
        ...


def tool_embedding_text(tool: Tool) -> str:
    return f"{tool.name}\n\n{tool.description}"


def rank_embeddings(
    query: Embedding,
    candidates: Sequence[Tuple[str, Embedding]],
    count: int
) -> List[Tuple[str, float]]:
    """
    Rank candidates by cosine similarity to the query, best first.

    Candidates of a different embedding type are skipped. Ties keep their
    input order.

    Returns:
        Up to `count` (name, similarity) pairs
    """
    usable = [(name, emb) for name, emb in candidates if emb.type == query.type]
    if not usable or count <= 0:
        return []

    query_vec = np.asarray(query.value, dtype=np.float32)
    matrix = np.asarray([emb.value for _, emb in usable], dtype=np.float32)
    if matrix.ndim != 2 or matrix.shape[1] != query_vec.shape[0]:
        logger.warning("Embedding dimensions do not match the query, cannot rank")
        return []

    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query_vec)
    dots = matrix @ query_vec
    similarities = np.divide(dots, norms, out=np.zeros_like(dots), where=norms > 0)

    order = sorted(range(len(usable)), key=lambda i: -float(similarities[i]))
    return [(usable[i][0], float(similarities[i])) for i in order[:count]]


class ToolEmbeddingsComputer:
    """
    Manages tool embeddings from both pre-computed caches and runtime computation.

    The in-flight map holds one future per tool name, so concurrent callers
    asking for the same tool share a single computation.
    """

    def __init__(
        self,
        embeddings_computer: EmbeddingsComputer,
        caches: Optional[Sequence[ToolEmbeddingsCache]] = None,
        embedding_type: Optional[EmbeddingType] = None
    ):
        """
        Initialize the computer.

        Args:
            embeddings_computer: Remote collaborator used for cache misses
            caches: Cache backends consulted in order; defaults to the pre-computed
                bundle followed by the persistent local cache
            embedding_type: Embedding type for computed vectors; defaults to the
                pre-computed bundle's type
        """
        self._embeddings_computer = embeddings_computer
        if caches is None:
            precomputed = PreComputedToolEmbeddingsCache(embedding_type=embedding_type)
            embedding_type = precomputed.embedding_type
            caches = [
                precomputed,
                ToolEmbeddingLocalCache(
                    embedding_type,
                    os.path.join(config.paths.data_dir, config.paths.embeddings_cache_file)
                ),
            ]
        self._caches: List[ToolEmbeddingsCache] = list(caches)
        self.embedding_type = embedding_type or EmbeddingType(
            config.embeddings.embedding_type_id,
            config.embeddings.dimensions
        )

        self._embeddings_store: Dict[str, "asyncio.Future[Optional[Embedding]]"] = {}
        self._initialized: Optional["asyncio.Task[None]"] = None

    def _ensure_initialized(self) -> "asyncio.Task[None]":
        if self._initialized is None:
            self._initialized = asyncio.ensure_future(self._initialize_caches())
        return self._initialized

    async def _initialize_caches(self) -> None:
        results = await asyncio.gather(*(c.initialize() for c in self._caches), return_exceptions=True)
        for cache, result in zip(self._caches, results):
            if isinstance(result, Exception):
                logger.error(f"Failed to initialize {type(cache).__name__}: {result}")

    async def retrieve_similar_embeddings_for_available_tools(
        self,
        query_embedding: Embedding,
        available_tools: Sequence[Tool],
        count: int,
        token: CancellationToken
    ) -> List[str]:
        """
        Find the tools whose embeddings are closest to the query.

        Args:
            query_embedding: Embedding of the user query
            available_tools: Candidate tools
            count: Maximum number of names to return
            token: Cancellation token; cancellation returns what resolved so far

        Returns:
            Tool names ordered by descending similarity
        """
        completed, _ = await wait_or_cancelled(asyncio.shield(self._ensure_initialized()), token)
        if not completed:
            return []

        available = await self._get_available_tool_embeddings(available_tools, token)
        if not available:
            return []

        ranked = rank_embeddings(query_embedding, available, count)
        matched = [name for name, _ in ranked]
        logger.debug(f"[virtual-tools] Matched {matched} against the query")
        return matched

    def _from_caches(self, tool: Tool) -> Optional[Embedding]:
        for cache in self._caches:
            embedding = cache.get(tool)
            if embedding is not None:
                return embedding
        return None

    async def _get_available_tool_embeddings(
        self,
        tools: Sequence[Tool],
        token: CancellationToken
    ) -> List[Tuple[str, Embedding]]:
        from_caches: Dict[str, Embedding] = {}
        for tool in tools:
            embedding = self._from_caches(tool)
            if embedding is not None:
                from_caches[tool.name] = embedding

        seen = set()
        missing = []
        for tool in tools:
            if tool.name in seen:
                continue
            seen.add(tool.name)
            if tool.name not in from_caches and tool.name not in self._embeddings_store:
                missing.append(tool)
        self._compute_missing_embeddings(missing, token)

        unique: Dict[str, Tool] = {}
        for tool in tools:
            unique.setdefault(tool.name, tool)

        result: List[Tuple[str, Embedding]] = []
        for name, tool in unique.items():
            if token.is_cancellation_requested:
                return result

            cached = from_caches.get(name)
            if cached is not None:
                result.append((name, cached))
                continue

            pending = self._embeddings_store.get(name)
            if pending is None:
                # Resolved by a concurrent call and already handed to the caches
                cached = self._from_caches(tool)
                if cached is not None:
                    result.append((name, cached))
                continue
            completed, embedding = await wait_or_cancelled(asyncio.shield(pending), token)
            if not completed:
                return result
            if embedding is not None:
                result.append((name, embedding))

        return result

    def _compute_missing_embeddings(self, missing_tools: List[Tool], token: CancellationToken) -> None:
        if token.is_cancellation_requested or not missing_tools:
            return

        batch = asyncio.ensure_future(self._compute_embeddings_for_tools(missing_tools, token))
        for tool in missing_tools:
            self._embeddings_store[tool.name] = asyncio.ensure_future(self._resolve_one(tool, batch))

    async def _resolve_one(
        self,
        tool: Tool,
        batch: "asyncio.Future[Optional[Dict[str, Embedding]]]"
    ) -> Optional[Embedding]:
        computed = await batch
        found = computed.get(tool.name) if computed else None
        if found is None:
            # Forget the failure so a later call can retry this tool
            if self._embeddings_store.get(tool.name) is asyncio.current_task():
                del self._embeddings_store[tool.name]
            return None

        for cache in self._caches:
            cache.set(tool, found)
        # The caches serve this tool from now on
        if self._embeddings_store.get(tool.name) is asyncio.current_task() and self._from_caches(tool) is not None:
            del self._embeddings_store[tool.name]
        return found

    async def _compute_embeddings_for_tools(
        self,
        tools: List[Tool],
        token: CancellationToken
    ) -> Optional[Dict[str, Embedding]]:
        if token.is_cancellation_requested:
            return None

        texts = [tool_embedding_text(t) for t in tools]
        start_time = time.time()
        try:
            embeddings = await self._embeddings_computer.compute_embeddings(self.embedding_type, texts, token)
        except Exception as e:
            logger.error(f"Failed to compute embeddings for tools: {e}")
            return None

        logger.debug(
            f"[virtual-tools] Computed embeddings for {len(texts)} tools in "
            f"{(time.time() - start_time) * 1000:.0f}ms"
        )

        if embeddings is None or not embeddings.values or len(embeddings.values) != len(tools):
            return None

        return {tool.name: embedding for tool, embedding in zip(tools, embeddings.values)}

    def dispose(self) -> None:
        for future in self._embeddings_store.values():
            if not future.done():
                future.cancel()
        self._embeddings_store.clear()

        for cache in self._caches:
            dispose = getattr(cache, 'dispose', None)
            if dispose is not None:
                dispose()
