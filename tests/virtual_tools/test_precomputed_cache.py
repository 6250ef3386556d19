"""
Tests for virtual_tools/precomputed_cache.py - the shipped embeddings bundle.
"""
import json

import pytest

from virtual_tools.precomputed_cache import PreComputedToolEmbeddingsCache
from virtual_tools.types import Embedding, EmbeddingType, Tool

EMBEDDING_TYPE = EmbeddingType("bundle-type", 3)


def write_bundle(path, embedding_type, embeddings):
    path.write_text(json.dumps({"embedding_type": embedding_type, "embeddings": embeddings}))
    return str(path)


class TestPreComputedCache:

    @pytest.mark.asyncio
    async def test_loads_embeddings_by_tool_name(self, tmp_path):
        bundle = write_bundle(tmp_path / "bundle.json", "bundle-type", {"read_file": [0.5, 0.25, 1.0]})
        cache = PreComputedToolEmbeddingsCache(bundle, EMBEDDING_TYPE)
        await cache.initialize()

        found = cache.get(Tool("read_file", "any description"))

        assert found == Embedding(type=EMBEDDING_TYPE, value=[0.5, 0.25, 1.0])
        assert cache.get(Tool("write_file")) is None

    @pytest.mark.asyncio
    async def test_set_is_a_no_op(self, tmp_path):
        cache = PreComputedToolEmbeddingsCache(write_bundle(tmp_path / "b.json", "bundle-type", {}), EMBEDDING_TYPE)
        await cache.initialize()

        cache.set(Tool("t"), Embedding(type=EMBEDDING_TYPE, value=[1.0, 0.0, 0.0]))

        assert cache.get(Tool("t")) is None

    @pytest.mark.asyncio
    async def test_type_mismatch_loads_empty(self, tmp_path):
        """CONTRACT: A bundle for another embedding type is ignored."""
        bundle = write_bundle(tmp_path / "bundle.json", "some-other-type", {"read_file": [1.0, 2.0, 3.0]})
        cache = PreComputedToolEmbeddingsCache(bundle, EMBEDDING_TYPE)
        await cache.initialize()

        assert cache.get(Tool("read_file")) is None

    @pytest.mark.asyncio
    async def test_missing_or_corrupt_bundle_loads_empty(self, tmp_path):
        missing = PreComputedToolEmbeddingsCache(str(tmp_path / "missing.json"), EMBEDDING_TYPE)
        await missing.initialize()
        assert missing.get(Tool("x")) is None

        corrupt_path = tmp_path / "corrupt.json"
        corrupt_path.write_text("{not json")
        corrupt = PreComputedToolEmbeddingsCache(str(corrupt_path), EMBEDDING_TYPE)
        await corrupt.initialize()
        assert corrupt.get(Tool("x")) is None
