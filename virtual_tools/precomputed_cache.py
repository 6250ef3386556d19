"""
Read-only bundle of tool embeddings shipped with the install.
"""
import json
import logging
from typing import Dict, Optional

from config import config
from virtual_tools.types import Embedding, EmbeddingType, Tool


class PreComputedToolEmbeddingsCache:
    """
    Embeddings for well-known tools, keyed by tool name.

    The bundle is a JSON object:
        {"embedding_type": "<id>", "embeddings": {"<tool name>": [floats, ...]}}
    """

    def __init__(self, bundle_path: Optional[str] = None, embedding_type: Optional[EmbeddingType] = None):
        self.logger = logging.getLogger("precomputed_tool_embeddings")
        self.bundle_path = bundle_path if bundle_path is not None else config.embeddings.precomputed_path
        self.embedding_type = embedding_type or EmbeddingType(
            config.embeddings.embedding_type_id,
            config.embeddings.dimensions
        )
        self._embeddings: Dict[str, Embedding] = {}

    async def initialize(self) -> None:
        if not self.bundle_path:
            return

        try:
            with open(self.bundle_path, 'r') as f:
                bundle = json.load(f)
        except FileNotFoundError:
            self.logger.warning(f"Pre-computed tool embeddings not found at {self.bundle_path}")
            return
        except (json.JSONDecodeError, OSError) as e:
            self.logger.error(f"Failed to load pre-computed tool embeddings: {e}")
            return

        if not isinstance(bundle, dict) or bundle.get("embedding_type") != self.embedding_type.id:
            self.logger.warning("Pre-computed tool embeddings have a different embedding type, ignoring them")
            return

        embeddings = {}
        for name, vector in (bundle.get("embeddings") or {}).items():
            if not isinstance(vector, list) or not vector:
                self.logger.warning(f"Tool embedding missing for key: {name}")
                continue
            embeddings[name] = Embedding(type=self.embedding_type, value=[float(v) for v in vector])

        self._embeddings = embeddings
        self.logger.info(f"Loaded {len(embeddings)} pre-computed tool embeddings")

    def get(self, tool: Tool) -> Optional[Embedding]:
        return self._embeddings.get(tool.name)

    def set(self, tool: Tool, embedding: Embedding) -> None:
        pass
