"""
Configuration for the virtual tool grouping engine.

Sections are plain pydantic models; the root settings object reads
environment overrides such as VIRTUAL_TOOLS_GROUPING__HARD_TOOL_LIMIT=96.
"""
from typing import Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PathsConfig(BaseModel):
    """Filesystem locations for persisted state."""

    data_dir: str = "data"
    embeddings_cache_file: str = "toolEmbeddingsCache.bin"
    kv_store_file: str = "virtual_tools_state.json"


# Default limits for the virtual tool tree. virtual_tools.constants re-exports
# these; GroupingConfig carries the tunable copies.

# Maximum number of tools the model may be shown at once
HARD_TOOL_LIMIT = 128

# Below this many tools everything is presented flat
START_GROUPING_AFTER_TOOL_COUNT = HARD_TOOL_LIMIT // 2

# Budget expansion keeps opening groups until this many tools are visible
EXPAND_UNTIL_COUNT = START_GROUPING_AFTER_TOOL_COUNT

# Toolsets up to this size get a single summarized group, larger ones are divided
GROUP_WITHIN_TOOLSET = HARD_TOOL_LIMIT // 8

# Toolsets this small are never wrapped in a group
MIN_TOOLSET_SIZE_TO_GROUP = 2

MAX_CATEGORIZATION_RETRIES = 3

# Target visible count after the model's prompt cache was invalidated
TRIM_THRESHOLD = HARD_TOOL_LIMIT * 3 // 4

PREDICTED_TOOLS_COUNT = 10


class GroupingConfig(BaseModel):
    """Limits that shape the virtual tool tree."""

    hard_tool_limit: int = HARD_TOOL_LIMIT
    start_grouping_after_tool_count: int = START_GROUPING_AFTER_TOOL_COUNT
    expand_until_count: int = EXPAND_UNTIL_COUNT
    group_within_toolset: int = GROUP_WITHIN_TOOLSET
    min_toolset_size_to_group: int = MIN_TOOLSET_SIZE_TO_GROUP
    max_categorization_retries: int = MAX_CATEGORIZATION_RETRIES
    trim_threshold: int = TRIM_THRESHOLD
    predicted_tools_count: int = PREDICTED_TOOLS_COUNT
    category_cache_size: int = 128
    embeddings_timeout_seconds: float = Field(default=10.0, gt=0)


class EmbeddingsConfig(BaseModel):
    """Embedding model identity, caches and the remote endpoint."""

    embedding_type_id: str = "text-embedding-3-small-512"
    dimensions: int = 512
    precomputed_path: Optional[str] = None
    local_cache_size: int = 1000
    save_debounce_seconds: float = 5.0
    endpoint: str = "https://api.openai.com/v1/embeddings"
    api_key: Optional[str] = None
    model: str = "text-embedding-3-small"
    timeout: int = 30


class CategorizationConfig(BaseModel):
    """Fast chat model used to name and divide tool groups."""

    endpoint: str = "https://api.openai.com/v1/chat/completions"
    api_key: Optional[str] = None
    model: str = "gpt-4o-mini"
    timeout: int = 60
    max_tokens: int = 4096
    temperature: float = 0.0


class AppConfig(BaseSettings):
    """Root configuration object."""

    model_config = SettingsConfigDict(
        env_prefix="VIRTUAL_TOOLS_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    paths: PathsConfig = PathsConfig()
    grouping: GroupingConfig = GroupingConfig()
    embeddings: EmbeddingsConfig = EmbeddingsConfig()
    categorization: CategorizationConfig = CategorizationConfig()


config = AppConfig()
