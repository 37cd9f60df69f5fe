from .knowledge_base import (
    ChunkingConfig,
    EmbeddingConfig,
    RagConfig,
    RagMode,
    RetrievalConfig,
    UploadConfig,
    format_file_size,
)
from .settings import KBSettings
from .utils import load_rag_config, read_yaml, validate_config

__all__ = [
    "ChunkingConfig",
    "EmbeddingConfig",
    "KBSettings",
    "RagConfig",
    "RagMode",
    "RetrievalConfig",
    "UploadConfig",
    "format_file_size",
    "load_rag_config",
    "read_yaml",
    "validate_config",
]
