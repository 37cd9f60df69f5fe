"""
Knowledge base module for per-character document storage and retrieval.

Files are chunked, embedded and stored as memory items that chat turns
retrieve by vector similarity.
"""

from .effective_config import EffectiveRagConfig, compute_effective_rag_config
from .embedding import EmbeddingClient
from .feedback import MemoryFeedbackService
from .indexing import IndexingOrchestrator
from .ingestion import DocumentProcessor, TextChunker
from .manager import KnowledgeBaseManager
from .memory_store import MemoryStore
from .retriever import MemoryRetriever, format_memories_for_prompt
from .storage_manager import LocalFileStorage

__all__ = [
    "EffectiveRagConfig",
    "compute_effective_rag_config",
    "EmbeddingClient",
    "MemoryFeedbackService",
    "IndexingOrchestrator",
    "DocumentProcessor",
    "TextChunker",
    "KnowledgeBaseManager",
    "MemoryStore",
    "MemoryRetriever",
    "format_memories_for_prompt",
    "LocalFileStorage",
]
