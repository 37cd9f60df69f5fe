"""
Data models for knowledge base files, memory items and indexing results.

API-facing models serialize with camelCase aliases (`model_dump(by_alias=True)`)
while Python code uses snake_case attribute names.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class FileStatus(str, Enum):
    PENDING = "pending"
    INDEXING = "indexing"
    READY = "ready"
    FAILED = "failed"
    PAUSED = "paused"


# "processing" is a legacy in-flight status still honored by the reindex guard.
IN_PROGRESS_STATUSES = ("pending", "indexing", "processing")
TERMINAL_STATUSES = ("ready", "failed")

OwnerType = Literal["user", "character"]
VisibilityPolicy = Literal["normal", "exclude_from_rag"]
FeedbackAction = Literal["exclude", "lower_priority", "restore"]

VISIBILITY_NORMAL = "normal"
VISIBILITY_EXCLUDE_FROM_RAG = "exclude_from_rag"

# Internal tags are prefixed with "__" to keep them apart from user tags.
LOW_PRIORITY_TAG = "__low_priority"
LOW_PRIORITY_PENALTY = 0.15


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class KnowledgeBaseFile(_CamelModel):
    """An uploaded file and its indexing status."""

    id: str
    user_id: str
    character_id: Optional[str] = None
    file_name: str
    file_type: Optional[str] = None
    file_size_bytes: Optional[int] = None
    storage_path: str
    status: str = FileStatus.PENDING.value
    status_before_pause: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def owner_type(self) -> OwnerType:
        return "character" if self.character_id else "user"

    @property
    def owner_id(self) -> str:
        return self.character_id or self.user_id


class MemoryItem(_CamelModel):
    """A persisted chunk together with its embedding vector."""

    id: str
    owner_type: OwnerType
    owner_id: str
    source_type: str = "file"
    source_id: Optional[str] = None
    content: str
    embedding: Optional[List[float]] = None
    tags: List[str] = Field(default_factory=list)
    visibility_policy: VisibilityPolicy = VISIBILITY_NORMAL
    chunk_index: Optional[int] = None
    start_char: Optional[int] = None
    end_char: Optional[int] = None
    embedding_provider: Optional[str] = None
    embedding_model: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)


class TextChunk(BaseModel):
    """A contiguous window of document text with its offsets."""

    content: str
    index: int
    start_char: int
    end_char: int


class EmbeddingResult(BaseModel):
    embedding: List[float]
    provider: str
    model: str
    dimensions: int


class EmbeddingServiceStatus(BaseModel):
    available: bool
    provider: Optional[str] = None
    model: Optional[str] = None
    error: Optional[str] = None
    latency_ms: Optional[int] = None


class EmbeddedChunk(BaseModel):
    chunk: TextChunk
    result: EmbeddingResult


class IndexResult(_CamelModel):
    """Structured outcome of indexing one file."""

    file_id: str
    success: bool
    chunks_created: int = 0
    total_chunks: int = 0
    error: Optional[str] = None


class StoredFile(_CamelModel):
    path: str
    original_name: str
    mime_type: str
    size_bytes: int


class RetrievedMemory(_CamelModel):
    id: str
    content: str
    source_type: str
    source_id: Optional[str] = None
    similarity: float
    tags: List[str] = Field(default_factory=list)


class RetrievalResult(_CamelModel):
    memories: List[RetrievedMemory] = Field(default_factory=list)
    query: str
    top_k: int


class KBStats(_CamelModel):
    total_files: int = 0
    ready_files: int = 0
    indexing_files: int = 0
    failed_files: int = 0
    paused_files: int = 0
    total_chunks: int = 0


class KnowledgeBaseFileDetail(KnowledgeBaseFile):
    chunk_count: int = 0


class UploadResult(_CamelModel):
    file: KnowledgeBaseFile
    job_id: Optional[str] = None
    indexing: Optional[IndexResult] = None


class ReindexResult(_CamelModel):
    """
    Outcome of a reindex request.

    Exactly one of `job_id` (queued), `indexing` (ran inline) or `message`
    (already in progress) is set.
    """

    file: KnowledgeBaseFile
    job_id: Optional[str] = None
    indexing: Optional[IndexResult] = None
    message: Optional[str] = None

    @property
    def started(self) -> bool:
        return self.job_id is not None

    @property
    def outcome(self) -> str:
        if self.job_id is not None:
            return "queued"
        if self.indexing is not None:
            return "indexed"
        return "in_progress"
