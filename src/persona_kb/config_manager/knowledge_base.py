"""
Configuration models for knowledge base indexing and retrieval (RAG) settings.
"""

from typing import ClassVar, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator

from .i18n import Description, I18nMixin

RagMode = Literal["heavy", "light", "ignore"]
EmbeddingProvider = Literal["lmstudio", "openai"]


class RetrievalConfig(I18nMixin, BaseModel):
    """Retrieval defaults applied when a chat turn queries the knowledge base."""

    default_top_k: int = Field(8, ge=1, le=50, alias="default_top_k")
    max_top_k: int = Field(20, ge=1, alias="max_top_k")
    min_similarity_score: float = Field(0.5, ge=0.0, le=1.0, alias="min_similarity_score")
    default_mode: RagMode = Field("heavy", alias="default_mode")
    tag_filters: List[str] = Field(default_factory=list, alias="tag_filters")

    DESCRIPTIONS: ClassVar[Dict[str, Description]] = {
        "default_top_k": Description(
            en="Number of memory items retrieved per turn (default: 8)",
            zh="每轮检索的记忆条目数量（默认：8）",
        ),
        "max_top_k": Description(
            en="Upper bound for any requested top_k (default: 20)",
            zh="top_k 的上限（默认：20）",
        ),
        "min_similarity_score": Description(
            en="Minimum cosine similarity for a memory item to be returned (0.0-1.0, default: 0.5)",
            zh="返回记忆条目的最小余弦相似度（0.0-1.0，默认：0.5）",
        ),
        "default_mode": Description(
            en="Global RAG mode: 'heavy', 'light' or 'ignore' (default: heavy)",
            zh="全局 RAG 模式：'heavy'、'light' 或 'ignore'（默认：heavy）",
        ),
        "tag_filters": Description(
            en="Global tag filters applied when no request or conversation filter is set",
            zh="当请求和会话都未设置时使用的全局标签过滤",
        ),
    }


class ChunkingConfig(I18nMixin, BaseModel):
    """Chunk window settings for indexing."""

    chunk_size: int = Field(500, gt=0, alias="chunk_size")
    chunk_overlap: int = Field(50, ge=0, alias="chunk_overlap")

    DESCRIPTIONS: ClassVar[Dict[str, Description]] = {
        "chunk_size": Description(
            en="Size of text chunks for indexing (default: 500 chars)",
            zh="索引文本块大小（默认：500字符）",
        ),
        "chunk_overlap": Description(
            en="Overlap between chunks, must be smaller than chunk_size (default: 50 chars)",
            zh="文本块之间的重叠部分，必须小于 chunk_size（默认：50字符）",
        ),
    }

    @model_validator(mode="after")
    def _check_overlap(self) -> "ChunkingConfig":
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError(
                f"chunk_overlap ({self.chunk_overlap}) must be smaller than "
                f"chunk_size ({self.chunk_size})"
            )
        return self


class UploadConfig(I18nMixin, BaseModel):
    max_file_size_bytes: int = Field(10 * 1024 * 1024, gt=0, alias="max_file_size_bytes")

    DESCRIPTIONS: ClassVar[Dict[str, Description]] = {
        "max_file_size_bytes": Description(
            en="Maximum accepted upload size in bytes (default: 10MB)",
            zh="上传文件的最大字节数（默认：10MB）",
        ),
    }


class EmbeddingConfig(I18nMixin, BaseModel):
    """Embedding provider, model and retry policy."""

    provider: EmbeddingProvider = Field("lmstudio", alias="provider")
    model: str = Field("text-embedding-bge-m3", alias="model")
    dimensions: int = Field(1024, gt=0, alias="dimensions")
    fallback_provider: Optional[EmbeddingProvider] = Field(None, alias="fallback_provider")
    fallback_model: Optional[str] = Field(None, alias="fallback_model")
    retry_attempts: int = Field(3, ge=1, le=5, alias="retry_attempts")
    retry_delay_ms: int = Field(1000, ge=100, le=10000, alias="retry_delay_ms")
    availability_timeout_seconds: float = Field(
        5.0, gt=0, alias="availability_timeout_seconds"
    )
    concurrency: int = Field(2, ge=1, alias="concurrency")

    DESCRIPTIONS: ClassVar[Dict[str, Description]] = {
        "provider": Description(
            en="Embedding provider: 'lmstudio' (local, OpenAI-compatible) or 'openai'",
            zh="向量化服务：'lmstudio'（本地，兼容 OpenAI）或 'openai'",
        ),
        "model": Description(en="Embedding model name", zh="向量模型名称"),
        "dimensions": Description(
            en="Vector dimensions stored in the database; vectors are truncated or padded to fit",
            zh="数据库存储的向量维度；向量会被截断或补零",
        ),
        "fallback_provider": Description(
            en="Provider tried after the primary exhausts its retries",
            zh="主服务重试耗尽后尝试的备用服务",
        ),
        "fallback_model": Description(en="Model for the fallback provider", zh="备用服务的模型"),
        "retry_attempts": Description(
            en="Attempts per embedding call (1-5, default: 3)",
            zh="每次向量化调用的尝试次数（1-5，默认：3）",
        ),
        "retry_delay_ms": Description(
            en="Base delay between attempts in ms, doubled each retry (default: 1000)",
            zh="重试的基础间隔（毫秒），每次重试翻倍（默认：1000）",
        ),
        "availability_timeout_seconds": Description(
            en="Timeout of the availability probe (default: 5s)",
            zh="可用性探测的超时时间（默认：5秒）",
        ),
        "concurrency": Description(
            en="Concurrent embedding calls while indexing one file (default: 2)",
            zh="单个文件索引时的并发向量化调用数（默认：2）",
        ),
    }


class RagConfig(I18nMixin, BaseModel):
    """Global configuration for the knowledge base pipeline."""

    version: str = Field("1.0", alias="version")
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig, alias="retrieval")
    chunking: ChunkingConfig = Field(default_factory=ChunkingConfig, alias="chunking")
    upload: UploadConfig = Field(default_factory=UploadConfig, alias="upload")
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig, alias="embedding")

    DESCRIPTIONS: ClassVar[Dict[str, Description]] = {
        "retrieval": Description(en="Retrieval settings", zh="检索设置"),
        "chunking": Description(en="Chunking settings", zh="分块设置"),
        "upload": Description(en="Upload limits", zh="上传限制"),
        "embedding": Description(en="Embedding provider settings", zh="向量化设置"),
    }


def format_file_size(size_bytes: int) -> str:
    """Render a byte count as B / KB / MB."""
    if size_bytes < 1024:
        return f"{size_bytes} B"
    if size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    return f"{size_bytes / (1024 * 1024):.1f} MB"
