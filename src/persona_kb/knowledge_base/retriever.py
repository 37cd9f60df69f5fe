"""Vector retriever for memory items.

Ranks eligible memory items by cosine similarity to the query embedding,
penalizing items that users marked as low priority.
"""

from __future__ import annotations

from typing import Optional

import aiosqlite
import numpy as np
from loguru import logger

from ..config_manager.knowledge_base import RetrievalConfig
from .embedding import Embedder
from .errors import EmbeddingError
from .memory_store import MemoryStore
from .models import (
    LOW_PRIORITY_PENALTY,
    LOW_PRIORITY_TAG,
    MemoryItem,
    RetrievalResult,
    RetrievedMemory,
)

PROMPT_MEMORY_MAX_CHARS = 300


def cosine_similarities(query: list[float], vectors: np.ndarray) -> np.ndarray:
    """Cosine similarity between `query` and each row of `vectors`.

    Args:
        query: Query embedding.
        vectors: 2-D array with one embedding per row.

    Returns:
        1-D array of similarities; zero-norm rows score 0.
    """

    q = np.asarray(query, dtype=np.float32)
    q_norm = np.linalg.norm(q)
    norms = np.linalg.norm(vectors, axis=1)
    denom = norms * q_norm
    dots = vectors @ q
    return np.divide(dots, denom, out=np.zeros_like(dots), where=denom > 0)


def resolve_top_k(
    config: RetrievalConfig, rag_mode: str, top_k: Optional[int] = None
) -> int:
    """Apply the light-mode halving and the max_top_k cap."""
    if rag_mode == "ignore":
        return 0
    base = top_k if top_k is not None else config.default_top_k
    if rag_mode == "light":
        base = max(1, round(base / 2))
    return max(0, min(base, config.max_top_k))


class MemoryRetriever:
    """Similarity search over the memory items a user/character may see."""

    def __init__(self, store: MemoryStore, embedder: Embedder, config: RetrievalConfig):
        self.store = store
        self.embedder = embedder
        self.config = config

    async def retrieve(
        self,
        user_id: str,
        query: str,
        character_id: Optional[str] = None,
        top_k: Optional[int] = None,
        rag_mode: str = "heavy",
        tag_filters: Optional[list[str]] = None,
    ) -> RetrievalResult:
        """
        Retrieve the most relevant memory items for a chat turn.

        Args:
            user_id: Caller's user id
            query: Text to search for
            character_id: Active character, whose memories are also eligible
            top_k: Requested number of results (defaults to the config)
            rag_mode: heavy, light (half the results) or ignore (no results)
            tag_filters: Every tag listed must be present on an item

        Returns:
            RetrievalResult; empty when retrieval is disabled or fails
        """
        effective_top_k = resolve_top_k(self.config, rag_mode, top_k)
        if rag_mode == "ignore" or effective_top_k == 0:
            return RetrievalResult(memories=[], query=query, top_k=0)

        active_filters = [t.strip() for t in tag_filters or [] if t.strip()]

        try:
            query_embedding = (await self.embedder.generate_embedding(query)).embedding
        except EmbeddingError as e:
            logger.error(f"❌ Failed to generate query embedding: {e}")
            return RetrievalResult(memories=[], query=query, top_k=effective_top_k)

        try:
            items = await self.store.list_retrievable_items(user_id, character_id)
        except aiosqlite.Error as e:
            logger.error(f"❌ Retrieval failed: {e}")
            return RetrievalResult(memories=[], query=query, top_k=effective_top_k)

        if active_filters:
            items = [i for i in items if all(tag in i.tags for tag in active_filters)]

        memories = self._rank(query_embedding, items, effective_top_k)
        logger.info(
            f"🔍 Retrieved {len(memories)}/{len(items)} memories for user '{user_id}' "
            f"(mode={rag_mode}, top_k={effective_top_k})"
        )
        return RetrievalResult(memories=memories, query=query, top_k=effective_top_k)

    def _rank(
        self, query_embedding: list[float], items: list[MemoryItem], top_k: int
    ) -> list[RetrievedMemory]:
        # Stored vectors may predate a dimension change; only compare like with like.
        items = [i for i in items if i.embedding and len(i.embedding) == len(query_embedding)]
        if not items:
            return []

        vectors = np.asarray([i.embedding for i in items], dtype=np.float32)
        raw = cosine_similarities(query_embedding, vectors)
        penalty = np.asarray(
            [LOW_PRIORITY_PENALTY if LOW_PRIORITY_TAG in i.tags else 0.0 for i in items],
            dtype=np.float32,
        )
        scores = raw - penalty

        # The score threshold applies to the raw similarity, ranking uses the penalty.
        eligible = np.flatnonzero(raw >= self.config.min_similarity_score)
        ranked = eligible[np.argsort(-scores[eligible], kind="stable")][:top_k]

        return [
            RetrievedMemory(
                id=items[idx].id,
                content=items[idx].content,
                source_type=items[idx].source_type,
                source_id=items[idx].source_id,
                similarity=float(scores[idx]),
                tags=items[idx].tags,
            )
            for idx in ranked
        ]


def format_memories_for_prompt(memories: list[RetrievedMemory]) -> str:
    """Render retrieved memories as a `<relevant_context>` prompt block."""
    if not memories:
        return ""

    lines = []
    for i, memory in enumerate(memories, 1):
        content = memory.content[:PROMPT_MEMORY_MAX_CHARS]
        if len(memory.content) > PROMPT_MEMORY_MAX_CHARS:
            content += "..."
        lines.append(f"[{i}] {content}")

    formatted = "\n".join(lines)
    return (
        "<relevant_context>\n"
        "The following relevant information was retrieved from your knowledge base:\n\n"
        f"{formatted}\n\n"
        "Use this context naturally in your response when relevant.\n"
        "</relevant_context>"
    )
