"""Chat-time retrieval context for a conversation turn."""

from typing import List, Optional

from loguru import logger
from pydantic import BaseModel, Field

from ..knowledge_base.effective_config import (
    CharacterRagSource,
    ConversationRagOverrides,
    EffectiveRagConfig,
    GlobalRagSource,
    RequestRagSource,
    compute_effective_rag_config,
)
from ..knowledge_base.models import RetrievedMemory
from ..knowledge_base.retriever import MemoryRetriever, format_memories_for_prompt


class RagContext(BaseModel):
    """What a chat turn injects into its system prompt."""

    effective: Optional[EffectiveRagConfig] = None
    memories: List[RetrievedMemory] = Field(default_factory=list)
    formatted: str = ""

    @property
    def memory_item_ids(self) -> List[str]:
        return [m.id for m in self.memories]


def apply_rag_context(system_prompt: str, context: RagContext) -> str:
    """Append the formatted memories to a system prompt."""
    if not context.formatted:
        return system_prompt
    return f"{system_prompt}\n\n{context.formatted}"


async def build_rag_context(
    retriever: MemoryRetriever,
    user_id: str,
    query: str,
    character_id: Optional[str] = None,
    request: Optional[RequestRagSource] = None,
    conversation: Optional[ConversationRagOverrides] = None,
    character: Optional[CharacterRagSource] = None,
    global_config: Optional[GlobalRagSource] = None,
    enable_rag: bool = True,
) -> RagContext:
    """
    Resolve the effective RAG config, retrieve memories and format them.

    RAG is skipped when the request disables it, when the conversation
    overrides set `enabled=False` or when the query is blank. Retrieval
    problems never fail the chat turn; they yield an empty context.

    Args:
        retriever: Memory retriever
        user_id: Current user
        query: Latest user message text
        character_id: Active character
        request: Per-request overrides
        conversation: Conversation-level overrides
        character: Character-level mode
        global_config: Global defaults
        enable_rag: Request-level on/off switch

    Returns:
        RagContext with the resolved config, the memories and the prompt block
    """
    if not enable_rag or (conversation is not None and conversation.enabled is False):
        logger.debug("📚 RAG disabled for this turn")
        return RagContext()
    if global_config is not None and not global_config.enabled:
        logger.debug("📚 RAG disabled globally")
        return RagContext()
    if not query.strip():
        return RagContext()

    effective = compute_effective_rag_config(
        request=request,
        conversation=conversation,
        character=character,
        global_config=global_config,
    )

    try:
        result = await retriever.retrieve(
            user_id=user_id,
            query=query,
            character_id=character_id,
            rag_mode=effective.rag_mode,
            tag_filters=effective.tag_filters,
        )
    except Exception as e:
        logger.warning(f"⚠️ RAG retrieval failed, continuing without context: {e}")
        return RagContext(effective=effective)

    formatted = format_memories_for_prompt(result.memories)
    if result.memories:
        logger.info(
            f"✅ RAG: Injected {len(result.memories)} memories ({len(formatted)} chars) into context"
        )
    else:
        logger.info("📚 RAG: No memories found for query")

    return RagContext(effective=effective, memories=result.memories, formatted=formatted)
