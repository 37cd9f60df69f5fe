"""
Resolution of the effective RAG configuration for one chat turn.

Mode precedence is request > conversation > character > global ("heavy" when
nothing valid is set). Tag filter precedence is request > conversation >
global; an empty list after trimming counts as "not set".
"""

from __future__ import annotations

from typing import Any, List, Optional, get_args

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from ..config_manager.knowledge_base import RagMode

DEFAULT_RAG_MODE: RagMode = "heavy"
VALID_RAG_MODES = frozenset(get_args(RagMode))


class _Source(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RequestRagSource(_Source):
    rag_mode: Optional[str] = None
    tag_filters: Optional[List[str]] = None


class ConversationRagOverrides(_Source):
    enabled: Optional[bool] = None
    mode: Optional[str] = None
    tag_filters: Optional[List[str]] = None


class CharacterRagSource(_Source):
    rag_mode: Optional[str] = None


class GlobalRagSource(_Source):
    enabled: bool = True
    rag_mode: Optional[str] = None
    tag_filters: List[str] = []


class EffectiveRagConfig(_Source):
    rag_mode: RagMode = DEFAULT_RAG_MODE
    # None means "no tag restriction", never an empty filter
    tag_filters: Optional[List[str]] = None


def is_valid_rag_mode(mode: Any) -> bool:
    return isinstance(mode, str) and mode in VALID_RAG_MODES


def normalize_tags(tags: Optional[List[str]]) -> Optional[List[str]]:
    """Trim entries and drop blanks; an empty result becomes None."""
    if not isinstance(tags, list):
        return None
    cleaned = [t.strip() for t in tags if isinstance(t, str) and t.strip()]
    return cleaned or None


def compute_effective_rag_config(
    request: Optional[RequestRagSource] = None,
    conversation: Optional[ConversationRagOverrides] = None,
    character: Optional[CharacterRagSource] = None,
    global_config: Optional[GlobalRagSource] = None,
) -> EffectiveRagConfig:
    """
    Merge request, conversation, character and global RAG settings.

    A mode that is not one of heavy/light/ignore is ignored at its source and
    resolution continues with the next one.

    Args:
        request: Per-request overrides
        conversation: Conversation-level overrides
        character: Character-level mode
        global_config: Global defaults

    Returns:
        EffectiveRagConfig with the resolved mode and tag filters
    """
    mode_candidates = (
        request.rag_mode if request else None,
        conversation.mode if conversation else None,
        character.rag_mode if character else None,
        global_config.rag_mode if global_config else None,
    )
    rag_mode = next(
        (m for m in mode_candidates if is_valid_rag_mode(m)), DEFAULT_RAG_MODE
    )

    tag_candidates = (
        normalize_tags(request.tag_filters) if request else None,
        normalize_tags(conversation.tag_filters) if conversation else None,
        normalize_tags(global_config.tag_filters) if global_config else None,
    )
    tag_filters = next((t for t in tag_candidates if t is not None), None)

    return EffectiveRagConfig(rag_mode=rag_mode, tag_filters=tag_filters)
