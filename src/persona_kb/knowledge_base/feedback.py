"""User feedback on individual memory items."""

from __future__ import annotations

from typing import get_args

from loguru import logger

from .errors import FeedbackForbidden, MemoryItemNotFound
from .memory_store import MemoryStore
from .models import (
    LOW_PRIORITY_TAG,
    VISIBILITY_EXCLUDE_FROM_RAG,
    VISIBILITY_NORMAL,
    FeedbackAction,
    MemoryItem,
)

FEEDBACK_ACTIONS = frozenset(get_args(FeedbackAction))


class MemoryFeedbackService:
    """
    Applies exclude / lower_priority / restore feedback to memory items.

    `exclude` removes an item from retrieval until restored, `lower_priority`
    adds the internal low-priority tag that retrieval ranks with a penalty,
    and `restore` undoes both.
    """

    def __init__(self, store: MemoryStore):
        self.store = store

    async def apply_feedback(
        self, memory_item_id: str, action: FeedbackAction, user_id: str
    ) -> MemoryItem:
        """
        Apply a feedback action on behalf of a user.

        User-owned items require the caller to be the owner. Character-owned
        items are open to any caller in that character's context.

        Args:
            memory_item_id: Memory item id
            action: One of exclude, lower_priority, restore
            user_id: Caller's user id

        Returns:
            The updated memory item

        Raises:
            ValueError: If the action is unknown
            MemoryItemNotFound: If the item does not exist
            FeedbackForbidden: If the caller may not modify the item
        """
        if action not in FEEDBACK_ACTIONS:
            raise ValueError(f"Unknown feedback action: {action}")

        item = await self.store.get_memory_item(memory_item_id)
        if item is None:
            raise MemoryItemNotFound(memory_item_id)

        # TODO: scope character-owned items to users with access to the character
        if item.owner_type == "user" and item.owner_id != user_id:
            raise FeedbackForbidden(memory_item_id)

        if action == "exclude":
            updated = await self.store.update_memory_item(
                memory_item_id, visibility_policy=VISIBILITY_EXCLUDE_FROM_RAG
            )
        elif action == "lower_priority":
            if LOW_PRIORITY_TAG in item.tags:
                updated = item
            else:
                updated = await self.store.update_memory_item(
                    memory_item_id, tags=[*item.tags, LOW_PRIORITY_TAG]
                )
        else:
            updated = await self.store.update_memory_item(
                memory_item_id,
                visibility_policy=VISIBILITY_NORMAL,
                tags=[t for t in item.tags if t != LOW_PRIORITY_TAG],
            )

        if updated is None:
            raise MemoryItemNotFound(memory_item_id)

        logger.info(f"📝 Applied '{action}' feedback to memory item '{memory_item_id}'")
        return updated
