"""Unit tests for memory item feedback."""

from __future__ import annotations

import tempfile
import unittest
from pathlib import Path
import sys


PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))


class TestMemoryFeedback(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        from persona_kb.knowledge_base.feedback import MemoryFeedbackService
        from persona_kb.knowledge_base.memory_store import MemoryStore
        from persona_kb.knowledge_base.models import MemoryItem

        self._tmp = tempfile.TemporaryDirectory()
        self.store = MemoryStore(Path(self._tmp.name) / "kb.db")
        await self.store.initialize()
        await self.store.replace_source_items(
            "file",
            "file-1",
            [
                MemoryItem(
                    id="user-item",
                    owner_type="user",
                    owner_id="user-1",
                    source_id="file-1",
                    content="personal note",
                    embedding=[1.0, 0.0],
                    tags=["notes"],
                ),
                MemoryItem(
                    id="char-item",
                    owner_type="character",
                    owner_id="char-1",
                    source_id="file-1",
                    content="character lore",
                    embedding=[0.0, 1.0],
                ),
            ],
        )
        self.service = MemoryFeedbackService(self.store)

    async def asyncTearDown(self) -> None:
        self._tmp.cleanup()

    async def test_exclude_then_restore(self) -> None:
        excluded = await self.service.apply_feedback("user-item", "exclude", "user-1")
        self.assertEqual(excluded.visibility_policy, "exclude_from_rag")
        ids = [i.id for i in await self.store.list_retrievable_items("user-1", "char-1")]
        self.assertNotIn("user-item", ids)

        restored = await self.service.apply_feedback("user-item", "restore", "user-1")
        self.assertEqual(restored.visibility_policy, "normal")
        ids = [i.id for i in await self.store.list_retrievable_items("user-1", "char-1")]
        self.assertIn("user-item", ids)

    async def test_lower_priority_is_idempotent(self) -> None:
        from persona_kb.knowledge_base.models import LOW_PRIORITY_TAG

        await self.service.apply_feedback("user-item", "lower_priority", "user-1")
        item = await self.service.apply_feedback("user-item", "lower_priority", "user-1")

        self.assertEqual(item.tags, ["notes", LOW_PRIORITY_TAG])
        self.assertEqual((await self.store.get_memory_item("user-item")).tags, item.tags)

    async def test_restore_strips_low_priority_tag_only(self) -> None:
        await self.service.apply_feedback("user-item", "lower_priority", "user-1")
        await self.service.apply_feedback("user-item", "exclude", "user-1")

        item = await self.service.apply_feedback("user-item", "restore", "user-1")

        self.assertEqual(item.tags, ["notes"])
        self.assertEqual(item.visibility_policy, "normal")

    async def test_other_users_cannot_modify_user_items(self) -> None:
        from persona_kb.knowledge_base.errors import FeedbackForbidden

        with self.assertRaises(FeedbackForbidden) as ctx:
            await self.service.apply_feedback("user-item", "exclude", "user-2")
        self.assertEqual(ctx.exception.http_status, 403)
        self.assertEqual(
            (await self.store.get_memory_item("user-item")).visibility_policy, "normal"
        )

    async def test_character_items_are_open_to_any_caller(self) -> None:
        item = await self.service.apply_feedback("char-item", "exclude", "someone-else")

        self.assertEqual(item.visibility_policy, "exclude_from_rag")

    async def test_missing_item(self) -> None:
        from persona_kb.knowledge_base.errors import MemoryItemNotFound

        with self.assertRaises(MemoryItemNotFound):
            await self.service.apply_feedback("nope", "exclude", "user-1")

    async def test_unknown_action(self) -> None:
        with self.assertRaises(ValueError):
            await self.service.apply_feedback("user-item", "delete", "user-1")


if __name__ == "__main__":
    unittest.main()
