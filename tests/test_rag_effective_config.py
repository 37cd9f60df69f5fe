"""Unit tests for effective RAG configuration precedence."""

from __future__ import annotations

import unittest
from pathlib import Path
import sys


PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))


class TestRagModePrecedence(unittest.TestCase):
    def test_request_beats_conversation_beats_character(self) -> None:
        from persona_kb.knowledge_base.effective_config import (
            CharacterRagSource,
            ConversationRagOverrides,
            RequestRagSource,
            compute_effective_rag_config,
        )

        request = RequestRagSource(rag_mode="light")
        conversation = ConversationRagOverrides(mode="ignore")
        character = CharacterRagSource(rag_mode="light")

        self.assertEqual(
            compute_effective_rag_config(request, conversation, character).rag_mode, "light"
        )
        self.assertEqual(
            compute_effective_rag_config(None, conversation, character).rag_mode, "ignore"
        )
        self.assertEqual(compute_effective_rag_config(None, None, character).rag_mode, "light")
        self.assertEqual(compute_effective_rag_config().rag_mode, "heavy")

    def test_global_mode_applies_last(self) -> None:
        from persona_kb.knowledge_base.effective_config import (
            CharacterRagSource,
            GlobalRagSource,
            compute_effective_rag_config,
        )

        global_config = GlobalRagSource(rag_mode="light")

        self.assertEqual(
            compute_effective_rag_config(global_config=global_config).rag_mode, "light"
        )
        self.assertEqual(
            compute_effective_rag_config(
                character=CharacterRagSource(rag_mode="ignore"), global_config=global_config
            ).rag_mode,
            "ignore",
        )

    def test_invalid_modes_fall_through(self) -> None:
        from persona_kb.knowledge_base.effective_config import (
            CharacterRagSource,
            ConversationRagOverrides,
            RequestRagSource,
            compute_effective_rag_config,
        )

        effective = compute_effective_rag_config(
            RequestRagSource(rag_mode="turbo"),
            ConversationRagOverrides(mode=""),
            CharacterRagSource(rag_mode="ignore"),
        )
        self.assertEqual(effective.rag_mode, "ignore")

        effective = compute_effective_rag_config(RequestRagSource(rag_mode="HEAVY"))
        self.assertEqual(effective.rag_mode, "heavy")


class TestTagFilterPrecedence(unittest.TestCase):
    def test_request_tags_are_normalized(self) -> None:
        from persona_kb.knowledge_base.effective_config import (
            RequestRagSource,
            compute_effective_rag_config,
        )

        effective = compute_effective_rag_config(
            RequestRagSource(tag_filters=[" req-1 ", "", "req-2"])
        )
        self.assertEqual(effective.tag_filters, ["req-1", "req-2"])

    def test_empty_request_list_falls_through_to_conversation(self) -> None:
        from persona_kb.knowledge_base.effective_config import (
            ConversationRagOverrides,
            RequestRagSource,
            compute_effective_rag_config,
        )

        effective = compute_effective_rag_config(
            RequestRagSource(tag_filters=[]),
            ConversationRagOverrides(tag_filters=["conv-1", "conv-2"]),
        )
        self.assertEqual(effective.tag_filters, ["conv-1", "conv-2"])

    def test_global_tags_used_when_others_are_empty(self) -> None:
        from persona_kb.knowledge_base.effective_config import (
            ConversationRagOverrides,
            GlobalRagSource,
            RequestRagSource,
            compute_effective_rag_config,
        )

        effective = compute_effective_rag_config(
            RequestRagSource(tag_filters=[]),
            ConversationRagOverrides(tag_filters=["  "]),
            global_config=GlobalRagSource(tag_filters=[" global-1 ", " "]),
        )
        self.assertEqual(effective.tag_filters, ["global-1"])

    def test_all_empty_leaves_filter_unset(self) -> None:
        from persona_kb.knowledge_base.effective_config import (
            ConversationRagOverrides,
            GlobalRagSource,
            RequestRagSource,
            compute_effective_rag_config,
        )

        effective = compute_effective_rag_config(
            RequestRagSource(tag_filters=[]),
            ConversationRagOverrides(tag_filters=[]),
            global_config=GlobalRagSource(tag_filters=[]),
        )
        self.assertIsNone(effective.tag_filters)
        self.assertNotIn("tagFilters", effective.model_dump(by_alias=True, exclude_none=True))

    def test_character_has_no_tag_filters(self) -> None:
        from persona_kb.knowledge_base.effective_config import (
            CharacterRagSource,
            compute_effective_rag_config,
        )

        effective = compute_effective_rag_config(character=CharacterRagSource(rag_mode="light"))
        self.assertIsNone(effective.tag_filters)


class TestCamelCaseSources(unittest.TestCase):
    def test_sources_accept_camel_case_payloads(self) -> None:
        from persona_kb.knowledge_base.effective_config import (
            ConversationRagOverrides,
            RequestRagSource,
            compute_effective_rag_config,
        )

        request = RequestRagSource.model_validate({"ragMode": "light", "tagFilters": ["a"]})
        conversation = ConversationRagOverrides.model_validate(
            {"enabled": True, "mode": "ignore", "tagFilters": ["b"]}
        )

        effective = compute_effective_rag_config(request, conversation)
        self.assertEqual(
            effective.model_dump(by_alias=True), {"ragMode": "light", "tagFilters": ["a"]}
        )


if __name__ == "__main__":
    unittest.main()
