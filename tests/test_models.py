"""Tests for the conversation data model.

- TestTurn: constructors and block accessors
- TestTokenUsage: aggregation
- TestCompressionRecord: digest rendering
- TestConversation: append, summary, JSON round-trip
"""

from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from tern.models import (
    CompressionRecord,
    Conversation,
    ImageBlock,
    Role,
    TextBlock,
    TokenUsage,
    ToolResultBlock,
    ToolUseBlock,
    Turn,
    block_char_count,
    default_title,
)


class TestTurn:
    def test_user_turn_has_one_text_block(self):
        turn = Turn.user("hello")
        assert turn.role == Role.USER
        assert turn.content == [TextBlock(text="hello")]
        assert turn.text() == "hello"

    def test_ids_are_unique_hex(self):
        a, b = Turn.user("x"), Turn.user("x")
        assert a.id != b.id
        assert len(a.id) == 32
        int(a.id, 16)

    def test_tool_accessors(self):
        turn = Turn(
            role=Role.ASSISTANT,
            content=[
                TextBlock(text="Let me look."),
                ToolUseBlock(call_id="c1", tool_name="read", input={"path": "a"}),
                ToolUseBlock(call_id="c2", tool_name="list", input={}),
            ],
        )
        assert [b.call_id for b in turn.tool_uses()] == ["c1", "c2"]
        assert turn.tool_results() == []
        assert turn.text() == "Let me look."

    def test_char_count_covers_every_block(self):
        turn = Turn(
            role=Role.TOOL_RESULT,
            content=[ToolResultBlock(call_id="c1", content="12345")],
        )
        assert turn.char_count() == 5

    def test_tool_use_char_count_is_name_plus_json(self):
        block = ToolUseBlock(call_id="c1", tool_name="read", input={"path": "a"})
        assert block_char_count(block) == len("read") + len('{"path": "a"}')

    def test_image_reference_counts_reference(self):
        block = ImageBlock(media_type="image/png", reference="shot.png")
        assert block_char_count(block) == len("image/png") + len("shot.png")

    def test_turns_are_frozen(self):
        turn = Turn.user("x")
        with pytest.raises(ValidationError):
            turn.role = Role.SYSTEM


class TestTokenUsage:
    def test_addition(self):
        total = TokenUsage(input_tokens=10, output_tokens=5, total_tokens=15, estimated_cost=0.1) + TokenUsage(
            input_tokens=1, output_tokens=2, total_tokens=3, estimated_cost=0.2
        )
        assert total.input_tokens == 11
        assert total.output_tokens == 7
        assert total.total_tokens == 18
        assert total.estimated_cost == 0.3


class TestCompressionRecord:
    def test_render_skips_empty_sections(self):
        record = CompressionRecord(
            background="Refactoring the parser",
            key_decisions=["Use a state machine"],
            first_turn_idx=0,
            last_turn_idx=9,
            original_turn_count=10,
        )
        text = record.render()
        assert text.startswith("# Summary of turns 0-9 (10 turns)")
        assert "## Background\n- Refactoring the parser" in text
        assert "## Key Decisions\n- Use a state machine" in text
        assert "## Open Issues" not in text


class TestConversation:
    def test_default_title_uses_timestamp(self):
        now = datetime(2026, 3, 1, 9, 5, tzinfo=UTC)
        assert default_title(now) == "Conversation 2026-03-01 09:05"

    def test_append_folds_usage_and_touches_updated_at(self):
        conversation = Conversation()
        before = conversation.updated_at
        conversation.append(Turn.user("hi"))
        conversation.append(
            Turn.assistant("hello", usage=TokenUsage(input_tokens=3, output_tokens=4, total_tokens=7))
        )
        assert len(conversation.messages) == 2
        assert conversation.total_token_usage.total_tokens == 7
        assert conversation.updated_at >= before

    def test_summary(self):
        conversation = Conversation(title="Notes", tags=["a"])
        conversation.append(Turn.user("hi"))
        summary = conversation.summary()
        assert summary.id == conversation.id
        assert summary.title == "Notes"
        assert summary.message_count == 1
        assert summary.archived is False

    def test_json_round_trip_keeps_block_types(self):
        conversation = Conversation(title="Round trip", metadata={"k": [1, 2]})
        conversation.append(Turn.user("read a.txt"))
        conversation.append(
            Turn(
                role=Role.ASSISTANT,
                content=[ToolUseBlock(call_id="c1", tool_name="read", input={"path": "a.txt"})],
                stop_reason="tool_use",
            )
        )
        conversation.append(
            Turn(role=Role.TOOL_RESULT, content=[ToolResultBlock(call_id="c1", content="{}", is_error=False)])
        )
        conversation.compression_ledger.append(CompressionRecord(background="bg"))

        restored = Conversation.model_validate_json(conversation.model_dump_json())
        assert restored == conversation
        assert isinstance(restored.messages[1].content[0], ToolUseBlock)
        assert isinstance(restored.messages[2].content[0], ToolResultBlock)
        assert restored.version == 1
