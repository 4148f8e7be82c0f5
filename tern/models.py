"""Conversation data model: turns, content blocks, usage and digests.

All models are pydantic so the same classes validate API input, back the
in-memory context buffer and serialize the on-disk conversation files.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from enum import StrEnum
from typing import Annotated, Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

SCHEMA_VERSION = 1


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    """128-bit random identifier rendered as 32 hex chars."""
    return uuid4().hex


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL_RESULT = "tool_result"


# ---------------------------------------------------------------------------
# Content blocks
# ---------------------------------------------------------------------------


class TextBlock(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["text"] = "text"
    text: str


class ImageBlock(BaseModel):
    """Inline (base64) image or a reference to one (path or URL)."""

    model_config = ConfigDict(frozen=True)

    type: Literal["image"] = "image"
    media_type: str
    data: str | None = None
    reference: str | None = None


class ToolUseBlock(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["tool_use"] = "tool_use"
    call_id: str
    tool_name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["tool_result"] = "tool_result"
    call_id: str
    content: str
    is_error: bool = False


ContentBlock = Annotated[
    TextBlock | ImageBlock | ToolUseBlock | ToolResultBlock,
    Field(discriminator="type"),
]


def block_char_count(block: TextBlock | ImageBlock | ToolUseBlock | ToolResultBlock) -> int:
    """Character count used for token estimation."""
    match block:
        case TextBlock():
            return len(block.text)
        case ImageBlock():
            return len(block.media_type) + len(block.reference or block.data or "")
        case ToolUseBlock():
            return len(block.tool_name) + len(json.dumps(block.input, sort_keys=True, ensure_ascii=False))
        case ToolResultBlock():
            return len(block.content)
    raise TypeError(f"unhandled content block: {type(block).__name__}")


def block_text(block: TextBlock | ImageBlock | ToolUseBlock | ToolResultBlock) -> str:
    """Plain-text rendering of a block, used by keyword heuristics."""
    match block:
        case TextBlock():
            return block.text
        case ImageBlock():
            return f"[image {block.media_type}]"
        case ToolUseBlock():
            return f"{block.tool_name} {json.dumps(block.input, ensure_ascii=False)}"
        case ToolResultBlock():
            return block.content
    raise TypeError(f"unhandled content block: {type(block).__name__}")


# ---------------------------------------------------------------------------
# Usage and turns
# ---------------------------------------------------------------------------


class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    estimated_cost: float = 0.0

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
            estimated_cost=round(self.estimated_cost + other.estimated_cost, 6),
        )


class Turn(BaseModel):
    """One sealed contribution to a conversation.

    Turns are frozen. The streaming engine builds the current assistant
    turn from its own accumulators and only constructs the Turn once the
    message is complete.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    role: Role
    content: list[ContentBlock] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utcnow)
    usage: TokenUsage | None = None
    stop_reason: str | None = None

    @classmethod
    def user(cls, text: str) -> Turn:
        return cls(role=Role.USER, content=[TextBlock(text=text)])

    @classmethod
    def system(cls, text: str) -> Turn:
        return cls(role=Role.SYSTEM, content=[TextBlock(text=text)])

    @classmethod
    def assistant(cls, text: str, **kwargs: Any) -> Turn:
        return cls(role=Role.ASSISTANT, content=[TextBlock(text=text)], **kwargs)

    def text(self) -> str:
        """Concatenated text of all Text blocks."""
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))

    def plain_text(self) -> str:
        return " ".join(block_text(b) for b in self.content)

    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.content if isinstance(b, ToolUseBlock)]

    def tool_results(self) -> list[ToolResultBlock]:
        return [b for b in self.content if isinstance(b, ToolResultBlock)]

    def char_count(self) -> int:
        return sum(block_char_count(b) for b in self.content)


# ---------------------------------------------------------------------------
# Compression digest
# ---------------------------------------------------------------------------


class CompressionRecord(BaseModel):
    """Structured 8-section digest of a range of elided turns."""

    model_config = ConfigDict(frozen=True)

    background: str = ""
    key_decisions: list[str] = Field(default_factory=list)
    tool_usage_summary: list[str] = Field(default_factory=list)
    user_intent: str = ""
    execution_results: list[str] = Field(default_factory=list)
    error_cases: list[str] = Field(default_factory=list)
    open_issues: list[str] = Field(default_factory=list)
    future_plans: list[str] = Field(default_factory=list)

    first_turn_idx: int = 0
    last_turn_idx: int = 0
    timestamp: datetime = Field(default_factory=utcnow)
    original_turn_count: int = 0
    digest_byte_size: int = 0

    def render(self) -> str:
        """Render the digest as markdown sections for the system prompt."""
        sections = [
            ("Background", [self.background] if self.background else []),
            ("Key Decisions", self.key_decisions),
            ("Tool Usage", self.tool_usage_summary),
            ("User Intent", [self.user_intent] if self.user_intent else []),
            ("Execution Results", self.execution_results),
            ("Error Cases", self.error_cases),
            ("Open Issues", self.open_issues),
            ("Future Plans", self.future_plans),
        ]
        lines = [
            f"# Summary of turns {self.first_turn_idx}-{self.last_turn_idx} "
            f"({self.original_turn_count} turns)"
        ]
        for title, items in sections:
            if not items:
                continue
            lines.append(f"## {title}")
            lines.extend(f"- {item}" for item in items)
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------


def default_title(now: datetime | None = None) -> str:
    return f"Conversation {(now or utcnow()).strftime('%Y-%m-%d %H:%M')}"


class ConversationSummary(BaseModel):
    id: str
    title: str
    created_at: datetime
    updated_at: datetime
    message_count: int
    total_tokens: int
    estimated_cost: float
    tags: list[str]
    archived: bool


class Conversation(BaseModel):
    version: int = SCHEMA_VERSION
    id: str = Field(default_factory=new_id)
    title: str = Field(default_factory=default_title)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    messages: list[Turn] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    tags: list[str] = Field(default_factory=list)
    archived: bool = False
    total_token_usage: TokenUsage = Field(default_factory=TokenUsage)
    compression_ledger: list[CompressionRecord] = Field(default_factory=list)

    def append(self, turn: Turn) -> None:
        """Append a sealed turn and fold its usage into the aggregate."""
        self.messages.append(turn)
        if turn.usage is not None:
            self.total_token_usage = self.total_token_usage + turn.usage
        self.updated_at = utcnow()

    def summary(self) -> ConversationSummary:
        return ConversationSummary(
            id=self.id,
            title=self.title,
            created_at=self.created_at,
            updated_at=self.updated_at,
            message_count=len(self.messages),
            total_tokens=self.total_token_usage.total_tokens,
            estimated_cost=self.total_token_usage.estimated_cost,
            tags=list(self.tags),
            archived=self.archived,
        )
