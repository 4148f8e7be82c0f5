"""Bounded in-memory turn buffer with structured compression.

The ContextManager owns the turns sent upstream on every round-trip.
Usage is estimated as sum(ceil(chars / chars_per_token)) over retained
turns. Crossing the compression ratio on append compresses synchronously:
an 8-section CompressionRecord is produced from the current buffer and
only high-importance turns plus a recent tail survive.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum

from tern.config import Settings
from tern.context.compression import (
    ImportanceScorer,
    TurnSummarizer,
    describe_ids,
    estimate_tokens,
    select_retained,
    tool_links,
)
from tern.errors import ContextOverflow
from tern.models import CompressionRecord, Role, ToolResultBlock, ToolUseBlock, Turn

logger = logging.getLogger(__name__)

CompressionCallback = Callable[[CompressionRecord], None]


class UsageLevel(StrEnum):
    OK = "ok"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass(frozen=True)
class ContextStats:
    message_count: int
    estimated_tokens: int
    max_tokens: int
    usage_ratio: float
    compression_count: int
    last_compression: datetime | None
    level: UsageLevel


@dataclass(frozen=True)
class ContextSnapshot:
    """Immutable view of the retained turns plus the latest digest."""

    turns: tuple[Turn, ...]
    digest: CompressionRecord | None = None

    def __len__(self) -> int:
        return len(self.turns)


class ContextManager:
    """Bounded conversation buffer for one session.

    Single-session and single-threaded: nothing here suspends.
    """

    def __init__(
        self,
        settings: Settings,
        on_compress: CompressionCallback | None = None,
    ) -> None:
        self._settings = settings
        self._max_tokens = settings.context_max_tokens
        self._on_compress = on_compress
        self._turns: list[Turn] = []
        # Absolute position of each retained turn in the conversation
        self._positions: list[int] = []
        self._next_position = 0
        self._tokens = 0
        self._ledger: list[CompressionRecord] = []
        self._known_calls: set[str] = set()
        self._summarizer = TurnSummarizer(settings.failure_keywords)
        self._scorer = ImportanceScorer(settings.important_keywords, settings.failure_keywords)

    def reconfigure(self, settings: Settings) -> None:
        """Adopt a new settings snapshot; retained turns are re-estimated."""
        self._settings = settings
        self._max_tokens = settings.context_max_tokens
        self._summarizer = TurnSummarizer(settings.failure_keywords)
        self._scorer = ImportanceScorer(settings.important_keywords, settings.failure_keywords)
        self._tokens = sum(self._estimate(t) for t in self._turns)

    # ------------------------------------------------------------------
    # Accounting
    # ------------------------------------------------------------------

    def _estimate(self, turn: Turn) -> int:
        return estimate_tokens(turn.char_count(), self._settings.chars_per_token)

    @property
    def estimated_tokens(self) -> int:
        return self._tokens

    @property
    def usage_ratio(self) -> float:
        return self._tokens / self._max_tokens

    @property
    def ledger(self) -> list[CompressionRecord]:
        return list(self._ledger)

    def __len__(self) -> int:
        return len(self._turns)

    def level(self) -> UsageLevel:
        ratio = self.usage_ratio
        if ratio > self._settings.compression_ratio:
            return UsageLevel.CRITICAL
        if ratio >= self._settings.error_ratio:
            return UsageLevel.ERROR
        if ratio >= self._settings.warning_ratio:
            return UsageLevel.WARNING
        return UsageLevel.OK

    def stats(self) -> ContextStats:
        return ContextStats(
            message_count=len(self._turns),
            estimated_tokens=self._tokens,
            max_tokens=self._max_tokens,
            usage_ratio=self.usage_ratio,
            compression_count=len(self._ledger),
            last_compression=self._ledger[-1].timestamp if self._ledger else None,
            level=self.level(),
        )

    # ------------------------------------------------------------------
    # Append / snapshot
    # ------------------------------------------------------------------

    def _validate(self, turn: Turn) -> None:
        for block in turn.content:
            if isinstance(block, ToolUseBlock) and turn.role != Role.ASSISTANT:
                raise ValueError(f"tool_use block in {turn.role} turn")
            if isinstance(block, ToolResultBlock):
                if turn.role != Role.TOOL_RESULT:
                    raise ValueError(f"tool_result block in {turn.role} turn")
                if block.call_id not in self._known_calls:
                    raise ValueError(f"tool_result for unknown call_id {block.call_id}")

    def _seal(self, turn: Turn) -> Turn:
        # Keep timestamps monotone within the buffer
        if self._turns and turn.timestamp < self._turns[-1].timestamp:
            return turn.model_copy(update={"timestamp": self._turns[-1].timestamp})
        return turn

    def append(self, turn: Turn) -> Turn:
        """Seal and append a turn; compress if usage crosses the trigger.

        Returns the sealed turn. Raises ContextOverflow (leaving the
        buffer without the new turn) if even after compression the
        budget is exceeded.
        """
        self._validate(turn)
        sealed = self._seal(turn)
        self._turns.append(sealed)
        self._positions.append(self._next_position)
        self._tokens += self._estimate(sealed)

        if self.usage_ratio > self._settings.compression_ratio:
            self.compress(force=True)
            if self._tokens > self._max_tokens:
                overflow = self._tokens
                self._remove(sealed)
                raise ContextOverflow(overflow, self._max_tokens)

        self._next_position += 1
        self._known_calls.update(b.call_id for b in sealed.tool_uses())
        return sealed

    def _remove(self, turn: Turn) -> None:
        for i in range(len(self._turns) - 1, -1, -1):
            if self._turns[i] is turn:
                del self._turns[i]
                del self._positions[i]
                self._tokens -= self._estimate(turn)
                return

    def snapshot(self) -> ContextSnapshot:
        return ContextSnapshot(
            turns=tuple(self._turns),
            digest=self._ledger[-1] if self._ledger else None,
        )

    # ------------------------------------------------------------------
    # Compression
    # ------------------------------------------------------------------

    def compress(self, force: bool = False) -> CompressionRecord | None:
        """Summarize the buffer and elide low-importance turns.

        A no-op returning None unless usage is above the compression
        ratio or force is set. On return usage is at or below the ratio,
        or only the minimum retained set is left.
        """
        settings = self._settings
        if not force and self.usage_ratio <= settings.compression_ratio:
            return None

        start = time.monotonic()
        original_count = len(self._turns)
        original_tokens = self._tokens
        turns = self._turns

        record = self._summarizer.summarize(
            turns,
            first_turn_idx=self._positions[0] if self._positions else self._next_position,
            last_turn_idx=self._positions[-1] if self._positions else self._next_position,
            previous=self._ledger[-1] if self._ledger else None,
        )

        scores = [self._scorer.score(t) for t in turns]
        keep = select_retained(
            turns,
            scores,
            threshold=settings.retain_threshold,
            min_retain=settings.min_retain,
        )
        keep = self._trim_to_budget(turns, scores, keep)

        kept = sorted(keep)
        self._turns = [turns[i] for i in kept]
        self._positions = [self._positions[i] for i in kept]
        self._tokens = sum(self._estimate(t) for t in self._turns)
        self._scorer.forget(t.id for t in self._turns)
        self._ledger.append(record)

        logger.info(
            "Context compressed in %.1fms: %d -> %d turns, ~%d -> ~%d tokens (ratio %.2f)",
            (time.monotonic() - start) * 1000,
            original_count,
            len(self._turns),
            original_tokens,
            self._tokens,
            self.usage_ratio,
        )
        logger.debug("Retained turns: %s", describe_ids(self._turns))

        if self._on_compress:
            self._on_compress(record)
        return record

    def _trim_to_budget(self, turns: Sequence[Turn], scores: Sequence[float], keep: set[int]) -> set[int]:
        """Drop the weakest non-tail turns while usage stays above the trigger."""
        settings = self._settings
        budget = settings.compression_ratio * self._max_tokens
        tail = set(range(max(0, len(turns) - settings.min_retain), len(turns)))
        links = tool_links(turns)
        tokens = sum(self._estimate(turns[i]) for i in keep)
        protected: set[int] = set()

        while tokens > budget and len(keep) > settings.min_retain:
            candidates = [i for i in keep if i not in tail and i not in protected]
            if not candidates:
                break
            victim = min(candidates, key=lambda i: (scores[i], i))
            group = {victim, *links.get(victim, ())}
            if group & tail:
                protected |= group
                continue
            keep -= group
            tokens -= sum(self._estimate(turns[i]) for i in group)
        return keep

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def restore(self, turns: Sequence[Turn], ledger: Sequence[CompressionRecord] = ()) -> None:
        """Load a persisted conversation into an empty buffer.

        The buffer is refilled without triggering compression per turn;
        if the whole history is over the trigger it is compressed once.
        """
        self.clear()
        self._ledger = list(ledger)
        for turn in turns:
            self._known_calls.update(b.call_id for b in turn.tool_uses())
            self._turns.append(turn)
            self._positions.append(self._next_position)
            self._next_position += 1
            self._tokens += self._estimate(turn)
        if self.usage_ratio > self._settings.compression_ratio:
            self.compress(force=True)

    def clear(self) -> None:
        self._turns.clear()
        self._positions.clear()
        self._next_position = 0
        self._tokens = 0
        self._ledger.clear()
        self._known_calls.clear()
        self._scorer.forget(())
