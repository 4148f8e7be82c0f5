"""Rule-based structured compression of the context buffer.

Two pieces, both pure and non-suspending:

  TurnSummarizer  scans turns and extracts the 8-section CompressionRecord
  ImportanceScorer  scores turns to decide which survive compression

Extraction is keyword driven. Keyword sets are matched case-insensitively
as substrings and cover English and Chinese phrasing.
"""

from __future__ import annotations

import json
import logging
import math
from collections import Counter
from collections.abc import Iterable, Sequence

from tern.models import CompressionRecord, Role, ToolResultBlock, ToolUseBlock, Turn

logger = logging.getLogger(__name__)

# Per-section caps keep a digest bounded across repeated compressions
_MAX_SECTION_ITEMS = 10
_MAX_ITEM_CHARS = 200
_BACKGROUND_WINDOW = 5

NO_INTENT = "No clear user intent identified"

DECISION_WORDS = ("decided", "decide to", "i will use", "we will use", "chose", "choosing", "决定", "选择")
RESULT_WORDS = ("result", "completed", "done", "created", "succeeded", "结果", "完成")
ISSUE_WORDS = ("issue", "problem", "unresolved", "todo", "not yet", "问题", "待解决")
PLAN_WORDS = ("next step", "plan to", "later", "follow up", "计划", "下一步")


def estimate_tokens(char_count: int, chars_per_token: int) -> int:
    """Crude chars/N token estimate, monotone in char_count."""
    return math.ceil(char_count / chars_per_token)


def contains_any(text: str, words: Iterable[str]) -> bool:
    lowered = text.lower()
    return any(w.lower() in lowered for w in words)


def _clip(text: str) -> str:
    text = " ".join(text.split())
    if len(text) > _MAX_ITEM_CHARS:
        return text[: _MAX_ITEM_CHARS - 3] + "..."
    return text


def _merge(previous: Sequence[str], current: Sequence[str]) -> list[str]:
    """Concatenate, drop duplicates (first wins) and keep the newest items."""
    seen: dict[str, None] = {}
    for item in [*previous, *current]:
        seen.setdefault(item, None)
    return list(seen)[-_MAX_SECTION_ITEMS:]


# ---------------------------------------------------------------------------
# Summarizer
# ---------------------------------------------------------------------------


class TurnSummarizer:
    """Builds a CompressionRecord from a run of turns.

    System and user turns feed background and user_intent; assistant turns
    feed key_decisions, execution_results and future_plans; any turn
    mentioning a failure keyword (or an error tool result) feeds
    error_cases; ToolUse blocks feed tool_usage_summary. When a previous
    record exists its sections are carried forward so the newest record
    alone describes everything elided so far.
    """

    def __init__(self, failure_keywords: Sequence[str]) -> None:
        self._failure_keywords = tuple(failure_keywords)

    def summarize(
        self,
        turns: Sequence[Turn],
        first_turn_idx: int,
        last_turn_idx: int,
        previous: CompressionRecord | None = None,
    ) -> CompressionRecord:
        texts = [t.plain_text() for t in turns]

        background = " | ".join(
            _clip(texts[i])
            for i, t in enumerate(turns[:_BACKGROUND_WINDOW])
            if t.role in (Role.USER, Role.SYSTEM) and texts[i].strip()
        )
        if previous and previous.background:
            background = previous.background

        user_texts = [t.text() for t in turns if t.role == Role.USER and t.text().strip()]
        user_intent = _clip(user_texts[-1]) if user_texts else NO_INTENT
        if not user_texts and previous and previous.user_intent != NO_INTENT:
            user_intent = previous.user_intent

        key_decisions: list[str] = []
        execution_results: list[str] = []
        future_plans: list[str] = []
        error_cases: list[str] = []
        open_issues: list[str] = []

        for turn, text in zip(turns, texts):
            if turn.role == Role.ASSISTANT:
                assistant_text = turn.text()
                if contains_any(assistant_text, DECISION_WORDS):
                    key_decisions.append(_clip(assistant_text))
                if contains_any(assistant_text, RESULT_WORDS):
                    execution_results.append(_clip(assistant_text))
                if contains_any(assistant_text, PLAN_WORDS):
                    future_plans.append(_clip(assistant_text))
            if contains_any(text, self._failure_keywords) or any(r.is_error for r in turn.tool_results()):
                error_cases.append(_clip(text))
            if turn.role in (Role.USER, Role.ASSISTANT) and contains_any(turn.text(), ISSUE_WORDS):
                open_issues.append(_clip(turn.text()))

        tool_usage = self._tool_usage(turns)

        record = CompressionRecord(
            background=background,
            key_decisions=_merge(previous.key_decisions if previous else [], key_decisions),
            tool_usage_summary=_merge(previous.tool_usage_summary if previous else [], tool_usage),
            user_intent=user_intent,
            execution_results=_merge(previous.execution_results if previous else [], execution_results),
            error_cases=_merge(previous.error_cases if previous else [], error_cases),
            open_issues=_merge(previous.open_issues if previous else [], open_issues),
            future_plans=_merge(previous.future_plans if previous else [], future_plans),
            first_turn_idx=previous.first_turn_idx if previous else first_turn_idx,
            last_turn_idx=last_turn_idx,
            original_turn_count=len(turns),
        )
        size = len(record.render().encode("utf-8"))
        return record.model_copy(update={"digest_byte_size": size})

    @staticmethod
    def _tool_usage(turns: Sequence[Turn]) -> list[str]:
        calls: Counter[str] = Counter()
        errors: Counter[str] = Counter()
        names: dict[str, str] = {}
        for turn in turns:
            for block in turn.content:
                if isinstance(block, ToolUseBlock):
                    calls[block.tool_name] += 1
                    names[block.call_id] = block.tool_name
                elif isinstance(block, ToolResultBlock) and block.is_error:
                    errors[names.get(block.call_id, "unknown")] += 1
        lines = []
        for name, count in calls.most_common():
            line = f"{name}: {count} call{'s' if count != 1 else ''}"
            if errors[name]:
                line += f" ({errors[name]} failed)"
            lines.append(line)
        return lines


# ---------------------------------------------------------------------------
# Importance scoring and retention
# ---------------------------------------------------------------------------

_ROLE_BASE = {
    Role.SYSTEM: 0.8,
    Role.USER: 0.6,
    Role.ASSISTANT: 0.4,
}


class ImportanceScorer:
    """Scores a turn in [0, 1]; scores are cached by turn id."""

    def __init__(self, important_keywords: Sequence[str], failure_keywords: Sequence[str]) -> None:
        self._important = tuple(important_keywords)
        self._failure = tuple(failure_keywords)
        self._cache: dict[str, float] = {}

    def score(self, turn: Turn) -> float:
        cached = self._cache.get(turn.id)
        if cached is not None:
            return cached
        text = turn.plain_text()
        score = _ROLE_BASE.get(turn.role, 0.2)
        if contains_any(text, self._important):
            score += 0.3
        if contains_any(text, self._failure):
            score += 0.2
        if turn.char_count() > 100:
            score += 0.1
        # Rounding keeps 0.6 + 0.1 at exactly 0.7
        score = min(round(score, 6), 1.0)
        self._cache[turn.id] = score
        return score

    def forget(self, keep_ids: Iterable[str]) -> None:
        """Drop cached scores for turns no longer in the buffer."""
        keep = set(keep_ids)
        self._cache = {k: v for k, v in self._cache.items() if k in keep}

    def __len__(self) -> int:
        return len(self._cache)


def tool_links(turns: Sequence[Turn]) -> dict[int, set[int]]:
    """Map each turn index to the indices it is tool-paired with.

    An assistant turn carrying ToolUse blocks is paired with every
    tool_result turn answering one of its call ids.
    """
    use_owner: dict[str, int] = {}
    for i, turn in enumerate(turns):
        for block in turn.tool_uses():
            use_owner[block.call_id] = i
    links: dict[int, set[int]] = {}
    for i, turn in enumerate(turns):
        for block in turn.tool_results():
            owner = use_owner.get(block.call_id)
            if owner is not None:
                links.setdefault(i, set()).add(owner)
                links.setdefault(owner, set()).add(i)
    return links


def close_pairs(keep: set[int], links: dict[int, set[int]]) -> set[int]:
    """Extend keep so no retained turn loses its tool partner."""
    closed = set(keep)
    pending = list(keep)
    while pending:
        for partner in links.get(pending.pop(), ()):
            if partner not in closed:
                closed.add(partner)
                pending.append(partner)
    return closed


def select_retained(
    turns: Sequence[Turn],
    scores: Sequence[float],
    *,
    threshold: float,
    min_retain: int,
) -> set[int]:
    """Indices of turns that survive compression.

    Turns scoring above threshold are kept, and so are the last
    min_retain turns, so the turn that triggered compression is never
    elided.
    """
    keep = {i for i, s in enumerate(scores) if s > threshold}
    keep.update(range(max(0, len(turns) - min_retain), len(turns)))
    return close_pairs(keep, tool_links(turns))


def describe_ids(turns: Sequence[Turn]) -> str:
    """Compact id listing for debug logs."""
    return json.dumps([t.id[:8] for t in turns])
