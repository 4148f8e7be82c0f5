"""API usage and cost accounting.

Each priced round-trip is appended as one JSON line to
calls_YYYY-MM-DD.jsonl (UTC day) under the usage directory.
statistics() aggregates a trailing window of those files by model and
by day.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

import filelock
from filelock import FileLock
from pydantic import BaseModel, Field, ValidationError

from tern.errors import StorageError
from tern.models import TokenUsage, utcnow
from tern.storage.conversations import LOCK_TIMEOUT

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelPricing:
    """USD per million tokens."""

    input_per_million: float
    output_per_million: float


# Matched by longest model-name prefix
DEFAULT_PRICING: dict[str, ModelPricing] = {
    "claude-opus-4-5": ModelPricing(5.0, 25.0),
    "claude-opus-4": ModelPricing(15.0, 75.0),
    "claude-sonnet-4": ModelPricing(3.0, 15.0),
    "claude-haiku-4": ModelPricing(1.0, 5.0),
    "claude-3-7-sonnet": ModelPricing(3.0, 15.0),
    "claude-3-5-sonnet": ModelPricing(3.0, 15.0),
    "claude-3-5-haiku": ModelPricing(0.8, 4.0),
    "claude-3-opus": ModelPricing(15.0, 75.0),
    "claude-3-haiku": ModelPricing(0.25, 1.25),
}


class CallRecord(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)
    model: str
    conversation_id: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0


class ModelUsage(BaseModel):
    calls: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0

    def add(self, record: CallRecord) -> None:
        self.calls += 1
        self.input_tokens += record.input_tokens
        self.output_tokens += record.output_tokens
        self.cost += record.cost


class UsageStatistics(BaseModel):
    days: int
    total: ModelUsage = Field(default_factory=ModelUsage)
    by_model: dict[str, ModelUsage] = Field(default_factory=dict)
    by_date: dict[str, ModelUsage] = Field(default_factory=dict)


class CostTracker:
    def __init__(self, usage_dir: Path, pricing: dict[str, ModelPricing] | None = None) -> None:
        self.usage_dir = usage_dir
        self._pricing = dict(DEFAULT_PRICING if pricing is None else pricing)
        self._warned: set[str] = set()

    def _file_for(self, day: datetime) -> Path:
        return self.usage_dir / f"calls_{day.strftime('%Y-%m-%d')}.jsonl"

    def pricing_for(self, model: str) -> ModelPricing | None:
        matches = [prefix for prefix in self._pricing if model.startswith(prefix)]
        if not matches:
            return None
        return self._pricing[max(matches, key=len)]

    def set_pricing(self, prefix: str, pricing: ModelPricing) -> None:
        self._pricing[prefix] = pricing

    def calculate_cost(self, model: str, input_tokens: int, output_tokens: int) -> float:
        """USD cost of one call. Unknown models cost 0 with a one-time warning."""
        pricing = self.pricing_for(model)
        if pricing is None:
            if model not in self._warned:
                self._warned.add(model)
                logger.warning("No pricing for model %s, recording cost as 0", model)
            return 0.0
        return (
            input_tokens * pricing.input_per_million + output_tokens * pricing.output_per_million
        ) / 1_000_000

    def record(self, model: str, usage: TokenUsage, conversation_id: str | None = None) -> CallRecord:
        record = CallRecord(
            model=model,
            conversation_id=conversation_id,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            cost=self.calculate_cost(model, usage.input_tokens, usage.output_tokens),
        )
        path = self._file_for(record.timestamp)
        try:
            self.usage_dir.mkdir(parents=True, exist_ok=True)
            with FileLock(path.with_suffix(".lock"), timeout=LOCK_TIMEOUT):
                with path.open("a", encoding="utf-8") as f:
                    f.write(record.model_dump_json() + "\n")
        except filelock.Timeout as e:
            raise StorageError(f"Usage log {path.name} is locked by another process") from e
        except OSError as e:
            raise StorageError(f"Failed to record usage: {e}") from e
        return record

    def _load(self, path: Path) -> list[CallRecord]:
        records: list[CallRecord] = []
        try:
            lines = path.read_text(encoding="utf-8").splitlines()
        except OSError as e:
            logger.warning("Could not read usage log %s: %s", path.name, e)
            return records
        for lineno, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                records.append(CallRecord.model_validate_json(line))
            except ValidationError:
                logger.warning("Skipping malformed usage record %s:%d", path.name, lineno)
        return records

    def statistics(self, days: int = 30, now: datetime | None = None) -> UsageStatistics:
        """Aggregate the last `days` UTC days, today included."""
        if days < 1:
            raise ValueError("days must be >= 1")
        now = now or utcnow()
        stats = UsageStatistics(days=days)
        for offset in range(days - 1, -1, -1):
            day = now - timedelta(days=offset)
            path = self._file_for(day)
            if not path.exists():
                continue
            date_key = day.strftime("%Y-%m-%d")
            for record in self._load(path):
                stats.total.add(record)
                stats.by_model.setdefault(record.model, ModelUsage()).add(record)
                stats.by_date.setdefault(date_key, ModelUsage()).add(record)
        return stats
