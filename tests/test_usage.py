"""Tests for cost accounting and usage statistics."""

from datetime import UTC, datetime

import pytest

from tern.models import TokenUsage
from tern.storage.usage import CallRecord, CostTracker, ModelPricing


@pytest.fixture
def tracker(tmp_path) -> CostTracker:
    return CostTracker(tmp_path / "usage")


def _usage(inp: int, out: int) -> TokenUsage:
    return TokenUsage(input_tokens=inp, output_tokens=out, total_tokens=inp + out)


class TestPricing:
    def test_longest_prefix_wins(self, tracker):
        assert tracker.pricing_for("claude-opus-4-5-20251101") == ModelPricing(5.0, 25.0)
        assert tracker.pricing_for("claude-opus-4-1") == ModelPricing(15.0, 75.0)

    def test_cost(self, tracker):
        assert tracker.calculate_cost("claude-sonnet-4-5", 1_000_000, 1_000_000) == pytest.approx(18.0)

    def test_unknown_model_is_free(self, tracker):
        assert tracker.pricing_for("gpt-5") is None
        assert tracker.calculate_cost("gpt-5", 1000, 1000) == 0.0

    def test_custom_pricing(self, tracker):
        tracker.set_pricing("local-", ModelPricing(1.0, 1.0))
        assert tracker.calculate_cost("local-llama", 500_000, 500_000) == pytest.approx(1.0)


class TestRecording:
    def test_record_appends_jsonl(self, tracker):
        record = tracker.record("claude-haiku-4-5", _usage(1000, 500), conversation_id="conv1")
        assert record.cost == pytest.approx((1000 * 1.0 + 500 * 5.0) / 1_000_000)
        path = tracker.usage_dir / f"calls_{record.timestamp.strftime('%Y-%m-%d')}.jsonl"
        lines = path.read_text(encoding="utf-8").splitlines()
        assert len(lines) == 1
        assert CallRecord.model_validate_json(lines[0]) == record

    def test_statistics(self, tracker):
        tracker.record("claude-sonnet-4-5", _usage(100, 10))
        tracker.record("claude-sonnet-4-5", _usage(200, 20))
        tracker.record("claude-haiku-4-5", _usage(50, 5))
        stats = tracker.statistics(days=1)
        assert stats.total.calls == 3
        assert stats.total.input_tokens == 350
        assert stats.by_model["claude-sonnet-4-5"].calls == 2
        assert stats.by_model["claude-haiku-4-5"].output_tokens == 5
        assert sum(u.calls for u in stats.by_date.values()) == 3

    def test_window_excludes_old_days(self, tracker):
        tracker.usage_dir.mkdir(parents=True)
        old = CallRecord(timestamp=datetime(2026, 1, 1, tzinfo=UTC), model="m", input_tokens=1)
        (tracker.usage_dir / "calls_2026-01-01.jsonl").write_text(old.model_dump_json() + "\n")
        now = datetime(2026, 1, 10, tzinfo=UTC)
        assert tracker.statistics(days=7, now=now).total.calls == 0
        assert tracker.statistics(days=10, now=now).total.calls == 1

    def test_malformed_lines_skipped(self, tracker):
        tracker.usage_dir.mkdir(parents=True)
        good = CallRecord(timestamp=datetime(2026, 3, 3, tzinfo=UTC), model="m", output_tokens=4)
        (tracker.usage_dir / "calls_2026-03-03.jsonl").write_text("garbage\n\n" + good.model_dump_json() + "\n")
        stats = tracker.statistics(days=1, now=datetime(2026, 3, 3, 12, tzinfo=UTC))
        assert stats.total.calls == 1
        assert stats.total.output_tokens == 4

    def test_days_must_be_positive(self, tracker):
        with pytest.raises(ValueError):
            tracker.statistics(days=0)

    def test_no_usage(self, tracker):
        stats = tracker.statistics()
        assert stats.days == 30
        assert stats.total.calls == 0
        assert stats.by_model == {}
