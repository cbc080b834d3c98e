"""Tests for cost estimation and the in-process CostTracker."""

from __future__ import annotations

import asyncio

import pytest

from ai_gateway.llm.cost_tracker import (
    DEFAULT_PRICING,
    CostTracker,
    estimate_cost_jpy,
    estimate_cost_usd,
    pricing_for,
)


class TestPricing:
    def test_longest_key_wins(self) -> None:
        assert pricing_for("gpt-4o-mini-2024-07-18") == {"input": 0.15, "output": 0.60}
        assert pricing_for("gpt-4o-2024-08-06") == {"input": 2.50, "output": 10.00}
        assert pricing_for("models/gemini-2.5-flash-lite") == {"input": 0.075, "output": 0.30}
        assert pricing_for("gemini-2.5-flash") == {"input": 0.30, "output": 2.50}

    def test_unknown_model_uses_default(self) -> None:
        assert pricing_for("some-new-model") == DEFAULT_PRICING

    def test_usd_estimate(self) -> None:
        # 1M input + 1M output of gpt-4o-mini
        assert estimate_cost_usd("gpt-4o-mini", 1_000_000, 1_000_000) == pytest.approx(0.75)

    def test_jpy_uses_rate(self) -> None:
        assert estimate_cost_jpy("gpt-4o-mini", 1_000_000, 0) == pytest.approx(0.15 * 150)
        assert estimate_cost_jpy("gpt-4o-mini", 1_000_000, 0, usd_jpy_rate=100) == pytest.approx(15.0)

    def test_zero_tokens_zero_cost(self) -> None:
        assert estimate_cost_jpy("gpt-5", 0, 0) == 0.0


class TestCostTracker:
    def test_track_records_call(self) -> None:
        tracker = CostTracker()

        async def _call() -> None:
            async with tracker.track("openai", "gpt-4o-mini") as acc:
                acc.set_usage(input_tokens=1000, output_tokens=500)

        asyncio.run(_call())

        assert tracker.total_calls == 1
        record = tracker.get_records()[0]
        assert record.succeeded is True
        assert record.cost_jpy == pytest.approx(estimate_cost_jpy("gpt-4o-mini", 1000, 500))
        assert tracker.cost_by_model() == {"gpt-4o-mini": pytest.approx(record.cost_jpy)}

    def test_failed_call_recorded(self) -> None:
        tracker = CostTracker()

        async def _call() -> None:
            async with tracker.track("gemini", "gemini-2.5-flash"):
                raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            asyncio.run(_call())

        summary = tracker.summary()
        assert summary["total_calls"] == 1
        assert summary["failed_calls"] == 1
