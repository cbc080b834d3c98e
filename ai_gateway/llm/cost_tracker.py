"""AI call cost estimation and in-process cost tracking."""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AsyncIterator

from uuid_extensions import uuid7

from ai_gateway.core.constants import DEFAULT_USD_JPY_RATE
from ai_gateway.core.logging import get_logger

log = get_logger(__name__)

# ── Pricing Table (USD per million tokens) ───────────────────────
# Matched by substring against the model id, longest key first, so
# "gpt-4o-mini" wins over "gpt-4o" and "gemini-2.5-flash-lite" over
# "gemini-2.5-flash".

PRICING: dict[str, dict[str, float]] = {
    # Gemini
    "gemini-1.5-flash": {"input": 0.075, "output": 0.30},
    "gemini-2.0-flash": {"input": 0.075, "output": 0.30},
    "gemini-2.5-flash": {"input": 0.30, "output": 2.50},
    "gemini-2.5-flash-lite": {"input": 0.075, "output": 0.30},
    "gemini-1.5-pro": {"input": 1.25, "output": 5.00},
    "gemini-2.0-pro": {"input": 1.25, "output": 5.00},
    "gemini-2.5-pro": {"input": 1.25, "output": 10.00},
    # OpenAI
    "gpt-4o-mini": {"input": 0.15, "output": 0.60},
    "gpt-4o": {"input": 2.50, "output": 10.00},
    "gpt-5-nano": {"input": 0.05, "output": 0.40},
    "gpt-5-mini": {"input": 0.25, "output": 2.00},
    "gpt-5": {"input": 1.25, "output": 10.00},
    "gpt-5.1": {"input": 1.25, "output": 10.00},
    "o3-mini": {"input": 1.10, "output": 4.40},
    "o1": {"input": 15.00, "output": 60.00},
    # Anthropic
    "claude-3-haiku": {"input": 0.25, "output": 1.25},
    "claude-3-5-haiku": {"input": 0.80, "output": 4.00},
    "claude-3-5-sonnet": {"input": 3.00, "output": 15.00},
    "claude-haiku-4-5": {"input": 1.00, "output": 5.00},
    "claude-sonnet-4-5": {"input": 3.00, "output": 15.00},
    "claude-opus-4-5": {"input": 5.00, "output": 25.00},
}

DEFAULT_PRICING: dict[str, float] = {"input": 0.075, "output": 0.30}

_KEYS_LONGEST_FIRST = sorted(PRICING, key=len, reverse=True)


def pricing_for(model: str) -> dict[str, float]:
    """Price entry for a model id; unknown models get Flash-class pricing."""
    for key in _KEYS_LONGEST_FIRST:
        if key in model:
            return PRICING[key]
    return DEFAULT_PRICING


def estimate_cost_usd(model: str, input_tokens: int, output_tokens: int) -> float:
    pricing = pricing_for(model)
    cost = (
        input_tokens * pricing["input"] / 1_000_000
        + output_tokens * pricing["output"] / 1_000_000
    )
    return max(0.0, cost)


def estimate_cost_jpy(
    model: str,
    input_tokens: int,
    output_tokens: int,
    usd_jpy_rate: float = DEFAULT_USD_JPY_RATE,
) -> float:
    """Estimated cost in JPY, the unit usage events are billed in."""
    return estimate_cost_usd(model, input_tokens, output_tokens) * usd_jpy_rate


@dataclass
class CostRecord:
    """Single provider call cost record."""

    log_id: str
    timestamp: datetime
    provider: str
    model: str
    input_tokens: int
    output_tokens: int
    cost_jpy: float
    latency_ms: float
    succeeded: bool


@dataclass
class CostAccumulator:
    """Mutable accumulator used during a tracked call."""

    provider: str
    model: str
    usd_jpy_rate: float = DEFAULT_USD_JPY_RATE
    start_time: float = field(default_factory=time.monotonic)
    input_tokens: int = 0
    output_tokens: int = 0
    succeeded: bool = False

    def set_usage(self, input_tokens: int = 0, output_tokens: int = 0, succeeded: bool = True) -> None:
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens
        self.succeeded = succeeded

    def calculate_cost(self) -> float:
        return estimate_cost_jpy(self.model, self.input_tokens, self.output_tokens, self.usd_jpy_rate)

    def elapsed_ms(self) -> float:
        return (time.monotonic() - self.start_time) * 1000


class CostTracker:
    """Track every provider call made by this process.

    Usage:
        tracker = CostTracker()
        async with tracker.track("openai", "gpt-4o-mini") as acc:
            response = await vendor_call(...)
            acc.set_usage(input_tokens=100, output_tokens=50)
    """

    _MAX_RECORDS = 10_000  # Prevent unbounded memory growth

    def __init__(self, usd_jpy_rate: float = DEFAULT_USD_JPY_RATE) -> None:
        self._usd_jpy_rate = usd_jpy_rate
        self._records: list[CostRecord] = []

    @asynccontextmanager
    async def track(self, provider: str, model: str) -> AsyncIterator[CostAccumulator]:
        """Context manager to track a single provider call."""
        acc = CostAccumulator(provider=provider, model=model, usd_jpy_rate=self._usd_jpy_rate)
        try:
            yield acc
        finally:
            cost = acc.calculate_cost()
            latency = acc.elapsed_ms()

            self._records.append(
                CostRecord(
                    log_id=str(uuid7()),
                    timestamp=datetime.now(timezone.utc),
                    provider=provider,
                    model=model,
                    input_tokens=acc.input_tokens,
                    output_tokens=acc.output_tokens,
                    cost_jpy=cost,
                    latency_ms=latency,
                    succeeded=acc.succeeded,
                )
            )
            if len(self._records) > self._MAX_RECORDS:
                self._records = self._records[-self._MAX_RECORDS:]

            log.info(
                "provider_call_tracked",
                provider=provider,
                model=model,
                input_tokens=acc.input_tokens,
                output_tokens=acc.output_tokens,
                cost_jpy=f"{cost:.4f}",
                latency_ms=f"{latency:.0f}",
                succeeded=acc.succeeded,
            )

    # ── Aggregation ──────────────────────────────────────────────

    @property
    def total_cost_jpy(self) -> float:
        return sum(r.cost_jpy for r in self._records)

    @property
    def total_calls(self) -> int:
        return len(self._records)

    def cost_by_model(self) -> dict[str, float]:
        result: dict[str, float] = {}
        for r in self._records:
            result[r.model] = result.get(r.model, 0.0) + r.cost_jpy
        return result

    def get_records(self) -> list[CostRecord]:
        return list(self._records)

    def summary(self) -> dict[str, object]:
        return {
            "total_calls": self.total_calls,
            "failed_calls": sum(1 for r in self._records if not r.succeeded),
            "total_cost_jpy": f"¥{self.total_cost_jpy:.2f}",
            "by_model": {k: f"¥{v:.2f}" for k, v in self.cost_by_model().items()},
        }
