"""Pytest configuration, compatibility helpers and shared gateway fakes.

This project includes async tests marked with ``@pytest.mark.asyncio``.
Some environments run unit tests without ``pytest-asyncio`` installed, which
would otherwise make those tests fail at collection/runtime.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any

import pytest

from ai_gateway.core.exceptions import ProviderTransientError
from ai_gateway.core.interfaces import BaseProviderAdapter
from ai_gateway.core.types import (
    AIMessage,
    AIRequest,
    AIResponse,
    MessageRole,
    ProviderTag,
    TokenUsage,
)
from ai_gateway.llm.cost_tracker import CostTracker
from ai_gateway.llm.registry import ProviderRegistry


def pytest_configure(config: pytest.Config) -> None:
    """Register local markers used in the suite."""
    config.addinivalue_line("markers", "asyncio: mark test as asyncio-compatible")


def pytest_pyfunc_call(pyfuncitem: pytest.Function) -> bool | None:
    """Run ``@pytest.mark.asyncio`` tests without external plugins.

    If pytest-asyncio (or another async plugin) is installed, this hook may be
    bypassed by that plugin depending on hook ordering. In plugin-less
    environments, this fallback executes coroutine tests via ``asyncio.run``.
    """
    if pyfuncitem.get_closest_marker("asyncio") is None:
        return None

    test_func = pyfuncitem.obj
    if not inspect.iscoroutinefunction(test_func):
        return None

    kwargs: dict[str, Any] = {
        arg: pyfuncitem.funcargs[arg]
        for arg in pyfuncitem._fixtureinfo.argnames
    }
    loop = asyncio.new_event_loop()
    try:
        asyncio.set_event_loop(loop)
        loop.run_until_complete(test_func(**kwargs))
    finally:
        loop.close()
        # Keep a default loop available for sync tests that call
        # ``asyncio.get_event_loop()`` directly.
        asyncio.set_event_loop(asyncio.new_event_loop())
    return True


# ── Fake Providers ───────────────────────────────────────────────


class FakeAdapter(BaseProviderAdapter):
    """Scripted adapter: each call pops the next outcome.

    An outcome is a response string, an exception to raise, or a float
    meaning "sleep this many seconds" (to trigger timeouts).
    """

    def __init__(
        self,
        provider: ProviderTag,
        model: str,
        outcomes: list[str | Exception | float] | None = None,
        usage: TokenUsage | None = None,
    ) -> None:
        self.provider = provider
        self._model = model
        self._outcomes = list(outcomes or ["ok"])
        self._usage = usage or TokenUsage(input_tokens=100, output_tokens=50)
        self.calls: list[AIRequest] = []

    @property
    def model(self) -> str:
        return self._model

    async def generate(self, request: AIRequest) -> AIResponse:
        self.calls.append(request)
        idx = min(len(self.calls) - 1, len(self._outcomes) - 1)
        outcome = self._outcomes[idx]
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, float):
            await asyncio.sleep(outcome)
            outcome = "late"
        return AIResponse(content=outcome, model=self._model, provider=self.provider, usage=self._usage)


class FakeProviderRegistry(ProviderRegistry):
    """Registry serving pre-built fake adapters; unknown pairs behave like a missing key."""

    def __init__(self, adapters: list[FakeAdapter]) -> None:
        super().__init__(api_keys={}, cost_tracker=CostTracker())
        self.adapters = {(a.provider, a.model): a for a in adapters}

    def get(self, provider: ProviderTag | str, model: str) -> BaseProviderAdapter:  # type: ignore[override]
        key = (ProviderTag(provider), model)
        if key not in self.adapters:
            return super().get(provider, model)
        return self.adapters[key]

    def available_providers(self) -> list[ProviderTag]:
        registered = {provider for provider, _ in self.adapters}
        return [tag for tag in ProviderTag if tag in registered]

    @property
    def total_calls(self) -> int:
        return sum(len(a.calls) for a in self.adapters.values())


def transient(reason: str = "server_error") -> ProviderTransientError:
    return ProviderTransientError(f"simulated {reason}", reason=reason)


@pytest.fixture
def request_payload() -> AIRequest:
    return AIRequest(
        messages=[
            AIMessage(role=MessageRole.SYSTEM, content="You write quizzes."),
            AIMessage(role=MessageRole.USER, content="Make one question about Kyoto."),
        ]
    )


@pytest.fixture
def structured_payload() -> AIRequest:
    return AIRequest(
        messages=[
            AIMessage(role=MessageRole.SYSTEM, content="Return JSON."),
            AIMessage(role=MessageRole.USER, content="Outline a book about tea."),
        ],
        structured_output=True,
    )
