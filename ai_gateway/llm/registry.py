"""Closed adapter set keyed by ProviderTag, with a per-(provider, model) cache."""

from __future__ import annotations

from typing import Mapping

from ai_gateway.core.exceptions import ConfigurationError
from ai_gateway.core.logging import get_logger
from ai_gateway.core.types import ProviderTag
from ai_gateway.llm.base import BaseProviderAdapterImpl
from ai_gateway.llm.claude_adapter import ClaudeAdapter
from ai_gateway.llm.cost_tracker import CostTracker
from ai_gateway.llm.gemini_adapter import GeminiAdapter
from ai_gateway.llm.openai_adapter import OpenAIAdapter

log = get_logger(__name__)

ADAPTER_REGISTRY: dict[ProviderTag, type[BaseProviderAdapterImpl]] = {
    ProviderTag.OPENAI: OpenAIAdapter,
    ProviderTag.GEMINI: GeminiAdapter,
    ProviderTag.ANTHROPIC: ClaudeAdapter,
}


class ProviderRegistry:
    """Builds adapters from explicit API keys and reuses them across requests.

    Keys are passed in once at startup; nothing here reads the environment.
    """

    def __init__(
        self,
        api_keys: Mapping[str, str],
        cost_tracker: CostTracker,
        timeout_seconds: float = 60.0,
    ) -> None:
        self._api_keys = dict(api_keys)
        self._cost_tracker = cost_tracker
        self._timeout = timeout_seconds
        self._adapters: dict[tuple[ProviderTag, str], BaseProviderAdapterImpl] = {}

    @property
    def cost_tracker(self) -> CostTracker:
        return self._cost_tracker

    def available_providers(self) -> list[ProviderTag]:
        return [tag for tag in ADAPTER_REGISTRY if self._api_keys.get(tag.value)]

    def get(self, provider: ProviderTag | str, model: str) -> BaseProviderAdapterImpl:
        """Adapter for ``(provider, model)``.

        Raises:
            ConfigurationError: unknown provider or no API key for it.
        """
        try:
            tag = ProviderTag(provider)
        except ValueError as exc:
            raise ConfigurationError(
                f"Unsupported provider: {provider}",
                context={"provider": str(provider), "model": model},
            ) from exc

        key = (tag, model)
        adapter = self._adapters.get(key)
        if adapter is not None:
            return adapter

        adapter_cls = ADAPTER_REGISTRY.get(tag)
        if adapter_cls is None:
            raise ConfigurationError(
                f"No adapter registered for provider: {tag.value}",
                context={"provider": tag.value, "model": model},
            )

        api_key = self._api_keys.get(tag.value, "")
        if not api_key:
            raise ConfigurationError(
                f"API key for {tag.value} is not configured",
                context={"provider": tag.value, "model": model},
            )

        adapter = adapter_cls(
            api_key=api_key,
            cost_tracker=self._cost_tracker,
            model_name=model,
            timeout_seconds=self._timeout,
        )
        self._adapters[key] = adapter
        log.info("provider_adapter_created", provider=tag.value, model=model)
        return adapter
