"""Base provider adapter with common logic (timeout, error mapping, cost tracking)."""

from __future__ import annotations

import asyncio
from abc import abstractmethod

from ai_gateway.core.exceptions import (
    ConfigurationError,
    GatewayBaseError,
    ProviderRejectedError,
    ProviderTransientError,
)
from ai_gateway.core.interfaces import BaseProviderAdapter
from ai_gateway.core.logging import get_logger
from ai_gateway.core.types import AIRequest, AIResponse, ProviderTag, TokenUsage
from ai_gateway.llm.cost_tracker import CostTracker

log = get_logger(__name__)

DEFAULT_TEMPERATURE = 0.8


def _billed(usage: TokenUsage) -> TokenUsage | None:
    return usage if usage.total_tokens > 0 else None


class BaseProviderAdapterImpl(BaseProviderAdapter):
    """Base implementation with timeout, vendor-error mapping and cost tracking.

    Subclasses implement ``_call_llm()`` for the vendor wire call and
    ``_map_error()`` to translate that vendor's exception types.
    """

    def __init__(
        self,
        provider: ProviderTag,
        model_name: str,
        cost_tracker: CostTracker,
        timeout_seconds: float = 60.0,
    ) -> None:
        self.provider = provider
        self._model_name = model_name
        self._cost_tracker = cost_tracker
        self._timeout = timeout_seconds

    @property
    def model(self) -> str:
        return self._model_name

    @abstractmethod
    async def _call_llm(self, request: AIRequest) -> tuple[str, str, TokenUsage]:
        """Provider-specific API call.

        Returns:
            Tuple of (content, model_reported_by_vendor, usage)
        """
        ...

    @abstractmethod
    def _map_error(self, exc: Exception) -> GatewayBaseError:
        """Translate a vendor SDK exception into the gateway taxonomy."""
        ...

    async def generate(self, request: AIRequest) -> AIResponse:
        """Run one completion; only gateway exceptions leave this method."""
        async with self._cost_tracker.track(self.provider.value, self._model_name) as cost_acc:
            try:
                content, model_reported, usage = await asyncio.wait_for(
                    self._call_llm(request),
                    timeout=self._timeout,
                )
            except asyncio.TimeoutError as exc:
                log.warning(
                    "provider_timeout",
                    provider=self.provider.value,
                    model=self._model_name,
                    timeout=self._timeout,
                )
                raise ProviderTransientError(
                    f"Timeout after {self._timeout}s",
                    reason="timeout",
                    context={"provider": self.provider.value, "model": self._model_name},
                ) from exc
            except ProviderTransientError as exc:
                # Blocked or empty completions are still billed
                if exc.usage is not None:
                    cost_acc.set_usage(exc.usage.input_tokens, exc.usage.output_tokens, succeeded=False)
                raise
            except GatewayBaseError:
                raise
            except Exception as exc:
                mapped = self._map_error(exc)
                log.warning(
                    "provider_call_failed",
                    provider=self.provider.value,
                    model=self._model_name,
                    error_type=type(exc).__name__,
                    mapped_to=type(mapped).__name__,
                    error=str(exc),
                )
                raise mapped from exc

            cost_acc.set_usage(usage.input_tokens, usage.output_tokens)

        if not content.strip():
            raise ProviderTransientError(
                f"{self.provider.value} returned an empty response",
                reason="empty_response",
                context={"provider": self.provider.value, "model": self._model_name},
                usage=_billed(usage),
            )

        return AIResponse(
            content=content,
            model=model_reported or self._model_name,
            provider=self.provider,
            usage=usage,
        )

    # ── Shared error mapping helpers ─────────────────────────────

    def _transient(self, exc: Exception, reason: str, status_code: int | None = None) -> ProviderTransientError:
        return ProviderTransientError(
            str(exc) or type(exc).__name__,
            reason=reason,
            context={
                "provider": self.provider.value,
                "model": self._model_name,
                "status_code": status_code,
            },
        )

    def _safety(self, message: str, usage: TokenUsage) -> ProviderTransientError:
        """Vendor safety stop; carries whatever the vendor billed for the call."""
        return ProviderTransientError(
            message,
            reason="safety",
            context={"provider": self.provider.value, "model": self._model_name},
            usage=_billed(usage),
        )

    def _configuration(self, exc: Exception, status_code: int | None = None) -> ConfigurationError:
        return ConfigurationError(
            f"{self.provider.value} rejected the credentials: {exc}",
            context={"provider": self.provider.value, "status_code": status_code},
        )

    def _status_to_error(self, exc: Exception, status_code: int | None) -> GatewayBaseError:
        """Map an HTTP status from any vendor onto the taxonomy."""
        if status_code in (401, 403):
            return self._configuration(exc, status_code)
        if status_code == 429:
            return self._transient(exc, "rate_limited", status_code)
        if status_code is not None and status_code >= 500:
            return self._transient(exc, "server_error", status_code)
        if status_code == 404:
            return ConfigurationError(
                f"{self.provider.value} does not serve model {self._model_name}: {exc}",
                context={"provider": self.provider.value, "model": self._model_name, "status_code": status_code},
            )
        if status_code is not None and 400 <= status_code < 500:
            return ProviderRejectedError(
                f"{self.provider.value} rejected the request: {exc}",
                status_code=status_code,
                context={"provider": self.provider.value, "model": self._model_name},
            )
        return self._transient(exc, "connection", status_code)
