"""Claude adapter using the Anthropic SDK."""

from __future__ import annotations

import anthropic
from anthropic import AsyncAnthropic

from ai_gateway.core.exceptions import GatewayBaseError
from ai_gateway.core.logging import get_logger
from ai_gateway.core.types import AIRequest, ProviderTag, TokenUsage
from ai_gateway.llm.base import DEFAULT_TEMPERATURE, BaseProviderAdapterImpl
from ai_gateway.llm.cost_tracker import CostTracker

log = get_logger(__name__)

DEFAULT_MAX_TOKENS = 4096

_JSON_INSTRUCTION = "Respond with a single valid JSON value and nothing else."


class ClaudeAdapter(BaseProviderAdapterImpl):
    """Claude adapter.

    Uses Anthropic SDK with:
    - Prompt caching on the system prompt
    - An explicit JSON instruction for structured output (no native JSON mode)
    Usage fields: ``input_tokens`` / ``output_tokens``.
    """

    def __init__(
        self,
        api_key: str,
        cost_tracker: CostTracker,
        model_name: str = "claude-haiku-4-5",
        timeout_seconds: float = 60.0,
        client: AsyncAnthropic | None = None,
    ) -> None:
        super().__init__(
            provider=ProviderTag.ANTHROPIC,
            model_name=model_name,
            cost_tracker=cost_tracker,
            timeout_seconds=timeout_seconds,
        )
        self._client = client or AsyncAnthropic(api_key=api_key, max_retries=0, timeout=timeout_seconds)

    async def _call_llm(self, request: AIRequest) -> tuple[str, str, TokenUsage]:
        system_text = request.system_text
        if request.structured_output:
            system_text = f"{system_text}\n\n{_JSON_INSTRUCTION}" if system_text else _JSON_INSTRUCTION

        kwargs: dict = {
            "model": self._model_name,
            "max_tokens": request.max_output_tokens or DEFAULT_MAX_TOKENS,
            "messages": [{"role": m.role.value, "content": m.content} for m in request.conversation],
            "temperature": request.temperature if request.temperature is not None else DEFAULT_TEMPERATURE,
        }
        if system_text:
            # System prompt with cache control for cost reduction
            kwargs["system"] = [
                {
                    "type": "text",
                    "text": system_text,
                    "cache_control": {"type": "ephemeral"},
                }
            ]

        response = await self._client.messages.create(**kwargs)

        usage = TokenUsage(
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )
        if response.stop_reason == "refusal":
            raise self._safety("Claude refused the request", usage)

        content = ""
        for block in response.content:
            if block.type == "text":
                content += block.text

        return content, response.model or self._model_name, usage

    def _map_error(self, exc: Exception) -> GatewayBaseError:
        if isinstance(exc, anthropic.APITimeoutError):
            return self._transient(exc, "timeout")
        if isinstance(exc, anthropic.APIConnectionError):
            return self._transient(exc, "connection")
        if isinstance(exc, anthropic.APIStatusError):
            return self._status_to_error(exc, exc.status_code)
        return self._transient(exc, "malformed_response")
