"""OpenAI chat-completions adapter using the OpenAI SDK."""

from __future__ import annotations

import openai
from openai import AsyncOpenAI

from ai_gateway.core.exceptions import GatewayBaseError
from ai_gateway.core.logging import get_logger
from ai_gateway.core.types import AIRequest, ProviderTag, TokenUsage
from ai_gateway.llm.base import DEFAULT_TEMPERATURE, BaseProviderAdapterImpl
from ai_gateway.llm.cost_tracker import CostTracker

log = get_logger(__name__)


class OpenAIAdapter(BaseProviderAdapterImpl):
    """OpenAI adapter.

    Uses JSON mode (``response_format=json_object``) for structured output.
    Usage fields: ``prompt_tokens`` / ``completion_tokens``.
    """

    def __init__(
        self,
        api_key: str,
        cost_tracker: CostTracker,
        model_name: str = "gpt-4o-mini",
        timeout_seconds: float = 60.0,
        client: AsyncOpenAI | None = None,
    ) -> None:
        super().__init__(
            provider=ProviderTag.OPENAI,
            model_name=model_name,
            cost_tracker=cost_tracker,
            timeout_seconds=timeout_seconds,
        )
        # SDK retries are disabled: the gateway owns the single fallback.
        self._client = client or AsyncOpenAI(api_key=api_key, max_retries=0, timeout=timeout_seconds)

    async def _call_llm(self, request: AIRequest) -> tuple[str, str, TokenUsage]:
        kwargs: dict = {
            "model": self._model_name,
            "messages": [{"role": m.role.value, "content": m.content} for m in request.messages],
            "temperature": request.temperature if request.temperature is not None else DEFAULT_TEMPERATURE,
        }
        if request.max_output_tokens is not None:
            kwargs["max_tokens"] = request.max_output_tokens
        if request.structured_output:
            kwargs["response_format"] = {"type": "json_object"}

        response = await self._client.chat.completions.create(**kwargs)

        raw_usage = response.usage
        usage = TokenUsage(
            input_tokens=raw_usage.prompt_tokens if raw_usage else 0,
            output_tokens=raw_usage.completion_tokens if raw_usage else 0,
        )

        choice = response.choices[0]
        if choice.finish_reason == "content_filter":
            raise self._safety("OpenAI content filter blocked the completion", usage)
        content = choice.message.content or ""

        return content, response.model or self._model_name, usage

    def _map_error(self, exc: Exception) -> GatewayBaseError:
        if isinstance(exc, openai.APITimeoutError):
            return self._transient(exc, "timeout")
        if isinstance(exc, openai.APIConnectionError):
            return self._transient(exc, "connection")
        if isinstance(exc, openai.APIStatusError):
            return self._status_to_error(exc, exc.status_code)
        return self._transient(exc, "malformed_response")
