"""Gemini adapter using the google-genai SDK."""

from __future__ import annotations

from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types

from ai_gateway.core.exceptions import GatewayBaseError
from ai_gateway.core.logging import get_logger
from ai_gateway.core.types import AIRequest, MessageRole, ProviderTag, TokenUsage
from ai_gateway.llm.base import DEFAULT_TEMPERATURE, BaseProviderAdapterImpl
from ai_gateway.llm.cost_tracker import CostTracker

log = get_logger(__name__)

_BLOCKED_FINISH_REASONS = frozenset({"SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST", "SPII", "RECITATION"})


class GeminiAdapter(BaseProviderAdapterImpl):
    """Gemini adapter.

    System messages go to ``system_instruction``; assistant turns map to
    the ``model`` role. JSON mode via ``response_mime_type``.
    Usage fields: ``prompt_token_count`` / ``candidates_token_count``.
    """

    def __init__(
        self,
        api_key: str,
        cost_tracker: CostTracker,
        model_name: str = "gemini-2.5-flash",
        timeout_seconds: float = 60.0,
        client: genai.Client | None = None,
    ) -> None:
        super().__init__(
            provider=ProviderTag.GEMINI,
            model_name=model_name,
            cost_tracker=cost_tracker,
            timeout_seconds=timeout_seconds,
        )
        self._client = client or genai.Client(api_key=api_key)

    async def _call_llm(self, request: AIRequest) -> tuple[str, str, TokenUsage]:
        contents = [
            genai_types.Content(
                role="model" if m.role == MessageRole.ASSISTANT else "user",
                parts=[genai_types.Part(text=m.content)],
            )
            for m in request.conversation
        ]

        config = genai_types.GenerateContentConfig(
            system_instruction=request.system_text or None,
            temperature=request.temperature if request.temperature is not None else DEFAULT_TEMPERATURE,
            max_output_tokens=request.max_output_tokens,
            response_mime_type="application/json" if request.structured_output else None,
        )

        response = await self._client.aio.models.generate_content(
            model=self._model_name,
            contents=contents,
            config=config,
        )

        metadata = response.usage_metadata
        usage = TokenUsage(
            input_tokens=(metadata.prompt_token_count or 0) if metadata else 0,
            output_tokens=(metadata.candidates_token_count or 0) if metadata else 0,
        )

        feedback = response.prompt_feedback
        if feedback is not None and feedback.block_reason is not None:
            raise self._safety(f"Gemini blocked the prompt: {feedback.block_reason}", usage)
        if response.candidates:
            finish = response.candidates[0].finish_reason
            finish_name = getattr(finish, "name", str(finish or ""))
            if finish_name in _BLOCKED_FINISH_REASONS:
                raise self._safety(f"Gemini stopped generation: {finish_name}", usage)

        content = response.text or ""

        return content, response.model_version or self._model_name, usage

    def _map_error(self, exc: Exception) -> GatewayBaseError:
        if isinstance(exc, genai_errors.APIError):
            return self._status_to_error(exc, exc.code)
        return self._transient(exc, "malformed_response")
