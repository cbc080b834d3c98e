"""Structured-output parser — raw model text to a JSON value, with one repair step."""

from __future__ import annotations

import json
import re
from typing import Any

from ai_gateway.core.logging import get_logger
from ai_gateway.core.types import ParseResult

log = get_logger(__name__)

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*(.*?)\s*```", re.DOTALL)

_CLOSERS = {"{": "}", "[": "]"}


class ResponseParser:
    """Parse structured model output into a JSON value.

    Parsing strategy:
    - Direct ``json.loads`` on the stripped text
    - One repair step: drop markdown fences and surrounding prose, keep
      the largest balanced ``{...}`` or ``[...]`` block, parse that

    Never raises; the outcome is a ``ParseResult``.
    """

    def parse_structured(self, raw: str) -> ParseResult:
        direct = self._try_load(raw.strip())
        if direct.ok:
            return direct

        candidate = self._repair(raw)
        if candidate is None:
            log.warning("structured_parse_failed", stage="repair", response_preview=raw[:200])
            return ParseResult.failure(f"No JSON value found: {direct.error}")

        repaired = self._try_load(candidate)
        if not repaired.ok:
            log.warning("structured_parse_failed", stage="repair", response_preview=raw[:200])
            return ParseResult.failure(f"Repair failed: {repaired.error}")

        log.info("structured_output_repaired", original_length=len(raw), repaired_length=len(candidate))
        return ParseResult.success(repaired.value, repaired=True)

    # ── Steps ────────────────────────────────────────────────────

    @staticmethod
    def _try_load(text: str) -> ParseResult:
        if not text:
            return ParseResult.failure("empty response")
        try:
            value: Any = json.loads(text)
        except json.JSONDecodeError as exc:
            return ParseResult.failure(str(exc))
        return ParseResult.success(value)

    def _repair(self, raw: str) -> str | None:
        """Extract the most plausible JSON block from decorated text."""
        fence = _FENCE_RE.search(raw)
        text = fence.group(1) if fence else raw

        best: str | None = None
        start = 0
        while start < len(text):
            if text[start] not in _CLOSERS:
                start += 1
                continue
            end = self._balanced_end(text, start)
            if end is None:
                start += 1
                continue
            block = text[start:end + 1]
            if best is None or len(block) > len(best):
                best = block
            # Nested blocks are always shorter than their parent
            start = end + 1
        return best

    @staticmethod
    def _balanced_end(text: str, start: int) -> int | None:
        """Index of the bracket closing ``text[start]``, skipping string literals."""
        stack = [_CLOSERS[text[start]]]
        in_string = False
        escaped = False
        for i in range(start + 1, len(text)):
            char = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char in _CLOSERS:
                stack.append(_CLOSERS[char])
            elif char in ("}", "]"):
                if char != stack[-1]:
                    return None
                stack.pop()
                if not stack:
                    return i
        return None
