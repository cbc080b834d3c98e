"""Custom exception hierarchy for the AI usage gateway."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ai_gateway.core.types import QuotaStatus, TokenUsage


class GatewayBaseError(Exception):
    """Base exception for all gateway errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.context: dict[str, Any] = context or {}


# ── Configuration ────────────────────────────────────────────────

class ConfigurationError(GatewayBaseError):
    """Missing credentials, unknown provider or unusable routing data. Never retried."""


# ── Admission ────────────────────────────────────────────────────

class QuotaExceededError(GatewayBaseError):
    """User is over their entitlement for the feature."""

    def __init__(self, message: str, status: QuotaStatus, context: dict[str, Any] | None = None) -> None:
        super().__init__(message, context)
        self.status = status


class UsageStoreError(GatewayBaseError):
    """A backing store (usage, entitlements, routing, billing) could not be reached."""


# ── Provider Layer ───────────────────────────────────────────────

class ProviderTransientError(GatewayBaseError):
    """Vendor call failed in a way the backup route may recover from.

    ``reason`` is one of: timeout, connection, server_error, rate_limited,
    safety, empty_response, malformed_response.

    ``usage`` is set when the vendor billed tokens before the failure
    (safety stops, empty completions); the gateway still accounts for them.
    """

    def __init__(
        self,
        message: str,
        reason: str,
        context: dict[str, Any] | None = None,
        usage: TokenUsage | None = None,
    ) -> None:
        super().__init__(message, context)
        self.reason = reason
        self.usage = usage


class ProviderRejectedError(GatewayBaseError):
    """Vendor refused the request itself (4xx other than auth and rate limits).

    Ends the request; the backup is not tried.
    """

    def __init__(self, message: str, status_code: int | None = None, context: dict[str, Any] | None = None) -> None:
        super().__init__(message, context)
        self.status_code = status_code


class ResponseFormatError(GatewayBaseError):
    """Structured output could not be parsed, even after the repair step."""


# ── Accounting ───────────────────────────────────────────────────

class UsageRecordingError(GatewayBaseError):
    """A usage event could not be persisted. Always handled locally."""
