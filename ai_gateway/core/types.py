"""System-wide shared types — the single source of truth for gateway data structures."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from uuid_extensions import uuid7

from ai_gateway.core.constants import CREDIT_FEATURE_PREFIX, PLAN_SOURCE_MONITOR, UNLIMITED
from ai_gateway.core.exceptions import ResponseFormatError


# ── Enums ────────────────────────────────────────────────────────

class ProviderTag(str, Enum):
    OPENAI = "openai"
    GEMINI = "gemini"
    ANTHROPIC = "anthropic"


class MessageRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class GatewayState(str, Enum):
    """Orchestrator states, in the order a request can visit them."""

    RECEIVED = "RECEIVED"
    QUOTA_CHECKED = "QUOTA_CHECKED"
    ROUTED = "ROUTED"
    PRIMARY_ATTEMPTED = "PRIMARY_ATTEMPTED"
    PRIMARY_FAILED = "PRIMARY_FAILED"
    BACKUP_ATTEMPTED = "BACKUP_ATTEMPTED"
    BACKUP_FAILED = "BACKUP_FAILED"
    SUCCESS = "SUCCESS"
    USAGE_RECORDED = "USAGE_RECORDED"
    RESPONDED = "RESPONDED"


class CreditClass(str, Enum):
    """Daily credit bucket a call draws from.

    Quality-mode calls spend premium credits, speed-mode calls standard ones.
    """

    PREMIUM = "premium"
    STANDARD = "standard"

    @classmethod
    def for_mode(cls, mode: str) -> CreditClass:
        return cls.PREMIUM if mode == "quality" else cls.STANDARD

    @property
    def feature_type(self) -> str:
        """Entitlement feature key holding this bucket's daily limit."""
        return f"{CREDIT_FEATURE_PREFIX}{self.value}"


class OutcomeStatus(str, Enum):
    """Closed set of results ``AIGateway.invoke()`` can return."""

    SUCCESS = "SUCCESS"
    LIMIT_EXCEEDED = "LIMIT_EXCEEDED"
    AI_UNAVAILABLE = "AI_UNAVAILABLE"
    INVALID_RESPONSE = "INVALID_RESPONSE"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"


# ── Provider Call Types ──────────────────────────────────────────

@dataclass(frozen=True)
class AIMessage:
    role: MessageRole
    content: str


@dataclass
class AIRequest:
    """Uniform request shape accepted by every provider adapter."""

    messages: list[AIMessage]
    structured_output: bool = False
    temperature: float | None = None
    max_output_tokens: int | None = None

    def __post_init__(self) -> None:
        if not self.messages:
            msg = "AIRequest needs at least one message"
            raise ValueError(msg)

    @property
    def system_text(self) -> str:
        return "\n\n".join(m.content for m in self.messages if m.role == MessageRole.SYSTEM)

    @property
    def conversation(self) -> list[AIMessage]:
        return [m for m in self.messages if m.role != MessageRole.SYSTEM]


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class AIResponse:
    """Normalized adapter output, identical for every vendor."""

    content: str
    model: str
    provider: ProviderTag
    usage: TokenUsage = field(default_factory=TokenUsage)


@dataclass
class ParseResult:
    """Outcome of a structured-output parse: a value or a typed failure."""

    ok: bool
    value: Any = None
    repaired: bool = False
    error: str = ""

    @classmethod
    def success(cls, value: Any, repaired: bool = False) -> ParseResult:
        return cls(ok=True, value=value, repaired=repaired)

    @classmethod
    def failure(cls, error: str) -> ParseResult:
        return cls(ok=False, error=error)

    def unwrap(self) -> Any:
        """Return the parsed value or raise ResponseFormatError."""
        if not self.ok:
            raise ResponseFormatError(self.error, {"repaired": self.repaired})
        return self.value


# ── Accounting ───────────────────────────────────────────────────

@dataclass(frozen=True)
class UsageEvent:
    """Immutable record of one completed AI invocation.

    Append-only: once written, events are never updated or deleted.
    """

    user_id: str
    service: str
    feature_type: str
    action_type: str
    model_used: str
    input_tokens: int = 0
    output_tokens: int = 0
    estimated_cost: float = 0.0
    credit_class: CreditClass = CreditClass.STANDARD
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: str(uuid7()))


# ── Entitlements & Plans ─────────────────────────────────────────

@dataclass(frozen=True)
class PlanEntitlement:
    """Per-feature limits for a plan tier. -1 = unlimited, 0 = disabled, None = no limit on that window."""

    service: str
    plan_tier: str
    feature_type: str
    daily_limit: int | None = None
    monthly_limit: int | None = None

    def __post_init__(self) -> None:
        for name in ("daily_limit", "monthly_limit"):
            value = getattr(self, name)
            if value is not None and value < UNLIMITED:
                msg = f"{name} must be -1, 0 or positive: {value}"
                raise ValueError(msg)


@dataclass(frozen=True)
class MonitorGrant:
    """Time-boxed plan override, independent of billing state."""

    user_id: str
    service: str
    plan_type: str
    start_at: datetime
    expires_at: datetime

    def is_active(self, now: datetime) -> bool:
        return self.start_at <= now < self.expires_at


@dataclass(frozen=True)
class Subscription:
    """Billing subscription as read from the billing source.

    Current-schema rows carry ``plan_tier``; legacy rows only carry the
    charged ``amount`` and billing ``period``.
    """

    subscription_id: str
    user_id: str
    service: str
    status: str
    created_at: datetime
    plan_tier: str | None = None
    amount: int | None = None
    period: str | None = None

    @property
    def is_legacy(self) -> bool:
        return not self.plan_tier


@dataclass(frozen=True)
class PlanResolution:
    plan_tier: str
    source: str
    expires_at: datetime | None = None

    @property
    def is_monitor(self) -> bool:
        return self.source == PLAN_SOURCE_MONITOR


@dataclass(frozen=True)
class QuotaStatus:
    """Snapshot answer of the quota ledger. Not a reservation."""

    is_within_limit: bool
    feature_usage: int
    feature_limit: int
    feature_remaining: int
    daily_usage: int
    daily_limit: int
    monthly_usage: int = 0
    monthly_limit: int = UNLIMITED
    total_usage: int = 0
    total_limit: int = UNLIMITED
    total_monthly_usage: int = 0
    total_monthly_limit: int = UNLIMITED
    credit_class: CreditClass | None = None
    credit_usage: int = 0
    credit_limit: int = UNLIMITED
    # Premium bucket is spent but a standard call would still be admitted
    standard_available: bool = False
    plan_tier: str = ""
    plan_source: str = ""
    degraded: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_within_limit": self.is_within_limit,
            "feature_usage": self.feature_usage,
            "feature_limit": self.feature_limit,
            "feature_remaining": self.feature_remaining,
            "daily_usage": self.daily_usage,
            "daily_limit": self.daily_limit,
            "monthly_usage": self.monthly_usage,
            "monthly_limit": self.monthly_limit,
            "total_usage": self.total_usage,
            "total_limit": self.total_limit,
            "total_monthly_usage": self.total_monthly_usage,
            "total_monthly_limit": self.total_monthly_limit,
            "credit_class": self.credit_class.value if self.credit_class else None,
            "credit_usage": self.credit_usage,
            "credit_limit": self.credit_limit,
            "standard_available": self.standard_available,
            "plan_tier": self.plan_tier,
            "plan_source": self.plan_source,
            "degraded": self.degraded,
        }


@dataclass(frozen=True)
class WindowUsage:
    used: int
    limit: int

    @property
    def remaining(self) -> int:
        if self.limit == UNLIMITED:
            return UNLIMITED
        return max(0, self.limit - self.used)

    def to_dict(self) -> dict[str, int]:
        return {"used": self.used, "limit": self.limit, "remaining": self.remaining}


@dataclass(frozen=True)
class UsageSummary:
    """Per-user standing across the service-wide and credit windows, for display."""

    user_id: str
    service: str
    plan_tier: str
    plan_source: str
    daily: WindowUsage
    monthly: WindowUsage
    premium: WindowUsage
    standard: WindowUsage

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan_tier": self.plan_tier,
            "plan_source": self.plan_source,
            "daily": self.daily.to_dict(),
            "monthly": self.monthly.to_dict(),
            "premium": self.premium.to_dict(),
            "standard": self.standard.to_dict(),
        }


# ── Routing ──────────────────────────────────────────────────────

@dataclass(frozen=True)
class RoutingRule:
    service: str
    plan_tier: str
    phase: str
    primary_provider: ProviderTag
    primary_model: str
    backup_provider: ProviderTag | None = None
    backup_model: str | None = None

    def to_route(self) -> Route:
        return Route(
            provider=self.primary_provider,
            model=self.primary_model,
            backup_provider=self.backup_provider,
            backup_model=self.backup_model,
        )


@dataclass(frozen=True)
class Route:
    provider: ProviderTag
    model: str
    backup_provider: ProviderTag | None = None
    backup_model: str | None = None

    @property
    def has_backup(self) -> bool:
        if self.backup_provider is None or not self.backup_model:
            return False
        return (self.backup_provider, self.backup_model) != (self.provider, self.model)


# ── Gateway Result ───────────────────────────────────────────────

@dataclass
class GatewayResult:
    """What ``invoke()`` hands back. Nothing else crosses the gateway boundary."""

    status: OutcomeStatus
    content: str = ""
    parsed: Any = None
    model: str = ""
    provider: ProviderTag | None = None
    usage: TokenUsage = field(default_factory=TokenUsage)
    quota: QuotaStatus | None = None
    used_backup: bool = False
    attempts: int = 0
    error_message: str = ""
    trail: list[GatewayState] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == OutcomeStatus.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"status": self.status.value}
        if self.status == OutcomeStatus.SUCCESS:
            data.update(
                content=self.content,
                model=self.model,
                usage={
                    "input_tokens": self.usage.input_tokens,
                    "output_tokens": self.usage.output_tokens,
                },
            )
            if self.parsed is not None:
                data["parsed"] = self.parsed
        elif self.status == OutcomeStatus.LIMIT_EXCEEDED and self.quota is not None:
            data.update(
                feature_usage=self.quota.feature_usage,
                feature_limit=self.quota.feature_limit,
                feature_remaining=self.quota.feature_remaining,
                daily_usage=self.quota.daily_usage,
                daily_limit=self.quota.daily_limit,
            )
            if self.quota.credit_class is not None:
                data.update(
                    credit_class=self.quota.credit_class.value,
                    credit_usage=self.quota.credit_usage,
                    credit_limit=self.quota.credit_limit,
                    standard_available=self.quota.standard_available,
                )
        return data
