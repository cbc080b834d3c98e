"""Abstract base classes — adapters and external collaborators implement these interfaces."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from ai_gateway.core.types import (
    AIRequest,
    AIResponse,
    CreditClass,
    MonitorGrant,
    PlanEntitlement,
    ProviderTag,
    RoutingRule,
    Subscription,
    UsageEvent,
)


class BaseProviderAdapter(ABC):
    """Interface for all AI vendor adapters."""

    provider: ProviderTag

    @property
    @abstractmethod
    def model(self) -> str:
        """Model this adapter sends requests to."""
        ...

    @abstractmethod
    async def generate(self, request: AIRequest) -> AIResponse:
        """Run one completion.

        Raises only ProviderTransientError or ConfigurationError; vendor
        exception types never escape.
        """
        ...


class UsageStore(ABC):
    """Append-only store of UsageEvents with range counts."""

    @abstractmethod
    async def insert(self, event: UsageEvent) -> None:
        """Append one event. Idempotent on ``event_id``, so writes can be retried."""
        ...

    @abstractmethod
    async def count(
        self,
        user_id: str,
        service: str,
        feature_type: str | None,
        start: datetime,
        end: datetime,
        credit_class: CreditClass | None = None,
    ) -> int:
        """Count events in ``[start, end)``.

        ``feature_type=None`` counts the whole service; ``credit_class``
        narrows the count to one credit bucket.
        """
        ...


class EntitlementStore(ABC):
    """Read-only view of plan entitlements."""

    @abstractmethod
    async def get(self, service: str, plan_tier: str, feature_type: str) -> PlanEntitlement | None:
        ...


class RoutingRuleStore(ABC):
    """Routing rules keyed by (service, plan_tier, phase)."""

    @abstractmethod
    async def get(self, service: str, plan_tier: str, phase: str) -> RoutingRule | None:
        ...

    @abstractmethod
    async def upsert(self, rule: RoutingRule) -> None:
        """Administrative write path."""
        ...


class SubscriptionSource(ABC):
    """Billing subscriptions, queried read-only."""

    @abstractmethod
    async def find_active(self, user_id: str, service: str) -> list[Subscription]:
        """Active subscriptions, newest first."""
        ...


class MonitorGrantSource(ABC):
    """Monitor grants, queried read-only."""

    @abstractmethod
    async def find_active(self, user_id: str, service: str, now: datetime) -> list[MonitorGrant]:
        """Grants with ``start_at <= now < expires_at``."""
        ...
