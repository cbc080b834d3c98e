"""Plan-tier resolution: monitor grant > subscription > legacy subscription > default."""

from __future__ import annotations

from datetime import datetime, timezone

from ai_gateway.core.constants import (
    ACTIVE_SUBSCRIPTION_STATUSES,
    LEGACY_PRICE_TIERS,
    PLAN_SOURCE_DEFAULT,
    PLAN_SOURCE_LEGACY,
    PLAN_SOURCE_MONITOR,
    PLAN_SOURCE_SUBSCRIPTION,
)
from ai_gateway.core.exceptions import UsageStoreError
from ai_gateway.core.interfaces import MonitorGrantSource, SubscriptionSource
from ai_gateway.core.logging import get_logger
from ai_gateway.core.types import MonitorGrant, PlanResolution, Subscription

log = get_logger(__name__)


def legacy_tier_for(amount: int | None, period: str | None) -> str | None:
    """Tier implied by a legacy subscription's price, or None if unknown."""
    if amount is None or not period:
        return None
    return LEGACY_PRICE_TIERS.get(period, {}).get(amount)


class PlanResolver:
    """Determine the effective plan tier of a user for one service.

    Sources are read-only. A failing source is logged and treated as
    having no rows, which can only lower the resolved tier.
    """

    def __init__(
        self,
        subscriptions: SubscriptionSource,
        monitors: MonitorGrantSource,
        default_tier: str = "free",
    ) -> None:
        self._subscriptions = subscriptions
        self._monitors = monitors
        self._default_tier = default_tier

    @property
    def default_tier(self) -> str:
        return self._default_tier

    async def resolve(self, user_id: str, service: str, now: datetime | None = None) -> PlanResolution:
        now = now or datetime.now(timezone.utc)

        grant = await self._active_grant(user_id, service, now)
        if grant is not None:
            return PlanResolution(
                plan_tier=grant.plan_type,
                source=PLAN_SOURCE_MONITOR,
                expires_at=grant.expires_at,
            )

        subscriptions = await self._active_subscriptions(user_id, service)

        for sub in subscriptions:
            if not sub.is_legacy:
                return PlanResolution(plan_tier=sub.plan_tier or self._default_tier, source=PLAN_SOURCE_SUBSCRIPTION)

        for sub in subscriptions:
            tier = legacy_tier_for(sub.amount, sub.period)
            if tier is not None:
                return PlanResolution(plan_tier=tier, source=PLAN_SOURCE_LEGACY)
            log.warning(
                "legacy_subscription_unmapped",
                user_id=user_id,
                service=service,
                subscription_id=sub.subscription_id,
                amount=sub.amount,
                period=sub.period,
            )

        return PlanResolution(plan_tier=self._default_tier, source=PLAN_SOURCE_DEFAULT)

    # ── Sources ──────────────────────────────────────────────────

    async def _active_grant(self, user_id: str, service: str, now: datetime) -> MonitorGrant | None:
        try:
            grants = await self._monitors.find_active(user_id, service, now)
        except UsageStoreError as exc:
            log.warning("monitor_lookup_failed", user_id=user_id, service=service, error=str(exc))
            return None

        active = [g for g in grants if g.is_active(now)]
        if not active:
            return None
        # Several overlapping grants: the one running longest wins
        return max(active, key=lambda g: g.expires_at)

    async def _active_subscriptions(self, user_id: str, service: str) -> list[Subscription]:
        try:
            subscriptions = await self._subscriptions.find_active(user_id, service)
        except UsageStoreError as exc:
            log.warning("subscription_lookup_failed", user_id=user_id, service=service, error=str(exc))
            return []
        return [s for s in subscriptions if s.status in ACTIVE_SUBSCRIPTION_STATUSES]
