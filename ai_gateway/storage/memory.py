"""In-process store implementations for development and tests."""

from __future__ import annotations

from datetime import datetime

from ai_gateway.core.constants import ACTIVE_SUBSCRIPTION_STATUSES
from ai_gateway.core.interfaces import (
    EntitlementStore,
    MonitorGrantSource,
    RoutingRuleStore,
    SubscriptionSource,
    UsageStore,
)
from ai_gateway.core.types import (
    CreditClass,
    MonitorGrant,
    PlanEntitlement,
    RoutingRule,
    Subscription,
    UsageEvent,
)


class InMemoryUsageStore(UsageStore):
    """Append-only list of events."""

    def __init__(self) -> None:
        self.events: list[UsageEvent] = []
        self._ids: set[str] = set()

    async def insert(self, event: UsageEvent) -> None:
        if event.event_id in self._ids:
            return
        self._ids.add(event.event_id)
        self.events.append(event)

    async def count(
        self,
        user_id: str,
        service: str,
        feature_type: str | None,
        start: datetime,
        end: datetime,
        credit_class: CreditClass | None = None,
    ) -> int:
        return sum(
            1
            for e in self.events
            if e.user_id == user_id
            and e.service == service
            and (feature_type is None or e.feature_type == feature_type)
            and (credit_class is None or e.credit_class == credit_class)
            and start <= e.created_at < end
        )


class InMemoryEntitlementStore(EntitlementStore):
    def __init__(self, entitlements: list[PlanEntitlement] | None = None) -> None:
        self._rows: dict[tuple[str, str, str], PlanEntitlement] = {}
        for entitlement in entitlements or []:
            self.put(entitlement)

    def put(self, entitlement: PlanEntitlement) -> None:
        key = (entitlement.service, entitlement.plan_tier, entitlement.feature_type)
        self._rows[key] = entitlement

    async def get(self, service: str, plan_tier: str, feature_type: str) -> PlanEntitlement | None:
        return self._rows.get((service, plan_tier, feature_type))


class InMemoryRoutingRuleStore(RoutingRuleStore):
    def __init__(self, rules: list[RoutingRule] | None = None) -> None:
        self._rows: dict[tuple[str, str, str], RoutingRule] = {}
        self.reads = 0
        for rule in rules or []:
            self._rows[(rule.service, rule.plan_tier, rule.phase)] = rule

    async def get(self, service: str, plan_tier: str, phase: str) -> RoutingRule | None:
        self.reads += 1
        return self._rows.get((service, plan_tier, phase))

    async def upsert(self, rule: RoutingRule) -> None:
        self._rows[(rule.service, rule.plan_tier, rule.phase)] = rule


class InMemorySubscriptionSource(SubscriptionSource):
    def __init__(self, subscriptions: list[Subscription] | None = None) -> None:
        self._rows: list[Subscription] = list(subscriptions or [])

    def add(self, subscription: Subscription) -> None:
        self._rows.append(subscription)

    async def find_active(self, user_id: str, service: str) -> list[Subscription]:
        rows = [
            s for s in self._rows
            if s.user_id == user_id and s.service == service and s.status in ACTIVE_SUBSCRIPTION_STATUSES
        ]
        return sorted(rows, key=lambda s: s.created_at, reverse=True)


class InMemoryMonitorGrantSource(MonitorGrantSource):
    def __init__(self, grants: list[MonitorGrant] | None = None) -> None:
        self._rows: list[MonitorGrant] = list(grants or [])

    def add(self, grant: MonitorGrant) -> None:
        self._rows.append(grant)

    async def find_active(self, user_id: str, service: str, now: datetime) -> list[MonitorGrant]:
        return [
            g for g in self._rows
            if g.user_id == user_id and g.service == service and g.is_active(now)
        ]
