"""SQLAlchemy async implementations of the gateway stores."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import and_, func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from ai_gateway.core.exceptions import UsageStoreError
from ai_gateway.core.interfaces import (
    EntitlementStore,
    MonitorGrantSource,
    RoutingRuleStore,
    SubscriptionSource,
    UsageStore,
)
from ai_gateway.core.logging import get_logger
from ai_gateway.core.types import (
    CreditClass,
    MonitorGrant,
    PlanEntitlement,
    ProviderTag,
    RoutingRule,
    Subscription,
    UsageEvent,
)
from ai_gateway.storage.db import (
    ai_usage_events,
    monitor_grants,
    plan_entitlements,
    routing_rules,
    subscriptions,
)

log = get_logger(__name__)

# Errors that mean "the database could not be reached or refused the query"
_STORE_ERRORS = (SQLAlchemyError, OSError)


def _as_utc(value: datetime) -> datetime:
    """Normalize to aware UTC. SQLite hands back naive datetimes."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _store_error(operation: str, exc: Exception, **context: Any) -> UsageStoreError:
    log.error("store_query_failed", operation=operation, error=str(exc), **context)
    return UsageStoreError(f"{operation} failed: {exc}", context={"operation": operation, **context})


class SqlUsageStore(UsageStore):
    """``ai_usage_events`` table."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def insert(self, event: UsageEvent) -> None:
        """Write one event. Re-inserting an existing ``event_id`` is a no-op."""
        values = {
            "event_id": event.event_id,
            "user_id": event.user_id,
            "service": event.service,
            "feature_type": event.feature_type,
            "credit_class": event.credit_class.value,
            "action_type": event.action_type,
            "model_used": event.model_used,
            "input_tokens": event.input_tokens,
            "output_tokens": event.output_tokens,
            "estimated_cost": event.estimated_cost,
            "created_at": _as_utc(event.created_at),
            "metadata": dict(event.metadata),
        }
        try:
            async with self._engine.begin() as conn:
                # A retried write whose first attempt committed must not fail
                stmt = _dialect_insert(conn.dialect.name, ai_usage_events, values)
                await conn.execute(stmt.on_conflict_do_nothing(index_elements=["event_id"]))
        except _STORE_ERRORS as exc:
            raise _store_error("usage_insert", exc, event_id=event.event_id) from exc

    async def count(
        self,
        user_id: str,
        service: str,
        feature_type: str | None,
        start: datetime,
        end: datetime,
        credit_class: CreditClass | None = None,
    ) -> int:
        conditions = [
            ai_usage_events.c.user_id == user_id,
            ai_usage_events.c.service == service,
            ai_usage_events.c.created_at >= _as_utc(start),
            ai_usage_events.c.created_at < _as_utc(end),
        ]
        if feature_type is not None:
            conditions.append(ai_usage_events.c.feature_type == feature_type)
        if credit_class is not None:
            conditions.append(ai_usage_events.c.credit_class == credit_class.value)

        stmt = select(func.count()).select_from(ai_usage_events).where(and_(*conditions))
        try:
            async with self._engine.connect() as conn:
                result = await conn.execute(stmt)
                return int(result.scalar_one())
        except _STORE_ERRORS as exc:
            raise _store_error("usage_count", exc, user_id=user_id, service=service) from exc


class SqlEntitlementStore(EntitlementStore):
    """``plan_entitlements`` table."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def get(self, service: str, plan_tier: str, feature_type: str) -> PlanEntitlement | None:
        stmt = select(plan_entitlements).where(
            plan_entitlements.c.service == service,
            plan_entitlements.c.plan_tier == plan_tier,
            plan_entitlements.c.feature_type == feature_type,
        )
        try:
            async with self._engine.connect() as conn:
                row = (await conn.execute(stmt)).mappings().first()
        except _STORE_ERRORS as exc:
            raise _store_error("entitlement_get", exc, service=service, plan_tier=plan_tier) from exc
        if row is None:
            return None
        return PlanEntitlement(
            service=row["service"],
            plan_tier=row["plan_tier"],
            feature_type=row["feature_type"],
            daily_limit=row["daily_limit"],
            monthly_limit=row["monthly_limit"],
        )

    async def put(self, entitlement: PlanEntitlement) -> None:
        """Insert or replace; used by seeding and tests."""
        values = {
            "service": entitlement.service,
            "plan_tier": entitlement.plan_tier,
            "feature_type": entitlement.feature_type,
            "daily_limit": entitlement.daily_limit,
            "monthly_limit": entitlement.monthly_limit,
        }
        try:
            async with self._engine.begin() as conn:
                await conn.execute(
                    _upsert(conn.dialect.name, plan_entitlements, values, ["service", "plan_tier", "feature_type"])
                )
        except _STORE_ERRORS as exc:
            raise _store_error("entitlement_put", exc, service=entitlement.service) from exc


class SqlRoutingRuleStore(RoutingRuleStore):
    """``routing_rules`` table."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def get(self, service: str, plan_tier: str, phase: str) -> RoutingRule | None:
        stmt = select(routing_rules).where(
            routing_rules.c.service == service,
            routing_rules.c.plan_tier == plan_tier,
            routing_rules.c.phase == phase,
        )
        try:
            async with self._engine.connect() as conn:
                row = (await conn.execute(stmt)).mappings().first()
        except _STORE_ERRORS as exc:
            raise _store_error("routing_rule_get", exc, service=service, phase=phase) from exc
        if row is None:
            return None
        return RoutingRule(
            service=row["service"],
            plan_tier=row["plan_tier"],
            phase=row["phase"],
            primary_provider=ProviderTag(row["primary_provider"]),
            primary_model=row["primary_model"],
            backup_provider=ProviderTag(row["backup_provider"]) if row["backup_provider"] else None,
            backup_model=row["backup_model"],
        )

    async def upsert(self, rule: RoutingRule) -> None:
        values = {
            "service": rule.service,
            "plan_tier": rule.plan_tier,
            "phase": rule.phase,
            "primary_provider": rule.primary_provider.value,
            "primary_model": rule.primary_model,
            "backup_provider": rule.backup_provider.value if rule.backup_provider else None,
            "backup_model": rule.backup_model,
            "updated_at": datetime.now(timezone.utc),
        }
        try:
            async with self._engine.begin() as conn:
                await conn.execute(
                    _upsert(conn.dialect.name, routing_rules, values, ["service", "plan_tier", "phase"])
                )
        except _STORE_ERRORS as exc:
            raise _store_error("routing_rule_upsert", exc, service=rule.service, phase=rule.phase) from exc


class SqlSubscriptionSource(SubscriptionSource):
    """``subscriptions`` table, read-only."""

    def __init__(self, engine: AsyncEngine, active_statuses: frozenset[str]) -> None:
        self._engine = engine
        self._active_statuses = active_statuses

    async def find_active(self, user_id: str, service: str) -> list[Subscription]:
        stmt = (
            select(subscriptions)
            .where(
                subscriptions.c.user_id == user_id,
                subscriptions.c.service == service,
                subscriptions.c.status.in_(sorted(self._active_statuses)),
            )
            .order_by(subscriptions.c.created_at.desc())
        )
        try:
            async with self._engine.connect() as conn:
                rows = (await conn.execute(stmt)).mappings().all()
        except _STORE_ERRORS as exc:
            raise _store_error("subscription_find", exc, user_id=user_id, service=service) from exc
        return [
            Subscription(
                subscription_id=r["subscription_id"],
                user_id=r["user_id"],
                service=r["service"],
                status=r["status"],
                created_at=_as_utc(r["created_at"]),
                plan_tier=r["plan_tier"],
                amount=r["amount"],
                period=r["period"],
            )
            for r in rows
        ]


class SqlMonitorGrantSource(MonitorGrantSource):
    """``monitor_grants`` table, read-only."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def find_active(self, user_id: str, service: str, now: datetime) -> list[MonitorGrant]:
        now_utc = _as_utc(now)
        stmt = (
            select(monitor_grants)
            .where(
                monitor_grants.c.user_id == user_id,
                monitor_grants.c.service == service,
                monitor_grants.c.start_at <= now_utc,
                monitor_grants.c.expires_at > now_utc,
            )
            .order_by(monitor_grants.c.expires_at.desc())
        )
        try:
            async with self._engine.connect() as conn:
                rows = (await conn.execute(stmt)).mappings().all()
        except _STORE_ERRORS as exc:
            raise _store_error("monitor_find", exc, user_id=user_id, service=service) from exc
        return [
            MonitorGrant(
                user_id=r["user_id"],
                service=r["service"],
                plan_type=r["plan_type"],
                start_at=_as_utc(r["start_at"]),
                expires_at=_as_utc(r["expires_at"]),
            )
            for r in rows
        ]


def _dialect_insert(dialect: str, table, values: dict[str, Any]):
    """INSERT supporting ON CONFLICT clauses, for PostgreSQL and SQLite."""
    if dialect == "postgresql":
        return postgresql.insert(table).values(**values)
    if dialect == "sqlite":
        return sqlite.insert(table).values(**values)
    msg = f"ON CONFLICT inserts not supported on dialect {dialect}"
    raise UsageStoreError(msg, context={"dialect": dialect})


def _upsert(dialect: str, table, values: dict[str, Any], keys: list[str]):
    """INSERT ... ON CONFLICT DO UPDATE."""
    stmt = _dialect_insert(dialect, table, values)
    updates = {k: stmt.excluded[k] for k in values if k not in keys}
    return stmt.on_conflict_do_update(index_elements=keys, set_=updates)
