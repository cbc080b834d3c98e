"""Tests for the SQLAlchemy stores against in-memory SQLite (aiosqlite)."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import insert, select
from sqlalchemy.ext.asyncio import AsyncEngine

from ai_gateway.core.constants import ACTIVE_SUBSCRIPTION_STATUSES
from ai_gateway.core.exceptions import UsageStoreError
from ai_gateway.core.types import CreditClass, PlanEntitlement, ProviderTag, RoutingRule, UsageEvent
from ai_gateway.storage.db import (
    ai_usage_events,
    close_engine,
    create_engine,
    init_schema,
    monitor_grants,
    subscriptions,
)
from ai_gateway.storage.sql import (
    SqlEntitlementStore,
    SqlMonitorGrantSource,
    SqlRoutingRuleStore,
    SqlSubscriptionSource,
    SqlUsageStore,
)

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


async def _engine() -> AsyncEngine:
    engine = create_engine("sqlite+aiosqlite:///:memory:")
    await init_schema(engine)
    return engine


def _event(
    feature_type: str = "quiz",
    at: datetime = NOW,
    user_id: str = "u1",
    credit_class: CreditClass = CreditClass.STANDARD,
) -> UsageEvent:
    return UsageEvent(
        user_id=user_id,
        service="quiz",
        feature_type=feature_type,
        action_type="generate",
        model_used="gpt-4o-mini",
        input_tokens=10,
        output_tokens=4,
        estimated_cost=0.01,
        credit_class=credit_class,
        created_at=at,
        metadata={"phase": "default"},
    )


class TestSqlUsageStore:
    @pytest.mark.asyncio
    async def test_insert_and_count_half_open(self) -> None:
        engine = await _engine()
        store = SqlUsageStore(engine)
        await store.insert(_event(at=NOW - timedelta(hours=1)))
        await store.insert(_event(at=NOW))
        await store.insert(_event(feature_type="lp", at=NOW - timedelta(minutes=1)))

        start, end = NOW - timedelta(hours=2), NOW
        assert await store.count("u1", "quiz", "quiz", start, end) == 1
        assert await store.count("u1", "quiz", None, start, end) == 2
        assert await store.count("u2", "quiz", None, start, end) == 0
        await close_engine(engine)

    @pytest.mark.asyncio
    async def test_stored_row_keeps_columns(self) -> None:
        engine = await _engine()
        store = SqlUsageStore(engine)
        event = _event(credit_class=CreditClass.PREMIUM)
        await store.insert(event)

        async with engine.connect() as conn:
            [row] = (await conn.execute(select(ai_usage_events))).mappings().all()
        assert row["event_id"] == event.event_id
        assert row["credit_class"] == "premium"
        assert row["created_at"].replace(tzinfo=timezone.utc) == NOW
        assert row["metadata"] == {"phase": "default"}
        await close_engine(engine)

    @pytest.mark.asyncio
    async def test_count_by_credit_class(self) -> None:
        engine = await _engine()
        store = SqlUsageStore(engine)
        await store.insert(_event(credit_class=CreditClass.PREMIUM))
        await store.insert(_event(feature_type="lp"))
        await store.insert(_event())

        start, end = NOW, NOW + timedelta(hours=1)
        assert await store.count("u1", "quiz", None, start, end, CreditClass.PREMIUM) == 1
        assert await store.count("u1", "quiz", None, start, end, CreditClass.STANDARD) == 2
        assert await store.count("u1", "quiz", "quiz", start, end, CreditClass.STANDARD) == 1
        await close_engine(engine)

    @pytest.mark.asyncio
    async def test_reinserting_event_id_is_noop(self) -> None:
        engine = await _engine()
        store = SqlUsageStore(engine)
        event = _event()
        await store.insert(event)
        await store.insert(event)

        assert await store.count("u1", "quiz", None, NOW, NOW + timedelta(hours=1)) == 1
        await close_engine(engine)

    @pytest.mark.asyncio
    async def test_missing_table_is_store_error(self) -> None:
        engine = create_engine("sqlite+aiosqlite:///:memory:")
        with pytest.raises(UsageStoreError):
            await SqlUsageStore(engine).count("u1", "quiz", None, NOW, NOW)
        await close_engine(engine)


class TestSqlEntitlementStore:
    @pytest.mark.asyncio
    async def test_put_get_replace(self) -> None:
        engine = await _engine()
        store = SqlEntitlementStore(engine)
        assert await store.get("quiz", "free", "quiz") is None

        await store.put(PlanEntitlement(service="quiz", plan_tier="free", feature_type="quiz", daily_limit=3))
        await store.put(PlanEntitlement(service="quiz", plan_tier="free", feature_type="quiz", daily_limit=5, monthly_limit=-1))

        ent = await store.get("quiz", "free", "quiz")
        assert ent is not None
        assert ent.daily_limit == 5
        assert ent.monthly_limit == -1
        await close_engine(engine)


class TestSqlRoutingRuleStore:
    @pytest.mark.asyncio
    async def test_upsert_then_get(self) -> None:
        engine = await _engine()
        store = SqlRoutingRuleStore(engine)
        rule = RoutingRule(
            service="kdl",
            plan_tier="pro",
            phase="writing",
            primary_provider=ProviderTag.OPENAI,
            primary_model="gpt-4o",
            backup_provider=ProviderTag.GEMINI,
            backup_model="gemini-2.5-pro",
        )
        await store.upsert(rule)
        assert await store.get("kdl", "pro", "writing") == rule

        updated = RoutingRule(
            service="kdl",
            plan_tier="pro",
            phase="writing",
            primary_provider=ProviderTag.ANTHROPIC,
            primary_model="claude-sonnet-4-5",
        )
        await store.upsert(updated)
        assert await store.get("kdl", "pro", "writing") == updated
        await close_engine(engine)


class TestSqlBillingSources:
    @pytest.mark.asyncio
    async def test_subscriptions_newest_first_and_active_only(self) -> None:
        engine = await _engine()
        async with engine.begin() as conn:
            await conn.execute(
                insert(subscriptions),
                [
                    {"subscription_id": "old", "user_id": "u1", "service": "kdl", "status": "active",
                     "plan_tier": "lite", "amount": None, "period": None, "created_at": NOW - timedelta(days=30)},
                    {"subscription_id": "new", "user_id": "u1", "service": "kdl", "status": "trialing",
                     "plan_tier": None, "amount": 9800, "period": "monthly", "created_at": NOW - timedelta(days=1)},
                    {"subscription_id": "gone", "user_id": "u1", "service": "kdl", "status": "canceled",
                     "plan_tier": "pro", "amount": None, "period": None, "created_at": NOW},
                ],
            )
        source = SqlSubscriptionSource(engine, ACTIVE_SUBSCRIPTION_STATUSES)
        rows = await source.find_active("u1", "kdl")
        assert [s.subscription_id for s in rows] == ["new", "old"]
        assert rows[0].is_legacy is True
        await close_engine(engine)

    @pytest.mark.asyncio
    async def test_monitor_grants_active_window(self) -> None:
        engine = await _engine()
        async with engine.begin() as conn:
            await conn.execute(
                insert(monitor_grants),
                [
                    {"user_id": "u1", "service": "kdl", "plan_type": "pro",
                     "start_at": NOW - timedelta(days=1), "expires_at": NOW + timedelta(days=1)},
                    {"user_id": "u1", "service": "kdl", "plan_type": "business",
                     "start_at": NOW - timedelta(days=10), "expires_at": NOW - timedelta(days=2)},
                ],
            )
        grants = await SqlMonitorGrantSource(engine).find_active("u1", "kdl", NOW)
        assert [g.plan_type for g in grants] == ["pro"]
        assert grants[0].expires_at == NOW + timedelta(days=1)
        await close_engine(engine)
