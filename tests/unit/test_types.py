"""Tests for core type definitions."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from ai_gateway.core.types import (
    AIMessage,
    AIRequest,
    GatewayResult,
    MessageRole,
    MonitorGrant,
    OutcomeStatus,
    PlanEntitlement,
    ProviderTag,
    QuotaStatus,
    RoutingRule,
    Subscription,
    UsageEvent,
)


class TestAIRequest:
    def test_requires_messages(self) -> None:
        with pytest.raises(ValueError):
            AIRequest(messages=[])

    def test_system_text_and_conversation(self) -> None:
        request = AIRequest(
            messages=[
                AIMessage(role=MessageRole.SYSTEM, content="rule one"),
                AIMessage(role=MessageRole.SYSTEM, content="rule two"),
                AIMessage(role=MessageRole.USER, content="go"),
            ]
        )
        assert request.system_text == "rule one\n\nrule two"
        assert [m.content for m in request.conversation] == ["go"]


class TestUsageEvent:
    def test_defaults(self) -> None:
        event = UsageEvent(
            user_id="u1",
            service="quiz",
            feature_type="quiz",
            action_type="generate",
            model_used="gpt-4o-mini",
        )
        assert event.created_at.tzinfo is not None
        assert len(event.event_id) == 36
        assert event.metadata == {}

    def test_is_immutable(self) -> None:
        event = UsageEvent(user_id="u1", service="quiz", feature_type="quiz", action_type="a", model_used="m")
        with pytest.raises(AttributeError):
            event.model_used = "other"  # type: ignore[misc]

    def test_ids_are_unique(self) -> None:
        ids = {
            UsageEvent(user_id="u1", service="s", feature_type="f", action_type="a", model_used="m").event_id
            for _ in range(100)
        }
        assert len(ids) == 100


class TestPlanEntitlement:
    def test_rejects_below_unlimited(self) -> None:
        with pytest.raises(ValueError):
            PlanEntitlement(service="quiz", plan_tier="free", feature_type="quiz", daily_limit=-2)

    def test_accepts_sentinels(self) -> None:
        ent = PlanEntitlement(service="quiz", plan_tier="free", feature_type="quiz", daily_limit=-1, monthly_limit=0)
        assert ent.daily_limit == -1
        assert ent.monthly_limit == 0


class TestMonitorGrant:
    def test_half_open_interval(self) -> None:
        start = datetime(2026, 1, 1, tzinfo=timezone.utc)
        grant = MonitorGrant(user_id="u1", service="kdl", plan_type="pro", start_at=start, expires_at=start + timedelta(days=7))
        assert grant.is_active(start) is True
        assert grant.is_active(start + timedelta(days=7)) is False
        assert grant.is_active(start - timedelta(seconds=1)) is False


class TestSubscription:
    def test_legacy_detection(self) -> None:
        now = datetime.now(timezone.utc)
        legacy = Subscription("s1", "u1", "kdl", "active", now, amount=4980, period="monthly")
        current = Subscription("s2", "u1", "kdl", "active", now, plan_tier="pro")
        assert legacy.is_legacy is True
        assert current.is_legacy is False


class TestRoutingRule:
    def test_to_route(self) -> None:
        rule = RoutingRule(
            service="lp",
            plan_tier="*",
            phase="default",
            primary_provider=ProviderTag.ANTHROPIC,
            primary_model="claude-haiku-4-5",
        )
        route = rule.to_route()
        assert route.provider == ProviderTag.ANTHROPIC
        assert route.has_backup is False


class TestGatewayResult:
    def test_limit_exceeded_dict(self) -> None:
        quota = QuotaStatus(
            is_within_limit=False,
            feature_usage=3,
            feature_limit=3,
            feature_remaining=0,
            daily_usage=3,
            daily_limit=3,
        )
        result = GatewayResult(status=OutcomeStatus.LIMIT_EXCEEDED, quota=quota)
        assert result.ok is False
        assert result.to_dict() == {
            "status": "LIMIT_EXCEEDED",
            "feature_usage": 3,
            "feature_limit": 3,
            "feature_remaining": 0,
            "daily_usage": 3,
            "daily_limit": 3,
        }

    def test_quota_to_dict_has_all_fields(self) -> None:
        quota = QuotaStatus(
            is_within_limit=True,
            feature_usage=0,
            feature_limit=-1,
            feature_remaining=-1,
            daily_usage=0,
            daily_limit=-1,
        )
        assert set(quota.to_dict()) >= {"is_within_limit", "feature_remaining", "degraded", "plan_tier"}
