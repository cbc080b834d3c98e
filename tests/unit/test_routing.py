"""Tests for RoutingPolicy — lookup chain, caching and invalidation."""

from __future__ import annotations

import pytest

from ai_gateway.core.constants import ANY_PLAN_TIER, PHASE_OUTLINE, PHASE_WRITING
from ai_gateway.core.exceptions import UsageStoreError
from ai_gateway.core.types import ProviderTag, Route, RoutingRule
from ai_gateway.routing.policy import FALLBACK_ROUTE, PHASE_PRESETS, RoutingPolicy
from ai_gateway.storage.memory import InMemoryRoutingRuleStore


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class _BrokenStore(InMemoryRoutingRuleStore):
    def __init__(self) -> None:
        super().__init__()
        self.fail = True

    async def get(self, service: str, plan_tier: str, phase: str) -> RoutingRule | None:
        if self.fail:
            raise UsageStoreError("db down")
        return await super().get(service, plan_tier, phase)


def _rule(plan_tier: str = "pro", phase: str = "quiz", model: str = "gpt-4o") -> RoutingRule:
    return RoutingRule(
        service="quiz",
        plan_tier=plan_tier,
        phase=phase,
        primary_provider=ProviderTag.OPENAI,
        primary_model=model,
        backup_provider=ProviderTag.GEMINI,
        backup_model="gemini-2.5-flash",
    )


class TestLookupChain:
    @pytest.mark.asyncio
    async def test_exact_rule(self) -> None:
        policy = RoutingPolicy(InMemoryRoutingRuleStore([_rule()]))
        route = await policy.resolve("quiz", "pro", "quiz")
        assert route == Route(ProviderTag.OPENAI, "gpt-4o", ProviderTag.GEMINI, "gemini-2.5-flash")

    @pytest.mark.asyncio
    async def test_service_default_when_tier_missing(self) -> None:
        policy = RoutingPolicy(InMemoryRoutingRuleStore([_rule(plan_tier=ANY_PLAN_TIER, model="gpt-4o-mini")]))
        route = await policy.resolve("quiz", "free", "quiz")
        assert route.model == "gpt-4o-mini"

    @pytest.mark.asyncio
    async def test_phase_preset_when_no_rule(self) -> None:
        policy = RoutingPolicy(InMemoryRoutingRuleStore())
        route = await policy.resolve("kdl", "free", PHASE_WRITING)
        assert route == PHASE_PRESETS[PHASE_WRITING]

    @pytest.mark.asyncio
    async def test_fallback_constant_as_last_resort(self) -> None:
        policy = RoutingPolicy(InMemoryRoutingRuleStore())
        route = await policy.resolve("quiz", "free", "unknown-phase")
        assert route == FALLBACK_ROUTE

    @pytest.mark.asyncio
    async def test_store_failure_degrades_to_preset(self) -> None:
        policy = RoutingPolicy(_BrokenStore())
        route = await policy.resolve("kdl", "pro", PHASE_OUTLINE)
        assert route == PHASE_PRESETS[PHASE_OUTLINE]

    @pytest.mark.asyncio
    async def test_written_rule_is_resolved(self) -> None:
        store = InMemoryRoutingRuleStore()
        policy = RoutingPolicy(store)
        await policy.set_rule(_rule(model="gpt-5-mini"))
        route = await policy.resolve("quiz", "pro", "quiz")
        assert (route.provider, route.model) == (ProviderTag.OPENAI, "gpt-5-mini")


class TestCaching:
    @pytest.mark.asyncio
    async def test_cached_within_ttl(self) -> None:
        clock = _Clock()
        store = InMemoryRoutingRuleStore([_rule()])
        policy = RoutingPolicy(store, ttl_seconds=30, timer=clock)

        await policy.resolve("quiz", "pro", "quiz")
        reads = store.reads
        clock.now = 10
        await policy.resolve("quiz", "pro", "quiz")
        assert store.reads == reads

    @pytest.mark.asyncio
    async def test_stale_rule_visible_after_ttl(self) -> None:
        clock = _Clock()
        store = InMemoryRoutingRuleStore([_rule()])
        policy = RoutingPolicy(store, ttl_seconds=30, timer=clock)

        assert (await policy.resolve("quiz", "pro", "quiz")).model == "gpt-4o"
        await store.upsert(_rule(model="gpt-4o-mini"))
        assert (await policy.resolve("quiz", "pro", "quiz")).model == "gpt-4o"

        clock.now = 31
        assert (await policy.resolve("quiz", "pro", "quiz")).model == "gpt-4o-mini"

    @pytest.mark.asyncio
    async def test_invalidate_clears_cache(self) -> None:
        store = InMemoryRoutingRuleStore([_rule()])
        policy = RoutingPolicy(store)
        await policy.resolve("quiz", "pro", "quiz")
        await store.upsert(_rule(model="gpt-5"))
        policy.invalidate()
        assert (await policy.resolve("quiz", "pro", "quiz")).model == "gpt-5"

    @pytest.mark.asyncio
    async def test_store_outage_is_not_cached(self) -> None:
        store = _BrokenStore()
        await store.upsert(_rule())
        policy = RoutingPolicy(store)

        assert await policy.resolve("quiz", "pro", "quiz") == FALLBACK_ROUTE
        store.fail = False
        assert (await policy.resolve("quiz", "pro", "quiz")).model == "gpt-4o"


class TestRoute:
    def test_backup_equal_to_primary_is_no_backup(self) -> None:
        route = Route(ProviderTag.OPENAI, "gpt-4o", ProviderTag.OPENAI, "gpt-4o")
        assert route.has_backup is False

    def test_missing_backup(self) -> None:
        assert Route(ProviderTag.GEMINI, "gemini-2.5-flash").has_backup is False


class TestCredentialAwareRouting:
    @pytest.mark.asyncio
    async def test_keyless_primary_promotes_backup(self) -> None:
        policy = RoutingPolicy(InMemoryRoutingRuleStore(), available_providers=[ProviderTag.OPENAI])
        route = await policy.resolve("kdl", "free", PHASE_OUTLINE)
        preset = PHASE_PRESETS[PHASE_OUTLINE]
        assert route == Route(provider=preset.backup_provider, model=preset.backup_model)

    @pytest.mark.asyncio
    async def test_keyless_backup_is_dropped(self) -> None:
        policy = RoutingPolicy(InMemoryRoutingRuleStore(), available_providers=[ProviderTag.GEMINI])
        route = await policy.resolve("kdl", "free", PHASE_OUTLINE)
        assert route.provider == ProviderTag.GEMINI
        assert route.has_backup is False

    @pytest.mark.asyncio
    async def test_unusable_rule_falls_through_to_preset(self) -> None:
        rule = RoutingRule(
            service="kdl",
            plan_tier="pro",
            phase=PHASE_WRITING,
            primary_provider=ProviderTag.ANTHROPIC,
            primary_model="claude-sonnet-4-5",
        )
        policy = RoutingPolicy(InMemoryRoutingRuleStore([rule]), available_providers=[ProviderTag.OPENAI])
        route = await policy.resolve("kdl", "pro", PHASE_WRITING)
        assert route == Route(provider=ProviderTag.OPENAI, model="gpt-4o")

    @pytest.mark.asyncio
    async def test_whole_chain_unusable_uses_available_default(self) -> None:
        policy = RoutingPolicy(InMemoryRoutingRuleStore(), available_providers=[ProviderTag.ANTHROPIC])
        route = await policy.resolve("quiz", "free", "default")
        assert route == Route(provider=ProviderTag.ANTHROPIC, model="claude-haiku-4-5")

    @pytest.mark.asyncio
    async def test_no_credentials_keeps_fallback(self) -> None:
        policy = RoutingPolicy(InMemoryRoutingRuleStore(), available_providers=[])
        assert await policy.resolve("quiz", "free", "default") == FALLBACK_ROUTE

    @pytest.mark.asyncio
    async def test_without_availability_routes_are_untouched(self) -> None:
        policy = RoutingPolicy(InMemoryRoutingRuleStore())
        assert await policy.resolve("kdl", "free", PHASE_OUTLINE) == PHASE_PRESETS[PHASE_OUTLINE]
