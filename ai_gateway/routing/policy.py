"""Routing policy — (service, plan tier, phase) to a primary/backup route."""

from __future__ import annotations

from typing import Callable, Iterable

from cachetools import TTLCache

from ai_gateway.core.constants import (
    ANY_PLAN_TIER,
    PHASE_OUTLINE,
    PHASE_REWRITE,
    PHASE_WRITING,
)
from ai_gateway.core.exceptions import UsageStoreError
from ai_gateway.core.interfaces import RoutingRuleStore
from ai_gateway.core.logging import get_logger
from ai_gateway.core.types import ProviderTag, Route, RoutingRule

log = get_logger(__name__)

# Last link of the chain; resolve() always ends here at worst.
FALLBACK_ROUTE = Route(
    provider=ProviderTag.GEMINI,
    model="gemini-2.5-flash-lite",
    backup_provider=ProviderTag.OPENAI,
    backup_model="gpt-4o-mini",
)

# Built-in per-phase routes used when no stored rule matches.
PHASE_PRESETS: dict[str, Route] = {
    # Planning / structure: cost first
    PHASE_OUTLINE: Route(
        provider=ProviderTag.GEMINI,
        model="gemini-2.5-flash-lite",
        backup_provider=ProviderTag.OPENAI,
        backup_model="gpt-4o-mini",
    ),
    # Long-form prose: quality first
    PHASE_WRITING: Route(
        provider=ProviderTag.OPENAI,
        model="gpt-4o",
        backup_provider=ProviderTag.GEMINI,
        backup_model="gemini-2.5-pro",
    ),
    PHASE_REWRITE: Route(
        provider=ProviderTag.GEMINI,
        model="gemini-2.5-flash",
        backup_provider=ProviderTag.OPENAI,
        backup_model="gpt-4o-mini",
    ),
}

# Model used when a route has to be rebuilt around whichever provider has a key
DEFAULT_MODELS: dict[ProviderTag, str] = {
    ProviderTag.OPENAI: "gpt-4o-mini",
    ProviderTag.GEMINI: "gemini-2.5-flash-lite",
    ProviderTag.ANTHROPIC: "claude-haiku-4-5",
}


class RoutingPolicy:
    """Resolve the route for a request.

    Lookup order:
    1. Stored rule for the exact (service, plan_tier, phase)
    2. Stored service default (plan_tier ``"*"``) for the phase
    3. Built-in phase preset
    4. ``FALLBACK_ROUTE``

    When ``available_providers`` is given, each candidate is fitted to the
    providers that have credentials: a keyless primary is replaced by its
    backup, a keyless backup is dropped, and a candidate with neither is
    skipped. If the whole chain is unusable, the first available provider
    is used with its default model.

    Results are cached for ``ttl_seconds``, so rule edits become visible
    within one TTL (or immediately after ``invalidate()``).
    """

    def __init__(
        self,
        store: RoutingRuleStore,
        ttl_seconds: float = 30.0,
        maxsize: int = 1024,
        timer: Callable[[], float] | None = None,
        available_providers: Iterable[ProviderTag] | None = None,
    ) -> None:
        self._store = store
        self._available = None if available_providers is None else list(available_providers)
        if timer is None:
            self._cache: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl_seconds)
        else:
            self._cache = TTLCache(maxsize=maxsize, ttl=ttl_seconds, timer=timer)

    async def resolve(self, service: str, plan_tier: str, phase: str) -> Route:
        key = (service, plan_tier, phase)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        route, store_ok = await self._lookup(service, plan_tier, phase)
        # A store outage must not pin the fallback for a whole TTL
        if store_ok:
            self._cache[key] = route
        return route

    async def set_rule(self, rule: RoutingRule) -> None:
        """Administrative write; the new rule is visible on the next resolve()."""
        await self._store.upsert(rule)
        self.invalidate()
        log.info(
            "routing_rule_updated",
            service=rule.service,
            plan_tier=rule.plan_tier,
            phase=rule.phase,
            provider=rule.primary_provider.value,
            model=rule.primary_model,
        )

    def invalidate(self) -> None:
        self._cache.clear()

    # ── Lookup Chain ─────────────────────────────────────────────

    async def _lookup(self, service: str, plan_tier: str, phase: str) -> tuple[Route, bool]:
        store_ok = True
        tiers = [plan_tier] if plan_tier == ANY_PLAN_TIER else [plan_tier, ANY_PLAN_TIER]

        for tier in tiers:
            try:
                rule = await self._store.get(service, tier, phase)
            except UsageStoreError as exc:
                store_ok = False
                log.warning(
                    "routing_rule_lookup_failed",
                    service=service,
                    plan_tier=tier,
                    phase=phase,
                    error=str(exc),
                )
                continue
            if rule is not None:
                route = self._accept(rule.to_route(), service, tier, phase, "rule")
                if route is not None:
                    return route, store_ok

        preset = PHASE_PRESETS.get(phase)
        if preset is not None:
            route = self._accept(preset, service, plan_tier, phase, "preset")
            if route is not None:
                return route, store_ok

        route = self._accept(FALLBACK_ROUTE, service, plan_tier, phase, "fallback")
        if route is not None:
            log.info("route_fallback_used", service=service, plan_tier=plan_tier, phase=phase)
            return route, store_ok

        if self._available:
            provider = self._available[0]
            log.warning(
                "route_rebuilt_for_available_provider",
                service=service,
                phase=phase,
                provider=provider.value,
            )
            return Route(provider=provider, model=DEFAULT_MODELS[provider]), store_ok

        # No credentials at all; the adapter lookup reports the configuration error
        return FALLBACK_ROUTE, store_ok

    def _accept(self, candidate: Route, service: str, plan_tier: str, phase: str, source: str) -> Route | None:
        route = self._fit(candidate)
        if route is None:
            log.warning(
                "route_skipped_no_credentials",
                service=service,
                plan_tier=plan_tier,
                phase=phase,
                source=source,
                provider=candidate.provider.value,
            )
        elif source != "fallback":
            log.debug("route_resolved", service=service, plan_tier=plan_tier, phase=phase, source=source)
        return route

    def _fit(self, route: Route) -> Route | None:
        """Fit ``route`` to the providers that have credentials, or None if it cannot run."""
        if self._available is None:
            return route
        primary_ok = route.provider in self._available
        backup_ok = route.has_backup and route.backup_provider in self._available

        if primary_ok and (backup_ok or not route.has_backup):
            return route
        if primary_ok:
            return Route(provider=route.provider, model=route.model)
        if backup_ok and route.backup_provider is not None and route.backup_model:
            return Route(provider=route.backup_provider, model=route.backup_model)
        return None
