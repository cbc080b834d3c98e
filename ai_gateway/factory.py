"""Gateway wiring — the only place that turns Settings into live components."""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncEngine

from ai_gateway.core.constants import ACTIVE_SUBSCRIPTION_STATUSES
from ai_gateway.core.interfaces import (
    EntitlementStore,
    MonitorGrantSource,
    RoutingRuleStore,
    SubscriptionSource,
    UsageStore,
)
from ai_gateway.core.logging import get_logger
from ai_gateway.gateway import AIGateway
from ai_gateway.llm.cost_tracker import CostTracker
from ai_gateway.llm.registry import ProviderRegistry
from ai_gateway.routing.policy import RoutingPolicy
from ai_gateway.saas.plans import PlanResolver
from ai_gateway.saas.quota import QuotaLedger
from ai_gateway.saas.recorder import UsageRecorder
from ai_gateway.storage.db import create_engine
from ai_gateway.storage.memory import (
    InMemoryEntitlementStore,
    InMemoryMonitorGrantSource,
    InMemoryRoutingRuleStore,
    InMemorySubscriptionSource,
    InMemoryUsageStore,
)
from ai_gateway.storage.sql import (
    SqlEntitlementStore,
    SqlMonitorGrantSource,
    SqlRoutingRuleStore,
    SqlSubscriptionSource,
    SqlUsageStore,
)
from config.settings import Settings

log = get_logger(__name__)


@dataclass
class GatewayStores:
    usage: UsageStore
    entitlements: EntitlementStore
    routing_rules: RoutingRuleStore
    subscriptions: SubscriptionSource
    monitors: MonitorGrantSource


def sql_stores(engine: AsyncEngine) -> GatewayStores:
    return GatewayStores(
        usage=SqlUsageStore(engine),
        entitlements=SqlEntitlementStore(engine),
        routing_rules=SqlRoutingRuleStore(engine),
        subscriptions=SqlSubscriptionSource(engine, ACTIVE_SUBSCRIPTION_STATUSES),
        monitors=SqlMonitorGrantSource(engine),
    )


def memory_stores() -> GatewayStores:
    return GatewayStores(
        usage=InMemoryUsageStore(),
        entitlements=InMemoryEntitlementStore(),
        routing_rules=InMemoryRoutingRuleStore(),
        subscriptions=InMemorySubscriptionSource(),
        monitors=InMemoryMonitorGrantSource(),
    )


def build_gateway(
    settings: Settings,
    stores: GatewayStores | None = None,
    providers: ProviderRegistry | None = None,
) -> AIGateway:
    """Assemble an AIGateway from settings.

    Without explicit ``stores`` a SQL engine is created from
    ``settings.database_url``. The recorder is not started here;
    call ``await gateway.start()``.
    """
    if stores is None:
        stores = sql_stores(create_engine(settings.database_url.get_secret_value()))

    if providers is None:
        providers = ProviderRegistry(
            api_keys=settings.provider_api_keys(),
            cost_tracker=CostTracker(usd_jpy_rate=settings.usd_jpy_rate),
            timeout_seconds=settings.provider_timeout_seconds,
        )

    plans = PlanResolver(
        subscriptions=stores.subscriptions,
        monitors=stores.monitors,
        default_tier=settings.default_plan_tier,
    )
    ledger = QuotaLedger(
        usage_store=stores.usage,
        entitlements=stores.entitlements,
        plans=plans,
        default_daily_limit=settings.default_feature_daily_limit,
        default_monthly_limit=settings.default_feature_monthly_limit,
        tz_name=settings.quota_timezone,
        failure_policy=settings.quota_failure_policy,
    )
    routing = RoutingPolicy(
        store=stores.routing_rules,
        ttl_seconds=settings.routing_cache_ttl_seconds,
        maxsize=settings.routing_cache_maxsize,
        available_providers=providers.available_providers(),
    )
    recorder = UsageRecorder(
        store=stores.usage,
        queue_maxsize=settings.usage_queue_maxsize,
        write_timeout_seconds=settings.usage_write_timeout_seconds,
        write_attempts=settings.usage_write_attempts,
        error_channel_size=settings.usage_error_channel_size,
    )

    log.info(
        "gateway_built",
        env=settings.gateway_env,
        providers=[p.value for p in providers.available_providers()],
        quota_policy=settings.quota_failure_policy,
        quota_timezone=settings.quota_timezone,
    )
    return AIGateway(
        ledger=ledger,
        routing=routing,
        providers=providers,
        recorder=recorder,
        provider_timeout_seconds=settings.provider_timeout_seconds,
        usd_jpy_rate=settings.usd_jpy_rate,
    )
