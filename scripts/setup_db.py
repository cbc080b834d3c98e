#!/usr/bin/env python3
"""Initialize the gateway database schema and seed default entitlements and routing rules.

Seeding is idempotent: every row is upserted, so the script can be re-run
after editing the tables below.
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

# Ensure project root is on the path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from ai_gateway.core.constants import (
    ANY_PLAN_TIER,
    FEATURE_TOTAL,
    PHASE_DEFAULT,
    PHASE_OUTLINE,
    PHASE_WRITING,
    UNLIMITED,
)
from ai_gateway.core.logging import get_logger, setup_logging
from ai_gateway.core.types import CreditClass, PlanEntitlement, ProviderTag, RoutingRule
from ai_gateway.storage.db import close_engine, create_engine, init_schema
from ai_gateway.storage.sql import SqlEntitlementStore, SqlRoutingRuleStore
from config.settings import get_settings

log = get_logger(__name__)

# ── Seed Data ────────────────────────────────────────────────────

# (daily, monthly) AI generations per tier for single-feature services
_GENERIC_LIMITS: dict[str, tuple[int, int]] = {
    "free": (3, 10),
    "lite": (20, 300),
    "standard": (30, 900),
    "pro": (100, 1000),
    "business": (UNLIMITED, UNLIMITED),
}

_GENERIC_SERVICES = ("quiz", "lp", "newsletter", "marketplace")

# Book authoring: per-phase daily limits plus a service-wide daily total
_KDL_LIMITS: dict[str, dict[str, int]] = {
    "free": {PHASE_OUTLINE: 3, PHASE_WRITING: 3, FEATURE_TOTAL: 5},
    "lite": {PHASE_OUTLINE: 10, PHASE_WRITING: 15, FEATURE_TOTAL: 25},
    "standard": {PHASE_OUTLINE: 15, PHASE_WRITING: 25, FEATURE_TOTAL: 40},
    "pro": {PHASE_OUTLINE: 40, PHASE_WRITING: 80, FEATURE_TOTAL: 120},
    "business": {PHASE_OUTLINE: 80, PHASE_WRITING: UNLIMITED, FEATURE_TOTAL: UNLIMITED},
}

# Book authoring: daily (premium, standard) credits; premium is quality mode
_KDL_CREDITS: dict[str, tuple[int, int]] = {
    "free": (0, 3),
    "lite": (0, 20),
    "standard": (0, 30),
    "pro": (20, 80),
    "business": (50, UNLIMITED),
}


def _entitlements() -> list[PlanEntitlement]:
    rows = [
        PlanEntitlement(service=service, plan_tier=tier, feature_type=service, daily_limit=daily, monthly_limit=monthly)
        for service in _GENERIC_SERVICES
        for tier, (daily, monthly) in _GENERIC_LIMITS.items()
    ]
    rows.extend(
        PlanEntitlement(service="kdl", plan_tier=tier, feature_type=feature, daily_limit=limit)
        for tier, limits in _KDL_LIMITS.items()
        for feature, limit in limits.items()
    )
    rows.extend(
        PlanEntitlement(service="kdl", plan_tier=tier, feature_type=credit_class.feature_type, daily_limit=limit)
        for tier, credits in _KDL_CREDITS.items()
        for credit_class, limit in zip((CreditClass.PREMIUM, CreditClass.STANDARD), credits)
    )
    return rows


def _routing_rules() -> list[RoutingRule]:
    rules = [
        RoutingRule(
            service=service,
            plan_tier=ANY_PLAN_TIER,
            phase=PHASE_DEFAULT,
            primary_provider=ProviderTag.GEMINI,
            primary_model="gemini-2.5-flash-lite",
            backup_provider=ProviderTag.OPENAI,
            backup_model="gpt-4o-mini",
        )
        for service in _GENERIC_SERVICES
    ]
    rules.append(
        RoutingRule(
            service="kdl",
            plan_tier=ANY_PLAN_TIER,
            phase=PHASE_OUTLINE,
            primary_provider=ProviderTag.GEMINI,
            primary_model="gemini-2.5-flash",
            backup_provider=ProviderTag.OPENAI,
            backup_model="gpt-4o-mini",
        )
    )
    rules.append(
        RoutingRule(
            service="kdl",
            plan_tier=ANY_PLAN_TIER,
            phase=PHASE_WRITING,
            primary_provider=ProviderTag.GEMINI,
            primary_model="gemini-2.5-flash-lite",
            backup_provider=ProviderTag.OPENAI,
            backup_model="gpt-4o-mini",
        )
    )
    rules.append(
        RoutingRule(
            service="kdl",
            plan_tier="pro",
            phase=PHASE_WRITING,
            primary_provider=ProviderTag.OPENAI,
            primary_model="gpt-4o",
            backup_provider=ProviderTag.ANTHROPIC,
            backup_model="claude-sonnet-4-5",
        )
    )
    return rules


async def main() -> None:
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_json)
    log.info("starting_schema_initialization")

    engine = create_engine(settings.database_url.get_secret_value())
    try:
        await init_schema(engine)

        entitlements = SqlEntitlementStore(engine)
        for row in _entitlements():
            await entitlements.put(row)

        rules = SqlRoutingRuleStore(engine)
        for rule in _routing_rules():
            await rules.upsert(rule)

        log.info(
            "schema_initialization_complete",
            entitlements=len(_entitlements()),
            routing_rules=len(_routing_rules()),
        )
    except Exception as exc:
        log.error("schema_initialization_failed", error=str(exc))
        raise
    finally:
        await close_engine(engine)


if __name__ == "__main__":
    asyncio.run(main())
