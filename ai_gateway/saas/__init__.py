"""SaaS admission layer — plan-tier resolution, quota checks and usage recording."""

from ai_gateway.saas.plans import PlanResolver, legacy_tier_for
from ai_gateway.saas.quota import QuotaLedger
from ai_gateway.saas.recorder import UsageRecorder

__all__ = [
    "PlanResolver",
    "legacy_tier_for",
    "QuotaLedger",
    "UsageRecorder",
]
