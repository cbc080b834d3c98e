"""System-wide constants. All magic numbers and strings live here."""

from __future__ import annotations

# ── Limits ───────────────────────────────────────────────────────
UNLIMITED = -1
DISABLED = 0

# ── Feature Types ────────────────────────────────────────────────
FEATURE_TOTAL = "total"             # Service-wide bucket across feature types
CREDIT_FEATURE_PREFIX = "credits_"  # Entitlement rows for premium/standard daily credit buckets

# ── Routing ──────────────────────────────────────────────────────
ANY_PLAN_TIER = "*"                 # Service-level default rule key

PHASE_OUTLINE = "outline"           # Planning / structure, cost-oriented
PHASE_WRITING = "writing"           # Long-form generation, quality-oriented
PHASE_REWRITE = "rewrite"           # Bulk rewriting
PHASE_DEFAULT = "default"

# ── Subscription Status ──────────────────────────────────────────
ACTIVE_SUBSCRIPTION_STATUSES = frozenset({"active", "trialing"})

# ── Plan Sources ─────────────────────────────────────────────────
PLAN_SOURCE_MONITOR = "monitor"
PLAN_SOURCE_SUBSCRIPTION = "subscription"
PLAN_SOURCE_LEGACY = "legacy_subscription"
PLAN_SOURCE_DEFAULT = "default"

# ── Legacy price → tier table (amount in JPY, by billing period) ─
LEGACY_PRICE_TIERS: dict[str, dict[int, str]] = {
    "monthly": {
        2980: "lite",
        4980: "standard",
        9800: "pro",
        29800: "business",
    },
    "yearly": {
        29800: "lite",
        39800: "standard",
        49800: "standard",
        98000: "pro",
        298000: "business",
    },
}

# ── Cost Accounting ──────────────────────────────────────────────
DEFAULT_USD_JPY_RATE = 150.0
