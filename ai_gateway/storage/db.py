"""SQL schema and async engine helpers for gateway persistence."""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    MetaData,
    String,
    Table,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

from ai_gateway.core.logging import get_logger

log = get_logger(__name__)

metadata = MetaData()

_JSON = JSON().with_variant(JSONB(), "postgresql")

# ── Tables ───────────────────────────────────────────────────────

# Append-only: rows are inserted, never updated or deleted
ai_usage_events = Table(
    "ai_usage_events",
    metadata,
    Column("event_id", String, primary_key=True),
    Column("user_id", String, nullable=False),
    Column("service", String, nullable=False),
    Column("feature_type", String, nullable=False),
    Column("credit_class", String, nullable=False, default="standard"),
    Column("action_type", String, nullable=False),
    Column("model_used", String, nullable=False),
    Column("input_tokens", Integer, nullable=False, default=0),
    Column("output_tokens", Integer, nullable=False, default=0),
    Column("estimated_cost", Float, nullable=False, default=0.0),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("metadata", _JSON, nullable=False),
    Index("ix_ai_usage_events_window", "user_id", "service", "feature_type", "created_at"),
    Index("ix_ai_usage_events_credit", "user_id", "service", "credit_class", "created_at"),
)

plan_entitlements = Table(
    "plan_entitlements",
    metadata,
    Column("service", String, primary_key=True),
    Column("plan_tier", String, primary_key=True),
    Column("feature_type", String, primary_key=True),
    Column("daily_limit", Integer, nullable=True),
    Column("monthly_limit", Integer, nullable=True),
)

routing_rules = Table(
    "routing_rules",
    metadata,
    Column("service", String, primary_key=True),
    Column("plan_tier", String, primary_key=True),
    Column("phase", String, primary_key=True),
    Column("primary_provider", String, nullable=False),
    Column("primary_model", String, nullable=False),
    Column("backup_provider", String, nullable=True),
    Column("backup_model", String, nullable=True),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

subscriptions = Table(
    "subscriptions",
    metadata,
    Column("subscription_id", String, primary_key=True),
    Column("user_id", String, nullable=False, index=True),
    Column("service", String, nullable=False),
    Column("status", String, nullable=False),
    Column("plan_tier", String, nullable=True),
    Column("amount", Integer, nullable=True),
    Column("period", String, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

monitor_grants = Table(
    "monitor_grants",
    metadata,
    Column("grant_id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String, nullable=False, index=True),
    Column("service", String, nullable=False),
    Column("plan_type", String, nullable=False),
    Column("start_at", DateTime(timezone=True), nullable=False),
    Column("expires_at", DateTime(timezone=True), nullable=False),
)


# ── Engine ───────────────────────────────────────────────────────

def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine; pool sizing only applies to server databases."""
    kwargs: dict = {"echo": echo}
    if ":memory:" in database_url:
        # One shared connection, otherwise every checkout sees an empty database
        kwargs["poolclass"] = StaticPool
    elif not database_url.startswith("sqlite"):
        kwargs.update(pool_size=10, max_overflow=20, pool_pre_ping=True)
    engine = create_async_engine(database_url, **kwargs)
    log.info("database_engine_created", host=database_url.split("@")[-1].split("?")[0])
    return engine


async def init_schema(engine: AsyncEngine) -> None:
    """Create every gateway table that does not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    log.info("schema_initialized", tables=sorted(metadata.tables))


async def close_engine(engine: AsyncEngine) -> None:
    await engine.dispose()
    log.info("database_engine_closed")
