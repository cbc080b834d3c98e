"""Quota ledger — per-user, per-feature admission checks derived from usage events.

Windows are computed on read by counting UsageEvents:
- Daily: local midnight to next local midnight in the quota timezone
- Monthly: first of the month to first of the next month
- Total: service-wide daily and monthly buckets across every feature type
- Credits: service-wide daily premium and standard buckets, keyed by the
  credit class recorded on each event

Checks are snapshots, not reservations. Concurrent in-flight requests
can each pass the check; the overage is bounded by per-user concurrency.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Literal
from zoneinfo import ZoneInfo

from ai_gateway.core.constants import DISABLED, FEATURE_TOTAL, UNLIMITED
from ai_gateway.core.exceptions import QuotaExceededError, UsageStoreError
from ai_gateway.core.interfaces import EntitlementStore, UsageStore
from ai_gateway.core.logging import get_logger
from ai_gateway.core.types import (
    CreditClass,
    PlanEntitlement,
    PlanResolution,
    QuotaStatus,
    UsageSummary,
    WindowUsage,
)
from ai_gateway.saas.plans import PlanResolver

log = get_logger(__name__)

FailurePolicy = Literal["fail_closed", "fail_open"]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _limit_value(limit: int | None) -> int:
    return UNLIMITED if limit is None else limit


def _remaining(usage: int, limit: int) -> int:
    if limit == UNLIMITED:
        return UNLIMITED
    return max(0, limit - usage)


class QuotaLedger:
    """Answer "may this user make one more call for this feature right now?"."""

    def __init__(
        self,
        usage_store: UsageStore,
        entitlements: EntitlementStore,
        plans: PlanResolver,
        default_daily_limit: int | None = 5,
        default_monthly_limit: int | None = None,
        tz_name: str = "UTC",
        failure_policy: FailurePolicy = "fail_closed",
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._usage = usage_store
        self._entitlements = entitlements
        self._plans = plans
        self._default_daily = default_daily_limit
        self._default_monthly = default_monthly_limit
        self._tz = ZoneInfo(tz_name)
        self._failure_policy = failure_policy
        self._clock = clock

    @property
    def failure_policy(self) -> FailurePolicy:
        return self._failure_policy

    async def check_limit(
        self,
        user_id: str,
        service: str,
        feature_type: str,
        credit_class: CreditClass | None = None,
    ) -> QuotaStatus:
        """Snapshot of the user's standing for ``feature_type``.

        ``feature_*`` fields report the binding window: the limited window
        with the least remaining. With ``credit_class`` set, the daily credit
        bucket of that class is checked as well. A store failure is handled
        by the configured failure policy and marks the status ``degraded``.
        """
        now = self._clock()
        resolution = await self._plans.resolve(user_id, service, now)
        day_start, day_end = self.day_window(now)
        month_start, month_end = self.month_window(now)
        # Checking the "total" feature itself means counting the whole service
        counted_feature = None if feature_type == FEATURE_TOTAL else feature_type

        try:
            entitlement = await self._entitlement_for(service, resolution.plan_tier, feature_type)
            total_entitlement = None
            if feature_type != FEATURE_TOTAL:
                total_entitlement = await self._entitlements.get(service, resolution.plan_tier, FEATURE_TOTAL)

            daily_limit = _limit_value(entitlement.daily_limit)
            monthly_limit = _limit_value(entitlement.monthly_limit)
            total_limit = _limit_value(total_entitlement.daily_limit if total_entitlement else None)
            total_monthly_limit = _limit_value(total_entitlement.monthly_limit if total_entitlement else None)

            daily_usage = await self._window_usage(
                user_id, service, counted_feature, daily_limit, day_start, day_end,
            )
            monthly_usage = await self._window_usage(
                user_id, service, counted_feature, monthly_limit, month_start, month_end,
            )
            total_usage = await self._window_usage(
                user_id, service, None, total_limit, day_start, day_end,
            )
            total_monthly_usage = await self._window_usage(
                user_id, service, None, total_monthly_limit, month_start, month_end,
            )

            credit_usage, credit_limit = 0, UNLIMITED
            if credit_class is not None:
                credit_usage, credit_limit = await self._credit_window(
                    user_id, service, resolution.plan_tier, credit_class, day_start, day_end,
                )
        except UsageStoreError as exc:
            return self._degraded_status(user_id, service, feature_type, resolution, exc)

        windows = [
            (daily_usage, daily_limit),
            (monthly_usage, monthly_limit),
            (total_usage, total_limit),
            (total_monthly_usage, total_monthly_limit),
        ]
        non_credit_within = all(usage < limit for usage, limit in windows if limit != UNLIMITED)
        windows.append((credit_usage, credit_limit))
        limited = [(usage, limit) for usage, limit in windows if limit != UNLIMITED]
        if limited:
            feature_usage, feature_limit = min(limited, key=lambda w: _remaining(*w))
        else:
            feature_usage, feature_limit = daily_usage, UNLIMITED
        is_within = all(usage < limit for usage, limit in limited)

        standard_available = False
        if credit_class == CreditClass.PREMIUM and non_credit_within and not is_within:
            try:
                usage, limit = await self._credit_window(
                    user_id, service, resolution.plan_tier, CreditClass.STANDARD, day_start, day_end,
                )
            except UsageStoreError as exc:
                log.warning("standard_credit_check_failed", user_id=user_id, service=service, error=str(exc))
            else:
                standard_available = limit == UNLIMITED or usage < limit

        status = QuotaStatus(
            is_within_limit=is_within,
            feature_usage=feature_usage,
            feature_limit=feature_limit,
            feature_remaining=_remaining(feature_usage, feature_limit),
            daily_usage=daily_usage,
            daily_limit=daily_limit,
            monthly_usage=monthly_usage,
            monthly_limit=monthly_limit,
            total_usage=total_usage,
            total_limit=total_limit,
            total_monthly_usage=total_monthly_usage,
            total_monthly_limit=total_monthly_limit,
            credit_class=credit_class,
            credit_usage=credit_usage,
            credit_limit=credit_limit,
            standard_available=standard_available,
            plan_tier=resolution.plan_tier,
            plan_source=resolution.source,
        )

        if not is_within:
            log.warning(
                "quota_exceeded",
                user_id=user_id,
                service=service,
                feature_type=feature_type,
                credit_class=credit_class.value if credit_class else None,
                plan_tier=resolution.plan_tier,
                usage=feature_usage,
                limit=feature_limit,
                standard_available=standard_available,
            )
        else:
            log.debug(
                "quota_checked",
                user_id=user_id,
                service=service,
                feature_type=feature_type,
                plan_tier=resolution.plan_tier,
                remaining=status.feature_remaining,
            )
        return status

    async def enforce(
        self,
        user_id: str,
        service: str,
        feature_type: str,
        credit_class: CreditClass | None = None,
    ) -> QuotaStatus:
        """Like ``check_limit`` but raises when the user is over quota.

        Raises:
            QuotaExceededError: carries the QuotaStatus.
        """
        status = await self.check_limit(user_id, service, feature_type, credit_class)
        if not status.is_within_limit:
            raise QuotaExceededError(
                f"Usage limit reached for {service}/{feature_type}",
                status=status,
                context={"user_id": user_id, "service": service, "feature_type": feature_type},
            )
        return status

    async def summary(self, user_id: str, service: str) -> UsageSummary:
        """Used, limit and remaining for today, this month and both credit buckets.

        Counts are read even for unlimited windows. Unlike ``check_limit``
        there is no failure policy: a store outage raises UsageStoreError.
        """
        now = self._clock()
        resolution = await self._plans.resolve(user_id, service, now)
        day_start, day_end = self.day_window(now)
        month_start, month_end = self.month_window(now)

        total = await self._entitlements.get(service, resolution.plan_tier, FEATURE_TOTAL)
        daily = WindowUsage(
            used=await self._usage.count(user_id, service, None, day_start, day_end),
            limit=_limit_value(total.daily_limit if total else None),
        )
        monthly = WindowUsage(
            used=await self._usage.count(user_id, service, None, month_start, month_end),
            limit=_limit_value(total.monthly_limit if total else None),
        )
        credits: dict[CreditClass, WindowUsage] = {}
        for credit_class in CreditClass:
            entitlement = await self._entitlements.get(service, resolution.plan_tier, credit_class.feature_type)
            credits[credit_class] = WindowUsage(
                used=await self._usage.count(user_id, service, None, day_start, day_end, credit_class),
                limit=_limit_value(entitlement.daily_limit if entitlement else None),
            )

        log.debug("usage_summary_read", user_id=user_id, service=service, plan_tier=resolution.plan_tier)
        return UsageSummary(
            user_id=user_id,
            service=service,
            plan_tier=resolution.plan_tier,
            plan_source=resolution.source,
            daily=daily,
            monthly=monthly,
            premium=credits[CreditClass.PREMIUM],
            standard=credits[CreditClass.STANDARD],
        )

    # ── Windows ──────────────────────────────────────────────────

    def day_window(self, now: datetime) -> tuple[datetime, datetime]:
        """``[local midnight, next local midnight)`` as UTC datetimes."""
        local = now.astimezone(self._tz)
        start = datetime(local.year, local.month, local.day, tzinfo=self._tz)
        next_day = start.date() + timedelta(days=1)
        end = datetime(next_day.year, next_day.month, next_day.day, tzinfo=self._tz)
        return start.astimezone(timezone.utc), end.astimezone(timezone.utc)

    def month_window(self, now: datetime) -> tuple[datetime, datetime]:
        """``[first of month, first of next month)`` as UTC datetimes."""
        local = now.astimezone(self._tz)
        start = datetime(local.year, local.month, 1, tzinfo=self._tz)
        if local.month == 12:
            end = datetime(local.year + 1, 1, 1, tzinfo=self._tz)
        else:
            end = datetime(local.year, local.month + 1, 1, tzinfo=self._tz)
        return start.astimezone(timezone.utc), end.astimezone(timezone.utc)

    # ── Internals ────────────────────────────────────────────────

    async def _entitlement_for(self, service: str, plan_tier: str, feature_type: str) -> PlanEntitlement:
        entitlement = await self._entitlements.get(service, plan_tier, feature_type)
        if entitlement is not None:
            return entitlement
        return PlanEntitlement(
            service=service,
            plan_tier=plan_tier,
            feature_type=feature_type,
            daily_limit=self._default_daily,
            monthly_limit=self._default_monthly,
        )

    async def _window_usage(
        self,
        user_id: str,
        service: str,
        feature_type: str | None,
        limit: int,
        start: datetime,
        end: datetime,
    ) -> int:
        # Unlimited and disabled windows are decided without a store round-trip
        if limit in (UNLIMITED, DISABLED):
            return 0
        return await self._usage.count(user_id, service, feature_type, start, end)

    async def _credit_window(
        self,
        user_id: str,
        service: str,
        plan_tier: str,
        credit_class: CreditClass,
        start: datetime,
        end: datetime,
    ) -> tuple[int, int]:
        # No entitlement row for a bucket means the plan does not meter it
        entitlement = await self._entitlements.get(service, plan_tier, credit_class.feature_type)
        limit = _limit_value(entitlement.daily_limit if entitlement else None)
        if limit in (UNLIMITED, DISABLED):
            return 0, limit
        return await self._usage.count(user_id, service, None, start, end, credit_class), limit

    def _degraded_status(
        self,
        user_id: str,
        service: str,
        feature_type: str,
        resolution: PlanResolution,
        exc: UsageStoreError,
    ) -> QuotaStatus:
        allow = self._failure_policy == "fail_open"
        log.error(
            "quota_store_unavailable",
            user_id=user_id,
            service=service,
            feature_type=feature_type,
            policy=self._failure_policy,
            allowed=allow,
            error=str(exc),
        )
        return QuotaStatus(
            is_within_limit=allow,
            feature_usage=0,
            feature_limit=UNLIMITED if allow else DISABLED,
            feature_remaining=UNLIMITED if allow else 0,
            daily_usage=0,
            daily_limit=UNLIMITED if allow else DISABLED,
            plan_tier=resolution.plan_tier,
            plan_source=resolution.source,
            degraded=True,
        )
