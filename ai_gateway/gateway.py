"""Gateway orchestrator — admission, routing, single fallback and usage accounting.

Request lifecycle:
RECEIVED → QUOTA_CHECKED → ROUTED → PRIMARY_ATTEMPTED
→ {SUCCESS | PRIMARY_FAILED → BACKUP_ATTEMPTED → {SUCCESS | BACKUP_FAILED}}
→ USAGE_RECORDED → RESPONDED

Every exception raised below this module is converted exactly once into a
``GatewayResult`` outcome here.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any

from ai_gateway.core.constants import DEFAULT_USD_JPY_RATE
from ai_gateway.core.exceptions import ConfigurationError, ProviderRejectedError, ProviderTransientError
from ai_gateway.core.logging import get_logger
from ai_gateway.core.types import (
    AIRequest,
    AIResponse,
    CreditClass,
    GatewayResult,
    GatewayState,
    OutcomeStatus,
    ProviderTag,
    QuotaStatus,
    Route,
    TokenUsage,
    UsageEvent,
)
from ai_gateway.llm.cost_tracker import estimate_cost_jpy
from ai_gateway.llm.registry import ProviderRegistry
from ai_gateway.llm.response_parser import ResponseParser
from ai_gateway.routing.policy import RoutingPolicy
from ai_gateway.saas.quota import QuotaLedger
from ai_gateway.saas.recorder import UsageRecorder

log = get_logger(__name__)


@dataclass
class _Attempt:
    """One provider call made while serving a request."""

    provider: ProviderTag
    model: str
    is_backup: bool
    response: AIResponse | None = None
    # Tokens the vendor billed, also set for blocked or empty completions
    usage: TokenUsage | None = None
    outcome: OutcomeStatus | None = None
    error: str = ""
    terminal: bool = False


class AIGateway:
    """Single entry point for every AI-backed request of the product.

    At most two sequential provider calls per ``invoke()``. No locks and no
    quota reservation: the quota check is a snapshot.
    """

    def __init__(
        self,
        ledger: QuotaLedger,
        routing: RoutingPolicy,
        providers: ProviderRegistry,
        recorder: UsageRecorder,
        parser: ResponseParser | None = None,
        provider_timeout_seconds: float = 60.0,
        usd_jpy_rate: float = DEFAULT_USD_JPY_RATE,
    ) -> None:
        self._ledger = ledger
        self._routing = routing
        self._providers = providers
        self._recorder = recorder
        self._parser = parser or ResponseParser()
        self._timeout = provider_timeout_seconds
        self._usd_jpy_rate = usd_jpy_rate
        self._inflight: set[asyncio.Task[GatewayResult]] = set()

    @property
    def recorder(self) -> UsageRecorder:
        return self._recorder

    @property
    def routing(self) -> RoutingPolicy:
        return self._routing

    async def start(self) -> None:
        await self._recorder.start()

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Let in-flight requests finish, then drain the usage queue."""
        if self._inflight:
            _, pending = await asyncio.wait(set(self._inflight), timeout=timeout)
            if pending:
                log.warning("gateway_shutdown_inflight_pending", pending=len(pending))
        await self._recorder.stop(timeout=timeout)

    async def invoke(
        self,
        user_id: str,
        service: str,
        feature_type: str,
        phase: str,
        payload: AIRequest,
        *,
        action_type: str | None = None,
        metadata: dict[str, Any] | None = None,
        credit_class: CreditClass = CreditClass.STANDARD,
    ) -> GatewayResult:
        """Serve one AI request.

        ``credit_class`` picks the daily credit bucket the call is checked
        against and recorded under: premium for quality mode, standard
        for speed mode.

        The pipeline runs in its own task; a caller that is cancelled
        mid-request does not abort the provider call or its accounting.
        """
        task = asyncio.ensure_future(
            self._run(user_id, service, feature_type, phase, payload, action_type, metadata or {}, credit_class)
        )
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return await asyncio.shield(task)

    # ── Pipeline ─────────────────────────────────────────────────

    async def _run(
        self,
        user_id: str,
        service: str,
        feature_type: str,
        phase: str,
        payload: AIRequest,
        action_type: str | None,
        metadata: dict[str, Any],
        credit_class: CreditClass,
    ) -> GatewayResult:
        started = time.monotonic()
        trail = [GatewayState.RECEIVED]

        quota = await self._ledger.check_limit(user_id, service, feature_type, credit_class)
        trail.append(GatewayState.QUOTA_CHECKED)

        if not quota.is_within_limit:
            if quota.degraded:
                result = GatewayResult(
                    status=OutcomeStatus.AI_UNAVAILABLE,
                    quota=quota,
                    error_message="Usage service unavailable",
                    trail=trail,
                )
            else:
                result = GatewayResult(
                    status=OutcomeStatus.LIMIT_EXCEEDED,
                    quota=quota,
                    error_message=(
                        "Premium credits used up for today; standard mode is still available"
                        if quota.standard_available
                        else "Usage limit reached"
                    ),
                    trail=trail,
                )
            return self._respond(result, user_id, service, feature_type, started)

        route = await self._routing.resolve(service, quota.plan_tier, phase)
        trail.append(GatewayState.ROUTED)

        attempts: list[_Attempt] = []
        final: _Attempt | None = None
        parsed: Any = None
        repaired = False

        for provider, model, is_backup in self._targets(route):
            attempt = _Attempt(provider=provider, model=model, is_backup=is_backup)
            attempts.append(attempt)
            trail.append(GatewayState.BACKUP_ATTEMPTED if is_backup else GatewayState.PRIMARY_ATTEMPTED)

            try:
                await self._attempt(attempt, payload)
            except ConfigurationError as exc:
                attempt.outcome = OutcomeStatus.CONFIGURATION_ERROR
                attempt.error = str(exc)
                log.error(
                    "provider_configuration_error",
                    provider=provider.value,
                    model=model,
                    error=str(exc),
                )
                break

            if attempt.outcome is None and payload.structured_output and attempt.response is not None:
                result_parse = self._parser.parse_structured(attempt.response.content)
                if result_parse.ok:
                    parsed, repaired = result_parse.value, result_parse.repaired
                else:
                    attempt.outcome = OutcomeStatus.INVALID_RESPONSE
                    attempt.error = result_parse.error

            if attempt.outcome is None:
                attempt.outcome = OutcomeStatus.SUCCESS
                final = attempt
                trail.append(GatewayState.SUCCESS)
                break

            trail.append(GatewayState.BACKUP_FAILED if is_backup else GatewayState.PRIMARY_FAILED)
            log.warning(
                "provider_attempt_failed",
                provider=provider.value,
                model=model,
                backup=is_backup,
                outcome=attempt.outcome.value,
                error=attempt.error,
            )
            if attempt.terminal:
                break

        last = attempts[-1]
        if final is not None and final.response is not None:
            response = final.response
            result = GatewayResult(
                status=OutcomeStatus.SUCCESS,
                content=response.content,
                parsed=parsed,
                model=final.model,
                provider=final.provider,
                usage=response.usage,
                quota=quota,
                used_backup=final.is_backup,
                attempts=len(attempts),
                trail=trail,
            )
        else:
            status = last.outcome or OutcomeStatus.AI_UNAVAILABLE
            result = GatewayResult(
                status=status,
                model=last.model,
                provider=last.provider,
                quota=quota,
                used_backup=last.is_backup,
                attempts=len(attempts),
                error_message=last.error,
                trail=trail,
            )

        if any(a.usage is not None for a in attempts):
            event = self._usage_event(
                user_id,
                service,
                feature_type,
                action_type or phase,
                phase,
                credit_class,
                quota,
                attempts,
                result,
                repaired,
                metadata,
            )
            if self._recorder.append(event):
                trail.append(GatewayState.USAGE_RECORDED)

        return self._respond(result, user_id, service, feature_type, started)

    async def _attempt(self, attempt: _Attempt, payload: AIRequest) -> None:
        """Run one provider call, filling ``attempt`` in place.

        Raises:
            ConfigurationError: missing key, unsupported provider or unknown model.
        """
        adapter = self._providers.get(attempt.provider, attempt.model)
        try:
            attempt.response = await asyncio.wait_for(adapter.generate(payload), timeout=self._timeout)
        except asyncio.TimeoutError:
            attempt.outcome = OutcomeStatus.AI_UNAVAILABLE
            attempt.error = f"timeout after {self._timeout}s"
        except ProviderTransientError as exc:
            attempt.outcome = OutcomeStatus.AI_UNAVAILABLE
            attempt.error = f"{exc.reason}: {exc}"
            attempt.usage = exc.usage
        except ProviderRejectedError as exc:
            attempt.outcome = OutcomeStatus.AI_UNAVAILABLE
            attempt.error = f"rejected: {exc}"
            attempt.terminal = True
        else:
            attempt.usage = attempt.response.usage

    @staticmethod
    def _targets(route: Route) -> list[tuple[ProviderTag, str, bool]]:
        targets = [(route.provider, route.model, False)]
        if route.has_backup and route.backup_provider is not None and route.backup_model:
            targets.append((route.backup_provider, route.backup_model, True))
        return targets

    # ── Accounting ───────────────────────────────────────────────

    def _usage_event(
        self,
        user_id: str,
        service: str,
        feature_type: str,
        action_type: str,
        phase: str,
        credit_class: CreditClass,
        quota: QuotaStatus,
        attempts: list[_Attempt],
        result: GatewayResult,
        repaired: bool,
        metadata: dict[str, Any],
    ) -> UsageEvent:
        """One event per request, costed over every attempt the vendor billed."""
        billed = [(a, a.usage) for a in attempts if a.usage is not None]
        usage = TokenUsage(
            input_tokens=sum(u.input_tokens for _, u in billed),
            output_tokens=sum(u.output_tokens for _, u in billed),
        )
        cost = sum(
            estimate_cost_jpy(a.model, u.input_tokens, u.output_tokens, self._usd_jpy_rate)
            for a, u in billed
        )
        return UsageEvent(
            user_id=user_id,
            service=service,
            feature_type=feature_type,
            action_type=action_type,
            model_used=billed[-1][0].model,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            estimated_cost=cost,
            credit_class=credit_class,
            metadata={
                **metadata,
                "provider": result.provider.value if result.provider else None,
                "phase": phase,
                "plan_tier": quota.plan_tier,
                "status": result.status.value,
                "used_backup": result.used_backup,
                "attempts": result.attempts,
                "repaired": repaired,
            },
        )

    def _respond(
        self,
        result: GatewayResult,
        user_id: str,
        service: str,
        feature_type: str,
        started: float,
    ) -> GatewayResult:
        result.trail.append(GatewayState.RESPONDED)
        log.info(
            "gateway_request_completed",
            user_id=user_id,
            service=service,
            feature_type=feature_type,
            status=result.status.value,
            model=result.model or None,
            used_backup=result.used_backup,
            attempts=result.attempts,
            latency_ms=f"{(time.monotonic() - started) * 1000:.0f}",
        )
        return result
