"""
Admission pipeline: runs stages in order and stops at the first terminal decision.

Standard routes run identity, then access guards, then rate limiting. The bid
route runs the fast-path limiter before identity so an unauthenticated flood
is shed before any token or key is verified.
"""

import time
from typing import TYPE_CHECKING, Optional, Sequence, Tuple

from fastapi import Request, Response

from shared.logging import get_logger

from .context import AccessDecision, AdmissionContext, Outcome, Stage, describe

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


HOOKS_STATE_ATTR = "admission_hooks"


class AdmissionPipeline:
    def __init__(self, name: str, stages: Sequence[Stage], metrics: Optional["MetricsCollector"] = None):
        if not stages:
            raise ValueError("A pipeline needs at least one stage")
        self.name = name
        self.stages = tuple(stages)
        self.metrics = metrics
        self.logger = get_logger("gateway.pipeline")

    async def run(self, request: Request) -> Tuple[AccessDecision, AdmissionContext]:
        """Evaluate every stage until one rejects; admit if all proceed."""
        ctx = AdmissionContext(request=request)
        state = "Received"

        for stage in self.stages:
            started = time.perf_counter()
            decision = await stage.run(ctx)
            if self.metrics:
                self.metrics.observe_stage(stage.name, time.perf_counter() - started)

            if decision.outcome == Outcome.REJECT:
                self.logger.info(
                    "Request rejected",
                    pipeline=self.name,
                    stage=stage.name,
                    transition=f"{state}->{stage.failed_state}",
                    kind=decision.kind,
                    principal=describe(ctx.principal),
                )
                self._record(decision)
                return decision, ctx

            state = stage.passed_state
            if decision.outcome == Outcome.ADMIT:
                break

        decision = AccessDecision.admit(ctx.principal)
        self.logger.debug(
            "Request admitted",
            pipeline=self.name,
            transition=f"{state}->Forwarded",
            principal=describe(ctx.principal),
            duration_ms=round((time.perf_counter() - ctx.started_at) * 1000, 3),
        )
        self._record(decision)
        return decision, ctx

    def _record(self, decision: AccessDecision) -> None:
        if self.metrics:
            self.metrics.record_admission(self.name, decision.outcome.value, decision.kind or "none")

    def as_dependency(self):
        """FastAPI dependency that admits the request or raises its rejection.

        On admit the principal is stored on ``request.state.principal``, rate
        limit headers are added to the response, and completion hooks are
        queued on ``request.state`` for the gateway middleware to run.
        """

        async def admit(request: Request, response: Response):
            decision, ctx = await self.run(request)
            # Hooks from stages that passed still settle against the final status
            if ctx.completion_hooks:
                hooks = getattr(request.state, HOOKS_STATE_ATTR, None)
                if hooks is None:
                    hooks = []
                    setattr(request.state, HOOKS_STATE_ATTR, hooks)
                hooks.extend(ctx.completion_hooks)
            if decision.outcome == Outcome.REJECT:
                raise decision.error

            request.state.principal = ctx.principal
            request.state.rate_limit = ctx.rate_limit
            if ctx.rate_limit is not None:
                for header, value in ctx.rate_limit.headers().items():
                    response.headers[header] = value
            return ctx.principal

        return admit
