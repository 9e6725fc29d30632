"""
Admission context, decisions and the stage contract.

A pipeline is a list of stages. Each stage sees the same ``AdmissionContext``
and answers with an ``AccessDecision``: proceed to the next stage, admit, or
reject with a structured error.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, List, Optional, Union

from shared.errors import AccessLayerException, InternalError
from shared.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from fastapi import Request
    from ..ratelimit.models import RateLimitInfo


class Role(str, Enum):
    PUBLISHER = "publisher"
    ADVERTISER = "advertiser"
    ADMIN = "admin"


@dataclass(frozen=True)
class Principal:
    """Verified identity attached to a request; lives for that request only."""

    id: str
    email: str
    role: Role
    issued_at: Optional[int] = field(default=None, compare=False)
    expires_at: Optional[int] = field(default=None, compare=False)
    auth_method: str = field(default="jwt", compare=False)


@dataclass(frozen=True)
class ServiceIdentity:
    """Identity of a caller that presented a valid API key.

    Holds a fingerprint of the key, never the key itself.
    """

    id: str
    auth_method: str = "api_key"
    role: Optional[Role] = None


Identity = Union[Principal, ServiceIdentity]


class Outcome(str, Enum):
    PROCEED = "proceed"
    ADMIT = "admit"
    REJECT = "reject"


@dataclass(frozen=True)
class AccessDecision:
    outcome: Outcome
    principal: Optional[Identity] = None
    error: Optional[AccessLayerException] = None

    @classmethod
    def proceed(cls) -> "AccessDecision":
        return cls(Outcome.PROCEED)

    @classmethod
    def admit(cls, principal: Optional[Identity] = None) -> "AccessDecision":
        return cls(Outcome.ADMIT, principal=principal)

    @classmethod
    def reject(cls, error: AccessLayerException) -> "AccessDecision":
        return cls(Outcome.REJECT, error=error)

    @property
    def is_terminal(self) -> bool:
        return self.outcome != Outcome.PROCEED

    @property
    def kind(self) -> Optional[str]:
        return self.error.code if self.error else None


CompletionHook = Callable[[int], Awaitable[None]]


@dataclass
class AdmissionContext:
    """Per-request state shared by the stages of one pipeline run."""

    request: "Request"
    principal: Optional[Identity] = None
    rate_limit: Optional["RateLimitInfo"] = None
    completion_hooks: List[CompletionHook] = field(default_factory=list)
    started_at: float = field(default_factory=time.perf_counter)

    def on_complete(self, hook: CompletionHook) -> None:
        """Run ``hook(status_code)`` once the admitted request has a response."""
        self.completion_hooks.append(hook)


class Stage:
    """One step of an admission pipeline.

    Subclasses implement ``evaluate``; ``run`` is what the pipeline calls and
    guarantees a decision comes back instead of an exception.
    """

    name: str = "stage"
    # Pipeline state reached when this stage lets the request through
    passed_state: str = "StagePassed"
    failed_state: str = "StageFailed"

    async def evaluate(self, ctx: AdmissionContext) -> AccessDecision:
        raise NotImplementedError

    async def run(self, ctx: AdmissionContext) -> AccessDecision:
        try:
            return await self.evaluate(ctx)
        except AccessLayerException as exc:
            return AccessDecision.reject(exc)
        except Exception as exc:
            get_logger("gateway.pipeline").error(
                "Admission stage failed unexpectedly", stage=self.name, error=str(exc), exc_info=True
            )
            return AccessDecision.reject(InternalError())

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


def describe(value: Any) -> str:
    """Short label for an identity in logs."""
    return getattr(value, "id", None) or "anonymous"
