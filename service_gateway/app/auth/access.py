"""
Role and ownership guards.

Both guards assume the identity stage already ran. A context without a
principal is rejected as unauthenticated, never as forbidden.
"""

import inspect
from typing import Any, Awaitable, Callable, FrozenSet, Optional, Union

from shared.errors import AuthenticationError, AuthorizationError, InternalError, NotFoundError
from shared.logging import get_logger

from ..domain.context import AccessDecision, AdmissionContext, Identity, Role, Stage

OwnerResolver = Callable[[Identity, Any], Union[Optional[str], Awaitable[Optional[str]]]]


def _require_principal(ctx: AdmissionContext) -> Identity:
    if ctx.principal is None:
        raise AuthenticationError()
    return ctx.principal


class AccessController:
    def __init__(self):
        self.logger = get_logger("gateway.access")

    def require_role(self, *allowed: Union[Role, str]) -> "RoleStage":
        if not allowed:
            raise ValueError("require_role needs at least one role")
        return RoleStage(self, frozenset(Role(role) for role in allowed))

    def require_ownership(self, resolve_owner_id: OwnerResolver, *, conceal_missing: bool = False) -> "OwnershipStage":
        """Guard admitting only the resource owner or an admin.

        ``resolve_owner_id(principal, request)`` may be sync or async. When it
        returns ``None`` or raises ``LookupError`` the resource is treated as
        missing: 404, or 403 when ``conceal_missing`` is set so callers cannot
        probe for resource existence.
        """
        return OwnershipStage(self, resolve_owner_id, conceal_missing=conceal_missing)


class RoleStage(Stage):
    name = "access:role"
    passed_state = "AccessChecked"
    failed_state = "AccessDenied"

    def __init__(self, controller: AccessController, allowed: FrozenSet[Role]):
        self.controller = controller
        self.allowed = allowed

    async def evaluate(self, ctx: AdmissionContext) -> AccessDecision:
        principal = _require_principal(ctx)
        if principal.role not in self.allowed:
            details = {
                "required": sorted(role.value for role in self.allowed),
                "current": principal.role.value if principal.role else None,
            }
            self.controller.logger.warning("Role not permitted", principal_id=principal.id, **details)
            raise AuthorizationError(details=details)
        return AccessDecision.proceed()


class OwnershipStage(Stage):
    name = "access:ownership"
    passed_state = "AccessChecked"
    failed_state = "AccessDenied"

    def __init__(self, controller: AccessController, resolve_owner_id: OwnerResolver, *, conceal_missing: bool):
        self.controller = controller
        self.resolve_owner_id = resolve_owner_id
        self.conceal_missing = conceal_missing

    def _missing(self) -> Exception:
        if self.conceal_missing:
            return AuthorizationError()
        return NotFoundError("Resource not found")

    async def evaluate(self, ctx: AdmissionContext) -> AccessDecision:
        principal = _require_principal(ctx)
        try:
            owner_id = self.resolve_owner_id(principal, ctx.request)
            if inspect.isawaitable(owner_id):
                owner_id = await owner_id
        except (LookupError, NotFoundError):
            raise self._missing()
        except AuthorizationError:
            raise
        except Exception as exc:
            self.controller.logger.error("Owner lookup failed", error=str(exc), exc_info=True)
            raise InternalError() from exc

        if owner_id is None:
            raise self._missing()
        if principal.role == Role.ADMIN:
            return AccessDecision.proceed()
        if owner_id != principal.id:
            self.controller.logger.warning("Ownership check failed", principal_id=principal.id)
            raise AuthorizationError("Access denied: resource belongs to another user")
        return AccessDecision.proceed()
