"""
Unit tests for role and ownership guards.
"""

import pytest
import pytest_asyncio

from service_gateway.app.adapters import OwnerRegistry
from service_gateway.app.auth.access import AccessController
from service_gateway.app.domain.context import AdmissionContext, Outcome, Principal, Role, ServiceIdentity
from shared.errors import NotFoundError

from .helpers import make_request


PUBLISHER_A = Principal(id="pub-a", email="a@example.com", role=Role.PUBLISHER)
PUBLISHER_B = Principal(id="pub-b", email="b@example.com", role=Role.PUBLISHER)
ADMIN = Principal(id="admin-1", email="admin@example.com", role=Role.ADMIN)


def context(principal=None, podcast_id="p1"):
    return AdmissionContext(request=make_request(path_params={"podcast_id": podcast_id}), principal=principal)


class TestRoleGuard:
    """Test cases for require_role."""

    @pytest.fixture
    def guard(self):
        return AccessController().require_role(Role.ADVERTISER, Role.ADMIN)

    @pytest.mark.asyncio
    async def test_allowed_role_proceeds(self, guard):
        advertiser = Principal(id="adv", email="adv@example.com", role=Role.ADVERTISER)

        decision = await guard.run(context(advertiser))

        assert decision.outcome == Outcome.PROCEED

    @pytest.mark.asyncio
    async def test_other_role_forbidden(self, guard):
        decision = await guard.run(context(PUBLISHER_A))

        assert decision.outcome == Outcome.REJECT
        assert decision.kind == "FORBIDDEN"
        assert decision.error.status_code == 403
        assert decision.error.details == {"required": ["admin", "advertiser"], "current": "publisher"}

    @pytest.mark.asyncio
    async def test_missing_principal_is_unauthorized(self, guard):
        decision = await guard.run(context(None))

        assert decision.kind == "UNAUTHORIZED"
        assert decision.error.status_code == 401

    @pytest.mark.asyncio
    async def test_service_identity_has_no_role(self, guard):
        decision = await guard.run(context(ServiceIdentity(id="api-key:abc")))

        assert decision.kind == "FORBIDDEN"

    def test_role_names_accepted(self):
        guard = AccessController().require_role("admin")
        assert guard.allowed == frozenset({Role.ADMIN})

    def test_empty_roles_rejected(self):
        with pytest.raises(ValueError):
            AccessController().require_role()


class TestOwnershipGuard:
    """Test cases for require_ownership."""

    @pytest_asyncio.fixture
    async def registry(self):
        registry = OwnerRegistry("podcast")
        await registry.register("p1", PUBLISHER_A.id, title="Show")
        return registry

    @pytest.mark.asyncio
    async def test_owner_proceeds(self, registry):
        guard = AccessController().require_ownership(registry.resolver("podcast_id"))

        decision = await guard.run(context(PUBLISHER_A))

        assert decision.outcome == Outcome.PROCEED

    @pytest.mark.asyncio
    async def test_non_owner_forbidden(self, registry):
        guard = AccessController().require_ownership(registry.resolver("podcast_id"))

        decision = await guard.run(context(PUBLISHER_B))

        assert decision.kind == "FORBIDDEN"

    @pytest.mark.asyncio
    async def test_admin_bypasses_ownership(self, registry):
        guard = AccessController().require_ownership(registry.resolver("podcast_id"))

        decision = await guard.run(context(ADMIN))

        assert decision.outcome == Outcome.PROCEED

    @pytest.mark.asyncio
    async def test_missing_resource_not_found(self, registry):
        guard = AccessController().require_ownership(registry.resolver("podcast_id"))

        decision = await guard.run(context(PUBLISHER_A, podcast_id="missing"))

        assert decision.kind == "NOT_FOUND"
        assert decision.error.status_code == 404

    @pytest.mark.asyncio
    async def test_missing_resource_concealed(self, registry):
        guard = AccessController().require_ownership(registry.resolver("podcast_id"), conceal_missing=True)

        decision = await guard.run(context(PUBLISHER_A, podcast_id="missing"))

        assert decision.kind == "FORBIDDEN"

    @pytest.mark.asyncio
    async def test_missing_principal_is_unauthorized(self, registry):
        guard = AccessController().require_ownership(registry.resolver("podcast_id"))

        decision = await guard.run(context(None))

        assert decision.kind == "UNAUTHORIZED"

    @pytest.mark.asyncio
    async def test_sync_resolver(self):
        guard = AccessController().require_ownership(lambda principal, request: "pub-a")

        assert (await guard.run(context(PUBLISHER_A))).outcome == Outcome.PROCEED
        assert (await guard.run(context(PUBLISHER_B))).kind == "FORBIDDEN"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [KeyError("p1"), NotFoundError()])
    async def test_resolver_lookup_failure_not_found(self, error):
        def resolve(principal, request):
            raise error

        guard = AccessController().require_ownership(resolve)

        decision = await guard.run(context(PUBLISHER_A))

        assert decision.kind == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_resolver_crash_is_internal_error(self):
        async def resolve(principal, request):
            raise RuntimeError("database on fire")

        guard = AccessController().require_ownership(resolve)

        decision = await guard.run(context(PUBLISHER_A))

        assert decision.kind == "INTERNAL_ERROR"
        assert decision.error.status_code == 500
