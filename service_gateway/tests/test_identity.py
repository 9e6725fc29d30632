"""
Unit tests for the identity resolver.
"""

import time

import pytest
from jose import jwt

from service_gateway.app.auth.identity import IdentityResolver
from service_gateway.app.domain.context import AdmissionContext, Outcome, Principal, Role, ServiceIdentity
from shared.errors import AuthenticationError, InvalidCredentialError

from .helpers import make_request


SECRET = "unit-test-secret"


class TestIdentityResolver:
    """Test cases for IdentityResolver."""

    @pytest.fixture
    def resolver(self):
        return IdentityResolver(
            SECRET,
            expires_in=3600,
            issuer="campfire-ads-platform",
            audience="campfire-ads-api",
            api_keys=["key-one", "key-two"],
        )

    @pytest.mark.parametrize("role", list(Role))
    def test_token_round_trip(self, resolver, role):
        principal = Principal(id="user-1", email="user@example.com", role=role)

        resolved = resolver.resolve_from_token(resolver.issue_token(principal))

        assert resolved == principal
        assert resolved.expires_at - resolved.issued_at == 3600

    def test_issue_token_custom_expiry(self, resolver):
        principal = Principal(id="user-1", email="user@example.com", role=Role.PUBLISHER)

        resolved = resolver.resolve_from_token(resolver.issue_token(principal, expires_in=60))

        assert resolved.expires_at - resolved.issued_at == 60

    def test_expired_token_rejected(self, resolver):
        past = IdentityResolver(
            SECRET,
            issuer="campfire-ads-platform",
            audience="campfire-ads-api",
            clock=lambda: time.time() - 7200,
        )
        token = past.issue_token(Principal(id="u", email="u@example.com", role=Role.ADMIN), expires_in=60)

        with pytest.raises(InvalidCredentialError) as exc_info:
            resolver.resolve_from_token(token)

        assert exc_info.value.code == "INVALID_CREDENTIAL"
        assert exc_info.value.message == "Invalid token"
        assert exc_info.value.status_code == 401

    def test_wrong_secret_rejected(self, resolver):
        forger = IdentityResolver("another-secret", issuer="campfire-ads-platform", audience="campfire-ads-api")
        token = forger.issue_token(Principal(id="u", email="u@example.com", role=Role.ADMIN))

        with pytest.raises(InvalidCredentialError):
            resolver.resolve_from_token(token)

    def test_tampered_payload_rejected(self, resolver):
        token = resolver.issue_token(Principal(id="u", email="u@example.com", role=Role.PUBLISHER))
        header, _, signature = token.split(".")
        forged_claims = jwt.encode(
            {"id": "u", "email": "u@example.com", "role": "admin", "exp": int(time.time()) + 3600},
            "irrelevant",
            algorithm="HS256",
        ).split(".")[1]

        with pytest.raises(InvalidCredentialError):
            resolver.resolve_from_token(f"{header}.{forged_claims}.{signature}")

    def test_wrong_audience_rejected(self, resolver):
        other = IdentityResolver(SECRET, issuer="campfire-ads-platform", audience="someone-else")
        token = other.issue_token(Principal(id="u", email="u@example.com", role=Role.PUBLISHER))

        with pytest.raises(InvalidCredentialError):
            resolver.resolve_from_token(token)

    @pytest.mark.parametrize(
        "claims",
        [
            {"id": "u", "email": "u@example.com", "role": "superuser"},
            {"id": "u", "role": "publisher"},
            {"email": "u@example.com", "role": "publisher"},
        ],
    )
    def test_incomplete_claims_rejected(self, resolver, claims):
        now = int(time.time())
        token = jwt.encode(
            {**claims, "iat": now, "exp": now + 60, "iss": "campfire-ads-platform", "aud": "campfire-ads-api"},
            SECRET,
            algorithm="HS256",
        )

        with pytest.raises(InvalidCredentialError):
            resolver.resolve_from_token(token)

    def test_sub_claim_accepted_as_id(self, resolver):
        now = int(time.time())
        token = jwt.encode(
            {
                "sub": "user-9",
                "email": "nine@example.com",
                "role": "advertiser",
                "iat": now,
                "exp": now + 60,
                "iss": "campfire-ads-platform",
                "aud": "campfire-ads-api",
            },
            SECRET,
            algorithm="HS256",
        )

        assert resolver.resolve_from_token(token).id == "user-9"

    def test_garbage_token_rejected(self, resolver):
        with pytest.raises(InvalidCredentialError):
            resolver.resolve_from_token("not-a-token")

    def test_api_key_accepted(self, resolver):
        identity = resolver.resolve_from_api_key("key-two")

        assert isinstance(identity, ServiceIdentity)
        assert identity.id.startswith("api-key:")
        assert "key-two" not in identity.id
        assert identity.role is None

    @pytest.mark.parametrize("raw", ["KEY-ONE", "key-one ", "", "key"])
    def test_api_key_exact_match(self, resolver, raw):
        with pytest.raises(InvalidCredentialError) as exc_info:
            resolver.resolve_from_api_key(raw)

        assert exc_info.value.message == "Invalid API key"

    def test_api_key_explicit_valid_keys(self, resolver):
        assert resolver.resolve_from_api_key("single", valid_keys="single").auth_method == "api_key"
        with pytest.raises(InvalidCredentialError):
            resolver.resolve_from_api_key("key-one", valid_keys=["other"])

    def test_missing_secret_rejected(self):
        with pytest.raises(ValueError):
            IdentityResolver("")


class TestAuthenticate:
    """Header-level resolution."""

    @pytest.fixture
    def resolver(self):
        return IdentityResolver(SECRET, api_keys=["key-one"])

    def test_missing_header_is_unauthorized(self, resolver):
        with pytest.raises(AuthenticationError) as exc_info:
            resolver.authenticate({})

        assert exc_info.value.code == "UNAUTHORIZED"
        assert exc_info.value.status_code == 401

    @pytest.mark.parametrize("header", ["Basic dXNlcjpwYXNz", "Bearer", "Bearer   ", "token"])
    def test_garbled_header_is_unauthorized(self, resolver, header):
        with pytest.raises(AuthenticationError) as exc_info:
            resolver.authenticate({"Authorization": header})

        assert exc_info.value.status_code == 401

    def test_bad_bearer_token_is_invalid_credential(self, resolver):
        with pytest.raises(InvalidCredentialError):
            resolver.authenticate({"Authorization": "Bearer abc.def.ghi"})

    def test_bearer_token_resolves(self, resolver):
        principal = Principal(id="u", email="u@example.com", role=Role.ADVERTISER)
        token = resolver.issue_token(principal)

        assert resolver.authenticate({"Authorization": f"Bearer {token}"}) == principal

    def test_api_key_only(self, resolver):
        identity = resolver.authenticate({"X-API-Key": "key-one"}, allow_bearer=False, allow_api_key=True)
        assert identity.auth_method == "api_key"

        with pytest.raises(AuthenticationError) as exc_info:
            resolver.authenticate({}, allow_bearer=False, allow_api_key=True)
        assert exc_info.value.message == "API key required"

    def test_api_key_ignored_when_not_allowed(self, resolver):
        with pytest.raises(AuthenticationError):
            resolver.authenticate({"X-API-Key": "key-one"})


class TestIdentityStage:
    """Identity stage behaviour inside a pipeline context."""

    @pytest.fixture
    def resolver(self):
        return IdentityResolver(SECRET)

    @pytest.mark.asyncio
    async def test_stage_sets_principal(self, resolver):
        principal = Principal(id="u", email="u@example.com", role=Role.PUBLISHER)
        ctx = AdmissionContext(
            request=make_request(headers={"Authorization": f"Bearer {resolver.issue_token(principal)}"})
        )

        decision = await resolver.stage().run(ctx)

        assert decision.outcome == Outcome.PROCEED
        assert ctx.principal == principal

    @pytest.mark.asyncio
    async def test_stage_rejects_without_raising(self, resolver):
        ctx = AdmissionContext(request=make_request())

        decision = await resolver.stage().run(ctx)

        assert decision.outcome == Outcome.REJECT
        assert decision.kind == "UNAUTHORIZED"
        assert ctx.principal is None

    @pytest.mark.asyncio
    async def test_optional_stage_admits_anonymous(self, resolver):
        ctx = AdmissionContext(request=make_request())

        decision = await resolver.stage(optional=True).run(ctx)

        assert decision.outcome == Outcome.PROCEED
        assert ctx.principal is None

    @pytest.mark.asyncio
    async def test_optional_stage_still_rejects_bad_token(self, resolver):
        ctx = AdmissionContext(request=make_request(headers={"Authorization": "Bearer nope"}))

        decision = await resolver.stage(optional=True).run(ctx)

        assert decision.kind == "INVALID_CREDENTIAL"
