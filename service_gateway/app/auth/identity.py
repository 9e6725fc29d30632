"""
Identity resolution: bearer tokens and API keys.
"""

import hashlib
import hmac
import time
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Sequence, Union

from jose import JWTError, jwt

from shared.errors import AuthenticationError, InvalidCredentialError
from shared.logging import get_logger, set_principal_context

from ..domain.context import AccessDecision, AdmissionContext, Identity, Principal, Role, ServiceIdentity, Stage


class IdentityResolver:
    """Verifies credentials into principals and issues signed tokens.

    The signing secret and token settings are fixed at construction; nothing
    here performs I/O.
    """

    def __init__(
        self,
        secret: str,
        *,
        expires_in: int = 7 * 24 * 3600,
        issuer: Optional[str] = None,
        audience: Optional[str] = None,
        algorithm: str = "HS256",
        api_keys: Sequence[str] = (),
        clock: Optional[Callable[[], float]] = None,
    ):
        if not secret:
            raise ValueError("A signing secret is required")
        self._secret = secret
        self.expires_in = expires_in
        self.issuer = issuer
        self.audience = audience
        self.algorithm = algorithm
        self.api_keys = tuple(api_keys)
        self._clock = clock or time.time
        self.logger = get_logger("gateway.identity")

    @classmethod
    def from_config(cls, config) -> "IdentityResolver":
        return cls(
            config.jwt_secret,
            expires_in=config.jwt_expires_in,
            issuer=config.jwt_issuer,
            audience=config.jwt_audience,
            algorithm=config.jwt_algorithm,
            api_keys=config.api_keys,
        )

    def issue_token(self, principal: Principal, expires_in: Optional[int] = None) -> str:
        """Sign a token carrying the principal's id, email and role."""
        now = int(self._clock())
        horizon = self.expires_in if expires_in is None else expires_in
        claims: Dict[str, Any] = {
            "id": principal.id,
            "sub": principal.id,
            "email": principal.email,
            "role": Role(principal.role).value,
            "iat": now,
            "exp": now + horizon,
        }
        if self.issuer:
            claims["iss"] = self.issuer
        if self.audience:
            claims["aud"] = self.audience
        return jwt.encode(claims, self._secret, algorithm=self.algorithm)

    def resolve_from_token(self, raw: str) -> Principal:
        try:
            claims = jwt.decode(
                raw,
                self._secret,
                algorithms=[self.algorithm],
                audience=self.audience,
                issuer=self.issuer,
                options={"verify_aud": self.audience is not None},
            )
        except JWTError as exc:
            self.logger.warning("Token rejected", reason=type(exc).__name__)
            raise InvalidCredentialError() from exc

        principal_id = claims.get("id") or claims.get("sub")
        email = claims.get("email")
        try:
            role = Role(claims.get("role"))
        except ValueError:
            role = None
        if not isinstance(principal_id, str) or not principal_id or not isinstance(email, str) or role is None:
            self.logger.warning("Token rejected", reason="incomplete_claims")
            raise InvalidCredentialError()

        return Principal(
            id=principal_id,
            email=email,
            role=role,
            issued_at=claims.get("iat"),
            expires_at=claims.get("exp"),
        )

    def resolve_from_api_key(self, raw: str, valid_keys: Optional[Union[str, Iterable[str]]] = None) -> ServiceIdentity:
        """Match ``raw`` exactly against the configured (or given) keys."""
        if valid_keys is None:
            keys: Iterable[str] = self.api_keys
        elif isinstance(valid_keys, str):
            keys = (valid_keys,)
        else:
            keys = valid_keys

        candidate = raw.encode()
        matched = False
        for key in keys:
            # Compare against every key so timing does not reveal which one matched.
            matched |= hmac.compare_digest(candidate, key.encode())
        if not raw or not matched:
            self.logger.warning("API key rejected")
            raise InvalidCredentialError("Invalid API key")

        fingerprint = hashlib.sha256(candidate).hexdigest()[:12]
        return ServiceIdentity(id=f"api-key:{fingerprint}")

    def authenticate(
        self,
        headers: Mapping[str, str],
        *,
        allow_bearer: bool = True,
        allow_api_key: bool = False,
    ) -> Identity:
        """Resolve the caller from request headers."""
        if allow_api_key:
            api_key = headers.get("X-API-Key")
            if api_key:
                return self.resolve_from_api_key(api_key)
            if not allow_bearer:
                raise AuthenticationError("API key required")

        authorization = headers.get("Authorization")
        if not authorization:
            raise AuthenticationError("Authentication required")

        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise AuthenticationError("Invalid authorization header format")

        return self.resolve_from_token(token.strip())

    def stage(self, *, allow_bearer: bool = True, allow_api_key: bool = False, optional: bool = False) -> "IdentityStage":
        return IdentityStage(self, allow_bearer=allow_bearer, allow_api_key=allow_api_key, optional=optional)


class IdentityStage(Stage):
    name = "identity"
    passed_state = "IdentityResolved"
    failed_state = "IdentityFailed"

    def __init__(self, resolver: IdentityResolver, *, allow_bearer: bool, allow_api_key: bool, optional: bool):
        self.resolver = resolver
        self.allow_bearer = allow_bearer
        self.allow_api_key = allow_api_key
        self.optional = optional

    def _has_credential(self, headers: Mapping[str, str]) -> bool:
        return bool(
            (self.allow_bearer and headers.get("Authorization"))
            or (self.allow_api_key and headers.get("X-API-Key"))
        )

    async def evaluate(self, ctx: AdmissionContext) -> AccessDecision:
        headers = ctx.request.headers
        if self.optional and not self._has_credential(headers):
            return AccessDecision.proceed()

        identity = self.resolver.authenticate(
            headers, allow_bearer=self.allow_bearer, allow_api_key=self.allow_api_key
        )
        ctx.principal = identity
        role = identity.role.value if identity.role else None
        set_principal_context(identity.id, role)
        return AccessDecision.proceed()
