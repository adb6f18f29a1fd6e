from __future__ import annotations

import re
from dataclasses import dataclass, replace
from datetime import datetime
from typing import FrozenSet, Iterable, List, Optional, Pattern, Tuple

from campauth.logging import get_logger
from campauth.service.errors import (
    AuthenticationRequired,
    ServiceError,
    TokenError,
    TokenExpired,
)
from campauth.service.pipeline import Fail, Ok, run_steps
from campauth.service.tokens import AccessClaims, TokenService

logger = get_logger(__name__)

DEFAULT_PUBLIC_ROUTES: Tuple[Tuple[str, str], ...] = (
    ("POST", r"^/v1/auth/login$"),
    ("POST", r"^/v1/auth/refresh-token$"),
    ("POST", r"^/v1/auth/logout$"),
    ("POST", r"^/v1/2fa/verify-login$"),
    ("GET", r"^/healthz$"),
    ("GET", r"^/docs(/.*)?$"),
    ("GET", r"^/redoc$"),
    ("GET", r"^/openapi\.json$"),
    ("OPTIONS", r"^/.*$"),
)


@dataclass(frozen=True)
class Identity:
    account_id: str
    roles: FrozenSet[str]
    token_id: str
    expires_at: datetime

    def has_role(self, role: str) -> bool:
        return role in self.roles


@dataclass(frozen=True)
class GuardOutcome:
    """``kind`` is ``authenticated``, ``anonymous`` or ``rejected``."""

    kind: str
    identity: Optional[Identity] = None
    error: Optional[ServiceError] = None

    @property
    def authenticated(self) -> bool:
        return self.kind == "authenticated"


@dataclass(frozen=True)
class _GuardState:
    token: str
    claims: Optional[AccessClaims] = None


def parse_route_pattern(entry: str) -> Tuple[str, Pattern[str]]:
    """Parse a ``"METHOD regex"`` allowlist entry; ``*`` matches any method."""
    parts = entry.strip().split(None, 1)
    if len(parts) != 2:
        raise ValueError(f"public route entry must be 'METHOD regex': {entry!r}")
    method, pattern = parts
    return method.upper(), re.compile(pattern)


def extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, value = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    return value.strip() or None


class SessionGuard:
    """Resolves the caller's identity from the bearer token on every request.

    Public routes are served anonymously when no usable token is presented;
    every other route is rejected. Expired tokens are reported as
    ``token_expired`` so clients know to refresh, while every other token
    problem is a plain ``unauthorized``.
    """

    def __init__(
        self,
        tokens: TokenService,
        *,
        public_routes: Iterable[Tuple[str, str]] = DEFAULT_PUBLIC_ROUTES,
        extra_public_patterns: Iterable[str] = (),
    ) -> None:
        self.tokens = tokens
        self._public: List[Tuple[str, Pattern[str]]] = [
            (method.upper(), re.compile(pattern)) for method, pattern in public_routes
        ]
        self._public.extend(parse_route_pattern(entry) for entry in extra_public_patterns)

    def is_public(self, method: str, path: str) -> bool:
        method = method.upper()
        for allowed_method, pattern in self._public:
            if allowed_method not in ("*", method):
                continue
            if pattern.match(path):
                return True
        return False

    async def _verify(self, state: _GuardState):
        try:
            claims = self.tokens.verify_access_token(state.token)
        except TokenExpired as exc:
            return Fail(exc)
        except TokenError as exc:
            logger.info("access_token_rejected", reason=exc.error_code)
            return Fail(AuthenticationRequired("invalid access token"))
        return Ok(replace(state, claims=claims))

    async def _check_denylist(self, state: _GuardState):
        if await self.tokens.is_access_token_denylisted(state.claims.jti):
            logger.info("access_token_rejected", reason="denylisted", account_id=state.claims.subject)
            return Fail(AuthenticationRequired("access token has been revoked"))
        return Ok(state)

    async def evaluate(
        self, method: str, path: str, authorization: Optional[str]
    ) -> GuardOutcome:
        public = self.is_public(method, path)
        token = extract_bearer(authorization)
        if token is None:
            if public:
                return GuardOutcome("anonymous")
            return GuardOutcome("rejected", error=AuthenticationRequired())
        try:
            result = await run_steps(
                "session_guard", _GuardState(token=token), [self._verify, self._check_denylist]
            )
        except ServiceError as exc:
            result = Fail(exc)
        if isinstance(result, Fail):
            if public:
                return GuardOutcome("anonymous")
            return GuardOutcome("rejected", error=result.error)
        claims = result.value.claims
        identity = Identity(
            account_id=claims.subject,
            roles=claims.roles,
            token_id=claims.jti,
            expires_at=claims.expires_at_dt,
        )
        return GuardOutcome("authenticated", identity=identity)
