from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, MutableMapping, Optional, Tuple

from campauth.config import Settings
from campauth.logging import get_logger
from campauth.service.errors import RateLimited
from campauth.service.resilience import BoundedCaller
from campauth.storage.common import normalize_ip
from campauth.storage.counters import CounterStore

logger = get_logger(__name__)

AUTH_SCOPE = "auth"
GENERAL_SCOPE = "general"


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int

    def apply_headers(self, headers: MutableMapping[str, str]) -> None:
        """Standard ``RateLimit-*`` headers (draft-ietf-httpapi-ratelimit-headers)."""
        if self.limit <= 0:
            return
        headers["RateLimit-Limit"] = str(self.limit)
        headers["RateLimit-Remaining"] = str(max(0, self.remaining))
        headers["RateLimit-Reset"] = str(max(0, self.reset_seconds))


def client_address(
    peer: Optional[str], forwarded_for: Optional[str], *, trust_forwarded_for: bool
) -> str:
    if trust_forwarded_for and forwarded_for:
        first_hop = normalize_ip(forwarded_for.split(",")[0])
        if first_hop:
            return first_hop
    return normalize_ip(peer) or "unknown"


class RateLimiter:
    """Sliding-window request budgets per (scope, client address)."""

    def __init__(
        self,
        settings: Settings,
        counters: CounterStore,
        *,
        counter_call: Optional[BoundedCaller] = None,
    ) -> None:
        self.settings = settings
        self.counters = counters
        self._call = counter_call or BoundedCaller(
            "counters", settings.counter_timeout_seconds, settings.infra_retry_attempts
        )
        self._scopes: Dict[str, Tuple[int, int]] = {
            AUTH_SCOPE: (settings.auth_rate_limit, settings.auth_rate_limit_window_seconds),
            GENERAL_SCOPE: (
                settings.general_rate_limit,
                settings.general_rate_limit_window_seconds,
            ),
        }

    def client_address(self, peer: Optional[str], forwarded_for: Optional[str]) -> str:
        return client_address(
            peer, forwarded_for, trust_forwarded_for=self.settings.trust_forwarded_for
        )

    async def check(self, scope: str, client: str) -> RateLimitDecision:
        limit, window_seconds = self._scopes[scope]
        if limit <= 0:
            return RateLimitDecision(True, limit, limit, 0)
        allowed, remaining, retry_after = await self._call(
            "sliding_window",
            self.counters.sliding_window,
            f"ratelimit:{scope}:{client}",
            limit=limit,
            window_seconds=window_seconds,
            idempotent=False,
        )
        reset = retry_after if not allowed else window_seconds
        return RateLimitDecision(allowed, limit, remaining, reset)

    async def enforce(self, scope: str, client: str) -> RateLimitDecision:
        """Count one request; raises ``RateLimited`` when the budget is spent."""
        decision = await self.check(scope, client)
        if not decision.allowed:
            logger.warning(
                "rate_limit_exceeded",
                scope=scope,
                client=client,
                retry_after=decision.reset_seconds,
            )
            raise RateLimited(
                retry_after=decision.reset_seconds,
                detail={"scope": scope, "limit": decision.limit},
            )
        return decision


AUTH_SCOPE_PATHS = frozenset(
    {"/v1/auth/login", "/v1/auth/refresh-token", "/v1/2fa/verify-login"}
)
UNLIMITED_PATHS = frozenset({"/healthz"})


def scope_for_path(path: str) -> Optional[str]:
    """Budget a request path draws from; ``None`` for unmetered paths."""
    if path in UNLIMITED_PATHS:
        return None
    if path in AUTH_SCOPE_PATHS:
        return AUTH_SCOPE
    return GENERAL_SCOPE
