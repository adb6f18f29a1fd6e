from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from campauth.config import Settings, get_settings, reset_settings_cache
from campauth.logging import get_logger
from campauth.service.gate import AuthenticationGate
from campauth.service.keys import SigningKeyProvider
from campauth.service.passwords import PasswordVerifier
from campauth.service.rate_limit import RateLimiter
from campauth.service.resilience import BoundedCaller
from campauth.service.session_guard import SessionGuard
from campauth.service.tokens import TokenService
from campauth.service.two_factor import TwoFactorChallenge
from campauth.storage.counters import MemoryCounterStore
from campauth.storage.memory import MemoryStore
from campauth.storage.postgres import PostgresStore
from campauth.storage.redis_cache import RedisCounterStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        # A bad signing key must stop startup before anything else is wired
        self.keys = SigningKeyProvider.from_settings(self.settings)
        mfa_key = self.settings.mfa_key_material()

        try:
            self.store = (
                MemoryStore(mfa_encryption_key=mfa_key)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    mfa_encryption_key=mfa_key,
                    statement_timeout_seconds=self.settings.store_timeout_seconds,
                )
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.counters = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                counters = RedisCounterStore(
                    self.settings.redis_url,
                    socket_timeout=self.settings.counter_timeout_seconds,
                )
                counters.verify_connection()
                self.counters = counters
            except Exception as exc:
                redis_error = exc

        if self.counters is None:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for lockout counters, rate limits and the token denylist; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; lockouts, rate limits and "
                    "the access token denylist are local to this process."
                ),
                mode=fallback_mode,
            )
            self.counters = MemoryCounterStore()

        self.store_call = BoundedCaller(
            "store", self.settings.store_timeout_seconds, self.settings.infra_retry_attempts
        )
        self.counter_call = BoundedCaller(
            "counters", self.settings.counter_timeout_seconds, self.settings.infra_retry_attempts
        )
        self.passwords = PasswordVerifier()
        self.tokens = TokenService(
            self.settings,
            self.keys,
            self.store,
            self.counters,
            store_call=self.store_call,
            counter_call=self.counter_call,
        )
        self.two_factor = TwoFactorChallenge(
            self.settings,
            self.store,
            self.tokens,
            self.counters,
            store_call=self.store_call,
            counter_call=self.counter_call,
        )
        self.gate = AuthenticationGate(
            self.settings,
            self.store,
            self.counters,
            self.tokens,
            self.two_factor,
            passwords=self.passwords,
            store_call=self.store_call,
            counter_call=self.counter_call,
        )
        self.session_guard = SessionGuard(
            self.tokens, extra_public_patterns=self.settings.public_route_patterns
        )
        self.rate_limiter = RateLimiter(
            self.settings, self.counters, counter_call=self.counter_call
        )
        logger.info(
            "runtime_initialized",
            redis_enabled=isinstance(self.counters, RedisCounterStore),
            active_kid=self.keys.active.kid,
            build=self.settings.build_sha,
        )

    async def close(self) -> None:
        await self.counters.close()
        close_store = getattr(self.store, "close", None)
        if close_store is not None:
            await asyncio.to_thread(close_store)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
