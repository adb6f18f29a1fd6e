from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Optional

from campauth.logging import get_logger
from campauth.service.resilience import BoundedCaller
from campauth.storage.counters import CounterStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class LockoutDecision:
    allowed: bool
    retry_after: int = 0
    attempts: int = 0


class LockoutGuard:
    """Failed-attempt counter that locks a subject once ``threshold`` is hit.

    Subjects are hashed before they become counter keys so raw identifiers
    (emails) never land in Redis. The window starts at the first failure and
    is not extended by later ones.
    """

    def __init__(
        self,
        scope: str,
        counters: CounterStore,
        *,
        threshold: int,
        window_seconds: int,
        lock_seconds: int,
        counter_call: Optional[BoundedCaller] = None,
    ) -> None:
        if threshold <= 0:
            raise ValueError("threshold must be positive")
        self.scope = scope
        self.counters = counters
        self.threshold = threshold
        self.window_seconds = window_seconds
        self.lock_seconds = lock_seconds
        self._call = counter_call or BoundedCaller("counters", 1.0)

    def subject_key(self, subject: str) -> str:
        normalized = (subject or "").strip().lower()
        digest = hashlib.sha256(normalized.encode("utf-8")).hexdigest()
        return f"lockout:{self.scope}:{digest}"

    async def check_lockout(self, subject: str) -> LockoutDecision:
        ttl = await self._call(
            "lock_ttl", self.counters.lock_ttl, self.subject_key(subject)
        )
        if ttl > 0:
            return LockoutDecision(allowed=False, retry_after=ttl)
        return LockoutDecision(allowed=True)

    async def record_failure(self, subject: str) -> LockoutDecision:
        key = self.subject_key(subject)
        # Counting and locking happen in one counter-store operation; not
        # retried since a retry could count the failure twice.
        locked, attempts, retry_after = await self._call(
            "hit_with_threshold",
            self.counters.hit_with_threshold,
            key,
            threshold=self.threshold,
            window_seconds=self.window_seconds,
            lock_seconds=self.lock_seconds,
            idempotent=False,
        )
        if locked and attempts >= self.threshold:
            logger.warning(
                "lockout_triggered",
                scope=self.scope,
                attempts=attempts,
                lock_seconds=self.lock_seconds,
            )
        return LockoutDecision(
            allowed=not locked, retry_after=retry_after, attempts=max(attempts, 0)
        )

    async def record_success(self, subject: str) -> None:
        await self._call("clear", self.counters.clear, self.subject_key(subject))
