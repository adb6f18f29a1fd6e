"""Timeout and retry bounds for calls into stores and counter services."""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Callable, Optional

from campauth.logging import get_logger
from campauth.service.errors import InfrastructureTimeout
from campauth.storage.errors import StoreTimeoutError, StoreUnavailableError

logger = get_logger(__name__)

_TRANSIENT = (asyncio.TimeoutError, StoreTimeoutError, StoreUnavailableError)


class BoundedCaller:
    """Run a collaborator call under a timeout with a bounded retry.

    Sync callables (the stores) run in a worker thread; coroutine functions
    (the counter stores) are awaited directly. A timeout or unavailable
    backend is retried ``retries`` times for idempotent operations, then
    surfaced as :class:`InfrastructureTimeout`. Compare-and-set operations
    pass ``idempotent=False`` and are never retried: a retry after an
    ambiguous failure could apply the change twice.
    """

    def __init__(self, backend: str, timeout_seconds: float, retries: int = 1) -> None:
        self.backend = backend
        self.timeout_seconds = timeout_seconds
        self.retries = max(0, retries)

    async def _attempt(self, func: Callable[..., Any], args, kwargs) -> Any:
        if inspect.iscoroutinefunction(func):
            return await asyncio.wait_for(func(*args, **kwargs), self.timeout_seconds)
        return await asyncio.wait_for(
            asyncio.to_thread(func, *args, **kwargs), self.timeout_seconds
        )

    async def __call__(
        self,
        operation: str,
        func: Callable[..., Any],
        *args: Any,
        idempotent: bool = True,
        **kwargs: Any,
    ) -> Any:
        attempts = 1 + (self.retries if idempotent else 0)
        last_error: Optional[BaseException] = None
        for attempt in range(1, attempts + 1):
            try:
                return await self._attempt(func, args, kwargs)
            except _TRANSIENT as exc:
                last_error = exc
                logger.warning(
                    "infrastructure_call_failed",
                    backend=self.backend,
                    operation=operation,
                    attempt=attempt,
                    max_attempts=attempts,
                    error_type=type(exc).__name__,
                )
        logger.error(
            "infrastructure_call_exhausted",
            backend=self.backend,
            operation=operation,
            attempts=attempts,
        )
        raise InfrastructureTimeout(
            detail={"backend": self.backend, "operation": operation}
        ) from last_error
