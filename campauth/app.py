from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from campauth.api.error_handling import register_exception_handlers, service_error_response
from campauth.api.routes import router
from campauth.config import get_settings
from campauth.logging import get_logger, set_correlation_id
from campauth.service.errors import RateLimited, ServiceError
from campauth.service.rate_limit import RateLimitDecision, scope_for_path
from campauth.service.runtime import get_runtime

logger = get_logger(__name__)

_settings = get_settings()

__version__ = "0.1.0"
__build__ = _settings.build_sha


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Misconfigured keys or stores fail here, before the first request
    get_runtime()
    yield
    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="CampAuth", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    return ["http://localhost:3000", "http://127.0.0.1:3000"]


# Starlette runs the most recently registered middleware first, so the
# order below is innermost (session guard) to outermost (correlation id).


@app.middleware("http")
async def enforce_session(request: Request, call_next):
    """Attach the caller's identity or reject protected routes with 401."""
    runtime = get_runtime()
    outcome = await runtime.session_guard.evaluate(
        request.method, request.url.path, request.headers.get("authorization")
    )
    if outcome.kind == "rejected":
        logger.info(
            "request_unauthenticated",
            path=request.url.path,
            method=request.method,
            error_code=outcome.error.error_code,
        )
        return service_error_response(outcome.error)
    request.state.identity = outcome.identity
    return await call_next(request)


@app.middleware("http")
async def enforce_rate_limit(request: Request, call_next):
    scope = scope_for_path(request.url.path)
    if scope is None or request.method == "OPTIONS":
        return await call_next(request)
    limiter = get_runtime().rate_limiter
    peer = request.client.host if request.client else None
    client = limiter.client_address(peer, request.headers.get("x-forwarded-for"))
    try:
        decision = await limiter.enforce(scope, client)
    except RateLimited as exc:
        response = service_error_response(exc)
        RateLimitDecision(
            False, int(exc.detail.get("limit", 0)), 0, exc.retry_after or 0
        ).apply_headers(response.headers)
        return response
    except ServiceError as exc:
        return service_error_response(exc)
    response = await call_next(request)
    decision.apply_headers(response.headers)
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https" and _settings.enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag logs and the response with ``X-Request-ID`` (client supplied or generated)."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=[
        "X-Request-ID",
        "Retry-After",
        "RateLimit-Limit",
        "RateLimit-Remaining",
        "RateLimit-Reset",
    ],
    max_age=3600,
)

register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> JSONResponse:
    """Dependency checks for the account store and the counter store."""
    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    checks["store"] = {"healthy": await _run_bounded("store", runtime.store.verify_connection)}
    verify_counters = getattr(runtime.counters, "verify_connection", None)
    if verify_counters is not None:
        checks["counters"] = {"healthy": await _run_bounded("counters", verify_counters)}
    else:
        checks["counters"] = {"healthy": True, "mode": "memory"}

    healthy = all(check["healthy"] for check in checks.values())
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "version": __version__,
            "build": __build__,
            "checks": checks,
        },
    )
