from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request

from campauth.api.schemas import (
    AccountResponse,
    AuthResponse,
    Envelope,
    IdentityResponse,
    LoginRequest,
    LogoutAllResponse,
    LogoutRequest,
    TokenRefreshRequest,
    TwoFactorChallengeResponse,
    TwoFactorCodeRequest,
    TwoFactorDisableRequest,
    TwoFactorDisableResponse,
    TwoFactorLoginRequest,
    TwoFactorSetupConfirmResponse,
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
)
from campauth.logging import get_logger
from campauth.service.errors import AuthenticationRequired, ForbiddenError
from campauth.service.gate import ChallengeRequired, LoginResult, Rejected
from campauth.service.runtime import get_runtime
from campauth.service.session_guard import Identity
from campauth.service.tokens import ClientContext
from campauth.storage.models import Account

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _client_context(request: Request, *, remember_me: bool = False) -> ClientContext:
    runtime = get_runtime()
    peer = request.client.host if request.client else None
    return ClientContext(
        ip_addr=runtime.rate_limiter.client_address(
            peer, request.headers.get("x-forwarded-for")
        ),
        user_agent=request.headers.get("user-agent"),
        remember_me=remember_me,
    )


async def get_identity(request: Request) -> Identity:
    """Identity attached by the session guard middleware."""
    identity = getattr(request.state, "identity", None)
    if identity is None:
        raise AuthenticationRequired()
    return identity


def require_role(role: str):
    async def _require_role(identity: Identity = Depends(get_identity)) -> Identity:
        if not identity.has_role(role):
            logger.warning("role_check_failed", account_id=identity.account_id, role=role)
            raise ForbiddenError(f"{role} access required")
        return identity

    return _require_role


async def _current_account(identity: Identity) -> Account:
    runtime = get_runtime()
    account = await runtime.store_call(
        "get_account", runtime.store.get_account, identity.account_id
    )
    if account is None or not account.is_active:
        raise AuthenticationRequired()
    return account


def _account_response(account: Account) -> AccountResponse:
    return AccountResponse(
        id=account.id,
        email=account.email,
        username=account.username,
        roles=sorted(account.roles),
        email_verified=account.email_verified,
        created_at=account.created_at,
        last_login_at=account.last_login_at,
    )


def _auth_envelope(result: LoginResult) -> Envelope:
    if isinstance(result, Rejected):
        raise result.error
    if isinstance(result, ChallengeRequired):
        return Envelope(
            status="ok",
            data=TwoFactorChallengeResponse(
                challenge_id=result.challenge_id,
                challenge_expires_at=result.expires_at,
            ),
        )
    tokens = result.tokens
    return Envelope(
        status="ok",
        data=AuthResponse(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_type=tokens.token_type,
            expires_at=tokens.expires_at,
            refresh_expires_at=tokens.refresh_expires_at,
            account=_account_response(result.account),
        ),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with identifier and password.

    Returns a token pair, or a two-factor challenge when the account has 2FA
    enabled.

    Raises:
        401: invalid credentials
        403: email not verified (unless REQUIRE_VERIFIED_EMAIL is off)
        423: account locked after repeated failures
        429: rate limit exceeded
        503: account store did not answer in time
    """
    runtime = get_runtime()
    result = await runtime.gate.login(
        body.identifier,
        body.credential,
        _client_context(request, remember_me=body.remember_me),
    )
    return _auth_envelope(result)


@router.post("/auth/refresh-token", response_model=Envelope, tags=["auth"])
async def refresh_token(body: TokenRefreshRequest, request: Request):
    """Rotate a refresh token; the presented one cannot be redeemed again."""
    runtime = get_runtime()
    result = await runtime.gate.refresh(body.refresh_token, _client_context(request))
    return _auth_envelope(result)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, body: Optional[LogoutRequest] = None):
    runtime = get_runtime()
    identity: Optional[Identity] = getattr(request.state, "identity", None)
    await runtime.gate.logout(
        body.refresh_token if body else None,
        access_jti=identity.token_id if identity else None,
        access_expires_at=identity.expires_at if identity else None,
    )
    return Envelope(status="ok", data={"logged_out": True})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(identity: Identity = Depends(get_identity)):
    runtime = get_runtime()
    revoked = await runtime.gate.logout_all(
        identity.account_id,
        access_jti=identity.token_id,
        access_expires_at=identity.expires_at,
    )
    return Envelope(status="ok", data=LogoutAllResponse(revoked_sessions=revoked))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(identity: Identity = Depends(get_identity)):
    account = await _current_account(identity)
    return Envelope(
        status="ok",
        data=IdentityResponse(
            account_id=identity.account_id,
            roles=sorted(identity.roles),
            token_expires_at=identity.expires_at,
            account=_account_response(account),
        ),
    )


@router.post("/2fa/setup", response_model=Envelope, tags=["2fa"])
async def two_factor_setup(identity: Identity = Depends(get_identity)):
    runtime = get_runtime()
    account = await _current_account(identity)
    enrollment = await runtime.two_factor.initiate_setup(account)
    return Envelope(
        status="ok",
        data=TwoFactorSetupResponse(
            secret=enrollment.secret, otpauth_uri=enrollment.otpauth_uri
        ),
    )


@router.post("/2fa/verify-setup", response_model=Envelope, tags=["2fa"])
async def two_factor_verify_setup(
    body: TwoFactorCodeRequest, identity: Identity = Depends(get_identity)
):
    runtime = get_runtime()
    account = await _current_account(identity)
    codes = await runtime.two_factor.confirm_setup(account, body.code)
    return Envelope(status="ok", data=TwoFactorSetupConfirmResponse(backup_codes=codes))


@router.post("/2fa/disable", response_model=Envelope, tags=["2fa"])
async def two_factor_disable(
    body: TwoFactorDisableRequest, identity: Identity = Depends(get_identity)
):
    """Turn off 2FA. Needs a current code and signs out every other session."""
    runtime = get_runtime()
    account = await _current_account(identity)
    revoked = await runtime.two_factor.disable(
        account, body.code, is_backup_code=body.use_backup_code
    )
    return Envelope(status="ok", data=TwoFactorDisableResponse(revoked_sessions=revoked))


@router.get("/2fa/status", response_model=Envelope, tags=["2fa"])
async def two_factor_status(identity: Identity = Depends(get_identity)):
    runtime = get_runtime()
    account = await _current_account(identity)
    status = await runtime.two_factor.status(account)
    return Envelope(
        status="ok",
        data=TwoFactorStatusResponse(
            enabled=status.enabled,
            pending_setup=status.pending_setup,
            backup_codes_remaining=status.backup_codes_remaining,
        ),
    )


@router.post("/2fa/verify-login", response_model=Envelope, tags=["2fa"])
async def two_factor_verify_login(body: TwoFactorLoginRequest, request: Request):
    """Complete a login that returned ``requires_two_factor``."""
    runtime = get_runtime()
    result = await runtime.gate.complete_two_factor(
        body.challenge_id,
        body.code,
        is_backup_code=body.use_backup_code,
        context=_client_context(request),
    )
    return _auth_envelope(result)


@router.get("/admin/ping", response_model=Envelope, tags=["admin"])
async def admin_ping(identity: Identity = Depends(require_role("admin"))):
    return Envelope(status="ok", data={"account_id": identity.account_id, "admin": True})
