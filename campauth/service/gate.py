from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional, Union

from campauth.config import Settings
from campauth.logging import get_logger
from campauth.service.errors import (
    AccountLocked,
    EmailNotVerified,
    InvalidCredentials,
    ServiceError,
)
from campauth.service.lockout import LockoutGuard
from campauth.service.passwords import PasswordVerifier
from campauth.service.pipeline import Fail, Ok, run_steps
from campauth.service.resilience import BoundedCaller
from campauth.service.tokens import ClientContext, TokenPair, TokenService
from campauth.service.two_factor import TwoFactorChallenge
from campauth.storage.common import normalize_email, normalize_ip
from campauth.storage.counters import CounterStore
from campauth.storage.models import Account, utcnow
from campauth.storage.protocols import AuthStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class Authenticated:
    tokens: TokenPair
    account: Account


@dataclass(frozen=True)
class ChallengeRequired:
    """Primary credential accepted; a second factor must follow."""

    challenge_id: str
    expires_at: datetime
    account: Account


@dataclass(frozen=True)
class Rejected:
    error: ServiceError


LoginResult = Union[Authenticated, ChallengeRequired, Rejected]


@dataclass(frozen=True)
class _LoginAttempt:
    identifier: str
    credential: str
    context: ClientContext
    account: Optional[Account] = None
    outcome: Optional[Union[Authenticated, ChallengeRequired]] = None


class AuthenticationGate:
    """Entry point for establishing sessions.

    ``login`` runs an ordered pipeline: lockout check, credential check,
    account state, then either a 2FA challenge or a token pair. Each step
    returns ``Ok`` or ``Fail`` and the first failure ends the attempt.
    """

    def __init__(
        self,
        settings: Settings,
        store: AuthStore,
        counters: CounterStore,
        tokens: TokenService,
        two_factor: TwoFactorChallenge,
        *,
        passwords: Optional[PasswordVerifier] = None,
        store_call: Optional[BoundedCaller] = None,
        counter_call: Optional[BoundedCaller] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.tokens = tokens
        self.two_factor = two_factor
        self.passwords = passwords or PasswordVerifier()
        self._store_call = store_call or BoundedCaller(
            "store", settings.store_timeout_seconds, settings.infra_retry_attempts
        )
        counter_call = counter_call or BoundedCaller(
            "counters", settings.counter_timeout_seconds, settings.infra_retry_attempts
        )
        self.lockout = LockoutGuard(
            "login",
            counters,
            threshold=settings.lockout_threshold,
            window_seconds=settings.lockout_window_seconds,
            lock_seconds=settings.lockout_duration_seconds,
            counter_call=counter_call,
        )

    # login pipeline steps
    async def _check_lockout(self, attempt: _LoginAttempt):
        decision = await self.lockout.check_lockout(attempt.identifier)
        if not decision.allowed:
            logger.info("login_rejected_locked", retry_after=decision.retry_after)
            return Fail(AccountLocked(retry_after=decision.retry_after))
        return Ok(attempt)

    async def _verify_credential(self, attempt: _LoginAttempt):
        account = await self._store_call(
            "get_account_by_email", self.store.get_account_by_email, attempt.identifier
        )
        record = None
        if account is not None:
            record = await self._store_call(
                "get_password_record", self.store.get_password_record, account.id
            )
        # Unknown accounts still pay for a hash so timing reveals nothing
        valid = await asyncio.to_thread(self.passwords.verify, record, attempt.credential)
        if not valid:
            decision = await self.lockout.record_failure(attempt.identifier)
            logger.info("login_failed", attempts=decision.attempts)
            if not decision.allowed:
                logger.warning("account_locked", retry_after=decision.retry_after)
                return Fail(AccountLocked(retry_after=decision.retry_after))
            return Fail(InvalidCredentials())
        await self.lockout.record_success(attempt.identifier)
        if self.passwords.needs_rehash(record[0]):
            new_hash, algo = self.passwords.hash_password(attempt.credential)
            await self._store_call(
                "save_password", self.store.save_password, account.id, new_hash, algo
            )
        return Ok(replace(attempt, account=account))

    async def _check_account_state(self, attempt: _LoginAttempt):
        account = attempt.account
        if not account.is_active:
            logger.info("login_rejected_inactive", account_id=account.id)
            return Fail(InvalidCredentials())
        if self.settings.require_verified_email and not account.email_verified:
            logger.info("login_rejected_unverified", account_id=account.id)
            return Fail(EmailNotVerified())
        return Ok(attempt)

    async def _record_login(self, attempt: _LoginAttempt):
        await self._store_call(
            "record_login",
            self.store.record_login,
            attempt.account.id,
            utcnow(),
            normalize_ip(attempt.context.ip_addr),
        )
        return Ok(attempt)

    async def _issue(self, attempt: _LoginAttempt):
        account = attempt.account
        if await self.two_factor.is_enabled(account.id):
            challenge_id, record = await self.tokens.issue_challenge(account, attempt.context)
            logger.info("login_two_factor_challenge", account_id=account.id)
            outcome = ChallengeRequired(
                challenge_id=challenge_id, expires_at=record.expires_at, account=account
            )
        else:
            pair = await self.tokens.issue_token_pair(account, attempt.context)
            logger.info("login_succeeded", account_id=account.id)
            outcome = Authenticated(tokens=pair, account=account)
        return Ok(replace(attempt, outcome=outcome))

    async def login(
        self, identifier: str, credential: str, context: Optional[ClientContext] = None
    ) -> LoginResult:
        context = context or ClientContext()
        if not identifier or not credential:
            return Rejected(InvalidCredentials())
        attempt = _LoginAttempt(
            identifier=normalize_email(identifier), credential=credential, context=context
        )
        try:
            result = await run_steps(
                "login",
                attempt,
                [
                    self._check_lockout,
                    self._verify_credential,
                    self._check_account_state,
                    self._record_login,
                    self._issue,
                ],
            )
        except ServiceError as exc:
            return Rejected(exc)
        if isinstance(result, Fail):
            return Rejected(result.error)
        return result.value.outcome

    async def complete_two_factor(
        self,
        challenge_id: str,
        code: str,
        *,
        is_backup_code: bool = False,
        context: Optional[ClientContext] = None,
    ) -> Union[Authenticated, Rejected]:
        """Finish a login that stopped at ``ChallengeRequired``.

        A wrong code counts against the 2FA lockout only; the password
        lockout is untouched. The challenge is spent only after the code is
        accepted, and a concurrent completion loses with ``TokenRevoked``.
        """
        context = context or ClientContext()
        try:
            challenge = await self.tokens.peek_challenge(challenge_id)
            account = await self._store_call(
                "get_account", self.store.get_account, challenge.account_id
            )
            if account is None or not account.is_active:
                return Rejected(InvalidCredentials())
            await self.two_factor.verify_or_raise(
                account.id, code, is_backup_code=is_backup_code
            )
            await self.tokens.consume_challenge(challenge)
            remember_me = bool((challenge.meta or {}).get("remember_me", False))
            if remember_me and not context.remember_me:
                context = replace(context, remember_me=True)
            pair = await self.tokens.issue_token_pair(account, context)
        except ServiceError as exc:
            return Rejected(exc)
        logger.info("login_succeeded", account_id=account.id, two_factor=True)
        return Authenticated(tokens=pair, account=account)

    async def refresh(
        self, refresh_token: str, context: Optional[ClientContext] = None
    ) -> Union[Authenticated, Rejected]:
        try:
            pair, account = await self.tokens.redeem_refresh_token(
                refresh_token, context or ClientContext()
            )
        except ServiceError as exc:
            return Rejected(exc)
        return Authenticated(tokens=pair, account=account)

    async def logout(
        self,
        refresh_token: Optional[str],
        *,
        access_jti: Optional[str] = None,
        access_expires_at: Optional[datetime] = None,
    ) -> None:
        """Revoke one refresh token; unknown or already revoked tokens are fine."""
        record = None
        if refresh_token:
            record = await self.tokens.revoke_plaintext(refresh_token, reason="logout")
        if access_jti and access_expires_at:
            await self.tokens.denylist_access_token(access_jti, access_expires_at)
        logger.info(
            "logout",
            account_id=record.account_id if record else None,
            refresh_revoked=record is not None,
        )

    async def logout_all(
        self,
        account_id: str,
        *,
        access_jti: Optional[str] = None,
        access_expires_at: Optional[datetime] = None,
    ) -> int:
        revoked = await self.tokens.revoke_all(account_id, reason="logout_all")
        if access_jti and access_expires_at:
            await self.tokens.denylist_access_token(access_jti, access_expires_at)
        return revoked
