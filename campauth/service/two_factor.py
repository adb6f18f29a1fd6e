from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
import struct
import time
from dataclasses import dataclass
from typing import Callable, List, Optional
from urllib.parse import quote, urlencode

from campauth.config import Settings
from campauth.logging import get_logger
from campauth.service.errors import (
    AccountLocked,
    TwoFactorAlreadyEnabled,
    TwoFactorInvalid,
    TwoFactorNotEnabled,
)
from campauth.service.lockout import LockoutGuard
from campauth.service.resilience import BoundedCaller
from campauth.service.tokens import TokenService
from campauth.storage.counters import CounterStore
from campauth.storage.models import Account, TwoFactorConfig, utcnow
from campauth.storage.protocols import AuthStore

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6
_SECRET_BYTES = 20


@dataclass(frozen=True)
class TwoFactorEnrollment:
    secret: str
    otpauth_uri: str


@dataclass(frozen=True)
class TwoFactorStatus:
    enabled: bool
    pending_setup: bool
    backup_codes_remaining: int


def generate_totp(secret: str, timestamp: float, *, interval: int = TOTP_INTERVAL) -> str:
    """RFC 6238 code (HMAC-SHA1, 6 digits) for the step containing ``timestamp``."""
    return totp_for_step(secret, int(timestamp // interval))


def totp_for_step(secret: str, step: int) -> str:
    padded = secret + "=" * ((8 - len(secret) % 8) % 8)
    key = base64.b32decode(padded, True)
    digest = hmac.new(key, struct.pack(">Q", step), hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = struct.unpack(">I", digest[offset : offset + 4])[0] & 0x7FFFFFFF
    return str(code_int % (10**TOTP_DIGITS)).zfill(TOTP_DIGITS)


def normalize_backup_code(code: str) -> str:
    return (code or "").replace("-", "").replace(" ", "").strip().upper()


class TwoFactorChallenge:
    """TOTP enrollment, verification and backup codes for one service instance."""

    def __init__(
        self,
        settings: Settings,
        store: AuthStore,
        tokens: TokenService,
        counters: CounterStore,
        *,
        clock: Callable[[], float] = time.time,
        store_call: Optional[BoundedCaller] = None,
        counter_call: Optional[BoundedCaller] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.tokens = tokens
        self._clock = clock
        self._store_call = store_call or BoundedCaller(
            "store", settings.store_timeout_seconds, settings.infra_retry_attempts
        )
        counter_call = counter_call or BoundedCaller(
            "counters", settings.counter_timeout_seconds, settings.infra_retry_attempts
        )
        # Separate from the password lockout and keyed by account id
        self.lockout = LockoutGuard(
            "2fa",
            counters,
            threshold=settings.two_factor_max_attempts,
            window_seconds=settings.two_factor_lockout_seconds,
            lock_seconds=settings.two_factor_lockout_seconds,
            counter_call=counter_call,
        )
        # New codes use the first pepper; older ones stay redeemable
        self._peppers = [p.encode("utf-8") for p in settings.backup_code_peppers()]

    # helpers
    def hash_backup_code(self, code: str, pepper: Optional[bytes] = None) -> str:
        normalized = normalize_backup_code(code)
        key = pepper if pepper is not None else self._peppers[0]
        return hmac.new(key, normalized.encode("utf-8"), hashlib.sha256).hexdigest()

    def _generate_backup_codes(self) -> List[str]:
        codes = []
        for _ in range(self.settings.two_factor_backup_code_count):
            raw = secrets.token_hex(4).upper()
            codes.append(f"{raw[:4]}-{raw[4:]}")
        return codes

    def _match_step(self, secret: str, code: str) -> Optional[int]:
        """Return the accepted time step for ``code`` or ``None``."""
        candidate = (code or "").replace(" ", "").strip()
        if len(candidate) != TOTP_DIGITS or not candidate.isdigit():
            return None
        current = int(self._clock() // TOTP_INTERVAL)
        skew = self.settings.two_factor_skew_steps
        matched = None
        for step in range(current - skew, current + skew + 1):
            try:
                generated = totp_for_step(secret, step)
            except ValueError:
                logger.warning("totp_secret_invalid")
                return None
            if hmac.compare_digest(generated, candidate):
                matched = step
        return matched

    def _otpauth_uri(self, account: Account, secret: str) -> str:
        issuer = self.settings.two_factor_issuer
        label = quote(f"{issuer}:{account.email}")
        query = urlencode(
            {
                "secret": secret,
                "issuer": issuer,
                "algorithm": "SHA1",
                "digits": TOTP_DIGITS,
                "period": TOTP_INTERVAL,
            }
        )
        return f"otpauth://totp/{label}?{query}"

    async def _config(self, account_id: str) -> Optional[TwoFactorConfig]:
        return await self._store_call(
            "get_two_factor", self.store.get_two_factor, account_id
        )

    # enrollment
    async def initiate_setup(self, account: Account) -> TwoFactorEnrollment:
        existing = await self._config(account.id)
        if existing and existing.confirmed:
            raise TwoFactorAlreadyEnabled()
        secret = base64.b32encode(secrets.token_bytes(_SECRET_BYTES)).decode("utf-8").rstrip("=")
        await self._store_call(
            "save_two_factor",
            self.store.save_two_factor,
            TwoFactorConfig(account_id=account.id, secret=secret, confirmed=False),
        )
        logger.info("two_factor_setup_started", account_id=account.id)
        return TwoFactorEnrollment(secret=secret, otpauth_uri=self._otpauth_uri(account, secret))

    async def confirm_setup(self, account: Account, code: str) -> List[str]:
        """Enable 2FA once the authenticator proves it holds the secret.

        Returns the plaintext backup codes; only their hashes are stored.
        """
        config = await self._config(account.id)
        if config is None:
            raise TwoFactorNotEnabled("no two-factor setup in progress")
        if config.confirmed:
            raise TwoFactorAlreadyEnabled()
        step = self._match_step(config.secret, code)
        if step is None:
            logger.info("two_factor_setup_code_rejected", account_id=account.id)
            raise TwoFactorInvalid()
        codes = self._generate_backup_codes()
        config.confirmed = True
        config.confirmed_at = utcnow()
        config.last_used_step = step
        config.backup_code_hashes = {self.hash_backup_code(c) for c in codes}
        await self._store_call("save_two_factor", self.store.save_two_factor, config)
        logger.info("two_factor_enabled", account_id=account.id)
        return codes

    # verification
    async def verify(self, account_id: str, code: str, *, is_backup_code: bool = False) -> bool:
        config = await self._config(account_id)
        if config is None or not config.confirmed or not code:
            return False
        if is_backup_code:
            for pepper in self._peppers:
                consumed = await self._store_call(
                    "consume_backup_code",
                    self.store.consume_backup_code,
                    account_id,
                    self.hash_backup_code(code, pepper),
                    idempotent=False,
                )
                if consumed:
                    logger.info("backup_code_consumed", account_id=account_id)
                    return True
            return False
        step = self._match_step(config.secret, code)
        if step is None:
            return False
        if config.last_used_step is not None and step <= config.last_used_step:
            logger.warning("totp_replay_rejected", account_id=account_id)
            return False
        advanced = await self._store_call(
            "advance_totp_step",
            self.store.advance_totp_step,
            account_id,
            step,
            idempotent=False,
        )
        if not advanced:
            logger.warning("totp_replay_rejected", account_id=account_id)
        return advanced

    async def verify_or_raise(
        self, account_id: str, code: str, *, is_backup_code: bool = False
    ) -> None:
        """Verify under the 2FA attempt lockout.

        Raises ``AccountLocked`` while the account's 2FA counter is locked and
        ``TwoFactorInvalid`` on a wrong code (which also counts a failure).
        """
        decision = await self.lockout.check_lockout(account_id)
        if not decision.allowed:
            logger.warning("two_factor_locked_out", account_id=account_id)
            raise AccountLocked(retry_after=decision.retry_after)
        if await self.verify(account_id, code, is_backup_code=is_backup_code):
            await self.lockout.record_success(account_id)
            return
        failure = await self.lockout.record_failure(account_id)
        logger.info(
            "two_factor_code_rejected",
            account_id=account_id,
            backup_code=is_backup_code,
            attempts=failure.attempts,
        )
        if not failure.allowed:
            raise AccountLocked(retry_after=failure.retry_after)
        raise TwoFactorInvalid()

    async def disable(self, account: Account, code: str, *, is_backup_code: bool = False) -> int:
        """Turn 2FA off after a valid code; returns the refresh tokens revoked."""
        config = await self._config(account.id)
        if config is None or not config.confirmed:
            raise TwoFactorNotEnabled()
        await self.verify_or_raise(account.id, code, is_backup_code=is_backup_code)
        await self._store_call("clear_two_factor", self.store.clear_two_factor, account.id)
        revoked = await self.tokens.revoke_all(account.id, reason="two_factor_disabled")
        logger.info("two_factor_disabled", account_id=account.id, revoked_count=revoked)
        return revoked

    async def status(self, account: Account) -> TwoFactorStatus:
        config = await self._config(account.id)
        if config is None:
            return TwoFactorStatus(enabled=False, pending_setup=False, backup_codes_remaining=0)
        return TwoFactorStatus(
            enabled=config.confirmed,
            pending_setup=not config.confirmed,
            backup_codes_remaining=len(config.backup_code_hashes) if config.confirmed else 0,
        )

    async def is_enabled(self, account_id: str) -> bool:
        config = await self._config(account_id)
        return bool(config and config.confirmed)
