from __future__ import annotations

import base64
import hmac
import json
import math
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, FrozenSet, Optional, Tuple

from campauth.config import Settings
from campauth.logging import get_logger
from campauth.service.errors import (
    TokenExpired,
    TokenInvalid,
    TokenMalformed,
    TokenNotFound,
    TokenRevoked,
)
from campauth.service.keys import SigningKeyProvider
from campauth.service.resilience import BoundedCaller
from campauth.storage.common import hash_token
from campauth.storage.counters import CounterStore
from campauth.storage.models import (
    Account,
    ChallengeRecord,
    RefreshTokenRecord,
    utcnow,
)
from campauth.storage.protocols import AuthStore

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
_REFRESH_TOKEN_BYTES = 48
_CHALLENGE_TOKEN_BYTES = 32


@dataclass(frozen=True)
class ClientContext:
    """Request metadata recorded alongside issued credentials."""

    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    remember_me: bool = False

    def as_meta(self) -> Dict[str, Any]:
        meta: Dict[str, Any] = {"remember_me": self.remember_me}
        if self.ip_addr:
            meta["ip_addr"] = self.ip_addr
        if self.user_agent:
            meta["user_agent"] = self.user_agent[:512]
        return meta


@dataclass(frozen=True)
class AccessClaims:
    subject: str
    roles: FrozenSet[str]
    issued_at: int
    expires_at: int
    jti: str
    kid: str

    @property
    def expires_at_dt(self) -> datetime:
        return datetime.fromtimestamp(self.expires_at, tz=timezone.utc)


@dataclass(frozen=True)
class IssuedAccessToken:
    token: str
    claims: AccessClaims


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"
    access_claims: Optional[AccessClaims] = field(default=None, compare=False)


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenService:
    """Issues, verifies, rotates and revokes bearer credentials.

    Access tokens are stateless HS256 JWTs; refresh and challenge tokens are
    opaque random values persisted only as SHA-256 hashes.
    """

    def __init__(
        self,
        settings: Settings,
        keys: SigningKeyProvider,
        store: AuthStore,
        counters: CounterStore,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        store_call: Optional[BoundedCaller] = None,
        counter_call: Optional[BoundedCaller] = None,
    ) -> None:
        self.settings = settings
        self.keys = keys
        self.store = store
        self.counters = counters
        self._clock = clock or utcnow
        self._store_call = store_call or BoundedCaller(
            "store", settings.store_timeout_seconds, settings.infra_retry_attempts
        )
        self._counter_call = counter_call or BoundedCaller(
            "counters", settings.counter_timeout_seconds, settings.infra_retry_attempts
        )

    def _now(self) -> datetime:
        return self._clock()

    # access tokens
    def _encode_jwt(self, payload: Dict[str, Any]) -> str:
        key = self.keys.active
        header = {"alg": "HS256", "typ": "JWT", "kid": key.kid}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        signature = key.sign(signing_input.encode())
        return f"{signing_input}.{_encode_segment(signature)}"

    def issue_access_token(self, account: Account) -> IssuedAccessToken:
        issued_at = int(self._now().timestamp())
        expires_at = issued_at + self.settings.access_token_ttl_seconds
        claims = AccessClaims(
            subject=account.id,
            roles=account.roles,
            issued_at=issued_at,
            expires_at=expires_at,
            jti=str(uuid.uuid4()),
            kid=self.keys.active.kid,
        )
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": claims.subject,
            "roles": sorted(claims.roles),
            "typ": ACCESS_TOKEN_TYPE,
            "jti": claims.jti,
            "iat": issued_at,
            "exp": expires_at,
        }
        return IssuedAccessToken(token=self._encode_jwt(payload), claims=claims)

    def verify_access_token(self, token: str) -> AccessClaims:
        """Check signature, structure and expiry of an access token.

        Pure: no store or counter access. Revocation (the denylist) is the
        caller's concern.

        Raises:
            TokenMalformed: not a decodable three-part JWT
            TokenInvalid: bad signature, unknown key, or wrong alg/iss/aud/typ
            TokenExpired: ``now >= exp + leeway``
        """
        if not token or not isinstance(token, str):
            raise TokenMalformed()
        parts = token.split(".")
        if len(parts) != 3:
            raise TokenMalformed()
        header_b64, payload_b64, sig_b64 = parts
        try:
            header = json.loads(_decode_segment(header_b64))
            payload = json.loads(_decode_segment(payload_b64))
            signature = _decode_segment(sig_b64)
        except ValueError:
            raise TokenMalformed()
        if not isinstance(header, dict) or not isinstance(payload, dict):
            raise TokenMalformed()

        # Algorithm is pinned; the header never selects it
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=str(header.get("alg")))
            raise TokenInvalid()
        key = self.keys.for_kid(header.get("kid"))
        if key is None:
            raise TokenInvalid()
        expected = key.sign(f"{header_b64}.{payload_b64}".encode())
        if not hmac.compare_digest(expected, signature):
            raise TokenInvalid()

        if payload.get("typ") != ACCESS_TOKEN_TYPE:
            raise TokenInvalid()
        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenInvalid()
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise TokenInvalid()

        subject = payload.get("sub")
        jti = payload.get("jti")
        exp = payload.get("exp")
        iat = payload.get("iat")
        roles = payload.get("roles", [])
        if not isinstance(subject, str) or not subject or not isinstance(jti, str):
            raise TokenMalformed()
        if not isinstance(exp, (int, float)) or not isinstance(iat, (int, float)):
            raise TokenMalformed()
        if not isinstance(roles, list) or not all(isinstance(r, str) for r in roles):
            raise TokenMalformed()

        now = self._now().timestamp()
        if now >= float(exp) + self.settings.jwt_leeway_seconds:
            raise TokenExpired()
        return AccessClaims(
            subject=subject,
            roles=frozenset(roles),
            issued_at=int(iat),
            expires_at=int(exp),
            jti=jti,
            kid=key.kid,
        )

    # refresh tokens
    def _refresh_ttl_minutes(self, remember_me: bool) -> int:
        if remember_me:
            return self.settings.remember_me_refresh_ttl_minutes
        return self.settings.refresh_token_ttl_minutes

    async def issue_refresh_token(
        self, account: Account, context: ClientContext
    ) -> Tuple[str, RefreshTokenRecord]:
        plaintext = secrets.token_urlsafe(_REFRESH_TOKEN_BYTES)
        record = RefreshTokenRecord.new(
            account.id,
            hash_token(plaintext),
            self._refresh_ttl_minutes(context.remember_me),
            now=self._now(),
            meta=context.as_meta(),
        )
        await self._store_call(
            "insert_refresh_token", self.store.insert_refresh_token, record
        )
        return plaintext, record

    async def issue_token_pair(self, account: Account, context: ClientContext) -> TokenPair:
        access = self.issue_access_token(account)
        refresh_plain, refresh_record = await self.issue_refresh_token(account, context)
        logger.info(
            "tokens_issued",
            account_id=account.id,
            family_id=refresh_record.family_id,
            remember_me=context.remember_me,
        )
        return TokenPair(
            access_token=access.token,
            refresh_token=refresh_plain,
            expires_at=access.claims.expires_at_dt,
            refresh_expires_at=refresh_record.expires_at,
            access_claims=access.claims,
        )

    async def redeem_refresh_token(
        self, plaintext: str, context: ClientContext
    ) -> Tuple[TokenPair, Account]:
        """Rotate a refresh token: the presented one is spent, a successor issued.

        The store performs check, revoke and successor insert as one atomic
        operation, so of two concurrent redemptions exactly one succeeds.
        """
        if not plaintext:
            raise TokenNotFound()
        now = self._now()
        successor_plain = secrets.token_urlsafe(_REFRESH_TOKEN_BYTES)

        def build_successor(spent: RefreshTokenRecord) -> RefreshTokenRecord:
            inherited = dict(spent.meta or {})
            remember_me = bool(inherited.get("remember_me", False))
            meta = {**context.as_meta(), "remember_me": remember_me}
            return RefreshTokenRecord.new(
                spent.account_id,
                hash_token(successor_plain),
                self._refresh_ttl_minutes(remember_me),
                now=now,
                family_id=spent.family_id,
                predecessor_id=spent.id,
                meta=meta,
            )

        outcome = await self._store_call(
            "redeem_refresh_token",
            self.store.redeem_refresh_token,
            hash_token(plaintext),
            now,
            build_successor,
            idempotent=False,
        )
        if outcome.status == "not_found":
            raise TokenNotFound()
        if outcome.status == "expired":
            raise TokenExpired()
        if outcome.status == "revoked":
            record = outcome.record
            if (
                record is not None
                and record.revoked_reason == "rotated"
                and self.settings.refresh_reuse_revokes_family
            ):
                revoked = await self.revoke_family(record.family_id, reason="reuse_detected")
                logger.warning(
                    "refresh_token_reuse_detected",
                    account_id=record.account_id,
                    family_id=record.family_id,
                    revoked_count=revoked,
                )
            raise TokenRevoked()

        successor = outcome.successor
        account = await self._store_call(
            "get_account", self.store.get_account, successor.account_id
        )
        if account is None or not account.is_active:
            await self.revoke(successor.id, reason="account_inactive")
            raise TokenRevoked()
        access = self.issue_access_token(account)
        logger.info(
            "refresh_token_rotated",
            account_id=account.id,
            family_id=successor.family_id,
        )
        pair = TokenPair(
            access_token=access.token,
            refresh_token=successor_plain,
            expires_at=access.claims.expires_at_dt,
            refresh_expires_at=successor.expires_at,
            access_claims=access.claims,
        )
        return pair, account

    async def revoke(self, refresh_id: str, *, reason: str = "revoked") -> bool:
        return await self._store_call(
            "revoke_refresh_token", self.store.revoke_refresh_token, refresh_id, reason
        )

    async def revoke_plaintext(
        self, plaintext: str, *, reason: str = "logout"
    ) -> Optional[RefreshTokenRecord]:
        """Revoke by presented value; unknown values are ignored."""
        if not plaintext:
            return None
        record = await self._store_call(
            "get_refresh_token_by_hash",
            self.store.get_refresh_token_by_hash,
            hash_token(plaintext),
        )
        if record is None:
            return None
        await self.revoke(record.id, reason=reason)
        return record

    async def revoke_family(self, family_id: str, *, reason: str = "revoked") -> int:
        return await self._store_call(
            "revoke_refresh_family", self.store.revoke_refresh_family, family_id, reason
        )

    async def revoke_all(self, account_id: str, *, reason: str = "logout_all") -> int:
        count = await self._store_call(
            "revoke_account_refresh_tokens",
            self.store.revoke_account_refresh_tokens,
            account_id,
            reason,
        )
        logger.info("refresh_tokens_revoked_all", account_id=account_id, revoked_count=count)
        return count

    # access token denylist
    @staticmethod
    def _denylist_key(jti: str) -> str:
        return f"denylist:access:{jti}"

    async def denylist_access_token(self, jti: str, expires_at: datetime) -> None:
        """Refuse ``jti`` until the token would have expired anyway."""
        ttl = math.ceil((expires_at - self._now()).total_seconds())
        if ttl <= 0:
            return
        await self._counter_call(
            "set_marker", self.counters.set_marker, self._denylist_key(jti), ttl
        )

    async def is_access_token_denylisted(self, jti: str) -> bool:
        return await self._counter_call(
            "exists", self.counters.exists, self._denylist_key(jti)
        )

    # two-factor login challenges
    async def issue_challenge(
        self, account: Account, context: ClientContext
    ) -> Tuple[str, ChallengeRecord]:
        plaintext = secrets.token_urlsafe(_CHALLENGE_TOKEN_BYTES)
        now = self._now()
        record = ChallengeRecord(
            id=str(uuid.uuid4()),
            token_hash=hash_token(plaintext),
            account_id=account.id,
            issued_at=now,
            expires_at=now + timedelta(seconds=self.settings.two_factor_challenge_ttl_seconds),
            meta=context.as_meta(),
        )
        await self._store_call("insert_challenge", self.store.insert_challenge, record)
        return plaintext, record

    async def peek_challenge(self, plaintext: str) -> ChallengeRecord:
        """Look up a challenge without spending it."""
        if not plaintext:
            raise TokenNotFound()
        record = await self._store_call(
            "get_challenge_by_hash", self.store.get_challenge_by_hash, hash_token(plaintext)
        )
        if record is None:
            raise TokenNotFound()
        if record.consumed_at is not None:
            raise TokenRevoked()
        if record.is_expired(self._now()):
            raise TokenExpired()
        return record

    async def consume_challenge(self, record: ChallengeRecord) -> None:
        consumed = await self._store_call(
            "consume_challenge",
            self.store.consume_challenge,
            record.id,
            self._now(),
            idempotent=False,
        )
        if not consumed:
            raise TokenRevoked()
