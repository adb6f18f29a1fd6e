from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, FrozenSet, Optional, Set


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Account:
    id: str
    email: str
    username: Optional[str] = None
    is_admin: bool = False
    is_owner: bool = False
    email_verified: bool = False
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None

    @property
    def roles(self) -> FrozenSet[str]:
        roles = {"user"}
        if self.is_admin:
            roles.add("admin")
        if self.is_owner:
            roles.add("owner")
        return frozenset(roles)


@dataclass
class TwoFactorConfig:
    account_id: str
    secret: str
    confirmed: bool = False
    backup_code_hashes: Set[str] = field(default_factory=set)
    last_used_step: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)
    confirmed_at: Optional[datetime] = None


@dataclass
class RefreshTokenRecord:
    id: str
    token_hash: str
    account_id: str
    family_id: str
    issued_at: datetime
    expires_at: datetime
    predecessor_id: Optional[str] = None
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None
    meta: Dict | None = None

    @classmethod
    def new(
        cls,
        account_id: str,
        token_hash: str,
        ttl_minutes: int,
        *,
        now: Optional[datetime] = None,
        family_id: Optional[str] = None,
        predecessor_id: Optional[str] = None,
        meta: Dict | None = None,
    ) -> "RefreshTokenRecord":
        issued = now or utcnow()
        record_id = str(uuid.uuid4())
        return cls(
            id=record_id,
            token_hash=token_hash,
            account_id=account_id,
            # The first token of a chain names the family
            family_id=family_id or record_id,
            issued_at=issued,
            expires_at=issued + timedelta(minutes=ttl_minutes),
            predecessor_id=predecessor_id,
            meta=meta,
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class ChallengeRecord:
    id: str
    token_hash: str
    account_id: str
    issued_at: datetime
    expires_at: datetime
    consumed_at: Optional[datetime] = None
    meta: Dict | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class RedeemOutcome:
    """Result of an atomic refresh-token redemption.

    ``status`` is one of ``ok``, ``not_found``, ``expired`` or ``revoked``.
    ``record`` is the presented token (when known) and ``successor`` the row
    inserted in its place on success.
    """

    status: str
    record: Optional[RefreshTokenRecord] = None
    successor: Optional[RefreshTokenRecord] = None
