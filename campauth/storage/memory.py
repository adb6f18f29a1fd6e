from __future__ import annotations

import copy
import threading
import uuid
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence

from campauth.logging import get_logger
from campauth.storage.common import SecretCipher, normalize_email, normalize_ip
from campauth.storage.errors import ConstraintViolation
from campauth.storage.models import (
    Account,
    ChallengeRecord,
    RedeemOutcome,
    RefreshTokenRecord,
    TwoFactorConfig,
    utcnow,
)


class MemoryStore:
    """In-memory backing store for tests and single-process development."""

    def __init__(self, *, mfa_encryption_key: str | Sequence[str]) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.two_factor: Dict[str, TwoFactorConfig] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self._refresh_by_hash: Dict[str, str] = {}
        self.challenges: Dict[str, ChallengeRecord] = {}
        self._challenge_by_hash: Dict[str, str] = {}
        # RLock for all data operations; compare-and-set methods hold it
        # across their read and write
        self._data_lock = threading.RLock()
        self._cipher = SecretCipher(mfa_encryption_key)

    def verify_connection(self) -> None:
        return None

    # accounts
    def create_account(
        self,
        email: str,
        username: Optional[str] = None,
        *,
        is_admin: bool = False,
        is_owner: bool = False,
        email_verified: bool = False,
        is_active: bool = True,
    ) -> Account:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            account = Account(
                id=str(uuid.uuid4()),
                email=normalized,
                username=username,
                is_admin=is_admin,
                is_owner=is_owner,
                email_verified=email_verified,
                is_active=is_active,
            )
            self.accounts[account.id] = account
            return copy.copy(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return copy.copy(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        normalized = normalize_email(email)
        with self._data_lock:
            account = next(
                (a for a in self.accounts.values() if a.email == normalized), None
            )
            return copy.copy(account) if account else None

    def update_account_roles(
        self,
        account_id: str,
        *,
        is_admin: Optional[bool] = None,
        is_owner: Optional[bool] = None,
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            if is_admin is not None:
                account.is_admin = is_admin
            if is_owner is not None:
                account.is_owner = is_owner
            return copy.copy(account)

    def mark_email_verified(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.email_verified = True
            return copy.copy(account)

    def record_login(
        self, account_id: str, at: datetime, ip_addr: Optional[str] = None
    ) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return
            account.last_login_at = at
            account.last_login_ip = normalize_ip(ip_addr)

    def save_password(
        self, account_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation(
                    "account not found for credentials", {"account_id": account_id}
                )
            self.credentials[account_id] = (password_hash, password_algo)

    def get_password_record(self, account_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(account_id)

    # two-factor
    def get_two_factor(self, account_id: str) -> Optional[TwoFactorConfig]:
        with self._data_lock:
            cfg = self.two_factor.get(account_id)
            if not cfg:
                return None
            plain = copy.deepcopy(cfg)
            plain.secret = self._cipher.decrypt(cfg.secret)
            return plain

    def save_two_factor(self, config: TwoFactorConfig) -> TwoFactorConfig:
        with self._data_lock:
            if config.account_id not in self.accounts:
                raise ConstraintViolation(
                    "account not found for two-factor", {"account_id": config.account_id}
                )
            stored = copy.deepcopy(config)
            stored.secret = self._cipher.encrypt(config.secret)
            self.two_factor[config.account_id] = stored
            return config

    def clear_two_factor(self, account_id: str) -> bool:
        with self._data_lock:
            return self.two_factor.pop(account_id, None) is not None

    def consume_backup_code(self, account_id: str, code_hash: str) -> bool:
        with self._data_lock:
            cfg = self.two_factor.get(account_id)
            if not cfg or not cfg.confirmed or code_hash not in cfg.backup_code_hashes:
                return False
            cfg.backup_code_hashes.discard(code_hash)
            return True

    def advance_totp_step(self, account_id: str, step: int) -> bool:
        with self._data_lock:
            cfg = self.two_factor.get(account_id)
            if not cfg:
                return False
            if cfg.last_used_step is not None and step <= cfg.last_used_step:
                return False
            cfg.last_used_step = step
            return True

    # refresh tokens
    def insert_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        with self._data_lock:
            if record.account_id not in self.accounts:
                raise ConstraintViolation(
                    "refresh token account missing", {"account_id": record.account_id}
                )
            if record.token_hash in self._refresh_by_hash:
                raise ConstraintViolation("duplicate refresh token", {"field": "token_hash"})
            self.refresh_tokens[record.id] = copy.copy(record)
            self._refresh_by_hash[record.token_hash] = record.id
            return record

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record_id = self._refresh_by_hash.get(token_hash)
            record = self.refresh_tokens.get(record_id) if record_id else None
            return copy.copy(record) if record else None

    def redeem_refresh_token(
        self,
        token_hash: str,
        now: datetime,
        build_successor: Callable[[RefreshTokenRecord], RefreshTokenRecord],
    ) -> RedeemOutcome:
        with self._data_lock:
            record_id = self._refresh_by_hash.get(token_hash)
            record = self.refresh_tokens.get(record_id) if record_id else None
            if not record:
                return RedeemOutcome("not_found")
            if record.revoked:
                return RedeemOutcome("revoked", record=copy.copy(record))
            if record.is_expired(now):
                return RedeemOutcome("expired", record=copy.copy(record))
            rotated = copy.copy(record)
            rotated.revoked = True
            rotated.revoked_at = now
            rotated.revoked_reason = "rotated"
            successor = build_successor(rotated)
            # Insert first; a failed insert leaves the presented token usable
            self.insert_refresh_token(successor)
            record.revoked, record.revoked_at, record.revoked_reason = True, now, "rotated"
            return RedeemOutcome("ok", record=copy.copy(record), successor=successor)

    def _revoke_where(self, predicate, reason: str) -> int:
        now = utcnow()
        count = 0
        with self._data_lock:
            for record in self.refresh_tokens.values():
                if record.revoked or not predicate(record):
                    continue
                record.revoked = True
                record.revoked_at = now
                record.revoked_reason = reason
                count += 1
        return count

    def revoke_refresh_token(self, token_id: str, reason: str = "revoked") -> bool:
        return self._revoke_where(lambda r: r.id == token_id, reason) > 0

    def revoke_refresh_family(self, family_id: str, reason: str = "revoked") -> int:
        return self._revoke_where(lambda r: r.family_id == family_id, reason)

    def revoke_account_refresh_tokens(
        self, account_id: str, reason: str = "revoked"
    ) -> int:
        return self._revoke_where(lambda r: r.account_id == account_id, reason)

    def list_active_refresh_tokens(
        self, account_id: str, now: datetime
    ) -> List[RefreshTokenRecord]:
        with self._data_lock:
            return [
                copy.copy(r)
                for r in self.refresh_tokens.values()
                if r.account_id == account_id and not r.revoked and not r.is_expired(now)
            ]

    # two-factor login challenges
    def insert_challenge(self, record: ChallengeRecord) -> ChallengeRecord:
        with self._data_lock:
            if record.account_id not in self.accounts:
                raise ConstraintViolation(
                    "challenge account missing", {"account_id": record.account_id}
                )
            self.challenges[record.id] = copy.copy(record)
            self._challenge_by_hash[record.token_hash] = record.id
            return record

    def get_challenge_by_hash(self, token_hash: str) -> Optional[ChallengeRecord]:
        with self._data_lock:
            challenge_id = self._challenge_by_hash.get(token_hash)
            record = self.challenges.get(challenge_id) if challenge_id else None
            return copy.copy(record) if record else None

    def consume_challenge(self, challenge_id: str, now: datetime) -> bool:
        with self._data_lock:
            record = self.challenges.get(challenge_id)
            if not record or record.consumed_at is not None or record.is_expired(now):
                return False
            record.consumed_at = now
            return True
