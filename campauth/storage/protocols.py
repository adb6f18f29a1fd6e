from __future__ import annotations

from datetime import datetime
from typing import Callable, List, Optional, Protocol

from campauth.storage.models import (
    Account,
    ChallengeRecord,
    RedeemOutcome,
    RefreshTokenRecord,
    TwoFactorConfig,
)


class AccountStore(Protocol):
    def create_account(
        self,
        email: str,
        username: Optional[str] = None,
        *,
        is_admin: bool = False,
        is_owner: bool = False,
        email_verified: bool = False,
        is_active: bool = True,
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def update_account_roles(
        self,
        account_id: str,
        *,
        is_admin: Optional[bool] = None,
        is_owner: Optional[bool] = None,
    ) -> Optional[Account]: ...

    def mark_email_verified(self, account_id: str) -> Optional[Account]: ...

    def record_login(
        self, account_id: str, at: datetime, ip_addr: Optional[str] = None
    ) -> None: ...

    def save_password(
        self, account_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, account_id: str) -> Optional[tuple[str, str]]: ...

    def get_two_factor(self, account_id: str) -> Optional[TwoFactorConfig]: ...

    def save_two_factor(self, config: TwoFactorConfig) -> TwoFactorConfig: ...

    def clear_two_factor(self, account_id: str) -> bool: ...

    def consume_backup_code(self, account_id: str, code_hash: str) -> bool: ...

    def advance_totp_step(self, account_id: str, step: int) -> bool: ...


class TokenStore(Protocol):
    def insert_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord: ...

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshTokenRecord]: ...

    def redeem_refresh_token(
        self,
        token_hash: str,
        now: datetime,
        build_successor: Callable[[RefreshTokenRecord], RefreshTokenRecord],
    ) -> RedeemOutcome: ...

    def revoke_refresh_token(self, token_id: str, reason: str = "revoked") -> bool: ...

    def revoke_refresh_family(self, family_id: str, reason: str = "revoked") -> int: ...

    def revoke_account_refresh_tokens(
        self, account_id: str, reason: str = "revoked"
    ) -> int: ...

    def list_active_refresh_tokens(
        self, account_id: str, now: datetime
    ) -> List[RefreshTokenRecord]: ...

    def insert_challenge(self, record: ChallengeRecord) -> ChallengeRecord: ...

    def get_challenge_by_hash(self, token_hash: str) -> Optional[ChallengeRecord]: ...

    def consume_challenge(self, challenge_id: str, now: datetime) -> bool: ...


class AuthStore(AccountStore, TokenStore, Protocol):
    """Everything the authentication services need from one backing store."""

    def verify_connection(self) -> None: ...
