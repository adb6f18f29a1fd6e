from __future__ import annotations

import contextlib
import json
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from campauth.logging import get_logger
from campauth.storage.common import SecretCipher, normalize_email, normalize_ip
from campauth.storage.errors import (
    ConstraintViolation,
    StoreTimeoutError,
    StoreUnavailableError,
)
from campauth.storage.models import (
    Account,
    ChallengeRecord,
    RedeemOutcome,
    RefreshTokenRecord,
    TwoFactorConfig,
    utcnow,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS account (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        username TEXT,
        is_admin BOOLEAN NOT NULL DEFAULT FALSE,
        is_owner BOOLEAN NOT NULL DEFAULT FALSE,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login_at TIMESTAMPTZ,
        last_login_ip TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS account_credential (
        account_id TEXT PRIMARY KEY REFERENCES account(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS account_two_factor (
        account_id TEXT PRIMARY KEY REFERENCES account(id) ON DELETE CASCADE,
        secret TEXT NOT NULL,
        confirmed BOOLEAN NOT NULL DEFAULT FALSE,
        backup_code_hashes TEXT[] NOT NULL DEFAULT '{}',
        last_used_step BIGINT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        confirmed_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id TEXT PRIMARY KEY,
        token_hash TEXT NOT NULL UNIQUE,
        account_id TEXT NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        family_id TEXT NOT NULL,
        predecessor_id TEXT,
        issued_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_at TIMESTAMPTZ,
        revoked_reason TEXT,
        meta JSONB
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_account_idx ON refresh_token (account_id)",
    "CREATE INDEX IF NOT EXISTS refresh_token_family_idx ON refresh_token (family_id)",
    """
    CREATE TABLE IF NOT EXISTS login_challenge (
        id TEXT PRIMARY KEY,
        token_hash TEXT NOT NULL UNIQUE,
        account_id TEXT NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        issued_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        consumed_at TIMESTAMPTZ,
        meta JSONB
    )
    """,
)


class PostgresStore:
    """Postgres-backed account, credential and token store."""

    def __init__(
        self,
        dsn: str,
        *,
        mfa_encryption_key: str | Sequence[str],
        statement_timeout_seconds: float = 2.0,
        pool: Optional[ConnectionPool] = None,
        ensure_schema: bool = True,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self._cipher = SecretCipher(mfa_encryption_key)
        timeout_ms = max(1, int(statement_timeout_seconds * 1000))
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            timeout=statement_timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={timeout_ms}",
            },
        )
        if ensure_schema:
            self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self, operation: str) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (errors.QueryCanceled, PoolTimeout) as exc:
            self.logger.warning("postgres_timeout", operation=operation, error=str(exc))
            raise StoreTimeoutError(operation, "postgres") from exc
        except psycopg.OperationalError as exc:
            self.logger.warning("postgres_unavailable", operation=operation, error=str(exc))
            raise StoreUnavailableError(operation, "postgres") from exc

    def _ensure_schema(self) -> None:
        with self._connect("ensure_schema") as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect("verify_connection") as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # row mapping
    @staticmethod
    def _row_to_account(row: Dict[str, Any]) -> Account:
        return Account(
            id=str(row["id"]),
            email=row["email"],
            username=row.get("username"),
            is_admin=bool(row.get("is_admin", False)),
            is_owner=bool(row.get("is_owner", False)),
            email_verified=bool(row.get("email_verified", False)),
            is_active=bool(row.get("is_active", True)),
            created_at=row.get("created_at") or utcnow(),
            last_login_at=row.get("last_login_at"),
            last_login_ip=row.get("last_login_ip"),
        )

    @staticmethod
    def _row_to_refresh(row: Dict[str, Any]) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=str(row["id"]),
            token_hash=row["token_hash"],
            account_id=str(row["account_id"]),
            family_id=str(row["family_id"]),
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
            predecessor_id=row.get("predecessor_id"),
            revoked=bool(row.get("revoked", False)),
            revoked_at=row.get("revoked_at"),
            revoked_reason=row.get("revoked_reason"),
            meta=row.get("meta"),
        )

    @staticmethod
    def _row_to_challenge(row: Dict[str, Any]) -> ChallengeRecord:
        return ChallengeRecord(
            id=str(row["id"]),
            token_hash=row["token_hash"],
            account_id=str(row["account_id"]),
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
            consumed_at=row.get("consumed_at"),
            meta=row.get("meta"),
        )

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
        account = Account(
            id=str(uuid.uuid4()),
            email=normalize_email(email),
            username=username,
            is_admin=is_admin,
            is_owner=is_owner,
            email_verified=email_verified,
            is_active=is_active,
        )
        try:
            with self._connect("create_account") as conn:
                conn.execute(
                    """
                    INSERT INTO account (id, email, username, is_admin, is_owner, email_verified, is_active, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        account.id,
                        account.email,
                        username,
                        is_admin,
                        is_owner,
                        email_verified,
                        is_active,
                        account.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect("get_account") as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE id = %s", (account_id,)
            ).fetchone()
        return self._row_to_account(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect("get_account_by_email") as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._row_to_account(row) if row else None

    def update_account_roles(
        self,
        account_id: str,
        *,
        is_admin: Optional[bool] = None,
        is_owner: Optional[bool] = None,
    ) -> Optional[Account]:
        with self._connect("update_account_roles") as conn:
            row = conn.execute(
                """
                UPDATE account
                SET is_admin = COALESCE(%s, is_admin),
                    is_owner = COALESCE(%s, is_owner)
                WHERE id = %s
                RETURNING *
                """,
                (is_admin, is_owner, account_id),
            ).fetchone()
        return self._row_to_account(row) if row else None

    def mark_email_verified(self, account_id: str) -> Optional[Account]:
        with self._connect("mark_email_verified") as conn:
            row = conn.execute(
                "UPDATE account SET email_verified = TRUE WHERE id = %s RETURNING *",
                (account_id,),
            ).fetchone()
        return self._row_to_account(row) if row else None

    def record_login(
        self, account_id: str, at: datetime, ip_addr: Optional[str] = None
    ) -> None:
        with self._connect("record_login") as conn:
            conn.execute(
                "UPDATE account SET last_login_at = %s, last_login_ip = %s WHERE id = %s",
                (at, normalize_ip(ip_addr), account_id),
            )

    def save_password(
        self, account_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect("save_password") as conn:
                conn.execute(
                    """
                    INSERT INTO account_credential (account_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (account_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (account_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account not found for credentials", {"account_id": account_id}
            )

    def get_password_record(self, account_id: str) -> Optional[tuple[str, str]]:
        with self._connect("get_password_record") as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM account_credential WHERE account_id = %s",
                (account_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # two-factor
    def get_two_factor(self, account_id: str) -> Optional[TwoFactorConfig]:
        with self._connect("get_two_factor") as conn:
            row = conn.execute(
                "SELECT * FROM account_two_factor WHERE account_id = %s", (account_id,)
            ).fetchone()
        if not row:
            return None
        return TwoFactorConfig(
            account_id=str(row["account_id"]),
            secret=self._cipher.decrypt(row["secret"]),
            confirmed=bool(row.get("confirmed", False)),
            backup_code_hashes=set(row.get("backup_code_hashes") or []),
            last_used_step=row.get("last_used_step"),
            created_at=row.get("created_at") or utcnow(),
            confirmed_at=row.get("confirmed_at"),
        )

    def save_two_factor(self, config: TwoFactorConfig) -> TwoFactorConfig:
        try:
            with self._connect("save_two_factor") as conn:
                conn.execute(
                    """
                    INSERT INTO account_two_factor
                        (account_id, secret, confirmed, backup_code_hashes, last_used_step, created_at, confirmed_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (account_id) DO UPDATE
                    SET secret = EXCLUDED.secret,
                        confirmed = EXCLUDED.confirmed,
                        backup_code_hashes = EXCLUDED.backup_code_hashes,
                        last_used_step = EXCLUDED.last_used_step,
                        confirmed_at = EXCLUDED.confirmed_at
                    """,
                    (
                        config.account_id,
                        self._cipher.encrypt(config.secret),
                        config.confirmed,
                        sorted(config.backup_code_hashes),
                        config.last_used_step,
                        config.created_at,
                        config.confirmed_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account not found for two-factor", {"account_id": config.account_id}
            )
        return config

    def clear_two_factor(self, account_id: str) -> bool:
        with self._connect("clear_two_factor") as conn:
            result = conn.execute(
                "DELETE FROM account_two_factor WHERE account_id = %s", (account_id,)
            )
            return result.rowcount > 0

    def consume_backup_code(self, account_id: str, code_hash: str) -> bool:
        with self._connect("consume_backup_code") as conn:
            row = conn.execute(
                """
                UPDATE account_two_factor
                SET backup_code_hashes = array_remove(backup_code_hashes, %s)
                WHERE account_id = %s AND confirmed AND %s = ANY(backup_code_hashes)
                RETURNING account_id
                """,
                (code_hash, account_id, code_hash),
            ).fetchone()
        return row is not None

    def advance_totp_step(self, account_id: str, step: int) -> bool:
        with self._connect("advance_totp_step") as conn:
            row = conn.execute(
                """
                UPDATE account_two_factor
                SET last_used_step = %s
                WHERE account_id = %s AND (last_used_step IS NULL OR last_used_step < %s)
                RETURNING account_id
                """,
                (step, account_id, step),
            ).fetchone()
        return row is not None

    # refresh tokens
    @staticmethod
    def _insert_refresh(conn, record: RefreshTokenRecord) -> None:
        conn.execute(
            """
            INSERT INTO refresh_token
                (id, token_hash, account_id, family_id, predecessor_id, issued_at, expires_at, revoked, meta)
            VALUES (%s, %s, %s, %s, %s, %s, %s, FALSE, %s)
            """,
            (
                record.id,
                record.token_hash,
                record.account_id,
                record.family_id,
                record.predecessor_id,
                record.issued_at,
                record.expires_at,
                json.dumps(record.meta) if record.meta else None,
            ),
        )

    def insert_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        try:
            with self._connect("insert_refresh_token") as conn:
                self._insert_refresh(conn, record)
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "refresh token account missing", {"account_id": record.account_id}
            )
        except errors.UniqueViolation:
            raise ConstraintViolation("duplicate refresh token", {"field": "token_hash"})
        return record

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._connect("get_refresh_token_by_hash") as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._row_to_refresh(row) if row else None

    def redeem_refresh_token(
        self,
        token_hash: str,
        now: datetime,
        build_successor: Callable[[RefreshTokenRecord], RefreshTokenRecord],
    ) -> RedeemOutcome:
        with self._connect("redeem_refresh_token") as conn:
            with conn.transaction():
                # Only one concurrent redeemer can flip revoked for this row
                row = conn.execute(
                    """
                    UPDATE refresh_token
                    SET revoked = TRUE, revoked_at = %s, revoked_reason = 'rotated'
                    WHERE token_hash = %s AND NOT revoked AND expires_at > %s
                    RETURNING *
                    """,
                    (now, token_hash, now),
                ).fetchone()
                if not row:
                    existing = conn.execute(
                        "SELECT * FROM refresh_token WHERE token_hash = %s", (token_hash,)
                    ).fetchone()
                    if not existing:
                        return RedeemOutcome("not_found")
                    record = self._row_to_refresh(existing)
                    status = "revoked" if record.revoked else "expired"
                    return RedeemOutcome(status, record=record)
                record = self._row_to_refresh(row)
                successor = build_successor(record)
                self._insert_refresh(conn, successor)
        return RedeemOutcome("ok", record=record, successor=successor)

    def revoke_refresh_token(self, token_id: str, reason: str = "revoked") -> bool:
        with self._connect("revoke_refresh_token") as conn:
            result = conn.execute(
                """
                UPDATE refresh_token SET revoked = TRUE, revoked_at = now(), revoked_reason = %s
                WHERE id = %s AND NOT revoked
                """,
                (reason, token_id),
            )
            return result.rowcount > 0

    def revoke_refresh_family(self, family_id: str, reason: str = "revoked") -> int:
        with self._connect("revoke_refresh_family") as conn:
            result = conn.execute(
                """
                UPDATE refresh_token SET revoked = TRUE, revoked_at = now(), revoked_reason = %s
                WHERE family_id = %s AND NOT revoked
                """,
                (reason, family_id),
            )
            return result.rowcount

    def revoke_account_refresh_tokens(
        self, account_id: str, reason: str = "revoked"
    ) -> int:
        with self._connect("revoke_account_refresh_tokens") as conn:
            result = conn.execute(
                """
                UPDATE refresh_token SET revoked = TRUE, revoked_at = now(), revoked_reason = %s
                WHERE account_id = %s AND NOT revoked
                """,
                (reason, account_id),
            )
            return result.rowcount

    def list_active_refresh_tokens(
        self, account_id: str, now: datetime
    ) -> List[RefreshTokenRecord]:
        with self._connect("list_active_refresh_tokens") as conn:
            rows = conn.execute(
                """
                SELECT * FROM refresh_token
                WHERE account_id = %s AND NOT revoked AND expires_at > %s
                ORDER BY issued_at DESC
                """,
                (account_id, now),
            ).fetchall()
        return [self._row_to_refresh(row) for row in rows]

    # two-factor login challenges
    def insert_challenge(self, record: ChallengeRecord) -> ChallengeRecord:
        try:
            with self._connect("insert_challenge") as conn:
                conn.execute(
                    """
                    INSERT INTO login_challenge (id, token_hash, account_id, issued_at, expires_at, meta)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        record.token_hash,
                        record.account_id,
                        record.issued_at,
                        record.expires_at,
                        json.dumps(record.meta) if record.meta else None,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "challenge account missing", {"account_id": record.account_id}
            )
        return record

    def get_challenge_by_hash(self, token_hash: str) -> Optional[ChallengeRecord]:
        with self._connect("get_challenge_by_hash") as conn:
            row = conn.execute(
                "SELECT * FROM login_challenge WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._row_to_challenge(row) if row else None

    def consume_challenge(self, challenge_id: str, now: datetime) -> bool:
        with self._connect("consume_challenge") as conn:
            row = conn.execute(
                """
                UPDATE login_challenge SET consumed_at = %s
                WHERE id = %s AND consumed_at IS NULL AND expires_at > %s
                RETURNING id
                """,
                (now, challenge_id, now),
            ).fetchone()
        return row is not None
