from __future__ import annotations

import secrets
from typing import Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from campauth.logging import get_logger

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class PasswordVerifier:
    """argon2id hashing with a timing-equalized path for unknown accounts."""

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        # Verified against when no credential exists so the response time
        # does not reveal whether the account is real.
        self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(24))

    def hash_password(self, password: str) -> Tuple[str, str]:
        return self._hasher.hash(password), PASSWORD_ALGO

    def verify(self, record: Optional[Tuple[str, str]], password: str) -> bool:
        if not record:
            self._burn(password)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", algo=algo)
            self._burn(password)
            return False
        try:
            return self._hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unusable")
            return False

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True

    def _burn(self, password: str) -> None:
        try:
            self._hasher.verify(self._dummy_hash, password)
        except VerificationError:
            pass
