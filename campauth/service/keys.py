from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

from campauth.config import MIN_SIGNING_SECRET_LENGTH, Settings
from campauth.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class SigningKey:
    kid: str
    secret: bytes

    def sign(self, data: bytes) -> bytes:
        return hmac.new(self.secret, data, hashlib.sha256).digest()


def key_fingerprint(secret: str) -> str:
    """Stable key id so tokens name the key that signed them."""
    return hashlib.sha256(b"kid:" + secret.encode("utf-8")).hexdigest()[:16]


class SigningKeyProvider:
    """Process-wide HMAC key material for access tokens.

    Built once at startup. The active key signs; retired keys listed in
    ``previous_secrets`` still verify until they are dropped from config,
    so a rotation does not log everybody out.
    """

    def __init__(self, secret: Optional[str], previous_secrets: Iterable[str] = ()) -> None:
        if not secret or len(secret) < MIN_SIGNING_SECRET_LENGTH:
            raise ValueError(
                f"signing secret must be at least {MIN_SIGNING_SECRET_LENGTH} characters"
            )
        self._active = SigningKey(key_fingerprint(secret), secret.encode("utf-8"))
        self._keys: Dict[str, SigningKey] = {self._active.kid: self._active}
        for old in previous_secrets:
            if not old or len(old) < MIN_SIGNING_SECRET_LENGTH:
                raise ValueError("retired signing secrets must meet the minimum length")
            key = SigningKey(key_fingerprint(old), old.encode("utf-8"))
            self._keys.setdefault(key.kid, key)
        logger.info(
            "signing_keys_loaded",
            active_kid=self._active.kid,
            verification_kids=sorted(self._keys),
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "SigningKeyProvider":
        return cls(settings.jwt_secret, settings.jwt_previous_secrets)

    @property
    def active(self) -> SigningKey:
        return self._active

    def for_kid(self, kid: Optional[str]) -> Optional[SigningKey]:
        if not kid:
            return None
        return self._keys.get(kid)
