"""Helpers shared between the memory and postgres store implementations."""

from __future__ import annotations

import base64
import hashlib
from ipaddress import ip_address
from typing import Optional, Sequence, Union

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

from campauth.logging import get_logger

logger = get_logger(__name__)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def hash_token(plaintext: str) -> str:
    """SHA-256 digest used to store refresh and challenge tokens."""
    return hashlib.sha256(plaintext.encode("utf-8")).hexdigest()


def normalize_ip(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    try:
        return str(ip_address(value.strip()))
    except ValueError:
        return None


def _derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


class SecretCipher:
    """Fernet wrapper for TOTP secrets stored at rest.

    Accepts one key or a list of keys. The first key encrypts; every key is
    tried on decrypt, so retired keys keep existing secrets readable.
    """

    def __init__(self, key_material: Union[str, Sequence[str]]) -> None:
        materials = [key_material] if isinstance(key_material, str) else list(key_material)
        materials = [m for m in materials if m]
        if not materials:
            raise RuntimeError("MFA encryption key material is required")
        self._fernet = MultiFernet([Fernet(_derive_cipher_key(m)) for m in materials])

    def encrypt(self, secret: str) -> str:
        if not secret:
            return secret
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, secret: str) -> str:
        if not secret:
            return secret
        try:
            return self._fernet.decrypt(secret.encode()).decode()
        except InvalidToken as exc:
            # A secret written under another key can never verify a code
            logger.error("mfa_secret_decrypt_failed")
            raise RuntimeError("stored MFA secret cannot be decrypted") from exc
