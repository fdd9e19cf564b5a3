"""AES-256-GCM credential encryption, hashing and token helpers."""
import base64
import binascii
import hashlib
import hmac
import os
import secrets
from dataclasses import dataclass
from typing import Any, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from tryon_vault.api.exceptions import DecryptionError, EncryptionError
from tryon_vault.config.logging import get_logger

logger = get_logger("session.crypto")

KEY_LENGTH = 32  # AES-256
IV_LENGTH = 12
TAG_LENGTH = 16


@dataclass(frozen=True)
class EncryptedPayload:
    ciphertext: str
    iv: str
    auth_tag: str


def derive_key(secret: str) -> bytes:
    """Turn the operator secret into a 32-byte key.

    A 64 character hex string or a base64 string that decodes to exactly 32
    bytes is used as-is; anything else is run through SHA-256.
    """
    if len(secret) == KEY_LENGTH * 2:
        try:
            return bytes.fromhex(secret)
        except ValueError:
            pass
    if len(secret) == 44 and secret.endswith("="):
        try:
            decoded = base64.b64decode(secret, validate=True)
            if len(decoded) == KEY_LENGTH:
                return decoded
        except (binascii.Error, ValueError):
            pass
    return hashlib.sha256(secret.encode("utf-8")).digest()


class CryptoProvider:
    """Symmetric encryption for stored credentials.

    With no secret the provider runs in degraded mode: a random key lives only
    as long as the process, so every session is lost on restart.
    """

    def __init__(self, secret: Optional[str] = None, require_secret: bool = False):
        if secret:
            self._key = derive_key(secret)
            self.degraded = False
        elif require_secret:
            raise EncryptionError("ENCRYPTION_KEY must be set when REQUIRE_ENCRYPTION_KEY is enabled")
        else:
            self._key = os.urandom(KEY_LENGTH)
            self.degraded = True
            logger.warning("No ENCRYPTION_KEY configured, running in degraded mode with a per-process key",
                           sessions_survive_restart=False)
        self._aead = AESGCM(self._key)

    def encrypt(self, plaintext: Any) -> EncryptedPayload:
        if not isinstance(plaintext, str) or not plaintext:
            raise EncryptionError("Plaintext must be a non-empty string")
        iv = os.urandom(IV_LENGTH)
        try:
            sealed = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        except Exception as e:
            logger.error("Encryption failed", error_type=type(e).__name__)
            raise EncryptionError() from e
        # AESGCM appends the tag to the ciphertext
        return EncryptedPayload(
            ciphertext=sealed[:-TAG_LENGTH].hex(),
            iv=iv.hex(),
            auth_tag=sealed[-TAG_LENGTH:].hex(),
        )

    def decrypt(self, payload: EncryptedPayload) -> str:
        ciphertext = getattr(payload, "ciphertext", None)
        iv = getattr(payload, "iv", None)
        auth_tag = getattr(payload, "auth_tag", None)
        if not ciphertext or not iv or not auth_tag:
            raise DecryptionError("Encrypted payload is missing fields")
        try:
            raw_iv = bytes.fromhex(iv)
            raw_tag = bytes.fromhex(auth_tag)
            sealed = bytes.fromhex(ciphertext) + raw_tag
        except ValueError as e:
            raise DecryptionError("Encrypted payload is not valid hex") from e
        if len(raw_iv) != IV_LENGTH or len(raw_tag) != TAG_LENGTH:
            raise DecryptionError("Encrypted payload has an invalid iv or tag length")
        try:
            return self._aead.decrypt(raw_iv, sealed, None).decode("utf-8")
        except InvalidTag as e:
            logger.error("Authentication tag did not verify")
            raise DecryptionError() from e
        except UnicodeDecodeError as e:
            raise DecryptionError() from e

    @staticmethod
    def hash(data: str) -> str:
        return hashlib.sha256(data.encode("utf-8")).hexdigest()

    @staticmethod
    def generate_token(n_bytes: int = 32) -> str:
        return secrets.token_hex(n_bytes)

    @staticmethod
    def secure_compare(a: Any, b: Any) -> bool:
        """Constant-time comparison; False on any type mismatch."""
        if isinstance(a, str) and isinstance(b, str):
            return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))
        if isinstance(a, bytes) and isinstance(b, bytes):
            return hmac.compare_digest(a, b)
        return False
