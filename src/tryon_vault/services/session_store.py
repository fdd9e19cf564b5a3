import re
import time
from typing import Callable, Optional
from tryon_vault.api.exceptions import AuthError, ValidationError
from tryon_vault.config.logging import get_logger, mask_token
from tryon_vault.config.settings import settings
from tryon_vault.models.session import (
    Session, SessionCreated, SessionStats, SessionValidation
)
from tryon_vault.utils.encryption import CryptoProvider
from tryon_vault.utils.store import InMemoryStore, KeyValueStore

logger = get_logger("session.store")


class SessionStore:
    """Maps opaque session tokens to encrypted Replicate API keys.

    Expiry is sliding: each successful validation pushes ``expires_at``
    forward by ``max_age_seconds``.
    """

    def __init__(
        self,
        crypto: CryptoProvider,
        store: Optional[KeyValueStore[str, Session]] = None,
        max_age_seconds: Optional[int] = None,
        max_sessions: Optional[int] = None,
        token_bytes: Optional[int] = None,
        credential_prefix: Optional[str] = None,
        credential_min_length: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.crypto = crypto
        self.store = store if store is not None else InMemoryStore()
        self.max_age_seconds = max_age_seconds or settings.session_max_age_seconds
        self.max_sessions = max_sessions or settings.max_sessions
        self.token_bytes = token_bytes or settings.session_token_bytes
        self.credential_prefix = credential_prefix if credential_prefix is not None else settings.credential_prefix
        self.credential_min_length = credential_min_length or settings.credential_min_length
        self._credential_pattern = re.compile(rf"^{re.escape(self.credential_prefix)}[A-Za-z0-9]+$")
        self._clock = clock

    def validate_credential(self, credential) -> None:
        if not credential or not isinstance(credential, str):
            raise ValidationError("Replicate API key is required")
        if len(credential) < self.credential_min_length or not self._credential_pattern.match(credential):
            raise ValidationError(
                f'Invalid Replicate API key format. Must start with "{self.credential_prefix}" '
                f"and be at least {self.credential_min_length} characters."
            )

    def create_session(self, credential: str, ip_address: Optional[str] = None,
                       user_agent: Optional[str] = None) -> SessionCreated:
        self.validate_credential(credential)
        encrypted = self.crypto.encrypt(credential)
        key_hash = self.crypto.hash(credential)

        with self.store.transaction():
            if len(self.store) >= self.max_sessions:
                self._evict_for_capacity()

            token = self.crypto.generate_token(self.token_bytes)
            while self.store.get(token) is not None:
                token = self.crypto.generate_token(self.token_bytes)

            now = self._clock()
            self.store.set(token, Session(
                encrypted_key=encrypted,
                key_hash=key_hash,
                created_at=now,
                last_accessed=now,
                expires_at=now + self.max_age_seconds,
                ip_address=ip_address,
                user_agent=user_agent,
            ))

        logger.info("Session created", token=mask_token(token), expires_at=now + self.max_age_seconds)
        return SessionCreated(token=token, expires_in=self.max_age_seconds, created_at=now)

    def _evict_for_capacity(self) -> None:
        cleaned = self.cleanup_expired()
        if len(self.store) < self.max_sessions:
            return
        entries = self.store.items()
        if not entries:
            return
        oldest_token, _ = min(entries, key=lambda item: item[1].created_at)
        self.store.delete(oldest_token)
        logger.warning("Session store at capacity, evicted oldest session",
                       token=mask_token(oldest_token),
                       expired_cleaned=cleaned,
                       max_sessions=self.max_sessions)

    def validate_session(self, token, ip_address: Optional[str] = None,
                         user_agent: Optional[str] = None) -> SessionValidation:
        if not token or not isinstance(token, str):
            return SessionValidation(valid=False, error="Invalid session token")

        with self.store.transaction():
            session = self.store.get(token)
            if session is None:
                return SessionValidation(valid=False, error="Session not found")

            now = self._clock()
            if session.is_expired(now):
                self.store.delete(token)
                logger.info("Session expired on access", token=mask_token(token))
                return SessionValidation(valid=False, error="Session expired")

            session.last_accessed = now
            session.expires_at = now + self.max_age_seconds
            if ip_address:
                session.ip_address = ip_address
            if user_agent:
                session.user_agent = user_agent
            return SessionValidation(valid=True, session=session.public_view())

    def get_api_key(self, token: str) -> str:
        """Re-validate the session, then hand back the decrypted key."""
        validation = self.validate_session(token)
        if not validation.valid:
            raise AuthError(validation.error or "Invalid session")

        session = self.store.get(token)
        if session is None:
            raise AuthError("Session not found")
        # DecryptionError propagates; it only happens on tampering or a key change
        return self.crypto.decrypt(session.encrypted_key)

    def verify_api_key(self, token: str, credential: str) -> bool:
        """Check a presented key against the stored hash without decrypting."""
        if not token or not isinstance(token, str) or not isinstance(credential, str):
            return False
        with self.store.transaction():
            session = self.store.get(token)
            if session is None:
                return False
            if session.is_expired(self._clock()):
                self.store.delete(token)
                logger.info("Session expired on access", token=mask_token(token))
                return False
            return self.crypto.secure_compare(session.key_hash, self.crypto.hash(credential))

    def delete_session(self, token) -> bool:
        if not token or not isinstance(token, str):
            return False
        removed = self.store.delete(token)
        if removed:
            logger.info("Session deleted", token=mask_token(token))
        return removed

    def cleanup_expired(self) -> int:
        now = self._clock()
        cleaned = self.store.sweep(lambda _token, session: session.is_expired(now))
        if cleaned:
            logger.info("Cleaned up expired sessions", cleaned=cleaned, remaining=len(self.store))
        return cleaned

    def get_stats(self) -> SessionStats:
        return SessionStats(
            total_sessions=len(self.store),
            max_sessions=self.max_sessions,
            session_max_age_seconds=self.max_age_seconds,
            cleanup_interval_seconds=settings.session_cleanup_interval_seconds,
            degraded_encryption=self.crypto.degraded,
        )
