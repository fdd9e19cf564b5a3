from dataclasses import dataclass
from typing import Optional
from tryon_vault.utils.encryption import EncryptedPayload


@dataclass
class Session:
    """Stored session; holds the credential only in encrypted form."""

    encrypted_key: EncryptedPayload
    key_hash: str
    created_at: float
    last_accessed: float
    expires_at: float
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def public_view(self) -> "SessionInfo":
        return SessionInfo(
            created_at=self.created_at,
            last_accessed=self.last_accessed,
            expires_at=self.expires_at,
        )


@dataclass(frozen=True)
class SessionInfo:
    created_at: float
    last_accessed: float
    expires_at: float


@dataclass(frozen=True)
class SessionCreated:
    token: str
    expires_in: int
    created_at: float


@dataclass(frozen=True)
class SessionValidation:
    valid: bool
    session: Optional[SessionInfo] = None
    error: Optional[str] = None


@dataclass
class SessionStats:
    total_sessions: int
    max_sessions: int
    session_max_age_seconds: int
    cleanup_interval_seconds: int
    degraded_encryption: bool = False
