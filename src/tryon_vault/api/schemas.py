from datetime import datetime, timezone
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field


def to_iso(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


class InitSessionRequest(BaseModel):
    apiKey: Optional[str] = None
    # Accepted as an alias for apiKey
    credential: Optional[str] = None

    def resolved_key(self) -> Optional[str]:
        return self.apiKey or self.credential


class InitSessionResponse(BaseModel):
    success: bool = True
    message: str = "Session initialized successfully"
    sessionToken: str
    expiresIn: int
    created: str


class SessionDetails(BaseModel):
    created: str
    lastAccessed: str
    expiresAt: str


class ValidateSessionResponse(BaseModel):
    valid: bool
    message: str
    session: Optional[SessionDetails] = None


class RefreshSessionResponse(BaseModel):
    success: bool = True
    message: str = "Session refreshed successfully"
    expiresAt: str


class LogoutResponse(BaseModel):
    success: bool = True
    message: str = "Logged out successfully"


class CreatePredictionRequest(BaseModel):
    model: Optional[str] = Field(default=None, description="owner/name, optionally with :version")
    version: Optional[str] = Field(default=None, description="Bare version id (legacy form)")
    input: Optional[Dict[str, Any]] = None

    def target(self) -> Optional[str]:
        return self.model or self.version


class HealthResponse(BaseModel):
    status: str
    service: str
    version: str
    timestamp: str
    sessions: Dict[str, Any]
