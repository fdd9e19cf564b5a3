from dataclasses import dataclass
from typing import Optional
from fastapi import Request
from tryon_vault.api.exceptions import AuthError
from tryon_vault.clients.replicate_client import ReplicateClient
from tryon_vault.config.settings import settings
from tryon_vault.services.prediction_orchestrator import PredictionOrchestrator
from tryon_vault.services.session_store import SessionStore
from tryon_vault.utils.encryption import CryptoProvider
from tryon_vault.utils.rate_limiter import RateLimitDecision, RateLimiter

MIN_TOKEN_LENGTH = 32


@dataclass
class VaultServices:
    crypto: CryptoProvider
    session_store: SessionStore
    rate_limiter: RateLimiter
    client: ReplicateClient
    orchestrator: PredictionOrchestrator


def build_services(crypto: Optional[CryptoProvider] = None,
                   session_store: Optional[SessionStore] = None,
                   rate_limiter: Optional[RateLimiter] = None,
                   client: Optional[ReplicateClient] = None,
                   orchestrator: Optional[PredictionOrchestrator] = None) -> VaultServices:
    crypto = crypto or CryptoProvider(settings.encryption_key, require_secret=settings.require_encryption_key)
    session_store = session_store or SessionStore(crypto)
    client = client or ReplicateClient()
    return VaultServices(
        crypto=crypto,
        session_store=session_store,
        rate_limiter=rate_limiter or RateLimiter(),
        client=client,
        orchestrator=orchestrator or PredictionOrchestrator(client, session_store),
    )


def get_services(request: Request) -> VaultServices:
    return request.app.state.services


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def rate_limited(endpoint_class: str):
    """Dependency gating a route by its rate-limit class."""
    async def dependency(request: Request) -> RateLimitDecision:
        return get_services(request).rate_limiter.check(client_ip(request), endpoint_class)
    return dependency


async def session_token(request: Request) -> str:
    """Pull the session token from X-Session-Token or a Bearer header."""
    token = request.headers.get("x-session-token")
    if not token:
        authorization = request.headers.get("authorization", "")
        if authorization.lower().startswith("bearer "):
            token = authorization[7:].strip()
    if not token:
        raise AuthError("No session token provided")
    if len(token) < MIN_TOKEN_LENGTH:
        raise AuthError("Session token format is invalid")
    return token
