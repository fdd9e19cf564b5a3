from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from tryon_vault.api.dependencies import client_ip, get_services, rate_limited, session_token
from tryon_vault.api.exceptions import AuthError, ValidationError
from tryon_vault.api.schemas import (
    InitSessionRequest, InitSessionResponse, LogoutResponse, RefreshSessionResponse,
    SessionDetails, ValidateSessionResponse, to_iso
)
from tryon_vault.config.logging import get_logger, mask_token
from tryon_vault.utils.rate_limiter import EndpointClass, RateLimitDecision

logger = get_logger("api.auth")


def create_auth_router() -> APIRouter:
    router = APIRouter(prefix="/api/auth", tags=["Session"])
    
    @router.post("/init", response_model=InitSessionResponse, status_code=201)
    async def init_session(
        request: Request,
        body: InitSessionRequest,
        _: RateLimitDecision = Depends(rate_limited(EndpointClass.AUTH))
    ):
        """Store an encrypted Replicate API key and hand back a session token."""
        api_key = body.resolved_key()
        if not api_key:
            raise ValidationError("Replicate API key is required")
        
        store = get_services(request).session_store
        created = store.create_session(
            api_key,
            ip_address=client_ip(request),
            user_agent=request.headers.get("user-agent")
        )
        logger.info("Session initialized", token=mask_token(created.token), client=client_ip(request))
        return InitSessionResponse(
            sessionToken=created.token,
            expiresIn=created.expires_in,
            created=to_iso(created.created_at)
        )
    
    @router.get("/validate", response_model=ValidateSessionResponse)
    async def validate_session(
        request: Request,
        _: RateLimitDecision = Depends(rate_limited(EndpointClass.SESSION)),
        token: str = Depends(session_token)
    ):
        store = get_services(request).session_store
        validation = store.validate_session(token, client_ip(request), request.headers.get("user-agent"))
        
        if not validation.valid:
            return JSONResponse(status_code=401, content={
                "valid": False,
                "error": "Session invalid",
                "message": validation.error or "Session validation failed"
            })
        
        session = validation.session
        return ValidateSessionResponse(
            valid=True,
            message="Session is valid and refreshed",
            session=SessionDetails(
                created=to_iso(session.created_at),
                lastAccessed=to_iso(session.last_accessed),
                expiresAt=to_iso(session.expires_at)
            )
        )
    
    @router.post("/refresh", response_model=RefreshSessionResponse)
    async def refresh_session(
        request: Request,
        _: RateLimitDecision = Depends(rate_limited(EndpointClass.SESSION)),
        token: str = Depends(session_token)
    ):
        store = get_services(request).session_store
        validation = store.validate_session(token, client_ip(request), request.headers.get("user-agent"))
        if not validation.valid:
            raise AuthError(validation.error or "Cannot refresh invalid session")
        return RefreshSessionResponse(expiresAt=to_iso(validation.session.expires_at))
    
    @router.post("/logout", response_model=LogoutResponse)
    async def logout(
        request: Request,
        _: RateLimitDecision = Depends(rate_limited(EndpointClass.AUTH)),
        token: str = Depends(session_token)
    ):
        store = get_services(request).session_store
        if not store.delete_session(token):
            return JSONResponse(status_code=404, content={
                "error": "Session not found",
                "message": "Session was already removed or never existed"
            })
        logger.info("Session logged out", token=mask_token(token))
        return LogoutResponse()
    
    return router
