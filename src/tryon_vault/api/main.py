import time
from datetime import datetime, timezone
from typing import Optional
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from tryon_vault.api.auth_routes import create_auth_router
from tryon_vault.api.dependencies import VaultServices, build_services, client_ip, get_services
from tryon_vault.api.exceptions import (
    RateLimitError,
    ValidationError,
    VaultServiceException,
    general_exception_handler,
    vault_service_exception_handler
)
from tryon_vault.api.prediction_routes import create_prediction_router
from tryon_vault.api.schemas import HealthResponse
from tryon_vault.config.logging import get_logger
from tryon_vault.config.settings import settings
from tryon_vault.utils.rate_limiter import EndpointClass

SERVICE_NAME = "Try-On Vault"
SERVICE_VERSION = "1.0.0"

AVAILABLE_ENDPOINTS = [
    "POST /api/auth/init - Initialize session with API key",
    "GET /api/auth/validate - Validate session",
    "POST /api/auth/refresh - Refresh session",
    "POST /api/auth/logout - Logout and clear session",
    "POST /api/replicate/predictions - Create prediction",
    "POST /api/replicate/predictions/run - Create prediction and wait for the result",
    "GET /api/replicate/predictions/{id} - Get prediction status",
    "DELETE /api/replicate/predictions/{id} - Cancel prediction",
    "GET /api/health - Health check"
]

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains; preload",
    "Referrer-Policy": "no-referrer",
    "Cross-Origin-Resource-Policy": "cross-origin",
}

request_logger = get_logger("api.requests")


async def request_validation_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", []) if part != "body")
    message = f"{location}: {first.get('msg')}" if location else "Invalid request data"
    return await vault_service_exception_handler(request, ValidationError(message))


def create_app(services: Optional[VaultServices] = None) -> FastAPI:
    app = FastAPI(
        title=SERVICE_NAME,
        description="Encrypted Replicate API key sessions and prediction tracking for the try-on app",
        version=SERVICE_VERSION
    )
    app.state.services = services or build_services()
    
    app.add_exception_handler(VaultServiceException, vault_service_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, general_exception_handler)
    
    # Later registrations wrap earlier ones: CORS is outermost and the
    # catch-all limiter innermost
    @app.middleware("http")
    async def general_rate_limit(request: Request, call_next):
        try:
            get_services(request).rate_limiter.check(client_ip(request), EndpointClass.GENERAL)
        except RateLimitError as e:
            return await vault_service_exception_handler(request, e)
        return await call_next(request)
    
    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response
    
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        request_logger.info("Request handled",
                            method=request.method,
                            path=request.url.path,
                            status_code=response.status_code,
                            duration_ms=round((time.perf_counter() - start) * 1000, 1),
                            client=client_ip(request),
                            user_agent=(request.headers.get("user-agent") or "unknown")[:100])
        return response
    
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins(),
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Session-Token", "X-Requested-With", "Accept", "Origin"],
        allow_credentials=False,
        max_age=86400
    )
    
    app.include_router(create_auth_router())
    app.include_router(create_prediction_router())
    
    @app.get("/")
    async def root():
        return {
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "endpoints": {
                "auth": "/api/auth",
                "replicate": "/api/replicate"
            }
        }
    
    @app.get("/api/health", response_model=HealthResponse)
    async def health_check(request: Request):
        """Service health plus session store statistics."""
        stats = get_services(request).session_store.get_stats()
        return HealthResponse(
            status="degraded" if stats.degraded_encryption else "healthy",
            service=SERVICE_NAME,
            version=SERVICE_VERSION,
            timestamp=datetime.now(timezone.utc).isoformat(),
            sessions={
                "totalSessions": stats.total_sessions,
                "maxSessions": stats.max_sessions,
                "sessionMaxAgeSeconds": stats.session_max_age_seconds,
                "cleanupIntervalSeconds": stats.cleanup_interval_seconds,
                "degradedEncryption": stats.degraded_encryption
            }
        )
    
    @app.exception_handler(404)
    async def not_found(request: Request, exc):
        return JSONResponse(status_code=404, content={
            "error": "Not Found",
            "message": f"Route {request.method} {request.url.path} not found",
            "availableEndpoints": AVAILABLE_ENDPOINTS
        })
    
    return app
