from typing import Optional
from fastapi import Request
from fastapi.responses import JSONResponse
import structlog
from tryon_vault.config.settings import settings

logger = structlog.get_logger("api")


class VaultServiceException(Exception):
    error = "Service error"

    def __init__(self, message: str, status_code: int = 500):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.error, "message": self.message}


class ValidationError(VaultServiceException):
    error = "Validation failed"

    def __init__(self, message: str):
        super().__init__(message, status_code=400)


class AuthError(VaultServiceException):
    error = "Authentication required"

    def __init__(self, message: str = "Session expired or invalid"):
        super().__init__(message, status_code=401)


class RateLimitError(VaultServiceException):
    """Local limiter breach. Not to be confused with UpstreamRateLimitError."""

    error = "Too many requests"

    def __init__(self, message: str, retry_after: int):
        self.retry_after = retry_after
        super().__init__(message, status_code=429)

    def to_dict(self) -> dict:
        return {"error": self.error, "message": self.message, "retryAfter": self.retry_after}


class UpstreamError(VaultServiceException):
    error = "Replicate API error"

    def __init__(self, message: str, status_code: int = 502, upstream_status: Optional[int] = None):
        self.upstream_status = upstream_status
        super().__init__(message, status_code=status_code)

    def to_dict(self) -> dict:
        body = super().to_dict()
        if self.upstream_status is not None:
            body["status"] = self.upstream_status
        return body


class UpstreamRateLimitError(UpstreamError):
    def __init__(self, message: str, retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(message, status_code=429, upstream_status=429)

    def to_dict(self) -> dict:
        body = super().to_dict()
        if self.retry_after is not None:
            body["retryAfter"] = self.retry_after
        return body


class UpstreamTransientError(UpstreamError):
    def __init__(self, message: str, upstream_status: Optional[int] = None):
        super().__init__(message, status_code=upstream_status or 502, upstream_status=upstream_status)


class UpstreamClientError(UpstreamError):
    def __init__(self, message: str, upstream_status: Optional[int] = None):
        super().__init__(message, status_code=upstream_status or 502, upstream_status=upstream_status)


class PollingTimeoutError(VaultServiceException):
    """The poll budget ran out; the prediction may still finish upstream."""

    error = "Polling timed out"

    def __init__(self, prediction_id: str, attempts: int, last_status: Optional[str] = None):
        self.prediction_id = prediction_id
        self.attempts = attempts
        self.last_status = last_status
        super().__init__(
            f"Prediction {prediction_id} did not finish after {attempts} polls (last status: {last_status})",
            status_code=504
        )

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["predictionId"] = self.prediction_id
        return body


class CancellationError(VaultServiceException):
    error = "Cancelled"

    def __init__(self, prediction_id: Optional[str] = None):
        self.prediction_id = prediction_id
        super().__init__(f"Prediction {prediction_id or '<pending>'} was cancelled by the caller", status_code=499)


class PredictionFailedError(VaultServiceException):
    error = "Prediction failed"

    def __init__(self, prediction_id: str, detail: Optional[str]):
        self.prediction_id = prediction_id
        super().__init__(detail or f"Prediction {prediction_id} failed", status_code=422)


class EncryptionError(VaultServiceException):
    error = "Encryption failed"

    def __init__(self, message: str = "Failed to encrypt data"):
        super().__init__(message, status_code=500)


class DecryptionError(VaultServiceException):
    error = "Decryption failed"

    def __init__(self, message: str = "Failed to decrypt data"):
        super().__init__(message, status_code=500)


async def vault_service_exception_handler(request: Request, exc: VaultServiceException):
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "Vault service exception",
        error=exc.message,
        error_type=type(exc).__name__,
        status_code=exc.status_code,
        path=request.url.path
    )
    headers = None
    retry_after = getattr(exc, "retry_after", None)
    if retry_after is not None:
        headers = {"Retry-After": str(int(retry_after))}
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers=headers
    )


async def general_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        error=str(exc),
        path=request.url.path,
        exc_info=True
    )
    content = {"error": "Internal server error"}
    if settings.debug:
        content["message"] = str(exc)
    return JSONResponse(
        status_code=500,
        content=content
    )
