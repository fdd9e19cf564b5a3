import asyncio
import contextlib
from fastapi import APIRouter, Depends, Path, Request
from fastapi.responses import JSONResponse
from tryon_vault.api.dependencies import get_services, rate_limited, session_token
from tryon_vault.api.exceptions import ValidationError
from tryon_vault.api.schemas import CreatePredictionRequest
from tryon_vault.config.logging import get_logger
from tryon_vault.utils.rate_limiter import EndpointClass, RateLimitDecision

logger = get_logger("api.predictions")

DISCONNECT_CHECK_SECONDS = 1.0


async def _cancel_on_disconnect(request: Request, cancel_event: asyncio.Event) -> None:
    while not cancel_event.is_set():
        if await request.is_disconnected():
            logger.info("Client disconnected, cancelling prediction tracking", path=request.url.path)
            cancel_event.set()
            return
        await asyncio.sleep(DISCONNECT_CHECK_SECONDS)


def _target_and_input(body: CreatePredictionRequest):
    if body.input is None:
        raise ValidationError("Input is required")
    target = body.target()
    if not target:
        raise ValidationError("Either model or version is required")
    return target, body.input


def create_prediction_router() -> APIRouter:
    router = APIRouter(
        prefix="/api/replicate",
        tags=["Predictions"],
        dependencies=[Depends(rate_limited(EndpointClass.UPSTREAM))]
    )
    
    @router.post("/predictions", status_code=201)
    async def create_prediction(
        request: Request,
        body: CreatePredictionRequest,
        token: str = Depends(session_token)
    ):
        target, payload = _target_and_input(body)
        orchestrator = get_services(request).orchestrator
        prediction = await orchestrator.create(token, target, payload)
        return JSONResponse(status_code=201, content=prediction.to_response())
    
    @router.post("/predictions/run")
    async def run_prediction(
        request: Request,
        body: CreatePredictionRequest,
        token: str = Depends(session_token)
    ):
        """Create a prediction and hold the request open until it finishes."""
        target, payload = _target_and_input(body)
        orchestrator = get_services(request).orchestrator
        
        cancel_event = asyncio.Event()
        watcher = asyncio.create_task(_cancel_on_disconnect(request, cancel_event))
        try:
            prediction = await orchestrator.submit(token, target, payload, cancel_event=cancel_event)
        finally:
            watcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await watcher
        return JSONResponse(status_code=200, content=prediction.to_response())
    
    @router.get("/predictions/{prediction_id}")
    async def get_prediction(
        request: Request,
        prediction_id: str = Path(..., title="Prediction ID"),
        token: str = Depends(session_token)
    ):
        orchestrator = get_services(request).orchestrator
        prediction = await orchestrator.get(token, prediction_id)
        return JSONResponse(status_code=200, content=prediction.to_response())
    
    async def _cancel(request: Request, prediction_id: str, token: str):
        orchestrator = get_services(request).orchestrator
        prediction = await orchestrator.cancel(token, prediction_id)
        return JSONResponse(status_code=200, content=prediction.to_response())
    
    @router.delete("/predictions/{prediction_id}")
    async def delete_prediction(
        request: Request,
        prediction_id: str = Path(..., title="Prediction ID"),
        token: str = Depends(session_token)
    ):
        return await _cancel(request, prediction_id, token)
    
    @router.post("/predictions/{prediction_id}/cancel")
    async def cancel_prediction(
        request: Request,
        prediction_id: str = Path(..., title="Prediction ID"),
        token: str = Depends(session_token)
    ):
        return await _cancel(request, prediction_id, token)
    
    return router
