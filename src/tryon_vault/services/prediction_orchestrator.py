import asyncio
import contextlib
import re
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional
from tryon_vault.api.exceptions import (
    CancellationError, PollingTimeoutError, PredictionFailedError, UpstreamRateLimitError,
    ValidationError, VaultServiceException
)
from tryon_vault.clients.replicate_client import ReplicateClient
from tryon_vault.config.logging import get_logger
from tryon_vault.config.settings import settings
from tryon_vault.models.prediction import Prediction, PredictionStatus
from tryon_vault.services.session_store import SessionStore
from tryon_vault.utils.rate_limiter import BackoffPolicy

logger = get_logger("orchestrator")

JobPayload = Dict[str, Any]
UpdateCallback = Callable[[Prediction], Any]
PauseFunc = Callable[[float, Optional[asyncio.Event]], Awaitable[bool]]

PREDICTION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


async def interruptible_sleep(delay: float, cancel_event: Optional[asyncio.Event]) -> bool:
    """Sleep for ``delay`` seconds; return True if the cancel event fired first."""
    if cancel_event is None:
        await asyncio.sleep(delay)
        return False
    if cancel_event.is_set():
        return True
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=delay)
        return True
    except asyncio.TimeoutError:
        return False


def _only_rate_limits(exc: BaseException) -> bool:
    # A 429 means Replicate never accepted the job, so a retry cannot duplicate it
    return isinstance(exc, UpstreamRateLimitError)


class PredictionOrchestrator:
    """Creates Replicate predictions and drives them to a terminal status.

    Polling is strictly sequential and every wait, retry delay and in-flight
    request can be interrupted through the caller's cancel event.
    """

    def __init__(self,
                 client: ReplicateClient,
                 session_store: SessionStore,
                 poll_backoff: Optional[BackoffPolicy] = None,
                 create_backoff: Optional[BackoffPolicy] = None,
                 interval: Optional[float] = None,
                 max_attempts: Optional[int] = None,
                 pause: PauseFunc = interruptible_sleep):
        self.client = client
        self.session_store = session_store
        self.poll_backoff = poll_backoff or BackoffPolicy()
        self.create_backoff = create_backoff or BackoffPolicy(classify=_only_rate_limits)
        self.interval = interval if interval is not None else settings.poll_interval_seconds
        self.max_attempts = max_attempts or settings.poll_max_attempts
        self._pause = pause

    @staticmethod
    def _ensure_not_cancelled(cancel_event: Optional[asyncio.Event], prediction_id: Optional[str]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            logger.info("Prediction tracking cancelled by caller", prediction_id=prediction_id)
            raise CancellationError(prediction_id)

    def _backoff_sleep(self, cancel_event: Optional[asyncio.Event], prediction_id: Optional[str]):
        async def sleep(delay: float) -> None:
            if await self._pause(delay, cancel_event):
                self._ensure_not_cancelled(cancel_event, prediction_id)
        return sleep

    async def _guarded(self, awaitable: Awaitable[Any], cancel_event: Optional[asyncio.Event],
                       prediction_id: Optional[str]) -> Any:
        """Await ``awaitable`` but abandon it as soon as the cancel event fires."""
        if cancel_event is None:
            return await awaitable
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()
        if task in done:
            return task.result()
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError, VaultServiceException):
            await task
        self._ensure_not_cancelled(cancel_event, prediction_id)
        raise CancellationError(prediction_id)

    @staticmethod
    def _validate_request(model_ref: Any, payload: Any) -> None:
        if not model_ref or not isinstance(model_ref, str):
            raise ValidationError("Either model or version is required")
        if not isinstance(payload, dict):
            raise ValidationError("Input is required")

    @staticmethod
    def _validate_prediction_id(prediction_id: Any) -> None:
        if not prediction_id or not isinstance(prediction_id, str):
            raise ValidationError("Prediction ID is required")
        # The id ends up in the upstream URL path
        if not PREDICTION_ID_PATTERN.match(prediction_id):
            raise ValidationError("Prediction ID may only contain letters, digits, '-' and '_'")

    async def create(self, session_token: str, model_ref: str, payload: JobPayload,
                     cancel_event: Optional[asyncio.Event] = None) -> Prediction:
        """Create a prediction, retrying only when Replicate answers 429."""
        self._validate_request(model_ref, payload)
        credential = self.session_store.get_api_key(session_token)
        return await self._create_with_credential(credential, model_ref, payload, cancel_event)

    async def _create_with_credential(self, credential: str, model_ref: str, payload: JobPayload,
                                      cancel_event: Optional[asyncio.Event]) -> Prediction:
        self._ensure_not_cancelled(cancel_event, None)

        async def attempt() -> Prediction:
            self._ensure_not_cancelled(cancel_event, None)
            return await self.client.create_prediction(credential, model_ref, payload)

        try:
            return await self._guarded(
                self.create_backoff.execute(attempt, sleep=self._backoff_sleep(cancel_event, None)),
                cancel_event, None
            )
        except UpstreamRateLimitError as e:
            raise UpstreamRateLimitError(
                "Replicate API is busy, prediction could not be created after retries",
                retry_after=e.retry_after
            ) from e

    async def get(self, session_token: str, prediction_id: str) -> Prediction:
        self._validate_prediction_id(prediction_id)
        credential = self.session_store.get_api_key(session_token)
        return await self._poll_once(credential, prediction_id, None)

    async def cancel(self, session_token: str, prediction_id: str) -> Prediction:
        self._validate_prediction_id(prediction_id)
        credential = self.session_store.get_api_key(session_token)
        prediction = await self.client.cancel_prediction(credential, prediction_id)
        logger.info("Prediction cancel requested", prediction_id=prediction_id, status=prediction.status.value)
        return prediction

    async def _poll_once(self, credential: str, prediction_id: str,
                         cancel_event: Optional[asyncio.Event]) -> Prediction:
        async def attempt() -> Prediction:
            self._ensure_not_cancelled(cancel_event, prediction_id)
            return await self.client.get_prediction(credential, prediction_id)

        try:
            return await self._guarded(
                self.poll_backoff.execute(attempt, sleep=self._backoff_sleep(cancel_event, prediction_id)),
                cancel_event, prediction_id
            )
        except UpstreamRateLimitError as e:
            raise UpstreamRateLimitError(
                f"Replicate API is busy, gave up polling prediction {prediction_id} after retries",
                retry_after=e.retry_after
            ) from e

    async def watch(self, credential: str, prediction_id: str,
                    cancel_event: Optional[asyncio.Event] = None) -> AsyncIterator[Prediction]:
        """Yield each polled state of a prediction until it is terminal.

        Ends with the terminal prediction, or raises PollingTimeoutError when
        ``max_attempts`` polls pass without one, or CancellationError once the
        cancel event fires.
        """
        last_status: Optional[PredictionStatus] = None
        for attempt in range(1, self.max_attempts + 1):
            self._ensure_not_cancelled(cancel_event, prediction_id)

            prediction = await self._poll_once(credential, prediction_id, cancel_event)
            last_status = prediction.status
            logger.debug("Polled prediction", prediction_id=prediction_id,
                         attempt=attempt, status=prediction.status.value)
            yield prediction

            if prediction.is_terminal:
                logger.info("Prediction reached terminal status", prediction_id=prediction_id,
                            status=prediction.status.value, attempts=attempt)
                return

            if attempt < self.max_attempts:
                if await self._pause(self.interval, cancel_event):
                    self._ensure_not_cancelled(cancel_event, prediction_id)

        logger.warning("Prediction polling timed out", prediction_id=prediction_id,
                       attempts=self.max_attempts,
                       last_status=last_status.value if last_status else None)
        raise PollingTimeoutError(prediction_id, self.max_attempts,
                                  last_status.value if last_status else None)

    async def _drive(self, credential: str, prediction: Prediction,
                     cancel_event: Optional[asyncio.Event],
                     on_update: Optional[UpdateCallback],
                     raise_on_failure: bool) -> Prediction:
        if on_update is not None:
            on_update(prediction)

        if not prediction.is_terminal:
            async for update in self.watch(credential, prediction.id, cancel_event):
                prediction = update
                if on_update is not None:
                    on_update(prediction)

        if raise_on_failure and prediction.status == PredictionStatus.FAILED:
            raise PredictionFailedError(prediction.id, str(prediction.error) if prediction.error else None)
        return prediction

    async def submit(self, session_token: str, model_ref: str, payload: JobPayload,
                     cancel_event: Optional[asyncio.Event] = None,
                     on_update: Optional[UpdateCallback] = None,
                     raise_on_failure: bool = False) -> Prediction:
        """Create a prediction and poll it to completion."""
        self._validate_request(model_ref, payload)
        credential = self.session_store.get_api_key(session_token)

        prediction = await self._create_with_credential(credential, model_ref, payload, cancel_event)
        logger.info("Tracking prediction", prediction_id=prediction.id,
                    model_ref=model_ref, status=prediction.status.value)
        return await self._drive(credential, prediction, cancel_event, on_update, raise_on_failure)

    async def wait(self, session_token: str, prediction_id: str,
                   cancel_event: Optional[asyncio.Event] = None,
                   on_update: Optional[UpdateCallback] = None,
                   raise_on_failure: bool = False) -> Prediction:
        """Poll an existing prediction until it finishes."""
        self._validate_prediction_id(prediction_id)
        credential = self.session_store.get_api_key(session_token)
        final: Optional[Prediction] = None
        async for update in self.watch(credential, prediction_id, cancel_event):
            final = update
            if on_update is not None:
                on_update(update)
        if raise_on_failure and final.status == PredictionStatus.FAILED:
            raise PredictionFailedError(final.id, str(final.error) if final.error else None)
        return final
