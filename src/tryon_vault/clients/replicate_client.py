import httpx
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Mapping, Optional
from tryon_vault.api.exceptions import (
    UpstreamClientError, UpstreamRateLimitError, UpstreamTransientError
)
from tryon_vault.config.settings import settings
from tryon_vault.config.logging import get_logger
from tryon_vault.models.prediction import Prediction


def parse_retry_after(headers: Mapping[str, str]) -> Optional[float]:
    """Read the wait hint from Retry-After (seconds or HTTP date) or X-RateLimit-Reset-After."""
    for name in ("retry-after", "x-ratelimit-reset-after"):
        value = headers.get(name)
        if not value:
            continue
        value = value.strip()
        try:
            return max(0.0, float(value))
        except ValueError:
            pass
        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            continue
        if when is None:
            continue
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())
    return None


def _error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(data, dict):
        return str(data.get("detail") or data.get("title") or data.get("error") or data)[:200]
    return str(data)[:200]


class ReplicateClient:
    """Thin async client for the Replicate predictions API.

    The API token is passed per call and only ever placed in the
    Authorization header.
    """

    def __init__(self,
                 base_url: Optional[str] = None,
                 endpoint_template: Optional[str] = None,
                 create_timeout: Optional[float] = None,
                 get_timeout: Optional[float] = None,
                 cancel_timeout: Optional[float] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = (base_url or settings.replicate_api_base).rstrip("/")
        self.endpoint_template = endpoint_template or settings.prediction_endpoint_template
        self.create_timeout = create_timeout or settings.create_timeout_seconds
        self.get_timeout = get_timeout or settings.get_timeout_seconds
        self.cancel_timeout = cancel_timeout or settings.cancel_timeout_seconds
        self._transport = transport
        self.logger = get_logger("replicate.client")

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=httpx.Timeout(timeout), transport=self._transport)

    @staticmethod
    def _headers(credential: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {credential}",
            "Content-Type": "application/json",
        }

    def _create_target(self, model_ref: str, payload: Dict[str, Any]) -> tuple:
        # "owner/name" goes through the endpoint template; "owner/name:version"
        # or a bare version id uses the versioned predictions endpoint
        if ":" in model_ref or "/" not in model_ref:
            version = model_ref.split(":", 1)[-1]
            return f"{self.base_url}/predictions", {"version": version, "input": payload}
        path = self.endpoint_template.format(model_ref=model_ref)
        return f"{self.base_url}{path}", {"input": payload}

    async def _request(self, method: str, url: str, credential: str, timeout: float,
                       operation: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        self.logger.debug("Making Replicate request", method=method, url=url, operation=operation)
        try:
            async with self._client(timeout) as client:
                response = await client.request(method, url, headers=self._headers(credential), json=json)
        except httpx.TimeoutException as e:
            self.logger.warning("Replicate request timed out", operation=operation, timeout=timeout)
            raise UpstreamTransientError(f"Replicate API timed out while {operation}") from e
        except httpx.TransportError as e:
            self.logger.warning("Replicate request failed at transport level",
                                operation=operation, error_type=type(e).__name__)
            raise UpstreamTransientError(f"Failed to connect to Replicate API while {operation}") from e

        if response.status_code == 429:
            retry_after = parse_retry_after(response.headers)
            self.logger.warning("Replicate rate limit hit", operation=operation, retry_after=retry_after)
            raise UpstreamRateLimitError(
                f"Replicate API rate limit hit while {operation}", retry_after=retry_after
            )
        if response.status_code >= 500:
            self.logger.warning("Replicate server error", operation=operation, status_code=response.status_code)
            raise UpstreamTransientError(
                f"Replicate API error while {operation}: {_error_detail(response)}",
                upstream_status=response.status_code
            )
        if response.status_code >= 400:
            self.logger.error("Replicate rejected request", operation=operation,
                              status_code=response.status_code,
                              response_text=response.text[:200])
            raise UpstreamClientError(
                f"Replicate API error while {operation}: {_error_detail(response)}",
                upstream_status=response.status_code
            )

        try:
            data = response.json()
        except ValueError as e:
            raise UpstreamClientError(f"Malformed response from Replicate while {operation}") from e
        if not isinstance(data, dict):
            raise UpstreamClientError(f"Malformed response from Replicate while {operation}")
        return data

    def _to_prediction(self, data: Dict[str, Any], operation: str) -> Prediction:
        try:
            return Prediction.model_validate(data)
        except ValueError as e:
            self.logger.error("Unexpected prediction payload", operation=operation,
                              response_keys=list(data.keys()))
            raise UpstreamClientError(f"Malformed prediction from Replicate while {operation}") from e

    async def create_prediction(self, credential: str, model_ref: str, payload: Dict[str, Any]) -> Prediction:
        url, body = self._create_target(model_ref, payload)
        self.logger.info("Creating prediction", model_ref=model_ref, input_keys=list(payload.keys()))
        data = await self._request("POST", url, credential, self.create_timeout,
                                   "creating prediction", json=body)
        prediction = self._to_prediction(data, "creating prediction")
        self.logger.info("Prediction created", prediction_id=prediction.id, status=prediction.status.value)
        return prediction

    async def get_prediction(self, credential: str, prediction_id: str) -> Prediction:
        data = await self._request("GET", f"{self.base_url}/predictions/{prediction_id}", credential,
                                   self.get_timeout, "getting prediction status")
        return self._to_prediction(data, "getting prediction status")

    async def cancel_prediction(self, credential: str, prediction_id: str) -> Prediction:
        self.logger.info("Cancelling prediction", prediction_id=prediction_id)
        data = await self._request("POST", f"{self.base_url}/predictions/{prediction_id}/cancel", credential,
                                   self.cancel_timeout, "cancelling prediction", json={})
        return self._to_prediction(data, "cancelling prediction")
