import json
import pytest
import httpx
from email.utils import format_datetime
from datetime import datetime, timedelta, timezone
from conftest import API_BASE, VALID_KEY, created, error, ok
from tryon_vault.api.exceptions import (
    UpstreamClientError, UpstreamRateLimitError, UpstreamTransientError
)
from tryon_vault.clients.replicate_client import ReplicateClient, parse_retry_after
from tryon_vault.models.prediction import PredictionStatus


@pytest.mark.asyncio
async def test_create_uses_model_endpoint_and_bearer_auth(replicate_client, fake_replicate):
    fake_replicate.on_create(created("starting"))

    prediction = await replicate_client.create_prediction(VALID_KEY, "google/nano-banana", {"prompt": "hi"})

    request = fake_replicate.requests[0]
    assert request.method == "POST"
    assert str(request.url) == f"{API_BASE}/models/google/nano-banana/predictions"
    assert request.headers["authorization"] == f"Bearer {VALID_KEY}"
    assert json.loads(request.content) == {"input": {"prompt": "hi"}}
    assert prediction.id == "pred-1"
    assert prediction.status == PredictionStatus.STARTING


@pytest.mark.asyncio
async def test_create_with_version_uses_predictions_endpoint(replicate_client, fake_replicate):
    fake_replicate.on_create(created("starting"), created("starting"))

    await replicate_client.create_prediction(VALID_KEY, "owner/model:abc123", {"prompt": "hi"})
    await replicate_client.create_prediction(VALID_KEY, "abc123", {"prompt": "hi"})

    for request in fake_replicate.requests:
        assert str(request.url) == f"{API_BASE}/predictions"
        assert json.loads(request.content) == {"version": "abc123", "input": {"prompt": "hi"}}


@pytest.mark.asyncio
async def test_custom_endpoint_template(fake_replicate):
    client = ReplicateClient(base_url=API_BASE, endpoint_template="/deployments/{model_ref}/predictions",
                             transport=fake_replicate.transport())
    fake_replicate.on_create(created("starting"))
    await client.create_prediction(VALID_KEY, "acme/tryon", {})
    assert fake_replicate.requests[0].url.path == "/v1/deployments/acme/tryon/predictions"


@pytest.mark.asyncio
async def test_get_and_cancel(replicate_client, fake_replicate):
    fake_replicate.on_get(ok("succeeded", output=["https://cdn.test/out.png"]))
    fake_replicate.on_cancel(ok("canceled"))

    fetched = await replicate_client.get_prediction(VALID_KEY, "pred-1")
    canceled = await replicate_client.cancel_prediction(VALID_KEY, "pred-1")

    assert fetched.output_url == "https://cdn.test/out.png"
    assert canceled.status == PredictionStatus.CANCELED
    assert fake_replicate.requests[0].url.path == "/v1/predictions/pred-1"
    assert fake_replicate.requests[1].url.path == "/v1/predictions/pred-1/cancel"


@pytest.mark.asyncio
async def test_429_maps_to_upstream_rate_limit_with_hint(replicate_client, fake_replicate):
    fake_replicate.on_get(error(429, headers={"Retry-After": "3"}))
    with pytest.raises(UpstreamRateLimitError) as exc_info:
        await replicate_client.get_prediction(VALID_KEY, "pred-1")
    assert exc_info.value.retry_after == 3.0


@pytest.mark.asyncio
async def test_5xx_maps_to_transient(replicate_client, fake_replicate):
    fake_replicate.on_get(error(503))
    with pytest.raises(UpstreamTransientError) as exc_info:
        await replicate_client.get_prediction(VALID_KEY, "pred-1")
    assert exc_info.value.upstream_status == 503


@pytest.mark.asyncio
async def test_other_4xx_maps_to_client_error(replicate_client, fake_replicate):
    fake_replicate.on_get(error(404, detail="Not found."))
    with pytest.raises(UpstreamClientError) as exc_info:
        await replicate_client.get_prediction(VALID_KEY, "pred-1")
    assert exc_info.value.status_code == 404
    assert "Not found." in exc_info.value.message


@pytest.mark.asyncio
async def test_malformed_response_is_a_client_error(replicate_client, fake_replicate):
    fake_replicate.on_get(httpx.Response(200, content=b"<html>oops</html>"),
                          httpx.Response(200, json={"status": "processing"}))
    with pytest.raises(UpstreamClientError):
        await replicate_client.get_prediction(VALID_KEY, "pred-1")
    with pytest.raises(UpstreamClientError):
        await replicate_client.get_prediction(VALID_KEY, "pred-1")


@pytest.mark.asyncio
async def test_network_failures_are_transient():
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    client = ReplicateClient(base_url=API_BASE, transport=httpx.MockTransport(handler))
    with pytest.raises(UpstreamTransientError):
        await client.get_prediction(VALID_KEY, "pred-1")


@pytest.mark.asyncio
async def test_errors_never_contain_the_credential(replicate_client, fake_replicate):
    fake_replicate.on_get(error(401, detail="Invalid token."))
    with pytest.raises(UpstreamClientError) as exc_info:
        await replicate_client.get_prediction(VALID_KEY, "pred-1")
    assert VALID_KEY not in str(exc_info.value)
    assert VALID_KEY not in json.dumps(exc_info.value.to_dict())


def test_parse_retry_after_variants():
    assert parse_retry_after({"retry-after": "2"}) == 2.0
    assert parse_retry_after({"x-ratelimit-reset-after": "1.5"}) == 1.5
    assert parse_retry_after({}) is None
    assert parse_retry_after({"retry-after": "soon"}) is None
    future = datetime.now(timezone.utc) + timedelta(seconds=30)
    parsed = parse_retry_after({"retry-after": format_datetime(future, usegmt=True)})
    assert 25 <= parsed <= 30
