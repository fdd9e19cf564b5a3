import asyncio
import json
import pytest
import httpx
from typing import Callable, Dict, List, Optional
from tryon_vault.clients.replicate_client import ReplicateClient
from tryon_vault.services.prediction_orchestrator import PredictionOrchestrator
from tryon_vault.services.session_store import SessionStore
from tryon_vault.utils.encryption import CryptoProvider
from tryon_vault.utils.rate_limiter import BackoffPolicy

VALID_KEY = "r8_validkey1234"
API_BASE = "https://replicate.test/v1"


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingPause:
    """Stands in for the orchestrator's sleep; records delays instead of waiting."""

    def __init__(self):
        self.delays: List[float] = []
        self.hooks: List[Callable[[], None]] = []

    async def __call__(self, delay: float, cancel_event: Optional[asyncio.Event]) -> bool:
        self.delays.append(delay)
        if self.hooks:
            self.hooks.pop(0)()
        return cancel_event is not None and cancel_event.is_set()


def prediction_json(prediction_id: str = "pred-1", status: str = "starting", **extra) -> Dict:
    body = {
        "id": prediction_id,
        "status": status,
        "model": "google/nano-banana",
        "input": {"prompt": "a red dress"},
        "output": None,
        "error": None,
        "urls": {"get": f"{API_BASE}/predictions/{prediction_id}"},
        "created_at": "2025-01-01T00:00:00Z",
    }
    body.update(extra)
    return body


class FakeReplicate:
    """Scripted Replicate API served through httpx.MockTransport."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.create_responses: List[httpx.Response] = []
        self.get_responses: List[httpx.Response] = []
        self.cancel_responses: List[httpx.Response] = []

    @property
    def get_calls(self) -> int:
        return sum(1 for r in self.requests if r.method == "GET")

    @property
    def create_calls(self) -> int:
        return sum(1 for r in self.requests if r.method == "POST" and not r.url.path.endswith("/cancel"))

    def on_create(self, *responses: httpx.Response) -> None:
        self.create_responses.extend(responses)

    def on_get(self, *responses: httpx.Response) -> None:
        self.get_responses.extend(responses)

    def on_cancel(self, *responses: httpx.Response) -> None:
        self.cancel_responses.extend(responses)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "GET":
            queue = self.get_responses
        elif request.url.path.endswith("/cancel"):
            queue = self.cancel_responses
        else:
            queue = self.create_responses
        if not queue:
            return httpx.Response(500, json={"detail": "no scripted response"})
        return queue.pop(0)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


def ok(status: str, prediction_id: str = "pred-1", **extra) -> httpx.Response:
    return httpx.Response(200, json=prediction_json(prediction_id, status, **extra))


def created(status: str = "starting", prediction_id: str = "pred-1", **extra) -> httpx.Response:
    return httpx.Response(201, json=prediction_json(prediction_id, status, **extra))


def error(status_code: int, headers: Optional[Dict[str, str]] = None, detail: str = "error") -> httpx.Response:
    return httpx.Response(status_code, headers=headers, content=json.dumps({"detail": detail}))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def crypto():
    return CryptoProvider("unit-test-master-secret")


@pytest.fixture
def session_store(crypto, clock):
    return SessionStore(crypto, max_age_seconds=24 * 60 * 60, max_sessions=1000, clock=clock)


@pytest.fixture
def fake_replicate():
    return FakeReplicate()


@pytest.fixture
def replicate_client(fake_replicate):
    return ReplicateClient(base_url=API_BASE, transport=fake_replicate.transport())


@pytest.fixture
def pause():
    return RecordingPause()


@pytest.fixture
def orchestrator(replicate_client, session_store, pause):
    return PredictionOrchestrator(
        replicate_client,
        session_store,
        poll_backoff=BackoffPolicy(max_retries=3, base_delay=1.0),
        interval=2.5,
        max_attempts=120,
        pause=pause,
    )


@pytest.fixture
def token(session_store):
    return session_store.create_session(VALID_KEY).token
