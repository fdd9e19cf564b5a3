import pytest
from conftest import FakeClock
from tryon_vault.api.exceptions import (
    RateLimitError, UpstreamClientError, UpstreamRateLimitError, UpstreamTransientError
)
from tryon_vault.utils.rate_limiter import (
    BackoffPolicy, EndpointClass, RateLimitPolicy, RateLimiter, default_policies
)


@pytest.fixture
def limiter(clock):
    return RateLimiter(policies={
        EndpointClass.AUTH: RateLimitPolicy(50, 15 * 60, "auth limit"),
        EndpointClass.SESSION: RateLimitPolicy(500, 60, "session limit"),
        EndpointClass.UPSTREAM: RateLimitPolicy(100, 60, "upstream limit"),
    }, clock=clock)


def test_default_policies_match_documented_limits():
    policies = default_policies()
    assert policies[EndpointClass.AUTH][:2] == (50, 900)
    assert policies[EndpointClass.SESSION][:2] == (500, 60)
    assert policies[EndpointClass.UPSTREAM][:2] == (100, 60)
    assert policies[EndpointClass.GENERAL][:2] == (1000, 900)


@pytest.mark.parametrize("endpoint_class,limit", [
    (EndpointClass.AUTH, 50),
    (EndpointClass.SESSION, 500),
    (EndpointClass.UPSTREAM, 100),
])
def test_exactly_limit_requests_pass(limiter, endpoint_class, limit):
    results = [limiter.hit("1.2.3.4", endpoint_class).allowed for _ in range(limit)]
    assert all(results)
    assert limiter.hit("1.2.3.4", endpoint_class).allowed is False


def test_counter_resets_after_window(limiter, clock):
    for _ in range(100):
        limiter.check("1.2.3.4", EndpointClass.UPSTREAM)
    with pytest.raises(RateLimitError):
        limiter.check("1.2.3.4", EndpointClass.UPSTREAM)

    clock.advance(60)
    decision = limiter.check("1.2.3.4", EndpointClass.UPSTREAM)
    assert decision.allowed is True
    assert decision.remaining == 99


def test_clients_and_classes_are_independent(limiter):
    for _ in range(50):
        limiter.check("1.2.3.4", EndpointClass.AUTH)
    assert limiter.hit("1.2.3.4", EndpointClass.AUTH).allowed is False
    assert limiter.hit("5.6.7.8", EndpointClass.AUTH).allowed is True
    assert limiter.hit("1.2.3.4", EndpointClass.SESSION).allowed is True


def test_breach_carries_retry_hint(limiter, clock):
    for _ in range(50):
        limiter.check("1.2.3.4", EndpointClass.AUTH)
    clock.advance(5 * 60)

    with pytest.raises(RateLimitError) as exc_info:
        limiter.check("1.2.3.4", EndpointClass.AUTH)

    assert exc_info.value.retry_after == 10 * 60
    assert exc_info.value.status_code == 429
    assert exc_info.value.to_dict()["retryAfter"] == 600
    assert not isinstance(exc_info.value, UpstreamRateLimitError)


def test_unknown_endpoint_class(limiter):
    with pytest.raises(ValueError):
        limiter.hit("1.2.3.4", "nope")


def test_sweep_stale_buckets(limiter, clock):
    limiter.hit("1.2.3.4", EndpointClass.SESSION)
    limiter.hit("1.2.3.4", EndpointClass.AUTH)
    clock.advance(61)
    assert limiter.sweep_stale() == 1
    assert len(limiter.store) == 1


class Recorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def _failing(*errors, result="done"):
    calls = []

    async def func():
        calls.append(1)
        if len(calls) <= len(errors):
            raise errors[len(calls) - 1]
        return result
    return func, calls


@pytest.mark.asyncio
async def test_backoff_schedule_for_rate_limits_without_header():
    sleep = Recorder()
    func, calls = _failing(UpstreamRateLimitError("busy"), UpstreamRateLimitError("busy"),
                           UpstreamRateLimitError("busy"))
    result = await BackoffPolicy(max_retries=3, base_delay=1.0).execute(func, sleep=sleep)

    assert result == "done"
    assert sleep.delays == [1.0, 2.0, 4.0]
    assert len(calls) == 4


@pytest.mark.asyncio
async def test_backoff_honours_retry_after():
    sleep = Recorder()
    func, _ = _failing(UpstreamRateLimitError("busy", retry_after=3))
    await BackoffPolicy(max_retries=3, base_delay=1.0).execute(func, sleep=sleep)
    assert sleep.delays == [3.0]


@pytest.mark.asyncio
async def test_backoff_retries_server_errors_on_same_schedule():
    sleep = Recorder()
    func, _ = _failing(UpstreamTransientError("boom", 503), UpstreamTransientError("boom", 500))
    await BackoffPolicy(max_retries=3, base_delay=1.0).execute(func, sleep=sleep)
    assert sleep.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_backoff_budget_exhaustion_reraises():
    sleep = Recorder()
    func, calls = _failing(*[UpstreamTransientError("boom", 502)] * 5)
    with pytest.raises(UpstreamTransientError):
        await BackoffPolicy(max_retries=3, base_delay=1.0).execute(func, sleep=sleep)
    assert len(calls) == 4
    assert sleep.delays == [1.0, 2.0, 4.0]


@pytest.mark.asyncio
async def test_backoff_does_not_retry_client_errors():
    sleep = Recorder()
    func, calls = _failing(UpstreamClientError("not found", 404))
    with pytest.raises(UpstreamClientError):
        await BackoffPolicy(max_retries=3, base_delay=1.0).execute(func, sleep=sleep)
    assert len(calls) == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_backoff_custom_classifier():
    sleep = Recorder()
    func, calls = _failing(UpstreamTransientError("boom", 500))
    policy = BackoffPolicy(max_retries=3, classify=lambda e: isinstance(e, UpstreamRateLimitError))
    with pytest.raises(UpstreamTransientError):
        await policy.execute(func, sleep=sleep)
    assert len(calls) == 1


def test_backoff_delay_is_capped():
    policy = BackoffPolicy(max_retries=10, base_delay=1.0, max_delay=5.0)
    assert policy.delay_for(6, UpstreamTransientError("boom")) == 5.0


def test_retry_after_hint_is_not_capped():
    policy = BackoffPolicy(max_retries=3, base_delay=1.0)
    assert policy.delay_for(0, UpstreamRateLimitError("busy", retry_after=90)) == 90.0


@pytest.mark.asyncio
async def test_long_retry_after_is_waited_in_full():
    sleep = Recorder()
    func, calls = _failing(UpstreamRateLimitError("busy", retry_after=120), result="ok")
    result = await BackoffPolicy(max_retries=3, base_delay=1.0, max_delay=5.0).execute(func, sleep=sleep)
    assert result == "ok"
    assert sleep.delays == [120.0]
