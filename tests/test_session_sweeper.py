import asyncio
import contextlib
import pytest
from conftest import VALID_KEY
from tryon_vault.services.session_sweeper import SessionSweeper
from tryon_vault.utils.rate_limiter import EndpointClass, RateLimiter


def test_sweep_once_removes_only_expired_sessions(session_store, clock):
    stale = session_store.create_session(VALID_KEY).token
    clock.advance(23 * 60 * 60)
    fresh = session_store.create_session(VALID_KEY).token
    clock.advance(2 * 60 * 60)

    sweeper = SessionSweeper(session_store, interval_seconds=3600)

    assert sweeper.sweep_once() == 1
    assert session_store.validate_session(stale).valid is False
    assert session_store.validate_session(fresh).valid is True
    assert sweeper.current_cycle == 1


def test_sweep_once_drops_stale_rate_limit_buckets(session_store, clock):
    limiter = RateLimiter(clock=clock)
    limiter.hit("10.0.0.1", EndpointClass.SESSION)
    limiter.hit("10.0.0.2", EndpointClass.AUTH)
    clock.advance(61)

    SessionSweeper(session_store, rate_limiter=limiter, interval_seconds=3600).sweep_once()

    assert len(limiter.store) == 1


@pytest.mark.asyncio
async def test_background_loop_sweeps_until_stopped(session_store, clock):
    session_store.create_session(VALID_KEY)
    clock.advance(24 * 60 * 60 + 1)
    sweeper = SessionSweeper(session_store, interval_seconds=0.01)

    task = asyncio.create_task(sweeper.start())
    await asyncio.sleep(0.1)
    sweeper.stop()
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task

    assert sweeper.current_cycle >= 1
    assert session_store.get_stats().total_sessions == 0
