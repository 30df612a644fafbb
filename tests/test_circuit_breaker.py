import asyncio
from datetime import timedelta

import pytest

from moviehub.services.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
)
from moviehub.services.errors import (
    CircuitOpenError,
    ClientError,
    UpstreamTransientError,
)


def make_breaker(clock, threshold: int = 3) -> CircuitBreaker:
    return CircuitBreaker(
        "tmdb",
        CircuitBreakerConfig(
            failure_threshold=threshold, reset_timeout=timedelta(seconds=30)
        ),
        clock=clock,
    )


class Upstream:
    def __init__(self) -> None:
        self.calls = 0
        self.fail = True

    async def __call__(self) -> str:
        self.calls += 1
        if self.fail:
            raise UpstreamTransientError("HTTP 503")
        return "ok"


async def trip(breaker: CircuitBreaker, upstream: Upstream, times: int) -> None:
    for _ in range(times):
        with pytest.raises(UpstreamTransientError):
            await breaker.call(upstream)


@pytest.mark.asyncio
async def test_opens_after_threshold_and_short_circuits(clock) -> None:
    breaker = make_breaker(clock)
    upstream = Upstream()

    await trip(breaker, upstream, 3)
    assert breaker.state == CircuitState.OPEN

    with pytest.raises(CircuitOpenError) as exc_info:
        await breaker.call(upstream)
    assert upstream.calls == 3
    assert exc_info.value.reset_after_seconds == pytest.approx(30)


@pytest.mark.asyncio
async def test_success_resets_consecutive_failures(clock) -> None:
    breaker = make_breaker(clock)
    upstream = Upstream()

    await trip(breaker, upstream, 2)
    upstream.fail = False
    assert await breaker.call(upstream) == "ok"
    assert breaker.failure_count == 0

    upstream.fail = True
    await trip(breaker, upstream, 2)
    assert breaker.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_client_errors_do_not_count_as_failures(clock) -> None:
    breaker = make_breaker(clock, threshold=1)

    async def not_found() -> None:
        raise ClientError("HTTP 404", status_code=404)

    with pytest.raises(ClientError):
        await breaker.call(not_found)
    assert breaker.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_half_open_trial_success_closes(clock) -> None:
    breaker = make_breaker(clock)
    upstream = Upstream()
    await trip(breaker, upstream, 3)

    clock.advance(30)
    assert breaker.state == CircuitState.HALF_OPEN

    upstream.fail = False
    assert await breaker.call(upstream) == "ok"
    assert breaker.state == CircuitState.CLOSED
    assert breaker.failure_count == 0
    assert breaker.opened_at is None


@pytest.mark.asyncio
async def test_half_open_trial_failure_reopens(clock) -> None:
    breaker = make_breaker(clock)
    upstream = Upstream()
    await trip(breaker, upstream, 3)
    first_opened = breaker.opened_at

    clock.advance(31)
    with pytest.raises(UpstreamTransientError):
        await breaker.call(upstream)

    assert breaker.state == CircuitState.OPEN
    assert breaker.opened_at > first_opened
    with pytest.raises(CircuitOpenError):
        await breaker.call(upstream)
    assert upstream.calls == 4


@pytest.mark.asyncio
async def test_only_one_trial_call_in_half_open(clock) -> None:
    breaker = make_breaker(clock)
    upstream = Upstream()
    await trip(breaker, upstream, 3)
    clock.advance(30)

    release = asyncio.Event()
    trial_calls = 0

    async def slow_success() -> str:
        nonlocal trial_calls
        trial_calls += 1
        await release.wait()
        return "ok"

    trial = asyncio.create_task(breaker.call(slow_success))
    await asyncio.sleep(0)

    # Trial slot is taken; concurrent callers are treated as OPEN
    with pytest.raises(CircuitOpenError):
        await breaker.call(slow_success)

    release.set()
    assert await trial == "ok"
    assert trial_calls == 1
    assert breaker.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_cancelled_trial_frees_the_slot(clock) -> None:
    breaker = make_breaker(clock)
    upstream = Upstream()
    await trip(breaker, upstream, 3)
    clock.advance(30)

    async def hang() -> None:
        await asyncio.Event().wait()

    trial = asyncio.create_task(breaker.call(hang))
    await asyncio.sleep(0)
    trial.cancel()
    with pytest.raises(asyncio.CancelledError):
        await trial

    upstream.fail = False
    assert await breaker.call(upstream) == "ok"


def test_reset_and_status(clock) -> None:
    breaker = make_breaker(clock)
    status = breaker.get_status()
    assert status["state"] == "CLOSED"
    assert status["time_until_reset"] is None

    breaker.reset()
    assert breaker.state == CircuitState.CLOSED


async def straggler_then_trial(breaker, clock, straggler_outcome, trial_release):
    """Start a call while CLOSED, trip the circuit, then take the trial slot."""
    straggler_release = asyncio.Event()

    async def straggler() -> str:
        await straggler_release.wait()
        if isinstance(straggler_outcome, Exception):
            raise straggler_outcome
        return "late"

    async def trial_call() -> str:
        await trial_release.wait()
        return "trial"

    late = asyncio.create_task(breaker.call(straggler))
    await asyncio.sleep(0)

    await trip(breaker, Upstream(), 1)
    clock.advance(30)
    trial = asyncio.create_task(breaker.call(trial_call))
    await asyncio.sleep(0)
    assert breaker.state == CircuitState.HALF_OPEN

    straggler_release.set()
    if isinstance(straggler_outcome, Exception):
        with pytest.raises(type(straggler_outcome)):
            await late
    else:
        await late
    return trial


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "outcome", ["ok", UpstreamTransientError("HTTP 503")], ids=["success", "failure"]
)
async def test_only_the_trial_decides_half_open(clock, outcome) -> None:
    breaker = make_breaker(clock, threshold=1)
    trial_release = asyncio.Event()

    trial = await straggler_then_trial(breaker, clock, outcome, trial_release)

    # The straggler neither closed nor reopened the circuit, and the slot stays taken
    assert breaker.state == CircuitState.HALF_OPEN
    with pytest.raises(CircuitOpenError):
        await breaker.call(Upstream())

    trial_release.set()
    assert await trial == "trial"
    assert breaker.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_acquire_reports_trial_slot(clock) -> None:
    breaker = make_breaker(clock, threshold=1)

    assert await breaker.acquire() is False
    await breaker.record_failure()
    clock.advance(30)

    assert await breaker.acquire() is True
    await breaker.record_success(trial=True)
    assert breaker.state == CircuitState.CLOSED
