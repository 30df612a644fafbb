import asyncio

import pytest

from moviehub.services.deduplicator import RequestDeduplicator
from moviehub.services.errors import UpstreamTransientError


@pytest.mark.asyncio
async def test_concurrent_identical_requests_share_one_call() -> None:
    dedup = RequestDeduplicator()
    calls = 0
    release = asyncio.Event()

    async def fetch() -> dict:
        nonlocal calls
        calls += 1
        await release.wait()
        return {"id": 1}

    tasks = [asyncio.create_task(dedup.dedupe("/movie/1", fetch)) for _ in range(10)]
    await asyncio.sleep(0)
    assert dedup.get_in_flight_count() == 1

    release.set()
    outcomes = await asyncio.gather(*tasks)

    assert calls == 1
    assert all(o is outcomes[0] for o in outcomes)
    assert dedup.get_in_flight_count() == 0
    assert dedup.get_stats().deduplicated == 9


@pytest.mark.asyncio
async def test_all_joiners_see_the_same_failure() -> None:
    dedup = RequestDeduplicator()
    calls = 0
    error = UpstreamTransientError("HTTP 503")

    async def fetch() -> None:
        nonlocal calls
        calls += 1
        await asyncio.sleep(0.01)
        raise error

    outcomes = await asyncio.gather(
        *(dedup.dedupe("/movie/1", fetch) for _ in range(5)), return_exceptions=True
    )

    assert calls == 1
    assert all(o is error for o in outcomes)
    assert dedup.get_in_flight_count() == 0


@pytest.mark.asyncio
async def test_entry_removed_so_next_request_calls_again() -> None:
    dedup = RequestDeduplicator()
    calls = 0

    async def fetch() -> int:
        nonlocal calls
        calls += 1
        return calls

    assert await dedup.dedupe("k", fetch) == 1
    assert await dedup.dedupe("k", fetch) == 2


@pytest.mark.asyncio
async def test_different_keys_run_separately() -> None:
    dedup = RequestDeduplicator()

    async def fetch_a() -> str:
        return "a"

    async def fetch_b() -> str:
        return "b"

    assert await asyncio.gather(dedup.dedupe("a", fetch_a), dedup.dedupe("b", fetch_b)) == [
        "a",
        "b",
    ]


@pytest.mark.asyncio
async def test_cancelled_joiner_does_not_cancel_shared_call() -> None:
    dedup = RequestDeduplicator()
    release = asyncio.Event()

    async def fetch() -> str:
        await release.wait()
        return "done"

    first = asyncio.create_task(dedup.dedupe("k", fetch))
    second = asyncio.create_task(dedup.dedupe("k", fetch))
    await asyncio.sleep(0)

    first.cancel()
    release.set()

    assert await second == "done"
    with pytest.raises(asyncio.CancelledError):
        await first


@pytest.mark.asyncio
async def test_stats_and_cancel_all() -> None:
    dedup = RequestDeduplicator()

    async def hang() -> None:
        await asyncio.Event().wait()

    waiters = [asyncio.create_task(dedup.dedupe("k", hang)) for _ in range(4)]
    await asyncio.sleep(0)

    assert dedup.get_stats().to_dict() == {
        "total_requests": 1,
        "deduplicated": 3,
        "in_flight": 1,
        "dedup_rate": "75.00%",
    }

    assert await dedup.cancel_all() == 1
    for waiter in waiters:
        with pytest.raises(asyncio.CancelledError):
            await waiter
    assert dedup.get_in_flight_count() == 0
