import asyncio

import pytest

from taxscan.application.range_fetcher import ChunkPolicy, RangeFetcher
from taxscan.application.retry import RetryPolicy
from taxscan.domain.errors import ChunkFailedError, RangeTooLargeError, RateLimitedError, RpcError
from taxscan.domain.filters import transfer_filter
from taxscan.domain.models import BlockRange

from conftest import ALICE, BOB, TAX_TOKEN, FakeClock, FakeRPC, no_sleep, tx


def make_fetcher(rpc, **kw):
    kw.setdefault("chunk", ChunkPolicy(initial=100, max_size=400))
    kw.setdefault("retry", RetryPolicy(max_attempts=3))
    return RangeFetcher(rpc, sleep=no_sleep, **kw)


def seeded_rpc(**kw) -> FakeRPC:
    rpc = FakeRPC(**kw)
    for i, block in enumerate((10, 150, 151, 420, 999)):
        rpc.add_payment(ALICE if i % 2 else BOB, 10**18, block, tx(i + 1))
    return rpc


async def test_fetch_returns_all_matching_logs_in_order():
    rpc = seeded_rpc()
    out = await make_fetcher(rpc).fetch(TAX_TOKEN, transfer_filter(), BlockRange(0, 1_000))
    assert [ev.block_number for ev in out.logs] == [10, 150, 151, 420, 999]
    assert out.scanned_to == 1_000
    assert out.skipped == []
    assert not out.truncated


async def test_range_bound_is_half_open():
    rpc = seeded_rpc()
    out = await make_fetcher(rpc).fetch(TAX_TOKEN, transfer_filter(), BlockRange(150, 420))
    assert [ev.block_number for ev in out.logs] == [150, 151]
    assert all(c[2] < 420 for c in rpc.calls if c[0] == "eth_getLogs")


async def test_too_large_ranges_shrink_until_accepted():
    rpc = seeded_rpc(max_span=30)
    f = make_fetcher(rpc)
    out = await f.fetch(TAX_TOKEN, transfer_filter(), BlockRange(0, 1_000))

    assert [ev.block_number for ev in out.logs] == [10, 150, 151, 420, 999]
    assert out.skipped == []
    # requests were narrowed to within the provider limit
    spans = [c[2] - c[1] + 1 for c in rpc.calls if c[0] == "eth_getLogs"]
    assert min(spans) <= 30
    assert f.chunk_size <= 400


async def test_chunk_size_is_kept_between_calls():
    rpc = seeded_rpc(max_span=30)
    f = make_fetcher(rpc, chunk=ChunkPolicy(initial=100, max_size=400, grow_factor=1, grow_step=5))
    await f.fetch(TAX_TOKEN, transfer_filter(), BlockRange(0, 50))
    learned = f.chunk_size
    assert learned < 100
    rpc.calls.clear()
    await f.fetch(TAX_TOKEN, transfer_filter(), BlockRange(50, 200))
    first = next(c for c in rpc.calls if c[0] == "eth_getLogs")
    assert first[2] - first[1] + 1 == learned


async def test_concurrent_fetches_do_not_resize_each_other():
    calls: list[tuple[str, int, int]] = []

    class NarrowForTaxToken:
        async def get_logs(self, address, topics, frm, to):
            await asyncio.sleep(0)
            calls.append((address, frm, to))
            if address == TAX_TOKEN and to - frm + 1 > 10:
                raise RangeTooLargeError("block range is too wide")
            return []

    f = make_fetcher(NarrowForTaxToken(), chunk=ChunkPolicy(initial=100, max_size=100))
    narrow, wide = await asyncio.gather(
        f.fetch(TAX_TOKEN, transfer_filter(), BlockRange(0, 100)),
        f.fetch(ALICE, transfer_filter(), BlockRange(0, 300)),
    )
    assert narrow.scanned_to == 100 and wide.scanned_to == 300
    assert [(frm, to) for a, frm, to in calls if a == ALICE] == [(0, 99), (100, 199), (200, 299)]


async def test_failed_chunk_is_recorded_as_gap_when_skipping():
    rpc = seeded_rpc(fail_ranges={(140, 160)})
    f = make_fetcher(rpc, chunk=ChunkPolicy(initial=100, max_size=100))
    out = await f.fetch(TAX_TOKEN, transfer_filter(), BlockRange(0, 300))

    assert out.skipped == [BlockRange(100, 200)]
    assert [ev.block_number for ev in out.logs] == [10]
    assert out.scanned_to == 300


async def test_failed_chunk_raises_when_aborting():
    rpc = seeded_rpc(fail_ranges={(140, 160)})
    f = make_fetcher(rpc, chunk=ChunkPolicy(initial=100, max_size=100), on_chunk_failure="abort")
    with pytest.raises(ChunkFailedError) as exc:
        await f.fetch(TAX_TOKEN, transfer_filter(), BlockRange(0, 300))
    assert exc.value.block_range == BlockRange(100, 200)


async def test_permanent_error_is_not_retried():
    rpc = seeded_rpc()
    rpc.errors = [RpcError("invalid params", transient=False, code=-32602)]
    f = make_fetcher(rpc, chunk=ChunkPolicy(initial=100, max_size=100))
    out = await f.fetch(TAX_TOKEN, transfer_filter(), BlockRange(0, 100))
    assert out.skipped == [BlockRange(0, 100)]
    assert rpc.count("eth_getLogs") == 1


async def test_rate_limit_backs_off_and_recovers():
    rpc = seeded_rpc()
    rpc.errors = [RateLimitedError("too many requests"), RateLimitedError("too many requests")]
    waits: list[float] = []

    async def sleep(d: float) -> None:
        waits.append(d)

    f = RangeFetcher(rpc, chunk=ChunkPolicy(initial=100, max_size=400), retry=RetryPolicy(max_attempts=5), sleep=sleep)
    out = await f.fetch(TAX_TOKEN, transfer_filter(), BlockRange(0, 200))

    assert [ev.block_number for ev in out.logs] == [10, 150, 151]
    assert out.skipped == []
    assert waits == [1.5, 3.0]


async def test_deadline_truncates_and_reports_progress():
    rpc = seeded_rpc()
    clock = FakeClock()

    class SlowRPC:
        async def get_logs(self, *a):
            clock.advance(10)
            return await rpc.get_logs(*a)

    f = RangeFetcher(SlowRPC(), chunk=ChunkPolicy(initial=100, max_size=100), sleep=no_sleep, clock=clock)
    out = await f.fetch(TAX_TOKEN, transfer_filter(), BlockRange(0, 1_000), deadline=clock.now + 25)

    assert out.truncated
    assert out.scanned_to == 300
    assert [ev.block_number for ev in out.logs] == [10, 150, 151]


async def test_duplicate_logs_are_dropped():
    rpc = seeded_rpc()
    rpc.logs.append(rpc.logs[0])
    out = await make_fetcher(rpc).fetch(TAX_TOKEN, transfer_filter(), BlockRange(0, 100))
    assert len(out.logs) == 1


def test_chunk_policy_grow_and_shrink_respect_bounds():
    p = ChunkPolicy(initial=10, max_size=50, min_size=2, grow_factor=2, grow_step=5)
    assert p.grow(10) == 25
    assert p.grow(40) == 50
    assert p.shrink(10) == 5
    assert p.shrink(3) == 2
    with pytest.raises(ValueError):
        ChunkPolicy(initial=1, min_size=2)
