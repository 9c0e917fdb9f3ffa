import os
import uuid

import pytest

from taxscan.adapters.store_memory import MemoryStore
from taxscan.adapters.store_redis import RedisStore

from conftest import ALICE, FakeClock

REDIS_URL = os.environ.get("TAXSCAN_TEST_REDIS_URL")


@pytest.fixture(params=["memory", "redis"])
async def any_store(request):
    if request.param == "memory":
        yield MemoryStore()
        return
    if not REDIS_URL:
        pytest.skip("TAXSCAN_TEST_REDIS_URL not set")
    s = RedisStore.from_url(REDIS_URL)
    yield s
    await s.aclose()


@pytest.fixture
def cid() -> str:
    return f"test-{uuid.uuid4().hex[:8]}"


async def test_job_records_and_active_set(any_store, cid):
    await any_store.put_job(cid, {"campaignId": cid, "currentBlock": "5"})
    await any_store.add_active(cid)
    assert (await any_store.get_job(cid))["currentBlock"] == "5"
    assert cid in await any_store.active_ids()
    await any_store.delete_job(cid)
    assert await any_store.get_job(cid) is None
    assert cid not in await any_store.active_ids()


async def test_amounts_are_exact_and_additive(any_store, cid):
    big = 123_456_789_123_456_789_123_456_789
    assert await any_store.add_amount(cid, ALICE, big) == big
    assert await any_store.add_amount(cid, ALICE, 1) == big + 1
    assert await any_store.get_amount(cid, ALICE) == big + 1
    assert await any_store.all_amounts(cid) == {ALICE: big + 1}
    await any_store.put_meta(cid, {"campaignId": cid, "totalUsers": "1"})
    assert (await any_store.get_meta(cid))["totalUsers"] == "1"
    await any_store.clear(cid)
    assert await any_store.all_amounts(cid) == {}
    assert await any_store.get_meta(cid) is None


async def test_lease_is_exclusive_until_released(any_store, cid):
    assert await any_store.acquire_lease(cid, 30)
    assert not await any_store.acquire_lease(cid, 30)
    await any_store.release_lease(cid)
    assert await any_store.acquire_lease(cid, 30)
    await any_store.release_lease(cid)


async def test_memory_lease_expires():
    clock = FakeClock()
    s = MemoryStore(clock=clock)
    assert await s.acquire_lease("k", 10)
    clock.advance(11)
    assert await s.acquire_lease("k", 10)


async def test_memory_store_copies_records():
    s = MemoryStore()
    rec = {"campaignId": "c1", "status": "active"}
    await s.put_job("c1", rec)
    rec["status"] = "stopped"
    got = await s.get_job("c1")
    got["status"] = "failed"
    assert (await s.get_job("c1"))["status"] == "active"
