from __future__ import annotations

import json
import logging
from typing import Any

import redis.asyncio as aioredis
from redis.exceptions import WatchError

from ..domain.errors import TaxScanError
from ..ports.storage import JobStore, LeaderboardStore

log = logging.getLogger(__name__)

JOB_PREFIX = "tax-scan-job"
ACTIVE_JOBS_SET = "tax-scan-jobs:active"
LOCK_PREFIX = "tax-scan-lock"
BOARD_PREFIX = "tax-leaderboard"
AMOUNTS_PREFIX = "tax-leaderboard-amounts"
META_PREFIX = "tax-leaderboard-meta"

_MAX_CAS_ATTEMPTS = 50


class RedisStore(JobStore, LeaderboardStore):
    """
    Redis layout:
      tax-scan-job:{id}              JSON job record
      tax-scan-jobs:active           set of active campaign ids
      tax-scan-lock:{id}             single-writer lease (SET NX PX)
      tax-leaderboard-amounts:{id}   hash address -> exact amount (decimal string)
      tax-leaderboard:{id}           sorted set address -> amount in whole tokens,
                                     kept for ranked reads by other consumers
      tax-leaderboard-meta:{id}      hash of aggregate metadata
    The hash is authoritative; the sorted-set score is a float and only orders.
    """
    def __init__(self, client: aioredis.Redis, *, score_decimals: int = 18) -> None:
        self.redis = client
        self.score_decimals = score_decimals

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "RedisStore":
        return cls(aioredis.from_url(url, decode_responses=True), **kwargs)

    async def aclose(self) -> None:
        await self.redis.aclose()

    # jobs
    async def get_job(self, campaign_id: str) -> dict[str, Any] | None:
        raw = await self.redis.get(f"{JOB_PREFIX}:{campaign_id}")
        return json.loads(raw) if raw else None

    async def put_job(self, campaign_id: str, record: dict[str, Any]) -> None:
        await self.redis.set(f"{JOB_PREFIX}:{campaign_id}", json.dumps(record, separators=(",", ":")))

    async def delete_job(self, campaign_id: str) -> None:
        await self.redis.srem(ACTIVE_JOBS_SET, campaign_id)
        await self.redis.delete(f"{JOB_PREFIX}:{campaign_id}")

    async def add_active(self, campaign_id: str) -> None:
        await self.redis.sadd(ACTIVE_JOBS_SET, campaign_id)

    async def remove_active(self, campaign_id: str) -> None:
        await self.redis.srem(ACTIVE_JOBS_SET, campaign_id)

    async def active_ids(self) -> set[str]:
        return set(await self.redis.smembers(ACTIVE_JOBS_SET))

    async def acquire_lease(self, key: str, ttl_s: float) -> bool:
        ok = await self.redis.set(f"{LOCK_PREFIX}:{key}", "1", nx=True, px=max(1, int(ttl_s * 1000)))
        return bool(ok)

    async def release_lease(self, key: str) -> None:
        await self.redis.delete(f"{LOCK_PREFIX}:{key}")

    # leaderboard
    def _score(self, amount: int) -> float:
        return amount / (10 ** self.score_decimals)

    async def add_amount(self, campaign_id: str, address: str, amount: int) -> int:
        akey = f"{AMOUNTS_PREFIX}:{campaign_id}"
        zkey = f"{BOARD_PREFIX}:{campaign_id}"
        async with self.redis.pipeline(transaction=True) as pipe:
            for _ in range(_MAX_CAS_ATTEMPTS):
                try:
                    await pipe.watch(akey)
                    cur = await pipe.hget(akey, address)
                    new = int(cur or 0) + amount
                    pipe.multi()
                    pipe.hset(akey, address, str(new))
                    pipe.zadd(zkey, {address: self._score(new)})
                    await pipe.execute()
                    return new
                except WatchError:
                    log.debug("leaderboard %s: concurrent write on %s, retrying", campaign_id, address)
                    continue
        raise TaxScanError(f"could not update {address} on leaderboard {campaign_id}")

    async def get_amount(self, campaign_id: str, address: str) -> int:
        cur = await self.redis.hget(f"{AMOUNTS_PREFIX}:{campaign_id}", address)
        return int(cur or 0)

    async def all_amounts(self, campaign_id: str) -> dict[str, int]:
        raw = await self.redis.hgetall(f"{AMOUNTS_PREFIX}:{campaign_id}")
        return {addr: int(v) for addr, v in raw.items()}

    async def clear(self, campaign_id: str) -> None:
        await self.redis.delete(
            f"{AMOUNTS_PREFIX}:{campaign_id}",
            f"{BOARD_PREFIX}:{campaign_id}",
            f"{META_PREFIX}:{campaign_id}",
        )

    async def put_meta(self, campaign_id: str, meta: dict[str, str]) -> None:
        await self.redis.hset(f"{META_PREFIX}:{campaign_id}", mapping=meta)

    async def get_meta(self, campaign_id: str) -> dict[str, str] | None:
        raw = await self.redis.hgetall(f"{META_PREFIX}:{campaign_id}")
        return dict(raw) if raw else None
