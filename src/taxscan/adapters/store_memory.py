from __future__ import annotations
import asyncio, copy, time
from typing import Any, Callable
from ..ports.storage import JobStore, LeaderboardStore


class MemoryStore(JobStore, LeaderboardStore):
    """
    In-process implementation of both storage ports. Records are deep-copied
    on the way in and out so callers never share mutable state with the store.
    """
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._jobs: dict[str, dict[str, Any]] = {}
        self._active: set[str] = set()
        self._leases: dict[str, float] = {}
        self._amounts: dict[str, dict[str, int]] = {}
        self._meta: dict[str, dict[str, str]] = {}
        self._lock = asyncio.Lock()

    # jobs
    async def get_job(self, campaign_id: str) -> dict[str, Any] | None:
        rec = self._jobs.get(campaign_id)
        return copy.deepcopy(rec) if rec is not None else None

    async def put_job(self, campaign_id: str, record: dict[str, Any]) -> None:
        self._jobs[campaign_id] = copy.deepcopy(record)

    async def delete_job(self, campaign_id: str) -> None:
        self._active.discard(campaign_id)
        self._jobs.pop(campaign_id, None)

    async def add_active(self, campaign_id: str) -> None: self._active.add(campaign_id)
    async def remove_active(self, campaign_id: str) -> None: self._active.discard(campaign_id)
    async def active_ids(self) -> set[str]: return set(self._active)

    async def acquire_lease(self, key: str, ttl_s: float) -> bool:
        async with self._lock:
            now = self._clock()
            exp = self._leases.get(key)
            if exp is not None and exp > now:
                return False
            self._leases[key] = now + ttl_s
            return True

    async def release_lease(self, key: str) -> None:
        self._leases.pop(key, None)

    # leaderboard
    async def add_amount(self, campaign_id: str, address: str, amount: int) -> int:
        async with self._lock:
            board = self._amounts.setdefault(campaign_id, {})
            board[address] = board.get(address, 0) + amount
            return board[address]

    async def get_amount(self, campaign_id: str, address: str) -> int:
        return self._amounts.get(campaign_id, {}).get(address, 0)

    async def all_amounts(self, campaign_id: str) -> dict[str, int]:
        return dict(self._amounts.get(campaign_id, {}))

    async def clear(self, campaign_id: str) -> None:
        self._amounts.pop(campaign_id, None)
        self._meta.pop(campaign_id, None)

    async def put_meta(self, campaign_id: str, meta: dict[str, str]) -> None:
        self._meta[campaign_id] = dict(meta)

    async def get_meta(self, campaign_id: str) -> dict[str, str] | None:
        m = self._meta.get(campaign_id)
        return dict(m) if m is not None else None
