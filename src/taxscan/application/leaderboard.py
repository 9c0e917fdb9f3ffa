from __future__ import annotations

import logging
import time
from typing import Callable, Mapping

from ..domain.models import LeaderboardEntry, LeaderboardMeta, ScanJob
from ..ports.storage import LeaderboardStore

log = logging.getLogger(__name__)


def rank_amounts(amounts: Mapping[str, int], limit: int | None = None) -> list[LeaderboardEntry]:
    ordered = sorted(amounts.items(), key=lambda kv: (-kv[1], kv[0]))
    if limit is not None:
        ordered = ordered[:limit]
    return [LeaderboardEntry(rank=i + 1, address=a, amount=v) for i, (a, v) in enumerate(ordered)]


class LeaderboardAccumulator:
    """Additive per-campaign totals; the only writer of leaderboard entries."""

    def __init__(self, store: LeaderboardStore, clock: Callable[[], float] = time.time) -> None:
        self.store = store
        self._clock = clock

    async def merge_deltas(
        self,
        campaign_id: str,
        deltas: Mapping[str, int],
        job: ScanJob | None = None,
    ) -> LeaderboardMeta:
        for address, amount in deltas.items():
            if amount < 0:
                raise ValueError(f"negative delta for {address}: {amount}")
            if amount == 0:
                continue
            await self.store.add_amount(campaign_id, address.lower(), amount)
        return await self.refresh_meta(campaign_id, job)

    async def refresh_meta(self, campaign_id: str, job: ScanJob | None = None) -> LeaderboardMeta:
        # totals are recomputed from the entries, never carried forward
        amounts = await self.store.all_amounts(campaign_id)
        extra: dict[str, str] = {}
        if job is not None:
            extra = {
                "name": job.name,
                "targetToken": job.target_token,
                "taxWallet": job.tax_wallet,
                "logoUrl": job.logo_url,
                "currentBlock": str(job.current_block),
                "endBlock": str(job.end_block),
                "status": job.status,
            }
        meta = LeaderboardMeta(
            campaign_id=campaign_id,
            total_users=len(amounts),
            total_amount=sum(amounts.values()),
            last_updated=self._clock(),
            extra=extra,
        )
        await self.store.put_meta(campaign_id, meta.to_dict())
        log.debug("leaderboard %s: %d payers, total %d", campaign_id, meta.total_users, meta.total_amount)
        return meta

    async def ranked(self, campaign_id: str, limit: int | None = None) -> list[LeaderboardEntry]:
        return rank_amounts(await self.store.all_amounts(campaign_id), limit)

    async def meta(self, campaign_id: str) -> LeaderboardMeta | None:
        raw = await self.store.get_meta(campaign_id)
        return LeaderboardMeta.from_dict(raw) if raw else None

    async def clear(self, campaign_id: str) -> None:
        await self.store.clear(campaign_id)
        log.info("leaderboard %s cleared", campaign_id)
