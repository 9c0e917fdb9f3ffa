from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AsyncIterator, Callable, Literal

from taxscan.adapters.market_gecko import GeckoTerminalMarketData
from taxscan.adapters.rpc_httpx import HttpxRPC
from taxscan.adapters.store_memory import MemoryStore
from taxscan.adapters.store_redis import RedisStore
from taxscan.config import Settings
from ..domain.decoding import normalize_address
from ..domain.errors import ConfigError, IllegalTransitionError, JobBusyError
from ..domain.filters import transfer_filter
from ..domain.models import (
    AttributionResult, BlockRange, JobStatusReport, LaunchInfo, LeaderboardEntry, LeaderboardMeta, LogEvent,
    ScanJob,
)
from ..domain.value_types import AttributionMode
from ..ports.rpc import RPCClient
from .attribution import AttributionStrategy, make_strategy
from .jobs import ScanJobManager
from .launch import LaunchBlockLocator
from .leaderboard import LeaderboardAccumulator, rank_amounts
from .range_fetcher import RangeFetcher
from .retry import RetryPolicy, Sleep, call_with_retry

log = logging.getLogger(__name__)

StepStatus = Literal["scanned", "idle", "completed", "busy", "inactive", "deferred", "stale", "error"]
ProgressFn = Callable[[int, str], None]


@dataclass(slots=True)
class PassResult:
    """Outcome of scanning one block range for one campaign."""
    attribution: AttributionResult
    scanned_to: int
    gaps: list[BlockRange] = field(default_factory=list)
    tax_logs: int = 0
    truncated: bool = False


@dataclass(slots=True)
class StepResult:
    campaign_id: str
    status: StepStatus
    block_range: BlockRange | None = None
    scanned_to: int | None = None
    users_found: int = 0
    valid_count: int = 0
    skipped_count: int = 0
    gaps: list[BlockRange] = field(default_factory=list)
    error: str | None = None
    elapsed_s: float = 0.0


@dataclass(slots=True)
class TickResult:
    head: int
    results: list[StepResult]
    elapsed_s: float


@dataclass(slots=True)
class TaxReport:
    token: str
    tax_token: str
    tax_wallet: str
    launch: LaunchInfo
    scan_start_block: int
    scan_end_block: int            # exclusive
    blocks_scanned: int
    total_blocks: int
    progress_percent: int
    is_complete: bool
    totals_by_payer: dict[str, int]
    leaderboard: list[LeaderboardEntry]
    total_tax: int
    valid_transactions: int
    skipped_transactions: int
    gaps: list[BlockRange]
    timestamp: str

    @property
    def unique_payers(self) -> int:
        return len(self.totals_by_payer)


@dataclass(slots=True)
class RebuildResult:
    meta: LeaderboardMeta
    scanned_to: int
    gaps: list[BlockRange]


class TaxScanService:
    """
    Entry points used by the CLI and by any API layer.

    `tick()` is one short, stateless invocation of the incremental pipeline:
    every piece of cross-invocation state lives in the job store.
    """

    def __init__(
        self,
        *,
        rpc: RPCClient,
        jobs: ScanJobManager,
        leaderboard: LeaderboardAccumulator,
        fetcher: RangeFetcher,
        locator: LaunchBlockLocator,
        tax_token: str,
        default_tax_wallet: str | None = None,
        attribution: AttributionMode = "receipt",
        strategy_factory: Callable[[str], AttributionStrategy] | None = None,
        retry: RetryPolicy = RetryPolicy(),
        time_budget_s: float = 50.0,
        max_concurrent_jobs: int = 4,
        lease_ttl_s: float = 120.0,
        report_limit: int = 20,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.rpc = rpc
        self.jobs = jobs
        self.leaderboard = leaderboard
        self.fetcher = fetcher
        self.locator = locator
        self.tax_token = normalize_address(tax_token)
        self.default_tax_wallet = normalize_address(default_tax_wallet) if default_tax_wallet else None
        self.attribution = attribution
        self.retry = retry
        self.time_budget_s = time_budget_s
        self.max_concurrent_jobs = max(1, max_concurrent_jobs)
        self.lease_ttl_s = lease_ttl_s
        self.report_limit = report_limit
        self._sleep = sleep
        self._clock = clock
        self._strategy_factory = strategy_factory or (
            lambda target: make_strategy(attribution, rpc=rpc, target_token=target, retry=retry, sleep=sleep)
        )

    # --------- shared scan pass ---------

    async def scan_range(
        self,
        target_token: str,
        tax_wallet: str,
        block_range: BlockRange,
        *,
        deadline: float | None = None,
    ) -> PassResult:
        """Fetch → attribute for one range. Attribution only covers blocks fully fetched."""
        strategy = self._strategy_factory(target_token)
        tax = await self.fetcher.fetch(
            self.tax_token, transfer_filter(recipient=tax_wallet), block_range, deadline=deadline,
        )
        covered_to = tax.scanned_to
        gaps = list(tax.skipped)
        target_logs: list[LogEvent] = []
        if strategy.needs_target_logs and covered_to > block_range.start:
            target = await self.fetcher.fetch(
                normalize_address(target_token), transfer_filter(),
                BlockRange(block_range.start, covered_to), deadline=deadline,
            )
            covered_to = min(covered_to, target.scanned_to)
            gaps.extend(target.skipped)
            target_logs = target.logs

        tax_logs = [ev for ev in tax.logs if ev.block_number < covered_to]
        result = await strategy.attribute(tax_logs, target_logs)
        return PassResult(
            attribution=result,
            scanned_to=covered_to,
            gaps=gaps,
            tax_logs=len(tax_logs),
            truncated=covered_to < block_range.end,
        )

    # --------- incremental path ---------

    async def scan_step(self, job: ScanJob, head: int, *, deadline: float | None = None) -> StepResult:
        """Scan the job's next work unit, merge into the leaderboard, then advance the cursor."""
        t0 = self._clock()
        rng = self.jobs.next_range(job, head)
        if rng is None:
            if job.current_block >= job.end_block:
                await self.jobs.update_progress(job.campaign_id, job.end_block)
                return StepResult(job.campaign_id, "completed", scanned_to=job.end_block)
            return StepResult(job.campaign_id, "idle", scanned_to=job.current_block)

        log.info("job %s: scanning blocks [%d, %d)", job.campaign_id, rng.start, rng.end)
        res = await self.scan_range(job.target_token, job.tax_wallet, rng, deadline=deadline)
        # the merge is not idempotent: only the step starting at the persisted cursor may apply it
        persisted = await self.jobs.get(job.campaign_id)
        if persisted is None:
            return StepResult(job.campaign_id, "inactive", block_range=rng)
        if persisted.current_block != rng.start:
            log.warning(
                "job %s: cursor moved to %d while scanning [%d, %d); discarding this step",
                job.campaign_id, persisted.current_block, rng.start, rng.end,
            )
            return StepResult(job.campaign_id, "stale", block_range=rng, scanned_to=persisted.current_block)
        attr = res.attribution
        log.info(
            "job %s: %d payers, %d valid, %d skipped",
            job.campaign_id, len(attr.totals), attr.valid_count, attr.skipped_count,
        )
        if attr.totals:
            await self.leaderboard.merge_deltas(job.campaign_id, attr.totals, persisted)

        updated = await self.jobs.update_progress(job.campaign_id, res.scanned_to, {
            "valid_tx_count": attr.valid_count,
            "skipped_tx_count": attr.skipped_count,
        })
        return StepResult(
            campaign_id=job.campaign_id,
            status="completed" if updated.status == "completed" else "scanned",
            block_range=rng,
            scanned_to=res.scanned_to,
            users_found=len(attr.totals),
            valid_count=attr.valid_count,
            skipped_count=attr.skipped_count,
            gaps=res.gaps,
            elapsed_s=self._clock() - t0,
        )

    async def process_job(self, campaign_id: str, head: int, *, deadline: float | None = None) -> StepResult:
        """One job under its single-writer lease; failures go to the job's error budget."""
        lease = f"campaign:{campaign_id}"
        if not await self.jobs.store.acquire_lease(lease, self.lease_ttl_s):
            log.info("job %s is held by another worker, skipping", campaign_id)
            return StepResult(campaign_id, "busy")
        try:
            job = await self.jobs.get(campaign_id)
            if job is None or job.status != "active":
                return StepResult(campaign_id, "inactive")
            try:
                return await self.scan_step(job, head, deadline=deadline)
            except Exception as e:
                log.exception("job %s: scan step failed", campaign_id)
                try:
                    await self.jobs.record_failure(campaign_id, e)
                except IllegalTransitionError:
                    log.warning("job %s left status active mid-step; failure not counted", campaign_id)
                return StepResult(campaign_id, "error", error=str(e))
        finally:
            await self.jobs.store.release_lease(lease)

    async def tick(self) -> TickResult:
        t0 = self._clock()
        deadline = t0 + self.time_budget_s
        head = await call_with_retry(self.rpc.latest_block, policy=self.retry, what="eth_blockNumber", sleep=self._sleep)
        active = await self.jobs.active_jobs()
        if not active:
            log.info("no active jobs")
            return TickResult(head, [], self._clock() - t0)

        log.info("processing %d active job(s) at head %d", len(active), head)
        sem = asyncio.Semaphore(self.max_concurrent_jobs)

        async def run(job: ScanJob) -> StepResult:
            async with sem:
                if self._clock() >= deadline:
                    return StepResult(job.campaign_id, "deferred")
                return await self.process_job(job.campaign_id, head, deadline=deadline)

        results = await asyncio.gather(*(run(j) for j in active))
        elapsed = self._clock() - t0
        log.info("tick finished in %.2fs", elapsed)
        return TickResult(head, list(results), elapsed)

    # --------- job lifecycle ---------

    async def start_scan(
        self,
        campaign_id: str,
        target_token: str,
        tax_wallet: str | None = None,
        *,
        start_block: int | None = None,
        name: str = "",
        logo_url: str = "",
    ) -> ScanJob:
        wallet = tax_wallet or self.default_tax_wallet
        if not wallet:
            raise ConfigError("a tax wallet is required")
        existing = await self.jobs.get(campaign_id)
        if existing is not None and existing.status == "active":
            raise JobBusyError(f"job {campaign_id!r} is already active; stop or delete it first")
        if start_block is None:
            start_block = (await self.locator.locate(target_token)).launch_block
        return await self.jobs.create(
            campaign_id, target_token, wallet, start_block, name=name, logo_url=logo_url,
        )

    async def get_job_status(self, campaign_id: str) -> JobStatusReport:
        return await self.jobs.status(campaign_id)

    async def stop_scan(self, campaign_id: str) -> ScanJob:
        return await self.jobs.stop(campaign_id)

    async def resume_scan(self, campaign_id: str) -> ScanJob:
        return await self.jobs.resume(campaign_id)

    async def delete_scan(self, campaign_id: str, *, clear_leaderboard: bool = False) -> None:
        await self.jobs.delete(campaign_id)
        if clear_leaderboard:
            await self.leaderboard.clear(campaign_id)

    # --------- one-shot and administrative paths ---------

    async def calculate_tax(
        self,
        token: str,
        tax_wallet: str | None = None,
        *,
        on_progress: ProgressFn | None = None,
    ) -> TaxReport:
        """Single long call: launch block → whole window → report. Partial when the window is still open."""
        def progress(pct: int, msg: str) -> None:
            if on_progress: on_progress(pct, msg)

        deadline = self._clock() + self.time_budget_s
        token_addr = normalize_address(token)
        wallet = normalize_address(tax_wallet) if tax_wallet else self.default_tax_wallet
        if not wallet:
            raise ConfigError("a tax wallet is required")

        head = await call_with_retry(self.rpc.latest_block, policy=self.retry, what="eth_blockNumber", sleep=self._sleep)
        progress(5, "Finding token launch block...")
        launch = await self.locator.locate(token_addr)

        window = self.jobs.window
        start = launch.launch_block
        end = max(start, min(start + window, head + 1))
        progress(10, f"Scanning blocks {start} to {end - 1}...")
        res = await self.scan_range(token_addr, wallet, BlockRange(start, end), deadline=deadline)

        progress(75, f"Attributed {res.attribution.valid_count} of {res.tax_logs} tax transfers...")
        scanned = res.scanned_to - start
        totals = res.attribution.totals
        report = TaxReport(
            token=token_addr,
            tax_token=self.tax_token,
            tax_wallet=wallet,
            launch=launch,
            scan_start_block=start,
            scan_end_block=res.scanned_to,
            blocks_scanned=scanned,
            total_blocks=window,
            progress_percent=min(100, round(scanned * 100 / window)),
            is_complete=start + window <= head + 1 and not res.truncated,
            totals_by_payer=dict(totals),
            leaderboard=rank_amounts(totals, self.report_limit),
            total_tax=res.attribution.total_amount,
            valid_transactions=res.attribution.valid_count,
            skipped_transactions=res.attribution.skipped_count,
            gaps=res.gaps,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )
        progress(100, "Tax calculation complete!")
        return report

    async def rebuild_leaderboard(self, campaign_id: str) -> RebuildResult:
        """
        Replay a campaign's scanned range and replace its entries with the result.

        The replay runs to the end of the range without a time budget and the
        store is only touched once it has finished, so a failed rebuild leaves
        the previous entries in place.
        """
        job = await self.jobs.require(campaign_id)
        if job.status == "active":
            raise JobBusyError(f"job {campaign_id!r} is active; stop it before rebuilding")
        lease = f"campaign:{campaign_id}"
        if not await self.jobs.store.acquire_lease(lease, self.lease_ttl_s):
            raise JobBusyError(f"job {campaign_id!r} is held by another worker")
        try:
            rng = BlockRange(job.start_block, job.current_block)
            res = await self.scan_range(job.target_token, job.tax_wallet, rng)
            if res.gaps:
                log.warning("rebuild of %s left %d gap(s) unscanned", campaign_id, len(res.gaps))
            await self.leaderboard.clear(campaign_id)
            meta = await self.leaderboard.merge_deltas(campaign_id, res.attribution.totals, job)
            return RebuildResult(meta=meta, scanned_to=res.scanned_to, gaps=res.gaps)
        finally:
            await self.jobs.store.release_lease(lease)


@asynccontextmanager
async def open_service(settings: Settings) -> AsyncIterator[TaxScanService]:
    """Wire adapters from settings; closes network clients on exit."""
    rpc = HttpxRPC(settings.rpc_url, timeout_s=settings.rpc_timeout_s)
    market = GeckoTerminalMarketData(settings.gecko_url, network=settings.network)
    store: RedisStore | MemoryStore
    if settings.redis_url:
        store = RedisStore.from_url(settings.redis_url)
    else:
        log.warning("TAXSCAN_REDIS_URL not set: job state lives in memory for this process only")
        store = MemoryStore()
    try:
        yield TaxScanService(
            rpc=rpc,
            jobs=ScanJobManager(
                store, window=settings.window, step=settings.step,
                failure_threshold=settings.failure_threshold, block_time_s=settings.block_time_s,
            ),
            leaderboard=LeaderboardAccumulator(store),
            fetcher=RangeFetcher(rpc, on_chunk_failure=settings.on_chunk_failure),  # type: ignore[arg-type]
            locator=LaunchBlockLocator(rpc, market, block_time_s=settings.block_time_s),
            tax_token=settings.tax_token,
            default_tax_wallet=settings.tax_wallet,
            attribution=settings.attribution,  # type: ignore[arg-type]
            time_budget_s=settings.time_budget_s,
        )
    finally:
        await rpc.aclose()
        await market.aclose()
        if isinstance(store, RedisStore):
            await store.aclose()
