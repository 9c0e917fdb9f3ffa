from __future__ import annotations

import logging
import time
from typing import Callable, Mapping

from ..domain.decoding import normalize_address
from ..domain.errors import IllegalTransitionError, JobNotFoundError
from ..domain.models import BlockRange, JobStatusReport, ScanJob
from ..ports.storage import JobStore

log = logging.getLogger(__name__)

DEFAULT_WINDOW = 2_940          # 98 minutes of Base blocks
DEFAULT_STEP = 5
DEFAULT_FAILURE_THRESHOLD = 10

# counters a scan step may report alongside its new cursor
_COUNTERS = {"valid_tx_count", "skipped_tx_count"}


class ScanJobManager:
    """
    Persisted, resumable scan jobs.

        (none) --create--> active
        active --stop--> stopped --resume--> active   (error_count reset)
        active|stopped --cursor reaches end_block--> completed
        active --failure_threshold consecutive failures--> failed

    completed and failed are terminal. The active set only ever contains
    jobs in status "active".
    """

    def __init__(
        self,
        store: JobStore,
        *,
        window: int = DEFAULT_WINDOW,
        step: int = DEFAULT_STEP,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        block_time_s: float = 2.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if window < 1 or step < 1 or failure_threshold < 1:
            raise ValueError("window, step and failure_threshold must be >= 1")
        self.store = store
        self.window = window
        self.step = step
        self.failure_threshold = failure_threshold
        self.block_time_s = block_time_s
        self._clock = clock

    async def _save(self, job: ScanJob) -> ScanJob:
        await self.store.put_job(job.campaign_id, job.to_dict())
        return job

    async def create(
        self,
        campaign_id: str,
        target_token: str,
        tax_wallet: str,
        start_block: int,
        *,
        name: str = "",
        logo_url: str = "",
    ) -> ScanJob:
        now = self._clock()
        job = ScanJob(
            campaign_id=campaign_id,
            target_token=normalize_address(target_token),
            tax_wallet=normalize_address(tax_wallet),
            start_block=start_block,
            current_block=start_block,
            end_block=start_block + self.window,
            name=name or campaign_id,
            logo_url=logo_url,
            created_at=now,
            last_scan_at=now,
        )
        await self._save(job)
        await self.store.add_active(campaign_id)
        log.info("created job %s: %d -> %d", campaign_id, job.start_block, job.end_block)
        return job

    async def get(self, campaign_id: str) -> ScanJob | None:
        rec = await self.store.get_job(campaign_id)
        return ScanJob.from_dict(rec) if rec else None

    async def require(self, campaign_id: str) -> ScanJob:
        job = await self.get(campaign_id)
        if job is None:
            raise JobNotFoundError(campaign_id)
        return job

    async def active_jobs(self) -> list[ScanJob]:
        jobs: list[ScanJob] = []
        for cid in sorted(await self.store.active_ids()):
            job = await self.get(cid)
            if job is None:
                log.warning("active set references missing job %s, dropping it", cid)
                await self.store.remove_active(cid)
                continue
            jobs.append(job)
        return jobs

    def next_range(self, job: ScanJob, head: int) -> BlockRange | None:
        """Next work unit [current, min(current+step, end, head)), or None when done or caught up."""
        if job.current_block >= job.end_block or job.current_block >= head:
            return None
        return BlockRange(job.current_block, min(job.current_block + self.step, job.end_block, head))

    async def update_progress(
        self,
        campaign_id: str,
        new_current: int,
        stats: Mapping[str, int] | None = None,
    ) -> ScanJob:
        """
        Move the cursor forward. Re-delivery of an already recorded cursor is a
        no-op, so counters are only added when the cursor actually advances.
        """
        job = await self.require(campaign_id)
        if job.is_terminal:
            return job

        target = min(new_current, job.end_block)
        if target > job.current_block:
            job.total_scanned += target - job.current_block
            for k, v in (stats or {}).items():
                if k in _COUNTERS:
                    setattr(job, k, getattr(job, k) + int(v))
            job.current_block = target
            job.last_scan_at = self._clock()
            if job.status == "active":
                job.error_count = 0

        if job.current_block >= job.end_block:
            job.status = "completed"
            job.completed_at = self._clock()
            await self._save(job)
            await self.store.remove_active(campaign_id)
            log.info("job %s completed at block %d", campaign_id, job.current_block)
            return job
        return await self._save(job)

    async def record_failure(self, campaign_id: str, error: BaseException | str) -> ScanJob:
        job = await self.require(campaign_id)
        if job.status != "active":
            raise IllegalTransitionError(campaign_id, job.status, "record a failure on")
        now = self._clock()
        job.error_count += 1
        job.last_error = str(error)
        job.last_error_at = now
        if job.error_count >= self.failure_threshold:
            job.status = "failed"
            job.failed_at = now
            await self._save(job)
            await self.store.remove_active(campaign_id)
            log.error("job %s failed after %d consecutive errors: %s", campaign_id, job.error_count, error)
            return job
        log.warning("job %s error %d/%d: %s", campaign_id, job.error_count, self.failure_threshold, error)
        return await self._save(job)

    async def stop(self, campaign_id: str) -> ScanJob:
        job = await self.require(campaign_id)
        if job.is_terminal:
            raise IllegalTransitionError(campaign_id, job.status, "stop")
        if job.status == "stopped":
            return job
        job.status = "stopped"
        job.stopped_at = self._clock()
        await self.store.remove_active(campaign_id)
        await self._save(job)
        log.info("job %s stopped", campaign_id)
        return job

    async def resume(self, campaign_id: str) -> ScanJob:
        job = await self.require(campaign_id)
        if job.is_terminal:
            raise IllegalTransitionError(campaign_id, job.status, "resume")
        if job.status == "active":
            return job
        job.status = "active"
        job.error_count = 0
        job.resumed_at = self._clock()
        await self._save(job)
        await self.store.add_active(campaign_id)
        log.info("job %s resumed at block %d", campaign_id, job.current_block)
        return job

    async def delete(self, campaign_id: str) -> None:
        await self.store.delete_job(campaign_id)
        log.info("job %s deleted", campaign_id)

    async def status(self, campaign_id: str) -> JobStatusReport:
        job = await self.require(campaign_id)
        total = job.total_blocks
        pct = (job.scanned_blocks * 100 / total) if total > 0 else 0.0
        return JobStatusReport(
            job=job,
            progress_percent=round(pct, 2),
            scanned_blocks=job.scanned_blocks,
            remaining_blocks=job.remaining_blocks,
            estimated_remaining_s=job.remaining_blocks * self.block_time_s,
        )
