from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from ..domain.errors import ChunkFailedError, RangeTooLargeError, RateLimitedError, RpcError
from ..domain.filters import TopicFilter
from ..domain.models import BlockRange, LogEvent
from ..domain.value_types import Address, ChunkFailurePolicy
from ..ports.rpc import RPCClient
from .retry import RetryPolicy, Sleep

log = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ChunkPolicy:
    initial: int = 500
    max_size: int = 2_000
    min_size: int = 1
    grow_factor: int = 2
    grow_step: int = 0
    shrink_factor: int = 2

    def __post_init__(self) -> None:
        if not (1 <= self.min_size <= self.initial <= self.max_size):
            raise ValueError("chunk sizes must satisfy 1 <= min_size <= initial <= max_size")
        if self.grow_factor < 1 or self.shrink_factor < 2:
            raise ValueError("grow_factor must be >= 1 and shrink_factor >= 2")

    def grow(self, size: int) -> int:
        return min(self.max_size, size * self.grow_factor + self.grow_step)

    def shrink(self, size: int) -> int:
        return max(self.min_size, size // self.shrink_factor)


@dataclass(slots=True)
class FetchOutcome:
    logs: list[LogEvent] = field(default_factory=list)
    skipped: list[BlockRange] = field(default_factory=list)
    requests: int = 0
    scanned_to: int = 0          # first block not covered by this call
    truncated: bool = False      # deadline hit before the whole range was attempted


class RangeFetcher:
    """
    Fetch logs for one (contract, topic filter) over a block range in
    adaptively sized sub-chunks.

    Each call adapts its own chunk size, seeded from the size the last
    finished call settled on, so concurrent calls never resize each
    other. A sub-range that still fails after the retry budget is either recorded in `FetchOutcome.skipped` and left as a gap
    (`on_chunk_failure="skip"`), or raised as ChunkFailedError (`"abort"`).
    """

    def __init__(
        self,
        rpc: RPCClient,
        *,
        chunk: ChunkPolicy = ChunkPolicy(),
        retry: RetryPolicy = RetryPolicy(),
        on_chunk_failure: ChunkFailurePolicy = "skip",
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if on_chunk_failure not in ("skip", "abort"):
            raise ValueError(f"on_chunk_failure must be 'skip' or 'abort', got {on_chunk_failure!r}")
        self.rpc = rpc
        self.chunk = chunk
        self.retry = retry
        self.on_chunk_failure = on_chunk_failure
        self._sleep = sleep
        self._clock = clock
        self.chunk_size = chunk.initial

    async def fetch_logs(self, address: Address, topics: TopicFilter, block_range: BlockRange) -> list[LogEvent]:
        return (await self.fetch(address, topics, block_range)).logs

    async def fetch(
        self,
        address: Address,
        topics: TopicFilter,
        block_range: BlockRange,
        *,
        deadline: float | None = None,
    ) -> FetchOutcome:
        out = FetchOutcome(scanned_to=block_range.start)
        seen: dict[tuple[str, int], LogEvent] = {}
        cur, end = block_range.start, block_range.end
        size = self.chunk_size

        while cur < end:
            if deadline is not None and self._clock() >= deadline:
                out.truncated = True
                log.info("deadline reached at block %d of [%d, %d)", cur, block_range.start, end)
                break

            sub_end = min(cur + size, end)
            attempt = 0
            while True:
                out.requests += 1
                try:
                    got = await self.rpc.get_logs(address, topics, cur, sub_end - 1)
                except RangeTooLargeError as e:
                    if size > self.chunk.min_size:
                        size = self._shrink(size, e)
                        sub_end = min(cur + size, end)
                        continue
                    attempt += 1
                    err: RpcError = e
                except RateLimitedError as e:
                    attempt += 1
                    err = e
                    size = self._shrink(size, e)
                    sub_end = min(cur + size, end)
                except RpcError as e:
                    attempt = self.retry.max_attempts if e.permanent else attempt + 1
                    err = e
                else:
                    for ev in got:
                        seen.setdefault(ev.key, ev)
                    cur = sub_end
                    size = self.chunk.grow(size)
                    break

                if attempt >= self.retry.max_attempts:
                    failed = BlockRange(cur, sub_end)
                    if self.on_chunk_failure == "abort":
                        raise ChunkFailedError(failed, err) from err
                    log.error(
                        "giving up on %s blocks [%d, %d) after %d attempts, leaving a gap: %s",
                        address, failed.start, failed.end, attempt, err,
                    )
                    out.skipped.append(failed)
                    cur = sub_end
                    break

                delay = self.retry.delay(err, attempt)
                log.warning(
                    "eth_getLogs [%d, %d) attempt %d/%d failed (waiting %.1fs): %s",
                    cur, sub_end, attempt, self.retry.max_attempts, delay, str(err)[:120],
                )
                await self._sleep(delay)

        self.chunk_size = size
        out.scanned_to = cur
        out.logs = sorted(seen.values(), key=lambda ev: (ev.block_number, ev.log_index))
        return out

    def _shrink(self, size: int, err: RpcError) -> int:
        new = self.chunk.shrink(size)
        if new != size:
            log.debug("shrinking chunk %d -> %d: %s", size, new, str(err)[:80])
        return new
