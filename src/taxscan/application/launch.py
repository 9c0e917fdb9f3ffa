from __future__ import annotations

import asyncio
import logging
import math
import time
from typing import Callable

from ..domain.decoding import TRANSFER_T0, normalize_address
from ..domain.errors import NotFoundError, RpcError
from ..domain.filters import TopicFilter
from ..domain.models import LaunchInfo
from ..domain.value_types import Address
from ..ports.market import MarketData
from ..ports.rpc import RPCClient
from .retry import RetryPolicy, Sleep, call_with_retry

log = logging.getLogger(__name__)

_TRANSFERS = TopicFilter.of(TRANSFER_T0)


class LaunchBlockLocator:
    """
    Finds the block where trading of a token starts.

    Fast path: the oldest pool creation time from a market-data aggregator,
    converted to a block with the chain's average block time and moved back
    by a safety margin. Fallback, on-chain:
      1. binary search for the deployment block on eth_getCode,
      2. fixed windows forward to the first Transfer (the "prelaunch" block,
         usually the same-block mint and distribution),
      3. a growing window forward from prelaunch + 1 to the first Transfer in
         a later block, which is the launch block.
    With `distinguish_prelaunch=False` step 3 is skipped and the prelaunch
    block is reported as the launch block.
    """

    def __init__(
        self,
        rpc: RPCClient,
        market: MarketData | None = None,
        *,
        block_time_s: float = 2.0,
        safety_margin_blocks: int = 150,
        window: int = 2_000,
        deploy_scan_ceiling: int = 50_000,
        launch_window_max: int = 10_000,
        launch_window_min: int = 500,
        launch_scan_ceiling: int = 1_000_000,
        distinguish_prelaunch: bool = True,
        retry: RetryPolicy = RetryPolicy(max_attempts=3, error_delay_s=0.5),
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if block_time_s <= 0:
            raise ValueError("block_time_s must be positive")
        self.rpc = rpc
        self.market = market
        self.block_time_s = block_time_s
        self.safety_margin_blocks = safety_margin_blocks
        self.window = window
        self.deploy_scan_ceiling = deploy_scan_ceiling
        self.launch_window_max = launch_window_max
        self.launch_window_min = launch_window_min
        self.launch_scan_ceiling = launch_scan_ceiling
        self.distinguish_prelaunch = distinguish_prelaunch
        self.retry = retry
        self._sleep = sleep
        self._clock = clock

    async def locate(self, token: str) -> LaunchInfo:
        addr = normalize_address(token)
        head = await call_with_retry(self.rpc.latest_block, policy=self.retry, what="eth_blockNumber", sleep=self._sleep)

        if self.market is not None:
            est = await self.estimate_from_market(addr, head)
            if est is not None:
                log.info("launch block for %s estimated from market data: %d", addr, est)
                return LaunchInfo(launch_block=est, prelaunch_block=est, source="market")

        deploy = await self.find_deploy_block(addr, head)
        log.info("contract %s deployed at block %d", addr, deploy)

        ceiling = min(deploy + self.deploy_scan_ceiling, head)
        prelaunch = await self.find_first_transfer(addr, deploy, ceiling)
        if prelaunch is None:
            raise NotFoundError(f"no Transfer events found after deployment of {addr} (scanned {deploy}..{ceiling})")
        log.info("prelaunch block for %s: %d", addr, prelaunch)

        if not self.distinguish_prelaunch:
            return LaunchInfo(launch_block=prelaunch, prelaunch_block=prelaunch, source="chain", deploy_block=deploy)

        launch = await self.find_launch_after(addr, prelaunch, head)
        if launch is None:
            raise NotFoundError(f"no Transfer after prelaunch block {prelaunch} for {addr}; token may not have launched yet")
        log.info("launch block for %s: %d (%d blocks after prelaunch)", addr, launch, launch - prelaunch)
        return LaunchInfo(launch_block=launch, prelaunch_block=prelaunch, source="chain", deploy_block=deploy)

    async def estimate_from_market(self, token: Address, head: int) -> int | None:
        assert self.market is not None
        try:
            created = await self.market.earliest_pool_created_at(token)
        except Exception as e:  # aggregator is best-effort
            log.warning("market data lookup for %s failed, using on-chain search: %s", token, e)
            return None
        if created is None:
            return None
        elapsed = max(0.0, self._clock() - created.timestamp())
        blocks_ago = math.ceil(elapsed / self.block_time_s)
        return max(0, head - blocks_ago - self.safety_margin_blocks)

    async def _has_code(self, token: Address, block: int) -> bool:
        try:
            code = await call_with_retry(
                lambda: self.rpc.get_code(token, block),
                policy=self.retry, what=f"eth_getCode@{block}", sleep=self._sleep,
            )
        except RpcError as e:
            # treat as "not deployed yet" so the search moves forward
            log.warning("eth_getCode at block %d kept failing: %s", block, e)
            return False
        return bool(code) and code not in ("0x", "0x0")

    async def find_deploy_block(self, token: Address, head: int) -> int:
        """Lowest block with bytecode at `token`, in at most floor(log2(head+1))+1 probes."""
        lo, hi = 0, head
        found: int | None = None
        while lo <= hi:
            mid = (lo + hi) // 2
            if await self._has_code(token, mid):
                found = mid
                hi = mid - 1
            else:
                lo = mid + 1
        if found is None:
            raise NotFoundError(f"no contract code at {token} up to block {head}")
        return found

    async def _first_transfer_block(self, token: Address, start: int, stop: int) -> int | None:
        logs = await self.rpc.get_logs(token, _TRANSFERS, start, stop)
        return min(ev.block_number for ev in logs) if logs else None

    async def find_first_transfer(self, token: Address, start: int, ceiling: int) -> int | None:
        """First Transfer block in [start, ceiling], scanning fixed windows."""
        frm = start
        while frm <= ceiling:
            to = min(frm + self.window - 1, ceiling)
            try:
                found = await call_with_retry(
                    lambda: self._first_transfer_block(token, frm, to),
                    policy=self.retry, what=f"eth_getLogs {frm}-{to}", sleep=self._sleep,
                )
            except RpcError as e:
                log.warning("skipping blocks %d-%d while looking for first Transfer: %s", frm, to, e)
                found = None
            if found is not None:
                return found
            frm = to + 1
        return None

    async def find_launch_after(self, token: Address, prelaunch: int, head: int) -> int | None:
        """First Transfer in a block later than `prelaunch`, with a growing window."""
        frm = prelaunch + 1
        ceiling = min(prelaunch + self.launch_scan_ceiling, head)
        size = self.window
        while frm <= ceiling:
            to = min(frm + size - 1, ceiling)
            attempt = 0
            while True:
                try:
                    found = await self._first_transfer_block(token, frm, to)
                except RpcError as e:
                    attempt += 1
                    size = max(self.launch_window_min, size // 2)
                    if attempt >= self.retry.max_attempts:
                        log.warning("skipping blocks %d-%d while looking for launch: %s", frm, to, e)
                        found = None
                        break
                    await self._sleep(self.retry.delay(e, attempt))
                    to = min(frm + size - 1, ceiling)
                    continue
                break
            if found is not None:
                return found
            frm = to + 1
            if attempt == 0:
                size = min(size * 2, self.launch_window_max)
        return None
