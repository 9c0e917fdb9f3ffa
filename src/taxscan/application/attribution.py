from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Iterator, Protocol, Sequence

from ..domain.decoding import Transfer, decode_transfer, is_transfer, normalize_address
from ..domain.errors import RpcError
from ..domain.models import AttributedPayment, AttributionResult, LogEvent, Receipt
from ..domain.value_types import Address, AttributionMode
from ..ports.rpc import RPCClient
from .retry import RetryPolicy, Sleep, call_with_retry

log = logging.getLogger(__name__)


class AttributionStrategy(Protocol):
    needs_target_logs: bool

    async def attribute(
        self,
        tax_logs: Sequence[LogEvent],
        target_logs: Sequence[LogEvent] = (),
    ) -> AttributionResult:
        """Per-payer totals for tax-currency Transfer logs into the tax wallet."""


def _tax_payments(tax_logs: Iterable[LogEvent], result: AttributionResult) -> Iterator[Transfer]:
    """
    Decode each tax Transfer once per (tx_hash, log_index). The key is the
    log, not the transaction: a transaction that pays the tax wallet twice
    contributes both transfers, and only a re-delivered log is dropped.
    Repeats are ignored; malformed logs are counted as skipped. Neither
    reaches the caller.
    """
    for ev in tax_logs:
        if ev.key in result.seen:
            log.debug("duplicate tax log %s#%d ignored", ev.tx_hash, ev.log_index)
            continue
        result.seen.add(ev.key)
        tr = decode_transfer(ev)
        if tr is None:
            log.warning("malformed tax Transfer log %s#%d skipped", ev.tx_hash, ev.log_index)
            result.skipped_count += 1
            continue
        yield tr


class IntersectionAttribution:
    """
    No extra RPC: a tax transfer counts when its transaction also moved the
    target token (membership of tx hashes seen in target-token Transfer logs).
    The payer is the tax Transfer's `from` (topic 1), which can differ from
    the transaction signer for relayed or multi-hop transactions.
    """
    needs_target_logs = True

    def __init__(self, target_token: str) -> None:
        self.target_token = normalize_address(target_token)

    async def attribute(
        self,
        tax_logs: Sequence[LogEvent],
        target_logs: Sequence[LogEvent] = (),
    ) -> AttributionResult:
        touched = {ev.tx_hash for ev in target_logs if ev.address == self.target_token and is_transfer(ev)}
        result = AttributionResult()
        for tr in _tax_payments(tax_logs, result):
            if tr.tx_hash in touched:
                result.add(AttributedPayment(tr.sender, tr.amount))
            else:
                result.skipped_count += 1
        return result


class ReceiptAttribution:
    """
    One receipt per candidate transaction: a tax transfer counts when any
    Transfer in the receipt was emitted by the target token, and it is
    credited to the transaction sender (`receipt.from`).
    """
    needs_target_logs = False

    def __init__(
        self,
        rpc: RPCClient,
        target_token: str,
        *,
        retry: RetryPolicy = RetryPolicy(),
        batch_size: int = 5,
        batch_delay_s: float = 0.6,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.rpc = rpc
        self.target_token = normalize_address(target_token)
        self.retry = retry
        self.batch_size = max(1, batch_size)
        self.batch_delay_s = batch_delay_s
        self._sleep = sleep

    def _touches_target(self, receipt: Receipt) -> bool:
        return any(is_transfer(ev) and ev.address == self.target_token for ev in receipt.logs)

    async def _receipt(self, tx_hash: str) -> Receipt | None:
        return await call_with_retry(
            lambda: self.rpc.get_transaction_receipt(tx_hash),
            policy=self.retry, what=f"eth_getTransactionReceipt {tx_hash[:10]}", sleep=self._sleep,
        )

    async def attribute(
        self,
        tax_logs: Sequence[LogEvent],
        target_logs: Sequence[LogEvent] = (),
    ) -> AttributionResult:
        result = AttributionResult()
        receipts: dict[str, Receipt | None] = {}
        fetched = 0
        for tr in _tax_payments(tax_logs, result):
            if tr.tx_hash not in receipts:
                if fetched and fetched % self.batch_size == 0 and self.batch_delay_s > 0:
                    await self._sleep(self.batch_delay_s)
                fetched += 1
                try:
                    receipts[tr.tx_hash] = await self._receipt(tr.tx_hash)
                except RpcError as e:
                    log.warning("receipt for %s unavailable, transfer skipped: %s", tr.tx_hash, e)
                    receipts[tr.tx_hash] = None
            receipt = receipts[tr.tx_hash]
            if receipt is None:
                result.skipped_count += 1
                continue
            if self._touches_target(receipt):
                result.add(AttributedPayment(Address(receipt.sender.lower()), tr.amount))
            else:
                result.skipped_count += 1
        return result


def make_strategy(
    mode: AttributionMode,
    *,
    rpc: RPCClient,
    target_token: str,
    retry: RetryPolicy = RetryPolicy(),
    sleep: Sleep = asyncio.sleep,
) -> AttributionStrategy:
    if mode == "receipt":
        return ReceiptAttribution(rpc, target_token, retry=retry, sleep=sleep)
    if mode == "intersection":
        return IntersectionAttribution(target_token)
    raise ValueError(f"unknown attribution mode {mode!r}")
