from __future__ import annotations

from dataclasses import dataclass, field

import pytest

from taxscan.adapters.store_memory import MemoryStore
from taxscan.domain.decoding import TRANSFER_T0, address_topic
from taxscan.domain.errors import RangeTooLargeError, RpcError
from taxscan.domain.filters import TopicFilter
from taxscan.domain.models import LogEvent, Receipt
from taxscan.domain.value_types import Address

TAX_TOKEN = "0x0b3e328455c4059eeb9e3f84b5543f74e24e7e1b"
TAX_WALLET = "0x32487287c65f11d53bbca89c2472171eb09bf337"
TARGET = "0x1111111111111111111111111111111111111111"
ALICE = "0xaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa"
BOB = "0xbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbb"
ROUTER = "0xcccccccccccccccccccccccccccccccccccccccc"
POOL = "0xdddddddddddddddddddddddddddddddddddddddd"


def tx(n: int) -> str:
    return "0x" + f"{n:064x}"


def transfer_log(token: str, sender: str, recipient: str, amount: int, block: int, tx_hash: str, log_index: int = 0) -> LogEvent:
    return LogEvent(
        address=Address(token),
        topics=(TRANSFER_T0, address_topic(sender), address_topic(recipient)),
        data_hex="0x" + f"{amount:064x}",
        block_number=block,
        tx_hash=tx_hash,
        log_index=log_index,
    )


@dataclass
class FakeRPC:
    """Chain in memory. `max_span` makes eth_getLogs refuse wider ranges."""
    head: int = 1_000
    logs: list[LogEvent] = field(default_factory=list)
    senders: dict[str, str] = field(default_factory=dict)
    deploy_block: int | None = None
    max_span: int | None = None
    fail_ranges: set[tuple[int, int]] = field(default_factory=set)
    errors: list[Exception] = field(default_factory=list)
    calls: list[tuple] = field(default_factory=list)

    def add_payment(self, payer: str, amount: int, block: int, tx_hash: str, *, via: str | None = None,
                    touch_target: bool = True, log_index: int = 0) -> None:
        """A buy of TARGET by `payer` that sends `amount` of tax (from `via` or the payer) to the wallet."""
        self.senders[tx_hash] = payer
        self.logs.append(transfer_log(TAX_TOKEN, via or payer, TAX_WALLET, amount, block, tx_hash, log_index))
        if touch_target:
            self.logs.append(transfer_log(TARGET, POOL, payer, 10**18, block, tx_hash, log_index + 1))

    async def latest_block(self) -> int:
        self.calls.append(("eth_blockNumber",))
        return self.head

    async def get_logs(self, address, topics: TopicFilter, from_block: int, to_block: int) -> list[LogEvent]:
        self.calls.append(("eth_getLogs", from_block, to_block))
        if self.errors:
            raise self.errors.pop(0)
        if self.max_span is not None and to_block - from_block + 1 > self.max_span:
            raise RangeTooLargeError(f"block range too large: {from_block}-{to_block}")
        for lo, hi in self.fail_ranges:
            if from_block <= hi and lo <= to_block:
                raise RpcError("upstream unavailable")
        return [
            ev for ev in self.logs
            if ev.address == address.lower() and from_block <= ev.block_number <= to_block and topics.matches(ev)
        ]

    async def get_code(self, address, block: int) -> str:
        self.calls.append(("eth_getCode", block))
        if self.deploy_block is not None and block >= self.deploy_block:
            return "0x6080"
        return "0x"

    async def get_transaction_receipt(self, tx_hash: str) -> Receipt | None:
        self.calls.append(("eth_getTransactionReceipt", tx_hash))
        if tx_hash not in self.senders:
            return None
        return Receipt(
            tx_hash=tx_hash,
            sender=Address(self.senders[tx_hash]),
            logs=tuple(ev for ev in self.logs if ev.tx_hash == tx_hash),
        )

    def count(self, method: str) -> int:
        return sum(1 for c in self.calls if c[0] == method)


async def no_sleep(_: float) -> None:
    return None


class FakeClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, s: float) -> None:
        self.now += s


@pytest.fixture
def rpc() -> FakeRPC:
    return FakeRPC()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
