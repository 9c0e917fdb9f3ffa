# taxscan/ports/rpc.py
from __future__ import annotations

from typing import Protocol
from ..domain.filters import TopicFilter
from ..domain.models import LogEvent, Receipt
from ..domain.value_types import Address


class RPCClient(Protocol):
    """Port defining the contract for an Ethereum JSON-RPC client."""

    async def get_logs(
        self,
        address: Address,
        topics: TopicFilter,
        from_block: int,
        to_block: int,
    ) -> list[LogEvent]:
        """Return normalized, typed logs for [from_block, to_block] inclusive."""

    async def latest_block(self) -> int:
        """Return the latest block number as an integer."""

    async def get_code(self, address: Address, block: int) -> str:
        """Return the contract bytecode at `block` ("0x" when there is none)."""

    async def get_transaction_receipt(self, tx_hash: str) -> Receipt | None:
        """Return the receipt, or None when the node does not know the transaction."""
