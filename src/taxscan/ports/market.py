# taxscan/ports/market.py
from __future__ import annotations

from datetime import datetime
from typing import Protocol
from ..domain.value_types import Address


class MarketData(Protocol):
    """Best-effort market-data aggregator used for fast launch detection."""

    async def earliest_pool_created_at(self, token: Address) -> datetime | None:
        """Creation time of the token's oldest trading pool, or None if unknown."""
