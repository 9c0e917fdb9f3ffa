from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

import httpx

from ..domain.value_types import Address
from ..ports.market import MarketData

log = logging.getLogger(__name__)

GECKOTERMINAL_URL = "https://api.geckoterminal.com/api/v2"


def _parse_ts(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        # seconds, or milliseconds from some aggregators
        secs = value / 1000 if value > 10**11 else value
        return datetime.fromtimestamp(secs, tz=timezone.utc)
    try:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def earliest_created_at(payload: Any) -> datetime | None:
    """
    Oldest pool creation time in an aggregator response. Understands the
    GeckoTerminal JSON:API shape (`data[].attributes.pool_created_at`) and the
    flat `{pools: [{createdAt}]}` shape.
    """
    if not isinstance(payload, dict):
        return None
    stamps: list[datetime] = []
    for pool in payload.get("data") or []:
        attrs = pool.get("attributes") if isinstance(pool, dict) else None
        ts = _parse_ts((attrs or {}).get("pool_created_at"))
        if ts: stamps.append(ts)
    for pool in payload.get("pools") or []:
        ts = _parse_ts(pool.get("createdAt") if isinstance(pool, dict) else None)
        if ts: stamps.append(ts)
    return min(stamps) if stamps else None


class GeckoTerminalMarketData(MarketData):
    def __init__(
        self,
        base_url: str = GECKOTERMINAL_URL,
        network: str = "base",
        timeout_s: float = 10,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.network = network
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_s),
            headers={"Accept": "application/json"},
            transport=transport,
        )

    async def earliest_pool_created_at(self, token: Address) -> datetime | None:
        url = f"{self.base_url}/networks/{self.network}/tokens/{str(token).lower()}/pools"
        try:
            r = await self.client.get(url)
            if r.status_code != 200:
                log.info("market data: HTTP %s for %s", r.status_code, token)
                return None
            return earliest_created_at(r.json())
        except (httpx.HTTPError, ValueError) as e:
            log.warning("market data lookup failed for %s: %s", token, e)
            return None

    async def aclose(self) -> None:
        await self.client.aclose()
