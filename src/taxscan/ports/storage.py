# taxscan/ports/storage.py
from __future__ import annotations

from typing import Any, Protocol


class JobStore(Protocol):
    """Port for persisted scan-job records and the active-jobs index."""

    async def get_job(self, campaign_id: str) -> dict[str, Any] | None:
        """Return the stored job record, or None."""

    async def put_job(self, campaign_id: str, record: dict[str, Any]) -> None:
        """Overwrite the job record."""

    async def delete_job(self, campaign_id: str) -> None:
        """Remove the job record and its active-set membership."""

    async def add_active(self, campaign_id: str) -> None: ...
    async def remove_active(self, campaign_id: str) -> None: ...
    async def active_ids(self) -> set[str]: ...

    async def acquire_lease(self, key: str, ttl_s: float) -> bool:
        """Set-if-absent with expiry; True when the caller now holds `key`."""

    async def release_lease(self, key: str) -> None: ...


class LeaderboardStore(Protocol):
    """Port for per-campaign exact cumulative amounts plus a metadata record."""

    async def add_amount(self, campaign_id: str, address: str, amount: int) -> int:
        """Atomically add `amount` to `address`'s score; return the new score."""

    async def get_amount(self, campaign_id: str, address: str) -> int:
        """Current score (0 when absent)."""

    async def all_amounts(self, campaign_id: str) -> dict[str, int]: ...

    async def clear(self, campaign_id: str) -> None:
        """Drop every entry and the metadata record of a campaign."""

    async def put_meta(self, campaign_id: str, meta: dict[str, str]) -> None: ...
    async def get_meta(self, campaign_id: str) -> dict[str, str] | None: ...
