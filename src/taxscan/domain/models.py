from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any
from .value_types import Address, JobStatus, LaunchSource

TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed"})


@dataclass(slots=True, frozen=True)
class BlockRange:
    """Half-open block interval [start, end)."""
    start: int
    end: int

    def __post_init__(self) -> None:
        if self.start < 0 or self.start > self.end:
            raise ValueError(f"invalid block range [{self.start}, {self.end})")

    def span(self) -> int: return self.end - self.start
    def is_empty(self) -> bool: return self.start == self.end
    def last_block(self) -> int: return self.end - 1


@dataclass(slots=True, frozen=True)
class LogEvent:
    address: Address
    topics: tuple[str, ...]            # lowercased with 0x
    data_hex: str                      # hex with 0x (or "0x")
    block_number: int
    tx_hash: str                       # lowercased hex with 0x
    log_index: int

    @property
    def topic0(self) -> str | None:
        return self.topics[0] if self.topics else None

    @property
    def key(self) -> tuple[str, int]:
        return (self.tx_hash, self.log_index)


@dataclass(slots=True, frozen=True)
class Receipt:
    tx_hash: str
    sender: Address                    # receipt.from
    logs: tuple[LogEvent, ...]


@dataclass(slots=True, frozen=True)
class AttributedPayment:
    payer: Address
    amount: int                        # minor units (wei)


@dataclass(slots=True)
class AttributionResult:
    totals: dict[str, int] = field(default_factory=dict)
    valid_count: int = 0
    skipped_count: int = 0
    seen: set[tuple[str, int]] = field(default_factory=set)

    def add(self, payment: AttributedPayment) -> None:
        self.totals[payment.payer] = self.totals.get(payment.payer, 0) + payment.amount
        self.valid_count += 1

    def payments(self) -> list[AttributedPayment]:
        return [AttributedPayment(Address(a), v) for a, v in self.totals.items()]

    @property
    def total_amount(self) -> int:
        return sum(self.totals.values())

    def merge(self, other: "AttributionResult") -> "AttributionResult":
        out = AttributionResult(
            totals=dict(self.totals),
            valid_count=self.valid_count + other.valid_count,
            skipped_count=self.skipped_count + other.skipped_count,
            seen=self.seen | other.seen,
        )
        for addr, amount in other.totals.items():
            out.totals[addr] = out.totals.get(addr, 0) + amount
        return out


@dataclass(slots=True, frozen=True)
class LaunchInfo:
    launch_block: int
    prelaunch_block: int
    source: LaunchSource
    deploy_block: int | None = None


@dataclass(slots=True, frozen=True)
class LeaderboardEntry:
    rank: int
    address: str
    amount: int


@dataclass(slots=True, frozen=True)
class LeaderboardMeta:
    campaign_id: str
    total_users: int
    total_amount: int
    last_updated: float
    extra: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, str]:
        out = {
            "campaignId": self.campaign_id,
            "totalUsers": str(self.total_users),
            "totalTaxPaid": str(self.total_amount),
            "lastUpdated": str(int(self.last_updated * 1000)),
        }
        out.update(self.extra)
        return out

    @classmethod
    def from_dict(cls, d: dict[str, str]) -> "LeaderboardMeta":
        known = {"campaignId", "totalUsers", "totalTaxPaid", "lastUpdated"}
        return cls(
            campaign_id=d["campaignId"],
            total_users=int(d.get("totalUsers") or 0),
            total_amount=int(d.get("totalTaxPaid") or 0),
            last_updated=int(d.get("lastUpdated") or 0) / 1000,
            extra={k: v for k, v in d.items() if k not in known},
        )


# Block numbers and counters persist as decimal strings so that no JSON
# consumer ever rounds them through a double.
_INT_FIELDS = {
    "start_block": "startBlock", "current_block": "currentBlock", "end_block": "endBlock",
    "total_scanned": "totalScanned", "valid_tx_count": "validTxCount",
    "skipped_tx_count": "skippedTxCount", "error_count": "errorCount",
}
_TS_FIELDS = {
    "created_at": "createdAt", "last_scan_at": "lastScanAt", "completed_at": "completedAt",
    "failed_at": "failedAt", "stopped_at": "stoppedAt", "resumed_at": "resumedAt",
    "last_error_at": "lastErrorAt",
}


@dataclass(slots=True)
class ScanJob:
    campaign_id: str
    target_token: str
    tax_wallet: str
    start_block: int
    current_block: int
    end_block: int
    status: JobStatus = "active"
    error_count: int = 0
    last_error: str | None = None
    total_scanned: int = 0
    valid_tx_count: int = 0
    skipped_tx_count: int = 0
    name: str = ""
    logo_url: str = ""
    created_at: float | None = None
    last_scan_at: float | None = None
    completed_at: float | None = None
    failed_at: float | None = None
    stopped_at: float | None = None
    resumed_at: float | None = None
    last_error_at: float | None = None

    def __post_init__(self) -> None:
        self.target_token = self.target_token.lower()
        self.tax_wallet = self.tax_wallet.lower()
        if not (self.start_block <= self.current_block <= self.end_block):
            raise ValueError(
                f"job {self.campaign_id!r}: expected start <= current <= end, got "
                f"{self.start_block} / {self.current_block} / {self.end_block}"
            )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def total_blocks(self) -> int: return self.end_block - self.start_block
    @property
    def scanned_blocks(self) -> int: return self.current_block - self.start_block
    @property
    def remaining_blocks(self) -> int: return self.end_block - self.current_block

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "campaignId": self.campaign_id,
            "targetToken": self.target_token,
            "taxWallet": self.tax_wallet,
            "status": self.status,
            "lastError": self.last_error,
            "name": self.name or self.campaign_id,
            "logoUrl": self.logo_url,
        }
        for attr, key in _INT_FIELDS.items():
            out[key] = str(getattr(self, attr))
        for attr, key in _TS_FIELDS.items():
            v = getattr(self, attr)
            out[key] = None if v is None else int(v * 1000)
        return out

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "ScanJob":
        kwargs: dict[str, Any] = {
            "campaign_id": d["campaignId"],
            "target_token": d["targetToken"],
            "tax_wallet": d["taxWallet"],
            "status": d.get("status", "active"),
            "last_error": d.get("lastError"),
            "name": d.get("name") or "",
            "logo_url": d.get("logoUrl") or "",
        }
        for attr, key in _INT_FIELDS.items():
            if d.get(key) is not None:
                kwargs[attr] = int(d[key])
        for attr, key in _TS_FIELDS.items():
            if d.get(key) is not None:
                kwargs[attr] = int(d[key]) / 1000
        return cls(**kwargs)


@dataclass(slots=True, frozen=True)
class JobStatusReport:
    job: ScanJob
    progress_percent: float
    scanned_blocks: int
    remaining_blocks: int
    estimated_remaining_s: float

    def to_dict(self) -> dict[str, Any]:
        out = self.job.to_dict()
        out["stats"] = {
            "totalBlocks": str(self.job.total_blocks),
            "scannedBlocks": str(self.scanned_blocks),
            "remainingBlocks": str(self.remaining_blocks),
            "progressPercent": f"{self.progress_percent:.2f}",
            "estimatedRemainingMinutes": f"{self.estimated_remaining_s / 60:.1f}",
        }
        return out
