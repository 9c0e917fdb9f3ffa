from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import BlockRange


class TaxScanError(Exception):
    """Root of every error raised by taxscan."""


class ConfigError(TaxScanError):
    pass


class RpcError(TaxScanError):
    """A JSON-RPC call failed. `transient` errors are worth retrying."""

    def __init__(self, message: str, *, transient: bool = True, code: int | None = None) -> None:
        super().__init__(message)
        self.transient = transient
        self.code = code

    @property
    def permanent(self) -> bool:
        return not self.transient


class RateLimitedError(RpcError):
    def __init__(self, message: str, *, retry_after: float | None = None, code: int | None = None) -> None:
        super().__init__(message, transient=True, code=code)
        self.retry_after = retry_after


class RangeTooLargeError(RpcError):
    """Provider refused the query scope; shrink the block range and retry."""

    def __init__(self, message: str, *, code: int | None = None) -> None:
        super().__init__(message, transient=True, code=code)


class ChunkFailedError(RpcError):
    """Retries for one sub-range were exhausted under the `abort` policy."""

    def __init__(self, block_range: "BlockRange", cause: BaseException) -> None:
        super().__init__(
            f"logs for blocks [{block_range.start}, {block_range.end}) failed: {cause}",
            transient=False,
        )
        self.block_range = block_range
        self.cause = cause


class InvalidAddressError(TaxScanError, ValueError):
    """A user-supplied value is not a 20-byte hex address."""


class NotFoundError(TaxScanError):
    pass


class JobNotFoundError(NotFoundError):
    def __init__(self, campaign_id: str) -> None:
        super().__init__(f"no scan job for campaign {campaign_id!r}")
        self.campaign_id = campaign_id


class IllegalTransitionError(TaxScanError):
    def __init__(self, campaign_id: str, status: str, action: str) -> None:
        super().__init__(f"cannot {action} job {campaign_id!r} in status {status!r}")
        self.campaign_id = campaign_id
        self.status = status
        self.action = action


class JobBusyError(TaxScanError):
    """Another writer holds the campaign, or its incremental job is still active."""
