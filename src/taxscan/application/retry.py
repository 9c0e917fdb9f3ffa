from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from ..domain.errors import RateLimitedError, RpcError

T = TypeVar("T")
Sleep = Callable[[float], Awaitable[None]]

log = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    rate_limit_delay_s: float = 1.5    # x attempt
    error_delay_s: float = 0.5         # x attempt
    max_delay_s: float = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    def delay(self, err: BaseException, attempt: int) -> float:
        """Linear backoff; rate limits wait longer and honour Retry-After."""
        if isinstance(err, RateLimitedError):
            d = self.rate_limit_delay_s * attempt
            if err.retry_after:
                d = max(d, err.retry_after)
        else:
            d = self.error_delay_s * attempt
        return min(d, self.max_delay_s)


def is_retryable(err: BaseException) -> bool:
    return not (isinstance(err, RpcError) and err.permanent)


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    what: str,
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Run `fn` until it succeeds or the attempt budget is spent; re-raise the last error."""
    attempt = 0
    while True:
        attempt += 1
        try:
            return await fn()
        except RpcError as e:
            if not is_retryable(e) or attempt >= policy.max_attempts:
                raise
            d = policy.delay(e, attempt)
            if attempt >= 2:
                log.warning("%s retry %d/%d (waiting %.1fs): %s", what, attempt, policy.max_attempts, d, str(e)[:120])
            await sleep(d)
