from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from .errors import RateLimited, TransientFetchError

log = logging.getLogger("retry")

T = TypeVar("T")


class RetryPolicy:
    """Retries one upstream call.

    Rate limits back off exponentially (base, 2*base, 4*base ... capped) for up
    to ``max_retries`` retries. Other transient failures get
    ``transient_retries`` retries after a fixed pause. Anything else propagates.
    """

    def __init__(
        self,
        *,
        max_retries: int = 3,
        backoff_base_s: float = 2.0,
        backoff_cap_s: float = 10.0,
        transient_retries: int = 1,
        transient_delay_s: float = 0.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.max_retries = max_retries
        self.backoff_base_s = backoff_base_s
        self.backoff_cap_s = backoff_cap_s
        self.transient_retries = transient_retries
        self.transient_delay_s = transient_delay_s
        self.sleep = sleep

    @classmethod
    def from_delay_ms(
        cls,
        request_delay_ms: int,
        max_retries: int,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> "RetryPolicy":
        return cls(
            max_retries=max_retries,
            transient_delay_s=request_delay_ms / 1000.0,
            sleep=sleep or asyncio.sleep,
        )

    def backoff_for(self, retry_no: int) -> float:
        """Pause before retry number ``retry_no`` (1-based) after a rate limit."""
        return min(self.backoff_base_s * (2 ** (retry_no - 1)), self.backoff_cap_s)

    async def call(self, fn: Callable[[], Awaitable[T]], *, label: str = "") -> T:
        rate_retries = 0
        transient = 0
        while True:
            try:
                return await fn()
            except RateLimited as e:
                if rate_retries >= self.max_retries:
                    log.warning("rate_limit_exhausted call=%s retries=%d", label, rate_retries)
                    raise
                rate_retries += 1
                delay = self.backoff_for(rate_retries)
                if e.retry_after:
                    delay = min(max(delay, e.retry_after), self.backoff_cap_s)
                log.warning("rate_limited call=%s retry=%d/%d sleep=%.1fs", label, rate_retries, self.max_retries, delay)
                await self.sleep(delay)
            except TransientFetchError as e:
                if transient >= self.transient_retries:
                    raise
                transient += 1
                log.info("transient_retry call=%s sleep=%.1fs err=%s", label, self.transient_delay_s, e)
                await self.sleep(self.transient_delay_s)
