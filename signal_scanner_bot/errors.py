from __future__ import annotations

from typing import Optional


class FetchError(RuntimeError):
    """Upstream market-data request failed."""


class RateLimited(FetchError):
    def __init__(self, status: int, message: str = "", retry_after: Optional[float] = None):
        super().__init__(f"rate limited status={status} {message}".strip())
        self.status = status
        self.retry_after = retry_after


class TransientFetchError(FetchError):
    """Network, timeout, non-200 or parse failure."""


class RunAborted(RuntimeError):
    """A whole run could not continue. Carries the counts gathered so far."""

    def __init__(self, message: str, report=None):
        super().__init__(message)
        self.report = report
