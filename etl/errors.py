"""
Typed failures raised by fetch clients.

The pacing layer (etl/pacing.py) decides what to do with each of these:
    TransientError    → retried with backoff (connection resets, 5xx)
    RateLimitedError  → retried with backoff and counted (HTTP 429)
    ForbiddenError    → never retried; aborts the whole session (HTTP 403)
    FetchError        → anything else; fails the single key
"""


class FetchError(Exception):
    """A catalog request failed for a reason that retrying will not fix."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class TransientError(FetchError):
    """Connection reset, timeout, or a 5xx response."""


class RateLimitedError(TransientError):
    """The source server explicitly asked us to slow down."""


class ForbiddenError(FetchError):
    """The source server blocked us. Keep going and the block gets longer."""


class FetchCancelled(FetchError):
    """The session was aborted before the request was sent."""
