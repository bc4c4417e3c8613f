"""
Pacing and retry around a fetch client.

Every attempt waits a jittered delay first (base delay ± 30% by default,
floored at a minimum) so requests never go out on a fixed interval. Failures
go through a RetryPolicy, whose classifier maps each exception to a Verdict:

    RETRY  transient errors and rate limiting: exponential backoff with
           random jitter, up to max_attempts
    ABORT  hard block (HTTP 403): no retry; the shared CancelToken is set so
           the pool stops dispatching
    FAIL   anything else: the key fails, the run goes on

fetch() never raises for a fetch failure; it returns a FetchOutcome whose
status says what happened.
"""

import logging
import random
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from etl.errors import FetchCancelled, FetchError, ForbiddenError, RateLimitedError, TransientError

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

class CancelToken:
    """Session-wide abort signal, passed explicitly to every task and fetch."""

    def __init__(self):
        self._event = threading.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to timeout seconds; return True early if cancelled."""
        return self._event.wait(timeout)


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------

class Verdict(Enum):
    RETRY = "retry"
    ABORT = "abort"
    FAIL = "fail"


def classify_error(exc: Exception) -> Verdict:
    if isinstance(exc, ForbiddenError):
        return Verdict.ABORT
    if isinstance(exc, TransientError):
        return Verdict.RETRY
    return Verdict.FAIL


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_backoff: float = 1.0
    max_backoff: float = 30.0
    backoff_jitter: float = 0.5
    classify: Callable[[Exception], Verdict] = classify_error

    def backoff(self, attempt: int, rng: random.Random) -> float:
        """Seconds to wait after failed attempt number `attempt` (1-based)."""
        delay = self.base_backoff * 2 ** (attempt - 1)
        return min(self.max_backoff, delay + rng.uniform(0, delay * self.backoff_jitter))


class RateLimitCounter:
    """Shared count of rate-limit responses; warns once past the threshold."""

    def __init__(self, warn_threshold: int = 5):
        self.warn_threshold = warn_threshold
        self._count = 0
        self._lock = threading.Lock()

    @property
    def count(self) -> int:
        return self._count

    def increment(self) -> int:
        with self._lock:
            self._count += 1
            count = self._count
        if count == self.warn_threshold + 1:
            log.warning(
                "Rate limited %d times. Consider raising REQUEST_DELAY or lowering CONCURRENCY.",
                count,
            )
        return count


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------

class OutcomeStatus(Enum):
    OK = "ok"
    FAILED = "failed"
    BLOCKED = "blocked"
    ABORTED = "aborted"


@dataclass(frozen=True)
class FetchOutcome:
    key: str
    status: OutcomeStatus
    record: Any = None
    error: str | None = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.status is OutcomeStatus.OK


class FetchClient(Protocol):
    def fetch(self, key: str, cancel: CancelToken) -> Any:
        ...


# ---------------------------------------------------------------------------
# Paced fetcher
# ---------------------------------------------------------------------------

@dataclass
class PacedFetcher:
    client: FetchClient | None = None
    delay: float = 1.0
    jitter: float = 0.3
    min_delay: float = 0.25
    policy: RetryPolicy = field(default_factory=RetryPolicy)
    rate_limits: RateLimitCounter = field(default_factory=RateLimitCounter)
    rng: random.Random = field(default_factory=random.Random)

    @classmethod
    def from_settings(
        cls,
        settings,
        client: FetchClient | None = None,
        rate_limits: RateLimitCounter | None = None,
    ) -> "PacedFetcher":
        """Pacing and retry configured from crawler Settings."""
        return cls(
            client,
            delay=settings.request_delay,
            min_delay=settings.min_request_delay,
            policy=RetryPolicy(max_attempts=settings.max_retries, base_backoff=settings.retry_backoff),
            rate_limits=rate_limits or RateLimitCounter(settings.rate_limit_warning),
        )

    def pacing_delay(self) -> float:
        jittered = self.delay * (1 + self.rng.uniform(-self.jitter, self.jitter))
        return max(self.min_delay, jittered)

    def fetch(self, key: str, cancel: CancelToken) -> FetchOutcome:
        return self.call(key, lambda: self.client.fetch(key, cancel), cancel)

    def call(self, label: str, fn: Callable[[], Any], cancel: CancelToken) -> FetchOutcome:
        """Run fn() with pacing and the retry policy; label names it in logs and the outcome."""
        attempt = 0
        while True:
            if cancel.is_set() or cancel.wait(self.pacing_delay()):
                return FetchOutcome(label, OutcomeStatus.ABORTED, attempts=attempt)

            attempt += 1
            try:
                result = fn()
            except FetchCancelled:
                return FetchOutcome(label, OutcomeStatus.ABORTED, attempts=attempt)
            except Exception as exc:
                if isinstance(exc, RateLimitedError):
                    self.rate_limits.increment()
                verdict = self.policy.classify(exc)

                if verdict is Verdict.ABORT:
                    log.error("Blocked by the source server on %s: %s", label, exc)
                    cancel.cancel(f"blocked on {label}")
                    return FetchOutcome(label, OutcomeStatus.BLOCKED, error=str(exc), attempts=attempt)

                if verdict is Verdict.RETRY and attempt < self.policy.max_attempts:
                    wait = self.policy.backoff(attempt, self.rng)
                    log.warning(
                        "Request failed (attempt %d/%d) %s: %s; retrying in %.1fs",
                        attempt, self.policy.max_attempts, label, exc, wait,
                    )
                    if cancel.wait(wait):
                        return FetchOutcome(label, OutcomeStatus.ABORTED, error=str(exc), attempts=attempt)
                    continue

                if not isinstance(exc, FetchError):
                    log.exception("Unexpected error fetching %s", label)
                else:
                    log.warning("Giving up on %s after %d attempt(s): %s", label, attempt, exc)
                return FetchOutcome(label, OutcomeStatus.FAILED, error=str(exc), attempts=attempt)

            return FetchOutcome(label, OutcomeStatus.OK, record=result, attempts=attempt)
