"""
Bounded worker pool over a list of catalog keys.

Outcomes are yielded as tasks finish, not in submission order. Each task
checks the CancelToken when a worker picks it up; once the token is set,
every task that has not started yet comes back ABORTED without a request.
Tasks already in flight are left to settle.
"""

import concurrent.futures
import logging
from collections.abc import Callable, Iterable, Iterator

from etl.pacing import CancelToken, FetchOutcome, OutcomeStatus

log = logging.getLogger(__name__)

Task = Callable[[str, CancelToken], FetchOutcome]


def _guarded(task: Task, key: str, cancel: CancelToken) -> FetchOutcome:
    if cancel.is_set():
        return FetchOutcome(key, OutcomeStatus.ABORTED)
    return task(key, cancel)


def run(
    keys: Iterable[str],
    concurrency: int,
    task: Task,
    cancel: CancelToken,
) -> Iterator[FetchOutcome]:
    """Run task(key, cancel) for every key on `concurrency` threads; yield in completion order."""
    keys = list(keys)
    if not keys:
        return
    with concurrent.futures.ThreadPoolExecutor(max_workers=max(1, concurrency)) as executor:
        future_to_key = {executor.submit(_guarded, task, key, cancel): key for key in keys}
        try:
            for future in concurrent.futures.as_completed(future_to_key):
                key = future_to_key[future]
                try:
                    outcome = future.result()
                except Exception as exc:
                    log.exception("Worker crashed on %s", key)
                    outcome = FetchOutcome(key, OutcomeStatus.FAILED, error=str(exc))
                yield outcome
        finally:
            # Consumer stopped early: drop whatever has not started
            for future in future_to_key:
                future.cancel()
