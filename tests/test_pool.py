import threading
import time

from etl import pool
from etl.pacing import CancelToken, FetchOutcome, OutcomeStatus


def _ok(key, cancel):
    return FetchOutcome(key, OutcomeStatus.OK, record=key.lower())


class TestWorkerPool:
    """Test bounded, cancellable dispatch."""

    def test_every_key_yields_one_outcome(self):
        keys = [f"CS {n}" for n in range(20)]
        outcomes = list(pool.run(keys, 4, _ok, CancelToken()))
        assert sorted(o.key for o in outcomes) == sorted(keys)
        assert all(o.ok for o in outcomes)

    def test_empty_key_list(self):
        assert list(pool.run([], 4, _ok, CancelToken())) == []

    def test_concurrency_is_bounded(self):
        lock = threading.Lock()
        state = {"running": 0, "peak": 0}

        def task(key, cancel):
            with lock:
                state["running"] += 1
                state["peak"] = max(state["peak"], state["running"])
            time.sleep(0.02)
            with lock:
                state["running"] -= 1
            return _ok(key, cancel)

        list(pool.run([str(n) for n in range(12)], 3, task, CancelToken()))
        assert 1 <= state["peak"] <= 3

    def test_cancelled_before_start(self):
        calls = []
        cancel = CancelToken()
        cancel.cancel("blocked")
        outcomes = list(pool.run(["a", "b", "c"], 2, lambda k, c: calls.append(k), cancel))
        assert calls == []
        assert {o.status for o in outcomes} == {OutcomeStatus.ABORTED}

    def test_cancel_stops_dispatch(self):
        started = []

        def task(key, cancel):
            started.append(key)
            if key == "b":
                cancel.cancel("blocked on b")
                return FetchOutcome(key, OutcomeStatus.BLOCKED)
            return _ok(key, cancel)

        outcomes = {o.key: o for o in pool.run(["a", "b", "c", "d"], 1, task, CancelToken())}
        assert started == ["a", "b"]
        assert outcomes["c"].status is OutcomeStatus.ABORTED
        assert outcomes["d"].status is OutcomeStatus.ABORTED

    def test_worker_crash_fails_only_that_key(self):
        def task(key, cancel):
            if key == "bad":
                raise RuntimeError("parser exploded")
            return _ok(key, cancel)

        outcomes = {o.key: o for o in pool.run(["good", "bad"], 2, task, CancelToken())}
        assert outcomes["good"].ok
        assert outcomes["bad"].status is OutcomeStatus.FAILED
        assert "exploded" in outcomes["bad"].error
