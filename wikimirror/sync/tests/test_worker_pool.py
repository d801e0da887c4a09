"""
Tests for the bounded worker pool: isolation, timeouts and cancellation.
"""

import threading
import time

import pytest

from ..error_tracker import TaskCancelled
from ..worker_pool import CancellationToken, WorkerPool


class TestCancellationToken:

    def test_raise_if_cancelled(self):
        token = CancellationToken()
        token.raise_if_cancelled()

        token.cancel("timed out")

        assert token.cancelled
        with pytest.raises(TaskCancelled):
            token.raise_if_cancelled()


class TestWorkerPool:

    def test_returns_one_outcome_per_distinct_item(self):
        outcomes = WorkerPool(max_workers=2).gather(lambda item, token: item * 2, [1, 2, 2, 3])

        assert list(outcomes) == [1, 2, 3]
        assert [o.value for o in outcomes.values()] == [2, 4, 6]
        assert all(o.ok for o in outcomes.values())

    def test_empty_input(self):
        assert WorkerPool().gather(lambda item, token: item, []) == {}

    def test_failure_is_isolated(self):
        def work(item, token):
            if item == 4:
                raise RuntimeError("boom")
            return item

        outcomes = WorkerPool(max_workers=3).gather(work, list(range(10)))

        assert not outcomes[4].ok
        assert isinstance(outcomes[4].exception, RuntimeError)
        assert sum(1 for o in outcomes.values() if o.ok) == 9

    def test_concurrency_is_bounded(self):
        active = 0
        peak = 0
        lock = threading.Lock()

        def work(item, token):
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            time.sleep(0.02)
            with lock:
                active -= 1
            return item

        WorkerPool(max_workers=2).gather(work, range(8))

        assert peak <= 2

    def test_slow_task_times_out_and_is_cancelled(self):
        tokens = {}

        def work(item, token):
            tokens[item] = token
            if item == "slow":
                while not token.cancelled:
                    time.sleep(0.01)
                token.raise_if_cancelled()
            return item

        outcomes = WorkerPool(max_workers=2, task_timeout=0.2).gather(work, ["fast", "slow"])

        assert outcomes["fast"].value == "fast"
        assert outcomes["slow"].timed_out
        assert isinstance(outcomes["slow"].exception, TaskCancelled)
        assert tokens["slow"].cancelled
        assert not tokens["fast"].cancelled

    def test_rejects_empty_pool(self):
        with pytest.raises(ValueError):
            WorkerPool(max_workers=0)

    def test_failing_heartbeat_cancels_unfinished_tasks(self):
        tokens = {}
        started = threading.Event()

        def work(item, token):
            tokens[item] = token
            started.set()
            while not token.cancelled:
                time.sleep(0.01)
            token.raise_if_cancelled()

        def heartbeat():
            if started.is_set():
                raise RuntimeError("lock lost")

        with pytest.raises(RuntimeError):
            WorkerPool(max_workers=1, task_timeout=None).gather(work, ["a", "b"], heartbeat=heartbeat)

        assert tokens["a"].cancelled
