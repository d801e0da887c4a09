"""
Tests for the per-source run lock.
"""

import time

import pytest

from ..error_tracker import RunLockLost
from ..run_lock import LockKeeper, RunLock, run_lock_key


class FakeClock:
    def __init__(self):
        self.now = 1_700_000_000.0

    def __call__(self):
        return self.now


class TestRunLock:

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def lock(self, tmp_path, clock):
        return RunLock(tmp_path / "wikimirror.sqlite", clock=clock)

    def test_key_format(self):
        assert run_lock_key("osrs") == "sync:osrs"

    def test_second_acquire_is_refused(self, lock):
        token = lock.acquire("sync:osrs", 3600)

        assert token is not None
        assert lock.acquire("sync:osrs", 3600) is None
        assert lock.is_locked("sync:osrs")

    def test_sources_lock_independently(self, lock):
        assert lock.acquire("sync:osrs", 3600) is not None
        assert lock.acquire("sync:nlab", 3600) is not None

    def test_release_frees_the_key(self, lock):
        token = lock.acquire("sync:osrs", 3600)

        assert lock.release("sync:osrs", token)
        assert not lock.is_locked("sync:osrs")
        assert lock.acquire("sync:osrs", 3600) is not None

    def test_release_with_wrong_token_keeps_lock(self, lock):
        lock.acquire("sync:osrs", 3600)

        assert not lock.release("sync:osrs", "not-the-owner")
        assert lock.is_locked("sync:osrs")

    def test_expired_lock_is_taken_over(self, lock, clock):
        stale = lock.acquire("sync:osrs", 60)
        clock.now += 61

        assert not lock.is_locked("sync:osrs")
        fresh = lock.acquire("sync:osrs", 60)
        assert fresh is not None
        assert not lock.release("sync:osrs", stale)
        assert lock.release("sync:osrs", fresh)

    def test_lock_is_shared_across_instances(self, tmp_path, clock):
        first = RunLock(tmp_path / "shared.sqlite", clock=clock)
        second = RunLock(tmp_path / "shared.sqlite", clock=clock)

        assert first.acquire("sync:wikipedia", 3600) is not None
        assert second.acquire("sync:wikipedia", 3600) is None

    def test_refresh_extends_the_expiry(self, lock, clock):
        token = lock.acquire("sync:osrs", 60)
        clock.now += 50

        assert lock.refresh("sync:osrs", token, 60)
        clock.now += 50
        assert lock.is_locked("sync:osrs")
        assert lock.acquire("sync:osrs", 60) is None

    def test_refresh_after_takeover_reports_loss(self, lock, clock):
        stale = lock.acquire("sync:osrs", 60)
        clock.now += 61
        lock.acquire("sync:osrs", 60)

        assert not lock.refresh("sync:osrs", stale, 60)


class TestLockKeeper:

    @pytest.fixture
    def lock(self, tmp_path):
        return RunLock(tmp_path / "wikimirror.sqlite")

    def test_keeps_the_lock_past_its_ttl(self, lock):
        token = lock.acquire("sync:osrs", 0.3)

        with LockKeeper(lock, "sync:osrs", token, 0.3) as keeper:
            time.sleep(0.6)
            assert lock.acquire("sync:osrs", 0.3) is None
            keeper.check()

        assert lock.release("sync:osrs", token)

    def test_check_raises_once_the_lock_is_lost(self, lock):
        token = lock.acquire("sync:osrs", 60)
        lock.release("sync:osrs", token)

        with LockKeeper(lock, "sync:osrs", token, 60, interval=0.05) as keeper:
            time.sleep(0.2)
            with pytest.raises(RunLockLost):
                keeper.check()
        assert keeper.lost
