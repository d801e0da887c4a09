"""
Tests for the Sync Run ledger.
"""

from datetime import datetime, timedelta, timezone

import pytest

from ..error_tracker import SyncError, RunStateError
from ..ledger import SyncRunLedger
from ..results import RunStatus, SyncStats


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class TestSyncRunLedger:
    """Test the run lifecycle and watermark queries."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def ledger(self, tmp_path, clock):
        return SyncRunLedger(tmp_path / "wikimirror.sqlite", clock=clock)

    def test_start_inserts_running_run(self, ledger):
        run = ledger.start("osrs", "full_sync")

        stored = ledger.get(run.id)
        assert stored.status is RunStatus.RUNNING
        assert stored.strategy == "full_sync"
        assert stored.completed_at is None

    def test_complete_records_counters_and_errors(self, ledger, clock):
        run = ledger.start("osrs", "full_sync")
        clock.advance(30)
        stats = SyncStats(created=2, updated=1, unchanged=3, errors=1,
                          error_records=[SyncError(message="gone", slug="x", phase="fetch", reason="not_found")])

        ledger.complete(run, stats=stats)

        stored = ledger.get(run.id)
        assert stored.status is RunStatus.COMPLETED
        assert stored.pages_processed == 7
        assert stored.pages_created == 2
        assert stored.pages_updated == 1
        assert stored.pages_unchanged == 3
        assert stored.errors[0]["reason"] == "not_found"
        assert stored.errors[0]["slug"] == "x"
        assert stored.duration_seconds == 30

    def test_failed_run_has_message_and_zero_counters(self, ledger):
        run = ledger.start("nlab", "full_sync")

        ledger.complete(run, error="git clone exited with 128")

        stored = ledger.get(run.id)
        assert stored.status is RunStatus.FAILED
        assert stored.error_message == "git clone exited with 128"
        assert stored.pages_processed == 0
        assert stored.completed_at is not None

    def test_run_is_finalized_once(self, ledger):
        run = ledger.start("osrs", "refresh")
        ledger.complete(run, stats=SyncStats())

        with pytest.raises(RunStateError):
            ledger.complete(run, error="late failure")
        assert ledger.get(run.id).status is RunStatus.COMPLETED

    def test_complete_requires_exactly_one_of_stats_or_error(self, ledger):
        run = ledger.start("osrs", "refresh")

        with pytest.raises(ValueError):
            ledger.complete(run)
        with pytest.raises(ValueError):
            ledger.complete(run, stats=SyncStats(), error="both")

    def test_last_completed_at_ignores_failed_and_other_sources(self, ledger, clock):
        assert ledger.last_completed_at("osrs") is None

        first = ledger.start("osrs", "recent_changes")
        clock.advance(60)
        ledger.complete(first, stats=SyncStats())
        expected = clock.now

        clock.advance(60)
        failed = ledger.start("osrs", "recent_changes")
        clock.advance(60)
        ledger.complete(failed, error="boom")

        other = ledger.start("nlab", "recent_changes")
        clock.advance(60)
        ledger.complete(other, stats=SyncStats())

        assert ledger.last_completed_at("osrs") == expected

    def test_recent_lists_newest_first(self, ledger):
        ids = [ledger.start("osrs", f"search:{i}").id for i in range(3)]
        ledger.start("nlab", "full_sync")

        assert [run.id for run in ledger.recent("osrs")] == list(reversed(ids))
        assert len(ledger.recent(limit=2)) == 2
