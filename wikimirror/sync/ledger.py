"""
Sync Run ledger.

Each orchestrator invocation is recorded as a row in ``sync_runs``. A run
is inserted as ``running`` and finalized exactly once, either as
``completed`` (with its counters) or as ``failed`` (with an error message).
Both terminal states set ``completed_at``. The most recent ``completed_at``
of a source's completed runs is the watermark for incremental syncs.
"""

import json
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ..config import get_logger
from .error_tracker import RunStateError
from .results import RunStatus, SyncStats
from .store import utc_now

logger = get_logger(__name__)


@dataclass
class SyncRun:
    """One orchestrator execution for a source and strategy."""
    id: int
    source: str
    strategy: str
    status: RunStatus = RunStatus.RUNNING
    pages_processed: int = 0
    pages_created: int = 0
    pages_updated: int = 0
    pages_unchanged: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None


class SyncRunLedger:
    """Persists Sync Runs in SQLite."""

    def __init__(self, database_path: Union[str, Path], clock=utc_now):
        self.database_path = Path(database_path)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        self._clock = clock
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS sync_runs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    source TEXT NOT NULL,
                    strategy TEXT,
                    pages_processed INTEGER DEFAULT 0,
                    pages_created INTEGER DEFAULT 0,
                    pages_updated INTEGER DEFAULT 0,
                    pages_unchanged INTEGER DEFAULT 0,
                    errors TEXT NOT NULL DEFAULT '[]',
                    started_at TEXT,
                    completed_at TEXT,
                    status TEXT NOT NULL,
                    error_message TEXT
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_sync_runs_source_status ON sync_runs(source, status)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_sync_runs_completed_at ON sync_runs(completed_at)")

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.database_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    @staticmethod
    def _row_to_run(row: sqlite3.Row) -> SyncRun:
        return SyncRun(
            id=row["id"],
            source=row["source"],
            strategy=row["strategy"],
            status=RunStatus(row["status"]),
            pages_processed=row["pages_processed"],
            pages_created=row["pages_created"],
            pages_updated=row["pages_updated"],
            pages_unchanged=row["pages_unchanged"],
            errors=json.loads(row["errors"] or "[]"),
            started_at=datetime.fromisoformat(row["started_at"]) if row["started_at"] else None,
            completed_at=datetime.fromisoformat(row["completed_at"]) if row["completed_at"] else None,
            error_message=row["error_message"],
        )

    def start(self, source: str, strategy: str) -> SyncRun:
        """Insert a ``running`` record."""
        started_at = self._clock()
        with self._connect() as conn:
            cursor = conn.execute(
                "INSERT INTO sync_runs (source, strategy, status, started_at) VALUES (?, ?, ?, ?)",
                (source, strategy, RunStatus.RUNNING.value, started_at.isoformat())
            )
            run_id = cursor.lastrowid
        logger.info(f"Sync run {run_id} started: {source} ({strategy})",
                    extra={'details': {'run_id': run_id, 'source': source, 'strategy': strategy}})
        return SyncRun(id=run_id, source=source, strategy=strategy, started_at=started_at)

    def complete(self, run: SyncRun, stats: Optional[SyncStats] = None, error: Optional[str] = None) -> SyncRun:
        """
        Finalize a running run.

        Pass ``stats`` for a completed run, or ``error`` for a failed one.

        Raises:
            RunStateError: If the run is not ``running`` any more
        """
        if (stats is None) == (error is None):
            raise ValueError("complete() takes exactly one of stats or error")

        completed_at = self._clock()
        if error is not None:
            status = RunStatus.FAILED
            counters = SyncStats().to_run_counters()
            errors: List[Dict[str, Any]] = []
        else:
            status = RunStatus.COMPLETED
            counters = stats.to_run_counters()
            errors = [e.to_dict() for e in stats.error_records]

        with self._connect() as conn:
            cursor = conn.execute("""
                UPDATE sync_runs
                SET status = ?, completed_at = ?, error_message = ?, errors = ?,
                    pages_processed = ?, pages_created = ?, pages_updated = ?, pages_unchanged = ?
                WHERE id = ? AND status = ?
            """, (
                status.value, completed_at.isoformat(), error, json.dumps(errors, default=str),
                counters["pages_processed"], counters["pages_created"],
                counters["pages_updated"], counters["pages_unchanged"],
                run.id, RunStatus.RUNNING.value,
            ))
            if cursor.rowcount == 0:
                raise RunStateError(f"Sync run {run.id} is not running", source_id=run.source)

        run.status = status
        run.completed_at = completed_at
        run.error_message = error
        run.errors = errors
        run.pages_processed = counters["pages_processed"]
        run.pages_created = counters["pages_created"]
        run.pages_updated = counters["pages_updated"]
        run.pages_unchanged = counters["pages_unchanged"]

        log = logger.error if status is RunStatus.FAILED else logger.info
        log(f"Sync run {run.id} {status.value}: {run.source} ({run.strategy})",
            extra={'details': {'run_id': run.id, 'error': error, **counters}})
        return run

    def get(self, run_id: int) -> Optional[SyncRun]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM sync_runs WHERE id = ?", (run_id,)).fetchone()
        return self._row_to_run(row) if row else None

    def last_completed_at(self, source: str) -> Optional[datetime]:
        """``completed_at`` of the latest completed run for ``source``; None if there is none."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT MAX(completed_at) FROM sync_runs WHERE source = ? AND status = ?",
                (source, RunStatus.COMPLETED.value)
            ).fetchone()
        return datetime.fromisoformat(row[0]) if row and row[0] else None

    def recent(self, source: Optional[str] = None, limit: int = 20) -> List[SyncRun]:
        """Most recent runs first."""
        with self._connect() as conn:
            if source is None:
                rows = conn.execute("SELECT * FROM sync_runs ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM sync_runs WHERE source = ? ORDER BY id DESC LIMIT ?", (source, limit)
                ).fetchall()
        return [self._row_to_run(row) for row in rows]
