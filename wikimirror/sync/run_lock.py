"""
Per-source run lock.

Before a sync run starts, the orchestrator acquires the key
``sync:{source}``. While the lock is held, new runs for that source are
suppressed instead of overlapping. Every lock carries an expiry; a lock whose
holder died without releasing it is taken over once the TTL has passed.

A live run keeps its lock with a LockKeeper, which extends the expiry from a
background thread until the run ends.
"""

import sqlite3
import threading
import time
import uuid
from pathlib import Path
from typing import Callable, Optional, Union

from ..config import get_logger
from .error_tracker import RunLockLost

logger = get_logger(__name__)


def run_lock_key(source: str) -> str:
    return f"sync:{source}"


class RunLock:
    """SQLite-backed lock table shared by every process using the same database."""

    def __init__(self, database_path: Union[str, Path], clock: Callable[[], float] = time.time):
        self.database_path = Path(database_path)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        self._clock = clock
        with sqlite3.connect(self.database_path, timeout=30) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS run_locks (
                    key TEXT PRIMARY KEY,
                    token TEXT NOT NULL,
                    acquired_at REAL NOT NULL,
                    expires_at REAL NOT NULL
                )
            """)

    def acquire(self, key: str, ttl_seconds: float) -> Optional[str]:
        """
        Try to take ``key``.

        Returns:
            A release token, or None when another holder has an unexpired lock
        """
        token = uuid.uuid4().hex
        now = self._clock()
        conn = sqlite3.connect(self.database_path, timeout=30, isolation_level=None)
        try:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute("DELETE FROM run_locks WHERE key = ? AND expires_at <= ?", (key, now))
            try:
                conn.execute(
                    "INSERT INTO run_locks (key, token, acquired_at, expires_at) VALUES (?, ?, ?, ?)",
                    (key, token, now, now + ttl_seconds)
                )
            except sqlite3.IntegrityError:
                conn.execute("ROLLBACK")
                logger.info(f"Run lock {key} is held; suppressing new run")
                return None
            conn.execute("COMMIT")
        finally:
            conn.close()
        logger.debug(f"Acquired run lock {key} for {ttl_seconds}s")
        return token

    def release(self, key: str, token: str) -> bool:
        """Release ``key`` if ``token`` still owns it."""
        with sqlite3.connect(self.database_path, timeout=30) as conn:
            cursor = conn.execute("DELETE FROM run_locks WHERE key = ? AND token = ?", (key, token))
            released = cursor.rowcount > 0
        if not released:
            logger.warning(f"Run lock {key} was no longer owned at release (expired and taken over?)")
        return released

    def is_locked(self, key: str) -> bool:
        with sqlite3.connect(self.database_path, timeout=30) as conn:
            row = conn.execute(
                "SELECT 1 FROM run_locks WHERE key = ? AND expires_at > ?", (key, self._clock())
            ).fetchone()
        return row is not None

    def refresh(self, key: str, token: str, ttl_seconds: float) -> bool:
        """Extend the expiry of ``key``; False when ``token`` no longer owns it."""
        with sqlite3.connect(self.database_path, timeout=30) as conn:
            cursor = conn.execute(
                "UPDATE run_locks SET expires_at = ? WHERE key = ? AND token = ?",
                (self._clock() + ttl_seconds, key, token)
            )
            return cursor.rowcount > 0


class LockKeeper:
    """
    Keeps a held run lock alive for as long as the run lasts.

    Used as a context manager around the locked part of a run. Every
    ``ttl_seconds / 3`` seconds the expiry is pushed forward; if the lock was
    taken over in the meantime, ``lost`` is set and ``check()`` raises
    RunLockLost.
    """

    def __init__(self, lock: RunLock, key: str, token: str, ttl_seconds: float,
                 interval: Optional[float] = None):
        self.lock = lock
        self.key = key
        self.token = token
        self.ttl_seconds = ttl_seconds
        self.interval = interval if interval is not None else ttl_seconds / 3
        self.lost = False
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _keep(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                owned = self.lock.refresh(self.key, self.token, self.ttl_seconds)
            except sqlite3.Error as e:
                logger.warning(f"Could not refresh run lock {self.key}: {e}")
                continue
            if not owned:
                self.lost = True
                logger.error(f"Run lock {self.key} was taken over while the run was active")
                return

    def check(self) -> None:
        if self.lost:
            raise RunLockLost(f"Run lock {self.key} was lost")

    def __enter__(self) -> 'LockKeeper':
        self._thread = threading.Thread(target=self._keep, name=f"lock-keeper-{self.key}", daemon=True)
        self._thread.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
