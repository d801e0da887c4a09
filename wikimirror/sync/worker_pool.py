"""
Bounded worker pool with per-task timeouts and cancellation tokens.

``WorkerPool.gather(fn, items)`` runs ``fn(item, token)`` for every item on
at most ``max_workers`` threads and returns one TaskOutcome per item. A task
that raises, or runs longer than ``task_timeout`` seconds from the moment it
started, yields a failed outcome. Its siblings keep running either way.

Threads cannot be killed, so a timed-out task is cancelled cooperatively: its
token is cancelled and the task raises TaskCancelled the next time it calls
``token.raise_if_cancelled()``. Its late result, if any, is discarded.
"""

import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Hashable, Iterable, List, Optional, TypeVar

from ..config import get_logger
from .error_tracker import TaskCancelled

logger = get_logger(__name__)

K = TypeVar("K", bound=Hashable)

POLL_INTERVAL_SECONDS = 0.05


class CancellationToken:
    """Cooperative cancellation flag handed to each task."""

    def __init__(self):
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TaskCancelled(f"Task cancelled: {self.reason}")


@dataclass
class TaskOutcome(Generic[K]):
    item: K
    value: Any = None
    exception: Optional[BaseException] = None
    timed_out: bool = False
    elapsed_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exception is None


@dataclass
class _Task:
    item: Any
    token: CancellationToken
    future: Optional[Future] = None
    started_at: Optional[float] = None


class WorkerPool:
    """Runs a function over many items with bounded concurrency."""

    def __init__(self, max_workers: int = 4, task_timeout: Optional[float] = 60.0,
                 clock: Callable[[], float] = time.monotonic):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.max_workers = max_workers
        self.task_timeout = task_timeout
        self._clock = clock

    def gather(self, fn: Callable[[Any, CancellationToken], Any], items: Iterable[K],
               heartbeat: Optional[Callable[[], None]] = None) -> Dict[K, TaskOutcome]:
        """
        Run ``fn`` over ``items`` and collect one outcome per distinct item.

        Never raises for individual task failures. ``heartbeat`` is called on
        every poll; if it raises, all unfinished tasks are cancelled and the
        exception propagates.
        """
        tasks: Dict[Any, _Task] = {}
        for item in items:
            if item not in tasks:
                tasks[item] = _Task(item=item, token=CancellationToken())
        if not tasks:
            return {}

        outcomes: Dict[Any, TaskOutcome] = {}
        executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="wikimirror-worker")
        try:
            for task in tasks.values():
                task.future = executor.submit(self._run, fn, task)
            pending: Dict[Future, _Task] = {task.future: task for task in tasks.values()}

            while pending:
                done, _ = wait(list(pending), timeout=POLL_INTERVAL_SECONDS, return_when=FIRST_COMPLETED)
                for future in done:
                    task = pending.pop(future)
                    outcomes[task.item] = self._collect(task)
                if self.task_timeout is not None:
                    self._expire(pending, outcomes)
                if heartbeat is not None and pending:
                    self._beat(heartbeat, pending)
        finally:
            # Cancelled tasks that are still blocked finish in the background
            executor.shutdown(wait=False, cancel_futures=True)

        return {item: outcomes[item] for item in tasks}

    @staticmethod
    def _beat(heartbeat: Callable[[], None], pending: Dict[Future, _Task]) -> None:
        try:
            heartbeat()
        except Exception:
            for task in pending.values():
                task.token.cancel("aborted")
            raise

    def _run(self, fn: Callable[[Any, CancellationToken], Any], task: _Task) -> Any:
        task.started_at = self._clock()
        task.token.raise_if_cancelled()
        return fn(task.item, task.token)

    def _elapsed(self, task: _Task) -> float:
        return (self._clock() - task.started_at) if task.started_at is not None else 0.0

    def _collect(self, task: _Task) -> TaskOutcome:
        elapsed = self._elapsed(task)
        exc = task.future.exception()
        if exc is not None:
            return TaskOutcome(item=task.item, exception=exc, elapsed_seconds=elapsed)
        return TaskOutcome(item=task.item, value=task.future.result(), elapsed_seconds=elapsed)

    def _expire(self, pending: Dict[Future, _Task], outcomes: Dict[Any, TaskOutcome]) -> None:
        for future, task in list(pending.items()):
            if task.started_at is None:
                continue
            elapsed = self._elapsed(task)
            if elapsed < self.task_timeout:
                continue
            task.token.cancel(f"timed out after {self.task_timeout}s")
            future.cancel()
            del pending[future]
            logger.warning(f"Task {task.item!r} timed out after {elapsed:.1f}s",
                           extra={'details': {'item': str(task.item), 'timeout': self.task_timeout}})
            outcomes[task.item] = TaskOutcome(
                item=task.item,
                exception=TaskCancelled(f"Timed out after {self.task_timeout}s"),
                timed_out=True,
                elapsed_seconds=elapsed,
            )

