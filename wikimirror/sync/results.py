"""
Outcome types shared by the upsert engine, the orchestrator and the ledger.

``PageResult`` is a closed result type: its ``outcome`` is one of the four
``Outcome`` members and nothing else. ``SyncStats`` folds page results into
counters, and ``SyncOutcome`` is what every ``sync_*`` entry point returns.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from .error_tracker import SyncError


class Outcome(str, Enum):
    """What happened to one candidate."""
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    ERROR = "error"


class RunStatus(str, Enum):
    """Lifecycle states of a sync run."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"  # suppressed by the run lock, never written to the ledger


@dataclass(frozen=True)
class PageResult:
    """Result of processing one slug. Build it with the named constructors."""
    outcome: Outcome
    article: Optional[Any] = None
    error: Optional[SyncError] = None

    @classmethod
    def created(cls, article) -> 'PageResult':
        return cls(Outcome.CREATED, article=article)

    @classmethod
    def updated(cls, article) -> 'PageResult':
        return cls(Outcome.UPDATED, article=article)

    @classmethod
    def unchanged(cls, article) -> 'PageResult':
        return cls(Outcome.UNCHANGED, article=article)

    @classmethod
    def failed(cls, error: SyncError) -> 'PageResult':
        return cls(Outcome.ERROR, error=error)

    @property
    def ok(self) -> bool:
        return self.outcome is not Outcome.ERROR

    @property
    def changed(self) -> bool:
        return self.outcome in (Outcome.CREATED, Outcome.UPDATED)


@dataclass
class SyncStats:
    """Counters for one run. ``total`` always equals the number of candidates folded in."""
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    errors: int = 0
    error_records: List[SyncError] = field(default_factory=list)

    def add(self, result: PageResult) -> None:
        if result.outcome is Outcome.CREATED:
            self.created += 1
        elif result.outcome is Outcome.UPDATED:
            self.updated += 1
        elif result.outcome is Outcome.UNCHANGED:
            self.unchanged += 1
        elif result.outcome is Outcome.ERROR:
            self.errors += 1
            if result.error is not None:
                self.error_records.append(result.error)
        else:
            raise ValueError(f"Unknown outcome: {result.outcome!r}")

    @property
    def total(self) -> int:
        return self.created + self.updated + self.unchanged + self.errors

    @classmethod
    def from_results(cls, results: Iterable[PageResult]) -> 'SyncStats':
        stats = cls()
        for result in results:
            stats.add(result)
        return stats

    def to_dict(self) -> Dict[str, int]:
        return {
            "created": self.created,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "errors": self.errors,
        }

    def to_run_counters(self) -> Dict[str, int]:
        """Counters in the shape stored on a Sync Run."""
        return {
            "pages_processed": self.total,
            "pages_created": self.created,
            "pages_updated": self.updated,
            "pages_unchanged": self.unchanged,
        }


@dataclass
class SyncOutcome:
    """Return value of every ``sync_*`` entry point."""
    source: str
    strategy: str
    status: RunStatus
    stats: SyncStats = field(default_factory=SyncStats)
    error_message: Optional[str] = None
    run_id: Optional[int] = None
    candidates: int = 0
    error_report: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status is RunStatus.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "strategy": self.strategy,
            "status": self.status.value,
            "run_id": self.run_id,
            "candidates": self.candidates,
            "error_message": self.error_message,
            **self.stats.to_dict(),
            "errors_by_reason": self.error_report.get("by_reason", {}),
        }
