"""
Error taxonomy and per-run error tracking.

Every failure the sync engine can observe is expressed as a SyncException
subclass. Each exception knows the phase of the pipeline it came from
(fetch, transform, storage, database, extract, list, timeout) and a short
machine-readable reason, which is what ends up in a Sync Run's ``errors``
list.

Key pieces:
- Source client failures: NotFound, RateLimited, Unauthorized,
  TransientServerError (retried), RequestFailed (not retried).
- Persistence failures: StorageWriteFailed, InsertOrUpdateFailed.
- Structured extraction mismatches: WrongKind, NoInfobox. These never fail
  the parent article.
- ErrorTracker: collects SyncError records for one run and renders a report.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Dict, Any


class ErrorSeverity(Enum):
    """
    Defines the severity of an error.
    """
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


@dataclass
class SyncError:
    """
    A structured record of one failure observed during a sync run.
    """
    message: str
    source_id: Optional[str] = None
    slug: Optional[str] = None
    phase: Optional[str] = None
    reason: Optional[str] = None
    severity: ErrorSeverity = ErrorSeverity.ERROR
    details: Dict[str, Any] = field(default_factory=dict)
    recovery_suggestion: Optional[str] = None

    def to_dict(self):
        return {
            "message": self.message,
            "source_id": self.source_id,
            "slug": self.slug,
            "phase": self.phase,
            "reason": self.reason,
            "severity": self.severity.value,
            "details": self.details,
            "recovery_suggestion": self.recovery_suggestion
        }


class SyncException(Exception):
    """Base class for all sync exceptions."""
    phase = "sync"
    reason = "error"

    def __init__(self, message: str, source_id: Optional[str] = None, recovery_suggestion: Optional[str] = None):
        self.message = message
        self.source_id = source_id
        self.recovery_suggestion = recovery_suggestion
        super().__init__(self.message)


class ConfigurationError(SyncException):
    """Invalid or missing sync configuration."""
    phase = "config"
    reason = "configuration_error"


class UnsupportedOperation(SyncException):
    """The source client does not offer the requested capability."""
    phase = "list"
    reason = "unsupported"


# Source client failures

class SourceFetchError(SyncException):
    """Base class for failures talking to an upstream source."""
    phase = "fetch"
    reason = "fetch_failed"


class NotFound(SourceFetchError):
    """The requested page does not exist upstream."""
    reason = "not_found"


class RateLimited(SourceFetchError):
    """The upstream asked us to slow down (HTTP 429)."""
    reason = "rate_limited"


class Unauthorized(SourceFetchError):
    """The upstream refused the request (HTTP 401/403)."""
    reason = "unauthorized"


class TransientServerError(SourceFetchError):
    """A 5xx response or network failure; eligible for retry."""
    reason = "transient_server_error"

    def __init__(self, message: str, source_id: Optional[str] = None, recovery_suggestion: Optional[str] = None,
                 status_code: Optional[int] = None, network: bool = False):
        super().__init__(message, source_id, recovery_suggestion)
        self.status_code = status_code
        self.network = network


class RequestFailed(SourceFetchError):
    """A non-retryable request failure."""
    reason = "request_failed"


# Transformation and extraction failures

class DocumentParseError(SyncException):
    """The fetched payload could not be rendered or parsed."""
    phase = "transform"
    reason = "parse_failed"


class WrongKind(SyncException):
    """Structured content is not of the requested record kind."""
    phase = "extract"
    reason = "wrong_kind"

    def __init__(self, message: str, expected: Optional[str] = None, actual: Optional[str] = None,
                 source_id: Optional[str] = None):
        super().__init__(message, source_id)
        self.expected = expected
        self.actual = actual


class NoInfobox(WrongKind):
    """Raw content has no recognizable infobox template."""
    reason = "no_infobox"


# Persistence failures

class StorageWriteFailed(SyncException):
    """A blob store write failed; nothing was written to the relational store."""
    phase = "storage"
    reason = "storage_write_failed"


class InsertOrUpdateFailed(SyncException):
    """The relational store rejected an insert or update."""
    phase = "database"
    reason = "insert_or_update_failed"


# Orchestration failures

class TaskCancelled(SyncException):
    """The per-candidate timeout expired and the task was cancelled."""
    phase = "timeout"
    reason = "timeout"


class RunLockLost(SyncException):
    """The per-source run lock expired and was taken over during a run."""
    phase = "lock"
    reason = "lock_lost"


class RunStateError(SyncException):
    """A sync run was finalized twice or from a non-running state."""
    phase = "ledger"
    reason = "invalid_run_state"


def error_from_exception(exc: BaseException, source_id: Optional[str] = None, slug: Optional[str] = None) -> SyncError:
    """Build a SyncError record from any exception raised while processing a candidate."""
    if isinstance(exc, SyncException):
        return SyncError(
            message=exc.message,
            source_id=exc.source_id or source_id,
            slug=slug,
            phase=exc.phase,
            reason=exc.reason,
            recovery_suggestion=exc.recovery_suggestion,
        )
    return SyncError(
        message=str(exc) or exc.__class__.__name__,
        source_id=source_id,
        slug=slug,
        phase="unexpected",
        reason=exc.__class__.__name__,
    )


class ErrorTracker:
    """
    Aggregates errors reported during a single sync run.
    """
    def __init__(self):
        self.errors: List[SyncError] = []

    def report(self, message: str, source_id: Optional[str] = None, severity: ErrorSeverity = ErrorSeverity.ERROR,
               details: Optional[Dict[str, Any]] = None, recovery_suggestion: Optional[str] = None,
               slug: Optional[str] = None, phase: Optional[str] = None, reason: Optional[str] = None) -> SyncError:
        """
        Report a new error.
        """
        error = SyncError(
            message=message,
            source_id=source_id,
            slug=slug,
            phase=phase,
            reason=reason,
            severity=severity,
            details=details or {},
            recovery_suggestion=recovery_suggestion
        )
        self.errors.append(error)
        return error

    def report_error(self, error: SyncError) -> SyncError:
        """Record an already-built SyncError."""
        self.errors.append(error)
        return error

    def report_exception(self, exc: SyncException, severity: ErrorSeverity = ErrorSeverity.ERROR,
                         slug: Optional[str] = None) -> SyncError:
        """
        Report an error from a SyncException.
        """
        return self.report(
            message=exc.message,
            source_id=exc.source_id,
            severity=severity,
            recovery_suggestion=exc.recovery_suggestion,
            slug=slug,
            phase=exc.phase,
            reason=exc.reason,
        )

    def get_errors(self, min_severity: ErrorSeverity = ErrorSeverity.WARNING) -> List[SyncError]:
        """
        Get all errors at or above a certain severity level.
        """
        severity_map = {
            ErrorSeverity.WARNING: 1,
            ErrorSeverity.ERROR: 2,
            ErrorSeverity.CRITICAL: 3
        }
        min_level = severity_map.get(min_severity, 1)
        return [e for e in self.errors if severity_map.get(e.severity, 1) >= min_level]

    def generate_report(self) -> Dict[str, Any]:
        """
        Generate a summary report of all errors.
        """
        critical = len(self.get_errors(ErrorSeverity.CRITICAL))
        errors = len(self.get_errors(ErrorSeverity.ERROR))
        warnings = len(self.get_errors(ErrorSeverity.WARNING))
        by_reason: Dict[str, int] = {}
        for e in self.errors:
            key = e.reason or "unknown"
            by_reason[key] = by_reason.get(key, 0) + 1
        return {
            "total_errors": len(self.errors),
            "critical_count": critical,
            "error_count": errors - critical,
            "warning_count": warnings - errors,
            "by_reason": by_reason,
            "errors": [e.to_dict() for e in self.errors]
        }
