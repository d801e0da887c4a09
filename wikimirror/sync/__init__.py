"""
Sync engine: configuration, results, error taxonomy, storage, cache and the
run ledger. The orchestrator lives in ``wikimirror.sync.orchestrator``.
"""

from .config import SyncConfig, SourceSettings, SourceName, SyncStrategy, RendererKind, load_config
from .results import Outcome, PageResult, RunStatus, SyncOutcome, SyncStats
from .error_tracker import ErrorSeverity, ErrorTracker, SyncError, SyncException
from .storage import BlobStore, FilesystemBlobStore, InMemoryBlobStore
from .cache import ContentCache
from .ledger import SyncRun, SyncRunLedger
