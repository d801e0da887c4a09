"""
Sync orchestration.

The orchestrator runs one strategy for one source:

1. Acquire the per-source run lock (suppress the run if it is held) and keep
   it alive until the run ends
2. Start a Sync Run in the ledger
3. Obtain the candidate list from the source client (mirror first where needed)
4. Fan candidates out over a bounded worker pool with per-candidate timeouts
5. Fold every result into SyncStats and finalize the Sync Run

Only a failure to obtain the candidate list, or losing the run lock, fails a
run. Both are reported as a FAILED outcome, never raised. Every per-candidate
failure (fetch error, timeout, storage error, unexpected exception) becomes
one ``errors`` count, and the run still completes. For every completed run,
``created + updated + unchanged + errors`` equals the number of candidates.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from ..document_parser.renderers import create_renderer
from ..sources.mediawiki import MediaWikiClient
from ..sources.nlab import NLabClient
from ..sources.vintage_machinery import VintageMachineryClient
from ..sources.wikipedia import WikipediaClient
from .cache import ContentCache, html_key, raw_key
from .config import SourceName, SyncConfig, SyncStrategy
from .error_tracker import (
    ConfigurationError, ErrorSeverity, ErrorTracker, SyncException, TaskCancelled, error_from_exception,
)
from .ledger import SyncRunLedger
from .logging_manager import LoggingManager
from .pipelines import (
    NLabPipeline, OsrsPipeline, SourcePipeline, VintageMachineryPipeline, WikipediaPipeline,
)
from .resilience import CircuitBreaker, RetryPolicy
from .results import PageResult, RunStatus, SyncOutcome, SyncStats
from .run_lock import LockKeeper, RunLock, run_lock_key
from .storage import BlobStore, FilesystemBlobStore
from .store import ArticleStore
from .upsert import UpsertEngine
from .worker_pool import WorkerPool

logger = LoggingManager.get_logger(__name__)


def _dedupe(candidates: List[str]) -> List[str]:
    return list(dict.fromkeys(candidates))


class SyncOrchestrator:
    """
    Entry points used by the scheduler and the CLI.

    Collaborators are passed in; ``build_orchestrator(config)`` wires the
    production ones.
    """

    def __init__(self, config: SyncConfig, pipelines: Dict[str, SourcePipeline], engine: UpsertEngine,
                 ledger: SyncRunLedger, run_lock: RunLock, store: ArticleStore,
                 clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self.config = config
        self.pipelines = pipelines
        self.engine = engine
        self.ledger = ledger
        self.run_lock = run_lock
        self.store = store
        self._clock = clock

    def pipeline(self, source: str) -> SourcePipeline:
        source = getattr(source, "value", source)
        pipeline = self.pipelines.get(source)
        if pipeline is None:
            raise ConfigurationError(f"No pipeline configured for source {source}", source_id=source)
        return pipeline

    # Single pages

    def process_page(self, source: str, slug: str) -> PageResult:
        """Fetch, render and upsert one candidate of ``source``."""
        pipeline = self.pipeline(source)
        try:
            return pipeline.process(slug, self.engine)
        except SyncException as e:
            return PageResult.failed(error_from_exception(e, source_id=pipeline.source, slug=pipeline.slug_for(slug)))
        except Exception as e:
            logger.exception(f"Unexpected failure processing {pipeline.source}/{slug}")
            return PageResult.failed(error_from_exception(e, source_id=pipeline.source, slug=pipeline.slug_for(slug)))

    def process_pages(self, source: str, slugs: List[str],
                      heartbeat: Optional[Callable[[], None]] = None) -> Dict[str, PageResult]:
        """
        Process many candidates concurrently; one result per distinct candidate.

        ``heartbeat`` is polled while tasks run; an exception from it aborts the batch.
        """
        pipeline = self.pipeline(source)
        pool = WorkerPool(max_workers=pipeline.settings.max_concurrency,
                          task_timeout=pipeline.settings.task_timeout_seconds)
        outcomes = pool.gather(lambda candidate, token: pipeline.process(candidate, self.engine, token), slugs,
                               heartbeat=heartbeat)

        results: Dict[str, PageResult] = {}
        for candidate, outcome in outcomes.items():
            if outcome.ok:
                results[candidate] = outcome.value
                continue
            error = error_from_exception(outcome.exception, source_id=pipeline.source,
                                         slug=pipeline.slug_for(candidate))
            if not isinstance(outcome.exception, SyncException):
                logger.error(f"Unexpected failure processing {pipeline.source}/{candidate}: {outcome.exception!r}",
                             extra={'details': {'source': pipeline.source, 'candidate': candidate}})
            elif isinstance(outcome.exception, TaskCancelled):
                logger.warning(f"{pipeline.source}/{candidate} timed out after {outcome.elapsed_seconds:.1f}s")
            results[candidate] = PageResult.failed(error)
        return results

    # Strategies

    def sync_full(self, source: str, limit: Optional[int] = None) -> SyncOutcome:
        def candidates(pipeline: SourcePipeline) -> List[str]:
            pipeline.client.sync_mirror(full=True)
            return pipeline.client.list_all_slugs(limit=limit or pipeline.settings.full_sync_limit)
        return self._run(source, SyncStrategy.FULL.value, "full_sync", candidates)

    def sync_category(self, source: str, category: str, limit: Optional[int] = None) -> SyncOutcome:
        def candidates(pipeline: SourcePipeline) -> List[str]:
            return pipeline.client.list_category(category, limit=limit or pipeline.settings.category_limit)
        return self._run(source, SyncStrategy.CATEGORY.value, f"category:{category}", candidates)

    def sync_incremental(self, source: str, since: Optional[datetime] = None) -> SyncOutcome:
        def candidates(pipeline: SourcePipeline) -> List[str]:
            watermark = since or self.watermark(pipeline)
            logger.info(f"{pipeline.source}: changes since {watermark.isoformat()}")
            pipeline.client.sync_mirror(full=False)
            return pipeline.client.list_changed_since(watermark, limit=pipeline.settings.changes_limit)
        label = f"since:{since.isoformat()}" if since else "recent_changes"
        return self._run(source, SyncStrategy.INCREMENTAL.value, label, candidates)

    def sync_search(self, source: str, query: str, limit: Optional[int] = None) -> SyncOutcome:
        def candidates(pipeline: SourcePipeline) -> List[str]:
            return pipeline.client.search(query, limit=limit or pipeline.settings.search_limit)
        return self._run(source, SyncStrategy.SEARCH.value, f"search:{query}", candidates)

    def sync_refresh(self, source: str, limit: Optional[int] = None) -> SyncOutcome:
        def candidates(pipeline: SourcePipeline) -> List[str]:
            articles = self.store.list_articles(pipeline.source, limit=limit or pipeline.settings.refresh_limit)
            return [pipeline.candidate_for(slug, title) for slug, title in articles]
        return self._run(source, SyncStrategy.REFRESH.value, "refresh", candidates)

    def watermark(self, pipeline: SourcePipeline) -> datetime:
        """Last completed run of the source, or the source's default lookback window."""
        last = self.ledger.last_completed_at(pipeline.source)
        if last is not None:
            return last
        return self._clock() - timedelta(days=pipeline.settings.default_lookback_days)

    # Run bracket

    def _run(self, source: str, strategy: str, label: str,
             list_candidates: Callable[[SourcePipeline], List[str]]) -> SyncOutcome:
        pipeline = self.pipeline(source)
        source = pipeline.source
        key = run_lock_key(source)
        ttl = self.config.lock_ttl_seconds
        token = self.run_lock.acquire(key, ttl)
        if token is None:
            message = f"A {source} sync is already running; {label} suppressed"
            logger.warning(message, extra={'details': {'source': source, 'strategy': label}})
            return SyncOutcome(source=source, strategy=label, status=RunStatus.SKIPPED, error_message=message)

        try:
            with LockKeeper(self.run_lock, key, token, ttl) as keeper:
                return self._run_locked(pipeline, strategy, label, list_candidates, keeper)
        finally:
            self.run_lock.release(key, token)

    def _fail_run(self, run, pipeline: SourcePipeline, label: str, message: str,
                  tracker: ErrorTracker) -> SyncOutcome:
        self.ledger.complete(run, error=message)
        return SyncOutcome(source=pipeline.source, strategy=label, status=RunStatus.FAILED,
                           error_message=message, run_id=run.id, error_report=tracker.generate_report())

    def _run_locked(self, pipeline: SourcePipeline, strategy: str, label: str,
                    list_candidates: Callable[[SourcePipeline], List[str]], keeper: LockKeeper) -> SyncOutcome:
        source = pipeline.source
        tracker = ErrorTracker()
        run = self.ledger.start(source, label)

        try:
            candidates = _dedupe(list_candidates(pipeline))
            keeper.check()
        except SyncException as e:
            tracker.report_exception(e, severity=ErrorSeverity.CRITICAL)
            return self._fail_run(run, pipeline, label, f"Could not list candidates: {e.message}", tracker)
        except Exception as e:
            logger.exception(f"Unexpected error listing {source} candidates")
            tracker.report(f"Unexpected error listing candidates: {e}", source_id=source,
                           severity=ErrorSeverity.CRITICAL, phase="list", reason=e.__class__.__name__)
            return self._fail_run(run, pipeline, label, f"Could not list candidates: {e!r}", tracker)

        logger.info(f"{source} {label}: {len(candidates)} candidates",
                    extra={'details': {'run_id': run.id, 'source': source, 'strategy': strategy, 'candidates': len(candidates)}})

        stats = SyncStats()
        if candidates:
            try:
                results = self.process_pages(source, candidates, heartbeat=keeper.check)
            except SyncException as e:
                tracker.report_exception(e, severity=ErrorSeverity.CRITICAL)
                return self._fail_run(run, pipeline, label, f"Run aborted: {e.message}", tracker)
            except Exception as e:
                logger.exception(f"Unexpected error while processing {source} candidates")
                tracker.report(f"Run aborted: {e}", source_id=source, severity=ErrorSeverity.CRITICAL,
                               phase="unexpected", reason=e.__class__.__name__)
                return self._fail_run(run, pipeline, label, f"Run aborted while processing candidates: {e!r}",
                                      tracker)
            stats = SyncStats.from_results(results[candidate] for candidate in candidates)
            for error in stats.error_records:
                tracker.report_error(error)

        self.ledger.complete(run, stats=stats)
        return SyncOutcome(source=source, strategy=label, status=RunStatus.COMPLETED, stats=stats,
                           run_id=run.id, candidates=len(candidates), error_report=tracker.generate_report())

    def run(self, source: str, strategy: SyncStrategy, **options) -> SyncOutcome:
        """Dispatch to the ``sync_*`` entry point named by ``strategy``."""
        strategy = SyncStrategy(strategy)
        if strategy is SyncStrategy.FULL:
            return self.sync_full(source, limit=options.get("limit"))
        if strategy is SyncStrategy.CATEGORY:
            return self.sync_category(source, options["category"], limit=options.get("limit"))
        if strategy is SyncStrategy.INCREMENTAL:
            return self.sync_incremental(source, since=options.get("since"))
        if strategy is SyncStrategy.SEARCH:
            return self.sync_search(source, options["query"], limit=options.get("limit"))
        return self.sync_refresh(source, limit=options.get("limit"))

    # Reading

    def _read_blob(self, cache_key, blob_key: str) -> str:
        blobs = self.engine.blobs
        loader = lambda: blobs.get(blob_key).decode('utf-8')
        if self.engine.cache is None:
            return loader()
        return self.engine.cache.fetch(cache_key, loader)

    def read_html(self, source: str, slug: str) -> Optional[str]:
        """Stored rendered HTML of an article, served through the content cache."""
        article = self.store.get_article(source, slug)
        if article is None or not article.rendered_html_key:
            return None
        return self._read_blob(html_key(source, slug), article.rendered_html_key)

    def read_raw(self, source: str, slug: str) -> Optional[str]:
        """Stored raw upstream content of an article, served through the content cache."""
        article = self.store.get_article(source, slug)
        if article is None or not article.raw_content_key:
            return None
        return self._read_blob(raw_key(source, slug), article.raw_content_key)


def build_pipelines(config: SyncConfig, store: ArticleStore) -> Dict[str, SourcePipeline]:
    """Create a client and pipeline for every enabled source."""
    retry_policy = RetryPolicy(max_attempts=config.retry_attempts, base_delay_seconds=config.retry_base_delay_seconds)
    circuit_breaker = CircuitBreaker(failure_threshold=5, reset_timeout_seconds=60.0)
    renderer = create_renderer(config.renderer)

    pipelines: Dict[str, SourcePipeline] = {}
    for name in config.get_enabled_sources():
        settings = config.get_source(name)
        http_options = dict(
            user_agent=settings.user_agent,
            rate_limit_ms=settings.rate_limit_ms,
            timeout=settings.request_timeout,
            retry_policy=retry_policy,
            circuit_breaker=circuit_breaker,
        )
        if name is SourceName.OSRS:
            client = MediaWikiClient(settings.base_url, categories=settings.categories,
                                     category_limit=settings.full_sync_limit, **http_options)
            pipelines[name.value] = OsrsPipeline(client, settings, store=store)
        elif name is SourceName.WIKIPEDIA:
            client = WikipediaClient(settings.base_url, **http_options)
            pipelines[name.value] = WikipediaPipeline(client, settings)
        elif name is SourceName.NLAB:
            client = NLabClient(settings.local_path, repo_url=settings.repo_url, branch=settings.branch)
            pipelines[name.value] = NLabPipeline(client, settings, renderer=renderer)
        elif name is SourceName.VINTAGE_MACHINERY:
            client = VintageMachineryClient(settings.local_path, base_url=settings.base_url,
                                            include_paths=settings.include_paths,
                                            rate_limit_ms=settings.rate_limit_ms, user_agent=settings.user_agent)
            pipelines[name.value] = VintageMachineryPipeline(client, settings)
    return pipelines


def build_orchestrator(config: SyncConfig, blobs: Optional[BlobStore] = None,
                       cache: Optional[ContentCache] = None) -> SyncOrchestrator:
    """Wire the production collaborators described by ``config``."""
    LoggingManager(log_level=config.log_level, log_file=config.log_file)
    database_path = config.resolved_database_path()
    store = ArticleStore(database_path)
    blobs = blobs or FilesystemBlobStore(config.resolved_blob_directory())
    cache = cache or ContentCache(ttl_seconds=config.cache_ttl_seconds, max_entries=config.cache_max_entries)
    engine = UpsertEngine(store, blobs, cache)
    orchestrator = SyncOrchestrator(
        config=config,
        pipelines=build_pipelines(config, store),
        engine=engine,
        ledger=SyncRunLedger(database_path),
        run_lock=RunLock(database_path),
        store=store,
    )
    logger.info(f"Sync orchestrator ready for {', '.join(orchestrator.pipelines)}",
                extra={'details': {'database': str(database_path), 'renderer': config.renderer.value}})
    return orchestrator
