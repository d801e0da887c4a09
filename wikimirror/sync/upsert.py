"""
Change detection and idempotent upsert.

The upstream hash (SHA-256 of the canonical HTML) is the only signal used to
decide whether an article changed:

- no stored article: write blobs, insert the row -> Created
- stored hash equals the new hash: only bump ``checked_at`` -> Unchanged
- stored hash differs: overwrite blobs at the same keys, update the row -> Updated

Blob writes always precede the relational write. If a blob write fails,
nothing is written to the relational store, so a row never points at content
that failed to persist.
"""

import sqlite3
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from ..config import get_logger
from ..document_parser.html import hash_content
from .cache import ContentCache
from .error_tracker import InsertOrUpdateFailed, StorageWriteFailed, error_from_exception
from .results import PageResult
from .storage import BlobStore
from .store import Article, ArticleStore, utc_now

logger = get_logger(__name__)


@dataclass
class ArticleAttrs:
    """Article fields supplied by a source pipeline."""
    title: str
    extracted_text: str = ""
    upstream_url: Optional[str] = None
    license: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class UpsertEngine:
    """Writes articles to the blob and relational stores when their content changed."""

    def __init__(self, store: ArticleStore, blobs: BlobStore, cache: Optional[ContentCache] = None):
        self.store = store
        self.blobs = blobs
        self.cache = cache

    def upsert(self, source: str, slug: str, canonical_html: str, raw_content: Optional[str],
               attrs: ArticleAttrs, token=None) -> PageResult:
        """
        Persist one article.

        Args:
            source: Source name
            slug: Article slug
            canonical_html: Normalized HTML, hashed and stored as rendered.html
            raw_content: Raw upstream payload stored as raw.txt; None skips the raw blob
            attrs: Title, text, URL, license and metadata for the row
            token: Optional cancellation token checked before anything is written

        Returns:
            PageResult: created, updated, unchanged or error
        """
        content_hash = hash_content(canonical_html)
        try:
            existing = self.store.get_article(source, slug)
        except sqlite3.Error as e:
            return self._fail(InsertOrUpdateFailed(f"Lookup of {source}/{slug} failed: {e}", source_id=source), source, slug)

        if existing is not None and existing.upstream_hash == content_hash:
            logger.debug(f"Unchanged: {source}/{slug}")
            try:
                self.store.mark_checked(source, slug)
            except InsertOrUpdateFailed as e:
                logger.warning(f"Could not record check of {source}/{slug}: {e.message}")
            return PageResult.unchanged(existing)

        if token is not None:
            token.raise_if_cancelled()

        try:
            html_key = self.blobs.put_html(source, slug, canonical_html)
            raw_key = self.blobs.put_raw(source, slug, raw_content) if raw_content else None
        except StorageWriteFailed as e:
            return self._fail(e, source, slug)

        article = Article(
            source=source,
            slug=slug,
            title=attrs.title,
            extracted_text=attrs.extracted_text,
            rendered_html_key=html_key,
            raw_content_key=raw_key,
            upstream_url=attrs.upstream_url,
            upstream_hash=content_hash,
            status="synced",
            license=attrs.license,
            metadata=attrs.metadata,
            synced_at=utc_now(),
        )
        try:
            stored = self.store.upsert_article(article)
        except InsertOrUpdateFailed as e:
            return self._fail(e, source, slug)

        self._invalidate(source, slug)
        if existing is None:
            logger.info(f"Created: {source}/{slug}", extra={'details': {'source': source, 'slug': slug, 'hash': content_hash}})
            return PageResult.created(stored)
        logger.info(f"Updated: {source}/{slug}", extra={'details': {
            'source': source, 'slug': slug, 'hash': content_hash, 'previous_hash': existing.upstream_hash}})
        return PageResult.updated(stored)

    def _invalidate(self, source: str, slug: str) -> None:
        if self.cache is None:
            return
        try:
            self.cache.invalidate(source, slug)
        except Exception as e:
            logger.warning(f"Cache invalidation failed for {source}/{slug}: {e}")

    @staticmethod
    def _fail(exc, source: str, slug: str) -> PageResult:
        error = error_from_exception(exc, source_id=source, slug=slug)
        logger.warning(f"Upsert failed for {source}/{slug}: {exc}",
                       extra={'details': {'source': source, 'slug': slug, 'phase': error.phase, 'reason': error.reason}})
        return PageResult.failed(error)
