"""
Tests for change detection and the idempotent upsert.
"""

from unittest.mock import patch

import pytest

from ..cache import ContentCache, html_key
from ..error_tracker import InsertOrUpdateFailed, TaskCancelled
from ..results import Outcome
from ..storage import InMemoryBlobStore
from ..store import ArticleStore
from ..upsert import ArticleAttrs, UpsertEngine
from ..worker_pool import CancellationToken


class FailingBlobStore(InMemoryBlobStore):
    """Fails every write whose key ends with ``fail_suffix``."""

    def __init__(self, fail_suffix: str):
        super().__init__()
        self.fail_suffix = fail_suffix

    def _write(self, key, data):
        if key.endswith(self.fail_suffix):
            raise OSError("disk full")
        super()._write(key, data)


class TestUpsertEngine:
    """Test UpsertEngine.upsert outcomes and write behaviour."""

    @pytest.fixture
    def store(self, tmp_path):
        return ArticleStore(tmp_path / "wikimirror.sqlite")

    @pytest.fixture
    def blobs(self):
        return InMemoryBlobStore()

    @pytest.fixture
    def cache(self):
        return ContentCache(ttl_seconds=60)

    @pytest.fixture
    def engine(self, store, blobs, cache):
        return UpsertEngine(store, blobs, cache)

    @pytest.fixture
    def attrs(self):
        return ArticleAttrs(title="Dragon scimitar", extracted_text="A scimitar",
                            upstream_url="https://oldschool.runescape.wiki/w/Dragon%20scimitar",
                            license="CC BY-NC-SA 3.0", metadata={"pageid": 1})

    def test_first_upsert_creates(self, engine, store, blobs, attrs):
        result = engine.upsert("osrs", "dragon-scimitar", "<p>v1</p>", "raw v1", attrs)

        assert result.outcome is Outcome.CREATED
        assert result.article.rendered_html_key == "osrs/dragon-scimitar/rendered.html"
        assert result.article.raw_content_key == "osrs/dragon-scimitar/raw.txt"
        assert blobs.get("osrs/dragon-scimitar/rendered.html") == b"<p>v1</p>"
        assert blobs.get("osrs/dragon-scimitar/raw.txt") == b"raw v1"
        stored = store.get_article("osrs", "dragon-scimitar")
        assert stored.title == "Dragon scimitar"
        assert stored.metadata == {"pageid": 1}
        assert stored.status == "synced"

    def test_same_content_is_unchanged_without_writes(self, engine, blobs, attrs):
        engine.upsert("osrs", "dragon-scimitar", "<p>v1</p>", "raw v1", attrs)
        writes = blobs.write_count

        result = engine.upsert("osrs", "dragon-scimitar", "<p>v1</p>", "raw v1", attrs)

        assert result.outcome is Outcome.UNCHANGED
        assert blobs.write_count == writes

    def test_raw_changes_alone_do_not_count(self, engine, blobs, attrs):
        engine.upsert("osrs", "dragon-scimitar", "<p>v1</p>", "raw v1", attrs)

        result = engine.upsert("osrs", "dragon-scimitar", "<p>v1</p>", "raw v2", attrs)

        assert result.outcome is Outcome.UNCHANGED
        assert blobs.get("osrs/dragon-scimitar/raw.txt") == b"raw v1"

    def test_changed_html_updates_in_place(self, engine, store, blobs, attrs):
        created = engine.upsert("osrs", "dragon-scimitar", "<p>v1</p>", "raw v1", attrs)

        result = engine.upsert("osrs", "dragon-scimitar", "<p>v2</p>", "raw v2", attrs)

        assert result.outcome is Outcome.UPDATED
        assert result.article.id == created.article.id
        assert result.article.upstream_hash != created.article.upstream_hash
        assert blobs.writes["osrs/dragon-scimitar/rendered.html"] == 2
        assert blobs.get("osrs/dragon-scimitar/rendered.html") == b"<p>v2</p>"
        assert store.count_articles("osrs") == 1

    def test_missing_raw_content_skips_raw_blob(self, engine, blobs, attrs):
        result = engine.upsert("wikipedia", "Alan_Turing", "<p>x</p>", None, attrs)

        assert result.outcome is Outcome.CREATED
        assert result.article.raw_content_key is None
        assert blobs.write_count == 1

    def test_blob_failure_leaves_no_row(self, store, attrs):
        engine = UpsertEngine(store, FailingBlobStore("raw.txt"))

        result = engine.upsert("osrs", "dragon-scimitar", "<p>v1</p>", "raw v1", attrs)

        assert result.outcome is Outcome.ERROR
        assert result.error.phase == "storage"
        assert result.error.slug == "dragon-scimitar"
        assert store.get_article("osrs", "dragon-scimitar") is None

    def test_blob_failure_keeps_previous_row(self, store, attrs):
        blobs = FailingBlobStore("never")
        engine = UpsertEngine(store, blobs)
        engine.upsert("osrs", "dragon-scimitar", "<p>v1</p>", "raw v1", attrs)
        before = store.get_article("osrs", "dragon-scimitar")

        blobs.fail_suffix = "rendered.html"
        result = engine.upsert("osrs", "dragon-scimitar", "<p>v2</p>", "raw v2", attrs)

        assert result.outcome is Outcome.ERROR
        assert store.get_article("osrs", "dragon-scimitar").upstream_hash == before.upstream_hash

    def test_write_invalidates_cache(self, engine, cache, attrs):
        cache.put(html_key("osrs", "dragon-scimitar"), "stale")

        engine.upsert("osrs", "dragon-scimitar", "<p>v1</p>", None, attrs)

        assert cache.get(html_key("osrs", "dragon-scimitar")) is None

    def test_unchanged_keeps_cache(self, engine, cache, attrs):
        engine.upsert("osrs", "dragon-scimitar", "<p>v1</p>", None, attrs)
        cache.put(html_key("osrs", "dragon-scimitar"), "<p>v1</p>")

        engine.upsert("osrs", "dragon-scimitar", "<p>v1</p>", None, attrs)

        assert cache.get(html_key("osrs", "dragon-scimitar")) == "<p>v1</p>"

    def test_cancelled_token_stops_before_writes(self, engine, blobs, attrs):
        token = CancellationToken()
        token.cancel("timed out")

        with pytest.raises(TaskCancelled):
            engine.upsert("osrs", "dragon-scimitar", "<p>v1</p>", "raw", attrs, token=token)
        assert blobs.write_count == 0

    def test_relational_failure_is_database_error(self, engine, store, blobs, attrs):
        with patch.object(store, "upsert_article", side_effect=InsertOrUpdateFailed("database is locked",
                                                                                     source_id="osrs")):
            result = engine.upsert("osrs", "dragon-scimitar", "<p>v1</p>", "raw v1", attrs)

        assert result.outcome is Outcome.ERROR
        assert result.error.phase == "database"
        assert result.error.reason == "insert_or_update_failed"
        assert result.error.slug == "dragon-scimitar"
        assert store.get_article("osrs", "dragon-scimitar") is None
        # Blobs written before the failed row write stay behind
        assert blobs.exists("osrs/dragon-scimitar/rendered.html")

    def test_unchanged_moves_article_to_back_of_refresh_order(self, engine, store, attrs):
        engine.upsert("osrs", "abyssal-whip", "<p>whip</p>", None, attrs)
        engine.upsert("osrs", "dragon-scimitar", "<p>scimitar</p>", None, attrs)
        assert store.list_articles("osrs", limit=1) == [("abyssal-whip", "Dragon scimitar")]

        result = engine.upsert("osrs", "abyssal-whip", "<p>whip</p>", None, attrs)

        assert result.outcome is Outcome.UNCHANGED
        assert store.list_articles("osrs", limit=1) == [("dragon-scimitar", "Dragon scimitar")]
        assert store.get_article("osrs", "abyssal-whip").checked_at is not None
