"""
Relational store for articles and structured OSRS records.

Backed by SQLite. Every table has a natural key (``(source, slug)`` for
articles, ``item_id`` / ``monster_id`` for records) and writes are
natural-key upserts, so replaying the same write is harmless.
"""

import json
import sqlite3
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone, date
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from ..config import get_logger
from .error_tracker import InsertOrUpdateFailed

logger = get_logger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def _checked_now() -> str:
    # Microsecond precision; refresh orders by this column
    return datetime.now(timezone.utc).isoformat()


def _iso(value: Optional[Union[datetime, date]]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class Article:
    """One mirrored page, identified by ``(source, slug)``."""
    source: str
    slug: str
    title: str
    extracted_text: str = ""
    rendered_html_key: Optional[str] = None
    raw_content_key: Optional[str] = None
    upstream_url: Optional[str] = None
    upstream_hash: Optional[str] = None
    status: str = "synced"
    license: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    synced_at: Optional[datetime] = None
    checked_at: Optional[datetime] = None
    id: Optional[int] = None
    inserted_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


ARTICLE_COLUMNS = (
    "id", "source", "slug", "title", "extracted_text", "rendered_html_key", "raw_content_key",
    "upstream_url", "upstream_hash", "status", "license", "metadata", "synced_at",
    "checked_at", "inserted_at", "updated_at",
)


class ArticleStore:
    """
    SQLite-backed store for articles, items and monsters.

    Connections are opened per operation so the store can be shared by the
    worker threads of a sync run.
    """

    def __init__(self, database_path: Union[str, Path]):
        self.database_path = Path(database_path)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.database_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self):
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS articles (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    source TEXT NOT NULL,
                    slug TEXT NOT NULL,
                    title TEXT NOT NULL,
                    extracted_text TEXT,
                    rendered_html_key TEXT,
                    raw_content_key TEXT,
                    upstream_url TEXT,
                    upstream_hash TEXT,
                    status TEXT NOT NULL DEFAULT 'synced',
                    license TEXT,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    synced_at TEXT,
                    checked_at TEXT,
                    inserted_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (source, slug)
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_articles_source ON articles(source)")
            columns = {row["name"] for row in conn.execute("PRAGMA table_info(articles)")}
            if "checked_at" not in columns:
                conn.execute("ALTER TABLE articles ADD COLUMN checked_at TEXT")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_articles_status ON articles(status)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_articles_checked ON articles(source, checked_at)")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS osrs_items (
                    item_id INTEGER PRIMARY KEY,
                    name TEXT NOT NULL,
                    members BOOLEAN,
                    tradeable BOOLEAN,
                    equipable BOOLEAN,
                    stackable BOOLEAN,
                    quest_item BOOLEAN,
                    buy_limit INTEGER,
                    high_alch INTEGER,
                    low_alch INTEGER,
                    value INTEGER,
                    weight REAL,
                    examine TEXT,
                    release_date TEXT,
                    wiki_slug TEXT,
                    equipment_stats TEXT NOT NULL DEFAULT '{}',
                    inserted_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_items_name ON osrs_items(name)")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS osrs_monsters (
                    monster_id INTEGER PRIMARY KEY,
                    name TEXT NOT NULL,
                    combat_level INTEGER,
                    hitpoints INTEGER,
                    max_hit INTEGER,
                    attack_style TEXT,
                    slayer_level INTEGER,
                    slayer_xp REAL,
                    members BOOLEAN,
                    examine TEXT,
                    release_date TEXT,
                    locations TEXT NOT NULL DEFAULT '[]',
                    wiki_slug TEXT,
                    inserted_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_monsters_name ON osrs_monsters(name)")

    # Articles

    def _row_to_article(self, row: sqlite3.Row) -> Article:
        return Article(
            id=row["id"],
            source=row["source"],
            slug=row["slug"],
            title=row["title"],
            extracted_text=row["extracted_text"] or "",
            rendered_html_key=row["rendered_html_key"],
            raw_content_key=row["raw_content_key"],
            upstream_url=row["upstream_url"],
            upstream_hash=row["upstream_hash"],
            status=row["status"],
            license=row["license"],
            metadata=json.loads(row["metadata"] or "{}"),
            synced_at=_parse_datetime(row["synced_at"]),
            checked_at=_parse_datetime(row["checked_at"]),
            inserted_at=_parse_datetime(row["inserted_at"]),
            updated_at=_parse_datetime(row["updated_at"]),
        )

    def get_article(self, source: str, slug: str) -> Optional[Article]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {', '.join(ARTICLE_COLUMNS)} FROM articles WHERE source = ? AND slug = ?",
                (source, slug)
            ).fetchone()
        return self._row_to_article(row) if row else None

    def upsert_article(self, article: Article) -> Article:
        """
        Insert or update an article by ``(source, slug)``.

        Raises:
            InsertOrUpdateFailed: If SQLite rejects the write
        """
        now = utc_now()
        params = {
            "source": article.source,
            "slug": article.slug,
            "title": article.title,
            "extracted_text": article.extracted_text,
            "rendered_html_key": article.rendered_html_key,
            "raw_content_key": article.raw_content_key,
            "upstream_url": article.upstream_url,
            "upstream_hash": article.upstream_hash,
            "status": article.status,
            "license": article.license,
            "metadata": json.dumps(article.metadata, default=str),
            "synced_at": _iso(article.synced_at),
            "checked_at": _checked_now(),
            "now": now.isoformat(),
        }
        try:
            with self._connect() as conn:
                conn.execute("""
                    INSERT INTO articles (source, slug, title, extracted_text, rendered_html_key, raw_content_key,
                                          upstream_url, upstream_hash, status, license, metadata, synced_at,
                                          checked_at, inserted_at, updated_at)
                    VALUES (:source, :slug, :title, :extracted_text, :rendered_html_key, :raw_content_key,
                            :upstream_url, :upstream_hash, :status, :license, :metadata, :synced_at, :checked_at,
                            :now, :now)
                    ON CONFLICT(source, slug) DO UPDATE SET
                        title = excluded.title,
                        extracted_text = excluded.extracted_text,
                        rendered_html_key = excluded.rendered_html_key,
                        raw_content_key = excluded.raw_content_key,
                        upstream_url = excluded.upstream_url,
                        upstream_hash = excluded.upstream_hash,
                        status = excluded.status,
                        license = excluded.license,
                        metadata = excluded.metadata,
                        synced_at = excluded.synced_at,
                        checked_at = excluded.checked_at,
                        updated_at = excluded.updated_at
                """, params)
        except sqlite3.Error as e:
            raise InsertOrUpdateFailed(
                f"Failed to upsert article {article.source}/{article.slug}: {e}",
                source_id=article.source
            ) from e

        stored = self.get_article(article.source, article.slug)
        if stored is None:
            raise InsertOrUpdateFailed(f"Article {article.source}/{article.slug} missing after upsert",
                                       source_id=article.source)
        return stored

    def mark_checked(self, source: str, slug: str) -> None:
        """Record that an article was fetched and found unchanged."""
        try:
            with self._connect() as conn:
                conn.execute("UPDATE articles SET checked_at = ? WHERE source = ? AND slug = ?",
                             (_checked_now(), source, slug))
        except sqlite3.Error as e:
            raise InsertOrUpdateFailed(f"Failed to mark {source}/{slug} checked: {e}", source_id=source) from e

    def list_articles(self, source: str, limit: Optional[int] = None) -> List[Tuple[str, str]]:
        """``(slug, title)`` pairs for a source, least recently checked first."""
        query = "SELECT slug, title FROM articles WHERE source = ? ORDER BY checked_at, id"
        params: Tuple[Any, ...] = (source,)
        if limit is not None:
            query += " LIMIT ?"
            params = (source, limit)
        with self._connect() as conn:
            return [(row["slug"], row["title"]) for row in conn.execute(query, params)]

    def count_articles(self, source: Optional[str] = None) -> int:
        with self._connect() as conn:
            if source is None:
                return conn.execute("SELECT COUNT(*) FROM articles").fetchone()[0]
            return conn.execute("SELECT COUNT(*) FROM articles WHERE source = ?", (source,)).fetchone()[0]

    # Structured records

    def _upsert_record(self, table: str, key: str, row: Dict[str, Any]) -> None:
        now = utc_now().isoformat()
        row = dict(row, inserted_at=now, updated_at=now)
        columns = list(row)
        updates = ", ".join(f"{c} = excluded.{c}" for c in columns if c not in (key, "inserted_at"))
        sql = (
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({', '.join(':' + c for c in columns)}) "
            f"ON CONFLICT({key}) DO UPDATE SET {updates}"
        )
        try:
            with self._connect() as conn:
                conn.execute(sql, row)
        except sqlite3.Error as e:
            raise InsertOrUpdateFailed(f"Failed to upsert {table} {row.get(key)}: {e}", source_id="osrs") from e
        logger.debug(f"Upserted {table} {row.get(key)}")

    def upsert_item(self, item) -> None:
        row = asdict(item)
        row["release_date"] = _iso(row["release_date"])
        row["equipment_stats"] = json.dumps(row["equipment_stats"])
        self._upsert_record("osrs_items", "item_id", row)

    def upsert_monster(self, monster) -> None:
        row = asdict(monster)
        row["release_date"] = _iso(row["release_date"])
        row["locations"] = json.dumps(row["locations"])
        self._upsert_record("osrs_monsters", "monster_id", row)

    def get_item(self, item_id: int) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM osrs_items WHERE item_id = ?", (item_id,)).fetchone()
        if row is None:
            return None
        data = dict(row)
        data["equipment_stats"] = json.loads(data["equipment_stats"])
        return data

    def get_monster(self, monster_id: int) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM osrs_monsters WHERE monster_id = ?", (monster_id,)).fetchone()
        if row is None:
            return None
        data = dict(row)
        data["locations"] = json.loads(data["locations"])
        return data
