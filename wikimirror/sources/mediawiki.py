"""
MediaWiki action API client, configured for the Old School RuneScape wiki.

Candidates for this source are page titles (``"Dragon scimitar"``); the
pipeline derives article slugs from them.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from ..config import get_logger
from ..sync.error_tracker import NotFound, RequestFailed
from .base import HttpSourceClient, Page

logger = get_logger(__name__)

BATCH_SIZE = 50
MAX_LIST_LIMIT = 500


def _iso(ts: datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _dedupe(values) -> List[str]:
    seen = set()
    ordered = []
    for value in values:
        if value not in seen:
            seen.add(value)
            ordered.append(value)
    return ordered


class MediaWikiClient(HttpSourceClient):
    """Structured-query client for a MediaWiki installation."""
    source = "osrs"

    def __init__(self, base_url: str = "https://oldschool.runescape.wiki/api.php", categories=None,
                 category_limit: int = 10_000, source: str = "osrs", **kwargs):
        super().__init__(base_url, **kwargs)
        self.source = source
        self.categories = list(categories or [])
        self.category_limit = category_limit

    def _api(self, params: Dict[str, Any]) -> Dict[str, Any]:
        params = {"format": "json", "formatversion": "1", **params}
        data = self.get_json(self.base_url, params=params)
        if "error" in data:
            code = data["error"].get("code", "unknown")
            info = data["error"].get("info", "")
            if code == "missingtitle":
                raise NotFound(f"{self.source}: {info or 'page does not exist'}", source_id=self.source)
            raise RequestFailed(f"{self.source} API error {code}: {info}", source_id=self.source)
        return data

    def fetch_page(self, slug: str) -> Page:
        """Fetch rendered HTML, wikitext and revision of the page titled ``slug``."""
        data = self._api({"action": "parse", "page": slug, "prop": "text|wikitext|revid"})
        parse = data.get("parse", {})
        return Page(
            slug=slug,
            title=parse.get("title", slug),
            raw_content=(parse.get("wikitext") or {}).get("*", ""),
            pre_rendered_html=(parse.get("text") or {}).get("*", ""),
            source_metadata={"pageid": parse.get("pageid"), "revid": parse.get("revid")},
        )

    def get_pages(self, titles: List[str]) -> Dict[str, Dict[str, Any]]:
        """Latest revision metadata and wikitext for many titles, 50 per request."""
        pages: Dict[str, Dict[str, Any]] = {}
        for start in range(0, len(titles), BATCH_SIZE):
            batch = titles[start:start + BATCH_SIZE]
            data = self._api({
                "action": "query",
                "titles": "|".join(batch),
                "prop": "revisions",
                "rvprop": "content|ids|timestamp",
                "rvslots": "main",
            })
            for page in data.get("query", {}).get("pages", {}).values():
                if "missing" in page:
                    continue
                revision = (page.get("revisions") or [{}])[0]
                content = revision.get("slots", {}).get("main", {}).get("*", revision.get("*"))
                pages[page["title"]] = {
                    "pageid": page.get("pageid"),
                    "revid": revision.get("revid"),
                    "timestamp": revision.get("timestamp"),
                    "wikitext": content,
                }
        return pages

    def _paginate(self, params: Dict[str, Any], list_name: str, continue_key: str, limit: int) -> Iterator[Dict[str, Any]]:
        fetched = 0
        cont: Optional[str] = None
        while fetched < limit:
            request = dict(params)
            if cont:
                request[continue_key] = cont
            data = self._api(request)
            for entry in data.get("query", {}).get(list_name, []):
                if fetched >= limit:
                    return
                fetched += 1
                yield entry
            cont = (data.get("continue") or {}).get(continue_key)
            if not cont:
                return

    def list_changed_since(self, since: datetime, limit: Optional[int] = None) -> List[str]:
        """Titles of main-namespace pages edited or created since ``since``, deduplicated."""
        limit = limit or MAX_LIST_LIMIT
        params = {
            "action": "query",
            "list": "recentchanges",
            "rcprop": "title|ids|timestamp",
            "rctype": "edit|new",
            "rcnamespace": 0,
            "rcend": _iso(since),
            "rclimit": min(limit, MAX_LIST_LIMIT),
        }
        titles = [entry["title"] for entry in self._paginate(params, "recentchanges", "rccontinue", limit)]
        return _dedupe(titles)

    def list_category(self, category: str, limit: Optional[int] = None) -> List[str]:
        limit = limit or 5_000
        if not category.startswith("Category:"):
            category = f"Category:{category}"
        params = {
            "action": "query",
            "list": "categorymembers",
            "cmtitle": category,
            "cmlimit": min(limit, MAX_LIST_LIMIT),
            "cmnamespace": 0,
        }
        return [entry["title"] for entry in self._paginate(params, "categorymembers", "cmcontinue", limit)]

    def list_all_slugs(self, limit: Optional[int] = None) -> List[str]:
        """Members of every configured main category, deduplicated in category order."""
        titles: List[str] = []
        for category in self.categories:
            members = self.list_category(category, limit=self.category_limit)
            logger.info(f"{self.source}: {len(members)} pages in {category}")
            titles.extend(members)
        titles = _dedupe(titles)
        return titles[:limit] if limit else titles

    def search(self, query: str, limit: Optional[int] = None) -> List[str]:
        limit = limit or 50
        data = self._api({"action": "query", "list": "search", "srsearch": query,
                          "srlimit": min(limit, MAX_LIST_LIMIT)})
        return [entry["title"] for entry in data.get("query", {}).get("search", [])][:limit]
