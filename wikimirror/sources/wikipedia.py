"""
Wikipedia REST v1 client.

Each page is fetched as a pair: the JSON summary (title, description,
thumbnail, timestamp) and the Parsoid HTML. Wikipedia is mirrored on demand,
so the client supports search and single-page fetches but no full listing.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from ..config import get_logger
from ..document_parser.html import humanize_slug
from .base import HttpSourceClient, Page

logger = get_logger(__name__)


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


class WikipediaClient(HttpSourceClient):
    source = "wikipedia"

    def __init__(self, base_url: str = "https://en.wikipedia.org/api/rest_v1", **kwargs):
        super().__init__(base_url, **kwargs)

    @staticmethod
    def _encode(slug: str) -> str:
        return quote(slug.replace(" ", "_"), safe="")

    def fetch_summary(self, slug: str) -> Dict[str, Any]:
        return self.get_json(f"/page/summary/{self._encode(slug)}")

    def fetch_html(self, slug: str) -> str:
        response = self.get(f"/page/html/{self._encode(slug)}", headers={'Accept': 'text/html'})
        return response.text

    def fetch_page(self, slug: str) -> Page:
        summary = self.fetch_summary(slug)
        html = self.fetch_html(slug)
        return Page(
            slug=slug,
            title=summary.get("title") or humanize_slug(slug),
            raw_content=html,
            pre_rendered_html=html,
            last_modified=_parse_timestamp(summary.get("timestamp")),
            source_metadata={
                "description": summary.get("description"),
                "image_url": (summary.get("thumbnail") or {}).get("source"),
                "extract": summary.get("extract"),
            },
        )

    def search(self, query: str, limit: Optional[int] = None) -> List[str]:
        limit = limit or 10
        data = self.get_json(f"/page/search/{quote(query, safe='')}", params={"limit": limit})
        slugs = [page["key"] for page in data.get("pages", []) if page.get("key")][:limit]
        logger.info(f"wikipedia search {query!r}: {len(slugs)} results")
        return slugs

