"""
Per-source pipelines.

A pipeline turns one candidate into a PageResult:

    fetch (source client) -> render canonical HTML -> upsert -> optional extraction

Each step either produces its value or ends the candidate with an error
result; later steps never run after a failed one. Fetch and render always
run, even when the upsert will find the content unchanged.
"""

import re
from typing import Dict, List, Optional
from urllib.parse import quote

from ..config import get_logger
from ..document_parser.html import clean_html, extract_text, rewrite_links, upstream_url
from ..document_parser.math import extract_math, has_math, stash_math, unstash_math
from ..document_parser.records import RecordExtractor
from ..document_parser.renderers import Renderer, wrap_article
from ..sources.base import Page, SourceClient
from .config import SourceSettings
from .error_tracker import DocumentParseError, NoInfobox, SyncException, WrongKind, error_from_exception
from .results import PageResult
from .upsert import ArticleAttrs, UpsertEngine

logger = get_logger(__name__)


class SourcePipeline:
    """Source-independent processing of one candidate; subclasses fill in the source specifics."""
    source = "unknown"

    def __init__(self, client: SourceClient, settings: SourceSettings):
        self.client = client
        self.settings = settings

    # Identity

    def slug_for(self, candidate: str) -> str:
        """Article slug for a candidate returned by the client."""
        return candidate

    def candidate_for(self, slug: str, title: str) -> str:
        """Client candidate for a stored article (used by refresh)."""
        return slug

    def upstream_url(self, page: Page) -> str:
        return upstream_url(self.settings.upstream_base, page.slug)

    # Transformation

    def render(self, page: Page) -> str:
        """Canonical HTML for the page."""
        if page.pre_rendered_html is None:
            raise DocumentParseError(f"{self.source}/{page.slug} has no HTML", source_id=self.source)
        return page.pre_rendered_html

    def raw(self, page: Page) -> Optional[str]:
        return page.raw_content or None

    def metadata(self, page: Page, html: str) -> Dict:
        return dict(page.source_metadata)

    def attrs(self, page: Page, html: str) -> ArticleAttrs:
        return ArticleAttrs(
            title=page.title,
            extracted_text=extract_text(html),
            upstream_url=self.upstream_url(page),
            license=self.settings.license,
            metadata=self.metadata(page, html),
        )

    def after_upsert(self, page: Page, slug: str, result: PageResult) -> None:
        """Hook run after every successful upsert, Unchanged included."""

    # Processing

    def _failed(self, exc: BaseException, slug: str) -> PageResult:
        error = error_from_exception(exc, source_id=self.source, slug=slug)
        logger.warning(f"{self.source}/{slug} failed during {error.phase}: {error.message}",
                       extra={'details': {'source': self.source, 'slug': slug, 'phase': error.phase, 'reason': error.reason}})
        return PageResult.failed(error)

    def process(self, candidate: str, engine: UpsertEngine, token=None) -> PageResult:
        slug = self.slug_for(candidate)
        if token is not None:
            token.raise_if_cancelled()

        try:
            page = self.client.fetch_page(candidate)
        except SyncException as e:
            return self._failed(e, slug)

        try:
            html = self.render(page)
            attrs = self.attrs(page, html)
        except SyncException as e:
            return self._failed(e, slug)
        except (ValueError, TypeError, AttributeError) as e:
            return self._failed(DocumentParseError(f"Could not transform {self.source}/{slug}: {e}",
                                                   source_id=self.source), slug)

        result = engine.upsert(self.source, slug, html, self.raw(page), attrs, token=token)
        if result.ok:
            self.after_upsert(page, slug, result)
        return result


_NON_SLUG = re.compile(r"[^a-z0-9]+")


def slugify_title(title: str) -> str:
    """``"Dragon scimitar"`` -> ``"dragon-scimitar"``; titles with no ASCII word characters fall back to their encoding."""
    slug = _NON_SLUG.sub("-", title.lower()).strip("-")
    if slug:
        return slug
    return quote(title, safe="").lower().replace("%", "pct")


class OsrsPipeline(SourcePipeline):
    """
    Old School RuneScape wiki.

    Candidates are page titles. The API's rendered HTML is canonical; the
    wikitext is kept as raw content and feeds item and monster extraction.
    """
    source = "osrs"

    def __init__(self, client: SourceClient, settings: SourceSettings, store=None,
                 extractor: Optional[RecordExtractor] = None):
        super().__init__(client, settings)
        self.store = store
        self.extractor = extractor or RecordExtractor()

    def slug_for(self, candidate: str) -> str:
        return slugify_title(candidate)

    def candidate_for(self, slug: str, title: str) -> str:
        return title

    def upstream_url(self, page: Page) -> str:
        return upstream_url(self.settings.upstream_base, page.title)

    def metadata(self, page: Page, html: str) -> Dict:
        metadata = {"pageid": page.source_metadata.get("pageid"), "revid": page.source_metadata.get("revid")}
        try:
            metadata.update(self.extractor.parser.extract_fields(page.raw_content or "", ["infobox_type"]))
        except NoInfobox:
            pass
        return metadata

    def after_upsert(self, page: Page, slug: str, result: PageResult) -> None:
        # Also runs for Unchanged articles
        if self.store is None or not page.raw_content:
            return
        self.extract_records(page.title, page.raw_content, slug)

    def fetch_wikitext(self, titles: List[str]) -> Dict[str, str]:
        """Current wikitext of many titles, fetched in batches without rendering."""
        pages = self.client.get_pages(titles)
        return {title: page.get("wikitext") or "" for title, page in pages.items()}

    def extract_records(self, title: str, wikitext: str, slug: str) -> Dict[str, Optional[int]]:
        """Upsert the item and monster records found in ``wikitext``; returns the ids written."""
        written: Dict[str, Optional[int]] = {"item": None, "monster": None}
        try:
            item = self.extractor.extract_item(title, wikitext, wiki_slug=slug)
            self.store.upsert_item(item)
            written["item"] = item.item_id
        except WrongKind as e:
            logger.debug(f"{slug}: no item record ({e.reason}: {e.message})")
        except SyncException as e:
            logger.warning(f"{slug}: item record not stored: {e.message}")
        try:
            monster = self.extractor.extract_monster(title, wikitext, wiki_slug=slug)
            self.store.upsert_monster(monster)
            written["monster"] = monster.monster_id
        except WrongKind as e:
            logger.debug(f"{slug}: no monster record ({e.reason}: {e.message})")
        except SyncException as e:
            logger.warning(f"{slug}: monster record not stored: {e.message}")
        return written


class NLabPipeline(SourcePipeline):
    """nLab markdown with itex math, rendered through the injected renderer."""
    source = "nlab"

    def __init__(self, client: SourceClient, settings: SourceSettings, renderer: Renderer):
        super().__init__(client, settings)
        self.renderer = renderer

    def render(self, page: Page) -> str:
        text, spans = stash_math(page.raw_content or "")
        body = unstash_math(self.renderer.render(text), spans)
        return wrap_article(page.title, body, "nlab")

    def metadata(self, page: Page, html: str) -> Dict:
        return {
            "categories": page.source_metadata.get("categories", []),
            "has_math": has_math(page.raw_content or ""),
            "math_count": len(extract_math(page.raw_content or "")),
        }


WIKIPEDIA_NOISE = ["script", "style", ".mw-editsection", ".navbox", ".sistersitebox", ".noprint", "#coordinates"]


def _wikipedia_link(href: str) -> Optional[str]:
    if href.startswith("./"):
        return "/wikipedia/" + href[2:]
    if href.startswith("/wiki/"):
        return "/wikipedia/" + href[len("/wiki/"):]
    return None


def _protocol_relative(src: str) -> Optional[str]:
    return "https:" + src if src.startswith("//") else None


class WikipediaPipeline(SourcePipeline):
    """Parsoid HTML, cleaned of edit links and navigation boxes, links pointed at the mirror."""
    source = "wikipedia"

    def render(self, page: Page) -> str:
        html = clean_html(page.pre_rendered_html or "", WIKIPEDIA_NOISE)
        return rewrite_links(html, link=_wikipedia_link, image=_protocol_relative)

    def metadata(self, page: Page, html: str) -> Dict:
        return {
            "description": page.source_metadata.get("description"),
            "image_url": page.source_metadata.get("image_url"),
        }


VINTAGE_MACHINERY_NOISE = ["nav", "header", "footer", ".navigation", ".sidebar", "#menu", "script", "style", "noscript"]


class VintageMachineryPipeline(SourcePipeline):
    """Mirrored static HTML, stripped of site chrome, links pointed at the mirror."""
    source = "vintage_machinery"

    def _link(self, href: str) -> Optional[str]:
        if href.startswith(("http://", "https://", "#", "mailto:")):
            return None
        if href.startswith("/"):
            path = href.lstrip("/")
            for suffix in (".html", ".htm"):
                if path.endswith(suffix):
                    path = path[:-len(suffix)]
            return "/machines/" + path.replace("/", "__")
        return None

    def _image(self, src: str) -> Optional[str]:
        if src.startswith(("data:", "http://", "https://")):
            return None
        base = self.settings.base_url.rstrip("/")
        return f"{base}/{src.lstrip('/')}"

    def render(self, page: Page) -> str:
        html = clean_html(page.pre_rendered_html or page.raw_content or "", VINTAGE_MACHINERY_NOISE)
        return rewrite_links(html, link=self._link, image=self._image)

    def upstream_url(self, page: Page) -> str:
        return self.settings.upstream_base + page.slug.replace("__", "/")

    def metadata(self, page: Page, html: str) -> Dict:
        return {
            "category": page.source_metadata.get("category"),
            "image_count": len(page.source_metadata.get("images", [])),
        }
