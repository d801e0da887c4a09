"""
vintagemachinery.org client.

The site has no API, so it is mirrored with ``wget`` and pages are read from
the local copy. Slugs are paths relative to the site root without the HTML
extension, with ``/`` replaced by ``__`` (``pubs/1234.html`` -> ``pubs__1234``).
"""

import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from bs4 import BeautifulSoup

from ..config import get_logger, USER_AGENT
from ..document_parser.html import humanize_slug
from ..sync.error_tracker import NotFound, RequestFailed
from .base import Page, SourceClient

logger = get_logger(__name__)

HTML_SUFFIXES = (".html", ".htm")
EXCLUDED_DIRS = ("/images/", "/css/", "/js/")
CONTENT_SELECTORS = ["#content", "#main-content", ".content", "main", "article", "body"]
# wget exits 8 when some URLs answered with errors; the rest of the mirror is usable
WGET_OK_EXIT_CODES = (0, 8)

CATEGORY_PREFIXES = {
    "pubs__": "publications",
    "mfgindex__": "manufacturers",
}


def slug_to_path(slug: str) -> str:
    return slug.replace("__", "/")


def path_to_slug(relative_path: str) -> str:
    for suffix in HTML_SUFFIXES:
        if relative_path.endswith(suffix):
            relative_path = relative_path[:-len(suffix)]
            break
    return relative_path.replace("/", "__")


def category_for(slug: str) -> str:
    for prefix, category in CATEGORY_PREFIXES.items():
        if slug.startswith(prefix):
            return category
    return "general"


class VintageMachineryClient(SourceClient):
    source = "vintage_machinery"

    def __init__(self, local_path: str, base_url: str = "https://vintagemachinery.org",
                 include_paths=("pubs/", "mfgindex/"), rate_limit_ms: int = 2000, user_agent: str = USER_AGENT,
                 timeout: Optional[int] = None, runner=subprocess.run):
        self.local_path = Path(local_path)
        self.base_url = base_url.rstrip("/")
        self.include_paths = list(include_paths)
        self.rate_limit_ms = rate_limit_ms
        self.user_agent = user_agent
        self.timeout = timeout
        self._run = runner

    @property
    def host(self) -> str:
        return self.base_url.split("://", 1)[-1]

    @property
    def site_dir(self) -> Path:
        """Mirror root; wget names it after the host, with or without ``www.``."""
        plain = self.local_path / self.host.removeprefix("www.")
        if plain.exists():
            return plain
        www = self.local_path / f"www.{self.host.removeprefix('www.')}"
        return www if www.exists() else plain

    def _has_content(self) -> bool:
        return self.site_dir.exists() and any(self.site_dir.iterdir())

    def wget_command(self, full: bool = False) -> List[str]:
        wait = max(self.rate_limit_ms // 1000, 1)
        include = ",".join("/" + p.strip("/") for p in self.include_paths)
        command = [
            "wget",
            "--mirror",
            "--convert-links",
            "--adjust-extension",
            "--page-requisites",
            "--no-parent",
            f"--wait={wait}",
            "--random-wait",
            f"--user-agent={self.user_agent}",
            f"--directory-prefix={self.local_path}",
            "--timestamping",
            "--level=5",
        ]
        if include:
            command.append(f"--include-directories={include}")
        if not full and self._has_content():
            command.append("--no-clobber")
        command.append(self.base_url + "/")
        return command

    def sync_mirror(self, full: bool = False) -> Optional[str]:
        """Run wget against the site; returns the mirror directory."""
        self.local_path.mkdir(parents=True, exist_ok=True)
        command = self.wget_command(full=full)
        logger.info(f"Mirroring {self.base_url} into {self.local_path} (full={full})")
        try:
            result = self._run(command, capture_output=True, text=True, timeout=self.timeout)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise RequestFailed(f"wget failed: {e}", source_id=self.source) from e
        if result.returncode not in WGET_OK_EXIT_CODES:
            raise RequestFailed(f"wget exited with {result.returncode}: {(result.stderr or '')[-500:]}",
                                source_id=self.source)
        return str(self.site_dir)

    def _html_files(self):
        root = self.site_dir
        if not root.exists():
            return
        for path in sorted(root.rglob("*")):
            if not path.is_file() or path.suffix.lower() not in HTML_SUFFIXES:
                continue
            relative = "/" + path.relative_to(root).as_posix()
            if any(excluded in relative for excluded in EXCLUDED_DIRS):
                continue
            yield path

    def _slug(self, path: Path) -> str:
        return path_to_slug(path.relative_to(self.site_dir).as_posix())

    def list_all_slugs(self, limit: Optional[int] = None) -> List[str]:
        slugs = [self._slug(path) for path in self._html_files()]
        return slugs[:limit] if limit else slugs

    def list_changed_since(self, since: datetime, limit: Optional[int] = None) -> List[str]:
        threshold = since.timestamp()
        slugs = [self._slug(path) for path in self._html_files() if path.stat().st_mtime > threshold]
        return slugs[:limit] if limit else slugs

    def list_category(self, category: str, limit: Optional[int] = None) -> List[str]:
        prefix = category.strip("/").replace("/", "__") + "__"
        slugs = [slug for slug in self.list_all_slugs() if slug.startswith(prefix)]
        return slugs[:limit] if limit else slugs

    def _resolve(self, slug: str) -> Optional[Path]:
        """Mirrored file for ``slug``; paths that leave the mirror root never resolve."""
        root = self.site_dir.resolve()
        relative = slug_to_path(slug)
        for candidate in (relative, relative + ".html", relative + ".htm"):
            path = (root / candidate).resolve()
            if not path.is_relative_to(root):
                logger.warning(f"Rejected slug outside the mirror: {slug}")
                return None
            if path.is_file():
                return path
        return None

    def fetch_page(self, slug: str) -> Page:
        path = self._resolve(slug)
        if path is None:
            raise NotFound(f"Mirrored page not found: {slug}", source_id=self.source)

        try:
            html = path.read_text(encoding="utf-8", errors="replace")
            modified = path.stat().st_mtime
        except OSError as e:
            raise RequestFailed(f"Could not read mirrored page {slug}: {e}", source_id=self.source) from e
        soup = BeautifulSoup(html, "html.parser")
        title_tag = soup.find("title")
        title = title_tag.get_text(strip=True) if title_tag else ""
        images = [img["src"] for img in soup.find_all("img", src=True) if not img["src"].startswith("data:")]
        content = None
        for selector in CONTENT_SELECTORS:
            content = soup.select_one(selector)
            if content is not None:
                break

        return Page(
            slug=slug,
            title=title or " - ".join(humanize_slug(part) for part in slug.split("__")),
            raw_content=html,
            pre_rendered_html=str(content) if content is not None else html,
            last_modified=datetime.fromtimestamp(modified, tz=timezone.utc),
            source_metadata={"category": category_for(slug), "images": images},
        )
