"""
nLab client backed by a git checkout of the nlab-content repository.

Layout of the repository: every page lives in its own directory under
``pages/``; the directory holds a ``name`` file whose content is the page's
slug and a ``content.md`` file with optional front matter followed by
markdown (with itex math).
"""

import re
import subprocess
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from ..config import get_logger
from ..document_parser.html import humanize_slug
from ..sync.error_tracker import DocumentParseError, NotFound, RequestFailed
from .base import Page, SourceClient

logger = get_logger(__name__)

FRONT_MATTER = re.compile(r"\A---\n(.+?)\n---\n(.*)\Z", re.DOTALL)


def parse_front_matter(text: str):
    """Split ``key: value`` front matter from the body; returns (dict, body)."""
    match = FRONT_MATTER.match(text)
    if not match:
        return {}, text
    meta: Dict[str, str] = {}
    for line in match.group(1).splitlines():
        if ":" in line:
            key, value = line.split(":", 1)
            meta[key.strip()] = value.strip()
    return meta, match.group(2)


class NLabClient(SourceClient):
    source = "nlab"

    def __init__(self, local_path: str, repo_url: str = "https://github.com/ncatlab/nlab-content.git",
                 branch: str = "master", timeout: int = 600, runner=subprocess.run):
        self.local_path = Path(local_path)
        self.repo_url = repo_url
        self.branch = branch
        self.timeout = timeout
        self._run = runner
        self._index: Optional[Dict[str, Path]] = None
        self._index_lock = threading.Lock()

    def _git(self, args: List[str], cwd: Optional[Path] = None) -> str:
        command = ["git", *args]
        logger.debug(f"Running {' '.join(command)}")
        try:
            result = self._run(command, capture_output=True, text=True, cwd=cwd, timeout=self.timeout)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise RequestFailed(f"git {args[0]} failed: {e}", source_id=self.source) from e
        if result.returncode != 0:
            raise RequestFailed(f"git {args[0]} exited with {result.returncode}: {result.stderr.strip()}",
                                source_id=self.source)
        return result.stdout

    def sync_mirror(self, full: bool = False) -> Optional[str]:
        """Clone the repository or pull the configured branch; returns the HEAD revision."""
        if (self.local_path / ".git").exists():
            logger.info(f"Pulling {self.repo_url} ({self.branch})")
            self._git(["pull", "origin", self.branch], cwd=self.local_path)
        else:
            logger.info(f"Cloning {self.repo_url} ({self.branch}) into {self.local_path}")
            self.local_path.parent.mkdir(parents=True, exist_ok=True)
            self._git(["clone", "--branch", self.branch, "--single-branch", "--depth", "1",
                       self.repo_url, str(self.local_path)])
        with self._index_lock:
            self._index = None
        return self._git(["rev-parse", "HEAD"], cwd=self.local_path).strip()

    def _build_index(self) -> Dict[str, Path]:
        index: Dict[str, Path] = {}
        pages_dir = self.local_path / "pages"
        if not pages_dir.exists():
            return index
        for name_file in pages_dir.rglob("name"):
            if not name_file.is_file():
                continue
            try:
                slug = name_file.read_text(encoding="utf-8").strip()
            except (OSError, UnicodeDecodeError) as e:
                logger.warning(f"Skipping unreadable nLab page name {name_file}: {e}")
                continue
            if slug:
                index[slug] = name_file.parent
        logger.info(f"Indexed {len(index)} nLab pages")
        return index

    @property
    def index(self) -> Dict[str, Path]:
        with self._index_lock:
            if self._index is None:
                self._index = self._build_index()
            return self._index

    def list_all_slugs(self, limit: Optional[int] = None) -> List[str]:
        slugs = sorted(self.index)
        return slugs[:limit] if limit else slugs

    def list_changed_since(self, since: datetime, limit: Optional[int] = None) -> List[str]:
        output = self._git(["log", f"--since={since.isoformat()}", "--name-only", "--pretty=format:", "--", "pages/"],
                           cwd=self.local_path)
        directories = []
        for line in output.splitlines():
            line = line.strip()
            if line.endswith("/content.md"):
                directory = (self.local_path / line).parent
                if directory not in directories:
                    directories.append(directory)
        by_directory = {path: slug for slug, path in self.index.items()}
        slugs = [by_directory[d] for d in directories if d in by_directory]
        return slugs[:limit] if limit else slugs

    def fetch_page(self, slug: str) -> Page:
        directory = self.index.get(slug)
        content_file = directory / "content.md" if directory else None
        if content_file is None or not content_file.exists():
            raise NotFound(f"nLab page not found: {slug}", source_id=self.source)

        try:
            text = content_file.read_text(encoding="utf-8")
            modified = content_file.stat().st_mtime
        except UnicodeDecodeError as e:
            raise DocumentParseError(f"nLab page {slug} is not valid UTF-8: {e}", source_id=self.source) from e
        except OSError as e:
            raise RequestFailed(f"Could not read nLab page {slug}: {e}", source_id=self.source) from e

        meta, body = parse_front_matter(text)
        categories = [c.strip() for c in meta.get("categories", "").split(",") if c.strip()]
        return Page(
            slug=slug,
            title=meta.get("title") or humanize_slug(slug),
            raw_content=body,
            last_modified=datetime.fromtimestamp(modified, tz=timezone.utc),
            source_metadata={"categories": categories},
        )
