"""
Markup renderers.

A renderer turns markdown text into HTML. The renderer is picked once, when
the pipelines are built, from ``SyncConfig.renderer`` and passed to the
pipelines that need one.
"""

import re
from abc import ABC, abstractmethod

import markdown

from ..config import get_logger
from .html import escape_html

logger = get_logger(__name__)


class Renderer(ABC):
    """Converts markdown source to an HTML fragment."""
    name = "renderer"

    @abstractmethod
    def render(self, text: str) -> str:
        ...


class MarkdownRenderer(Renderer):
    """Python-Markdown with tables, fenced code and definition lists."""
    name = "markdown"

    def __init__(self, extensions=None):
        self.extensions = list(extensions) if extensions is not None else ["tables", "fenced_code", "def_list"]

    def render(self, text: str) -> str:
        # Markdown instances keep state between conversions; use a fresh one per call
        return markdown.markdown(text or "", extensions=self.extensions, output_format="html")


class RegexMarkdownRenderer(Renderer):
    """
    Minimal deterministic markdown converter.

    Handles ATX headings (h1-h3), bold, emphasis, inline code, links and
    blank-line separated paragraphs. Everything else passes through as text.
    """
    name = "regex"

    _HEADINGS = [
        (re.compile(r"^### (.+)$", re.MULTILINE), r"<h3>\1</h3>"),
        (re.compile(r"^## (.+)$", re.MULTILINE), r"<h2>\1</h2>"),
        (re.compile(r"^# (.+)$", re.MULTILINE), r"<h1>\1</h1>"),
    ]
    _INLINE = [
        (re.compile(r"\*\*(.+?)\*\*"), r"<strong>\1</strong>"),
        (re.compile(r"(?<![*\w])\*(?!\s)(.+?)(?<!\s)\*(?!\*)"), r"<em>\1</em>"),
        (re.compile(r"`([^`]+)`"), r"<code>\1</code>"),
        (re.compile(r"\[([^\]]+)\]\(([^)\s]+)\)"), r'<a href="\2">\1</a>'),
    ]
    _BLOCK_TAG = re.compile(r"^<(h[1-6]|div|ul|ol|pre|table|blockquote)\b")

    def render(self, text: str) -> str:
        html = text or ""
        for pattern, replacement in self._HEADINGS:
            html = pattern.sub(replacement, html)
        for pattern, replacement in self._INLINE:
            html = pattern.sub(replacement, html)

        blocks = []
        for block in re.split(r"\n\s*\n", html.strip()):
            block = block.strip()
            if not block:
                continue
            if self._BLOCK_TAG.match(block):
                blocks.append(block)
            else:
                blocks.append(f"<p>{block}</p>")
        return "\n".join(blocks)


def create_renderer(kind) -> Renderer:
    """
    Build the renderer named by ``kind`` (a RendererKind or its value).

    Raises:
        ValueError: For unknown renderer names
    """
    value = getattr(kind, "value", kind)
    if value == "markdown":
        renderer: Renderer = MarkdownRenderer()
    elif value == "regex":
        renderer = RegexMarkdownRenderer()
    else:
        raise ValueError(f"Unknown renderer: {kind}")
    logger.info(f"Using {renderer.name} renderer")
    return renderer


def wrap_article(title: str, body_html: str, css_class: str) -> str:
    """Wrap a rendered body in the article shell used for markdown sources."""
    return (
        f'<article class="{css_class}-article">'
        f'<header><h1>{escape_html(title)}</h1></header>'
        f'<div class="{css_class}-content">{body_html}</div>'
        f'</article>'
    )
