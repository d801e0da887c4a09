#!/usr/bin/env python3
"""
HTML normalization helpers shared by every source pipeline.
"""

import hashlib
import html as html_lib
import re
from typing import Callable, Iterable, Optional, Union
from urllib.parse import quote

from bs4 import BeautifulSoup

from ..config import get_logger, MAX_EXTRACTED_TEXT_LENGTH

logger = get_logger(__name__)

LinkRewriter = Callable[[str], Optional[str]]

_WHITESPACE = re.compile(r"\s+")


def hash_content(content: Union[str, bytes]) -> str:
    """Lowercase hex SHA-256 of the content's UTF-8 bytes."""
    if isinstance(content, str):
        content = content.encode('utf-8')
    return hashlib.sha256(content).hexdigest()


def extract_text(html: Optional[str], max_length: int = MAX_EXTRACTED_TEXT_LENGTH) -> str:
    """
    Strip all markup from HTML and return its text.

    Text nodes are joined with spaces, whitespace runs collapse to one space,
    and the result is truncated to ``max_length`` characters.
    """
    if not html:
        return ""
    soup = BeautifulSoup(html, 'html.parser')
    for element in soup(['script', 'style']):
        element.decompose()
    text = soup.get_text(separator=" ")
    text = _WHITESPACE.sub(" ", text).strip()
    return text[:max_length]


def clean_html(html: str, selectors: Iterable[str]) -> str:
    """Remove every element matching any of the CSS ``selectors``."""
    selectors = list(selectors)
    if not selectors:
        return html
    try:
        soup = BeautifulSoup(html, 'html.parser')
        for selector in selectors:
            for element in soup.select(selector):
                element.decompose()
    except (ValueError, NotImplementedError) as e:
        # Unparsable markup or selector: keep the page as fetched
        logger.warning(f"Could not clean HTML ({e}); keeping original markup")
        return html
    return str(soup)


def rewrite_links(html: str, link: Optional[LinkRewriter] = None, image: Optional[LinkRewriter] = None) -> str:
    """
    Rewrite ``<a href>`` and ``<img src>`` attributes.

    Each rewriter receives the current attribute value and returns the new one,
    or None to leave it unchanged.
    """
    soup = BeautifulSoup(html, 'html.parser')
    if link is not None:
        for a in soup.find_all('a', href=True):
            new_href = link(a['href'])
            if new_href is not None:
                a['href'] = new_href
    if image is not None:
        for img in soup.find_all('img', src=True):
            new_src = image(img['src'])
            if new_src is not None:
                img['src'] = new_src
    return str(soup)


def escape_html(text: str) -> str:
    """Escape ``& < > " '`` for use in text and attribute values."""
    return html_lib.escape(text, quote=True).replace("&#x27;", "&#39;")


def upstream_url(base: str, slug: str) -> str:
    """Join ``base`` and ``slug``, percent-encoding everything but unreserved characters."""
    return base + quote(slug, safe="-._~")


def humanize_slug(slug: str) -> str:
    """``"category-theory_basics"`` -> ``"Category Theory Basics"``."""
    words = re.sub(r"[-_]", " ", slug).split()
    return " ".join(word[:1].upper() + word[1:] for word in words)
