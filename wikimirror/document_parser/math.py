"""
Math span wrapping for markdown sources.

TeX is not rendered here. Display math (``$$...$$``) and inline math
(``$...$``) are wrapped in elements that carry the escaped source in a
``data-math`` attribute, which the presentation layer's KaTeX/MathJax hook
picks up.
"""

import re
from typing import List, Tuple

from .html import escape_html

DISPLAY_MATH = re.compile(r"\$\$(.+?)\$\$", re.DOTALL)
INLINE_MATH = re.compile(r"(?<!\$)\$([^\$\n]+?)\$(?!\$)")
_ARRAY = re.compile(r"\\array\{")


def has_math(text: str) -> bool:
    return "$" in (text or "")


def normalize_tex(source: str) -> str:
    """Trim the TeX source and map itex ``\\array{`` to ``\\begin{array}{``."""
    return _ARRAY.sub(r"\\begin{array}{", source.strip())


def _display(match: re.Match) -> str:
    tex = escape_html(normalize_tex(match.group(1)))
    return f'<div class="math-display" data-math="{tex}">\\[{tex}\\]</div>'


def _inline(match: re.Match) -> str:
    tex = escape_html(normalize_tex(match.group(1)))
    return f'<span class="math-inline" data-math="{tex}">\\({tex}\\)</span>'


def extract_math(text: str) -> List[Tuple[str, str]]:
    """``[("display" | "inline", source), ...]`` in document order within each kind."""
    found = [("display", m.group(1).strip()) for m in DISPLAY_MATH.finditer(text)]
    remainder = DISPLAY_MATH.sub(" ", text)
    found.extend(("inline", m.group(1).strip()) for m in INLINE_MATH.finditer(remainder))
    return found


def stash_math(text: str) -> Tuple[str, List[str]]:
    """
    Replace math spans with alphanumeric placeholders.

    Markdown treats ``\\(``, ``_`` and ``*`` as markup, so math has to be
    wrapped and then kept out of the renderer's way. Returns the text with
    placeholders and the wrapped HTML for each one, for ``unstash_math``.
    """
    spans: List[str] = []

    def _stash(wrapper):
        def replace(match: re.Match) -> str:
            spans.append(wrapper(match))
            return f"WIKIMIRRORMATH{len(spans) - 1}X"
        return replace

    if not has_math(text):
        return text, spans
    text = DISPLAY_MATH.sub(_stash(_display), text)
    text = INLINE_MATH.sub(_stash(_inline), text)
    return text, spans


def unstash_math(html: str, spans: List[str]) -> str:
    """Put the wrapped math back; a display block alone in a paragraph replaces the paragraph."""
    for index, span in enumerate(spans):
        placeholder = f"WIKIMIRRORMATH{index}X"
        html = html.replace(f"<p>{placeholder}</p>", span).replace(placeholder, span)
    return html
