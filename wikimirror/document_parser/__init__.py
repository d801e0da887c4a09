"""
Content normalization: HTML cleaning and text extraction, markdown and math
rendering, and infobox parsing into typed records.
"""

from .html import hash_content, extract_text, clean_html, rewrite_links, upstream_url, humanize_slug
from .renderers import Renderer, MarkdownRenderer, RegexMarkdownRenderer, create_renderer
from .infobox import InfoboxParser
from .records import RecordExtractor, ItemRecord, MonsterRecord
