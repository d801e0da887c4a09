"""
Parser for MediaWiki infobox templates.

An infobox is a ``{{Infobox <Type> | key = value | ...}}`` template embedded
in wikitext. Parsing yields a flat dict of cleaned string values keyed by
normalized parameter names, plus ``infobox_type``.
"""

import re
from typing import Dict, Iterable, List, Optional

from ..sync.error_tracker import NoInfobox

INFOBOX_START = re.compile(r"\{\{\s*Infobox\s+(\w+)", re.IGNORECASE)

_FILE_LINK = re.compile(r"\[\[(?:File|Image):[^\]]*\]\]", re.IGNORECASE)
_PIPED_LINK = re.compile(r"\[\[[^\]|]*\|([^\]]*)\]\]")
_PLAIN_LINK = re.compile(r"\[\[([^\]]*)\]\]")
_TAG = re.compile(r"<[^>]+>")
_WHITESPACE = re.compile(r"\s+")


def _template_end(text: str, start: int) -> Optional[int]:
    """Index just past the ``}}`` closing the template that opens at ``start``."""
    depth = 0
    i = start
    while i < len(text) - 1:
        pair = text[i:i + 2]
        if pair == "{{":
            depth += 1
            i += 2
        elif pair == "}}":
            depth -= 1
            i += 2
            if depth == 0:
                return i
        else:
            i += 1
    return None


def _split_params(body: str) -> List[str]:
    """Split on ``|`` that are not nested inside ``{{ }}`` or ``[[ ]]``."""
    parts: List[str] = []
    current: List[str] = []
    braces = brackets = 0
    i = 0
    while i < len(body):
        pair = body[i:i + 2]
        if pair == "{{":
            braces += 1
            current.append(pair)
            i += 2
            continue
        if pair == "}}":
            braces = max(braces - 1, 0)
            current.append(pair)
            i += 2
            continue
        if pair == "[[":
            brackets += 1
            current.append(pair)
            i += 2
            continue
        if pair == "]]":
            brackets = max(brackets - 1, 0)
            current.append(pair)
            i += 2
            continue
        char = body[i]
        if char == "|" and braces == 0 and brackets == 0:
            parts.append("".join(current))
            current = []
        else:
            current.append(char)
        i += 1
    parts.append("".join(current))
    return parts


def _strip_templates(value: str) -> str:
    while True:
        start = value.find("{{")
        if start == -1:
            return value
        end = _template_end(value, start)
        if end is None:
            return value[:start]
        value = value[:start] + value[end:]


def clean_value(value: str) -> str:
    """Reduce a wikitext parameter value to plain text."""
    value = _FILE_LINK.sub("", value)
    value = _PIPED_LINK.sub(r"\1", value)
    value = _PLAIN_LINK.sub(r"\1", value)
    value = _strip_templates(value)
    value = _TAG.sub("", value)
    return _WHITESPACE.sub(" ", value).strip()


def normalize_key(key: str) -> str:
    return _WHITESPACE.sub("_", key.strip().lower())


class InfoboxParser:
    """Finds infobox templates and turns them into dicts."""

    def _parse_at(self, wikitext: str, match: re.Match) -> Optional[Dict[str, str]]:
        end = _template_end(wikitext, match.start())
        if end is None:
            return None
        body = wikitext[match.start() + 2:end - 2]
        params = _split_params(body)
        result: Dict[str, str] = {}
        # First part is the template name itself
        for param in params[1:]:
            if "=" not in param:
                continue
            key, value = param.split("=", 1)
            key = normalize_key(key)
            if key:
                result[key] = clean_value(value)
        result["infobox_type"] = match.group(1).lower()
        return result

    def parse(self, wikitext: str) -> Dict[str, str]:
        """
        Parse the first infobox in ``wikitext``.

        Raises:
            NoInfobox: If no complete infobox template is present
        """
        for match in INFOBOX_START.finditer(wikitext or ""):
            parsed = self._parse_at(wikitext, match)
            if parsed is not None:
                return parsed
        raise NoInfobox("No infobox found", expected="infobox")

    def parse_all(self, wikitext: str) -> List[Dict[str, str]]:
        boxes = []
        for match in INFOBOX_START.finditer(wikitext or ""):
            parsed = self._parse_at(wikitext, match)
            if parsed is not None:
                boxes.append(parsed)
        return boxes

    def extract_fields(self, wikitext: str, keys: Iterable[str]) -> Dict[str, Optional[str]]:
        """Pick ``keys`` from the first infobox; absent keys map to None."""
        parsed = self.parse(wikitext)
        return {key: parsed.get(key) for key in keys}
