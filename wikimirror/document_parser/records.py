"""
Typed OSRS records extracted from infoboxes.

Infobox values are strings; each field is coerced on its own and an
unparsable value becomes None instead of failing the record. The infobox
type decides which record kind a page can produce: asking for an item from a
monster page raises WrongKind.
"""

import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional

from ..sync.error_tracker import NoInfobox, WrongKind
from .infobox import InfoboxParser

TRUTHY = {"Yes", "yes", "true", "1"}

EQUIPMENT_STATS = {
    "astab": "attack_stab",
    "aslash": "attack_slash",
    "acrush": "attack_crush",
    "amagic": "attack_magic",
    "arange": "attack_ranged",
    "dstab": "defence_stab",
    "dslash": "defence_slash",
    "dcrush": "defence_crush",
    "dmagic": "defence_magic",
    "drange": "defence_ranged",
    "str": "melee_strength",
    "rstr": "ranged_strength",
    "mdmg": "magic_damage",
    "prayer": "prayer",
}


def parse_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    digits = re.sub(r"[^\d-]", "", value)
    try:
        return int(digits)
    except ValueError:
        return None


def parse_float(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    digits = re.sub(r"[^\d.-]", "", value)
    try:
        return float(digits)
    except ValueError:
        return None


def parse_bool(value: Optional[str]) -> bool:
    return value is not None and value.strip() in TRUTHY


def parse_date(value: Optional[str]) -> Optional[date]:
    """ISO ``YYYY-MM-DD`` only; anything else is None."""
    if not value:
        return None
    try:
        return date.fromisoformat(value.strip())
    except ValueError:
        return None


def parse_list(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [part.strip() for part in re.split(r"[,;]", value) if part.strip()]


def _text(value: Optional[str]) -> Optional[str]:
    return value if value else None


@dataclass
class ItemRecord:
    item_id: int
    name: str
    members: bool = False
    tradeable: bool = False
    equipable: bool = False
    stackable: bool = False
    quest_item: bool = False
    buy_limit: Optional[int] = None
    high_alch: Optional[int] = None
    low_alch: Optional[int] = None
    value: Optional[int] = None
    weight: Optional[float] = None
    examine: Optional[str] = None
    release_date: Optional[date] = None
    wiki_slug: Optional[str] = None
    equipment_stats: Dict[str, int] = field(default_factory=dict)


@dataclass
class MonsterRecord:
    monster_id: int
    name: str
    combat_level: Optional[int] = None
    hitpoints: Optional[int] = None
    max_hit: Optional[int] = None
    attack_style: Optional[str] = None
    slayer_level: Optional[int] = None
    slayer_xp: Optional[float] = None
    members: bool = False
    examine: Optional[str] = None
    release_date: Optional[date] = None
    locations: List[str] = field(default_factory=list)
    wiki_slug: Optional[str] = None


class RecordExtractor:
    """Builds ItemRecord / MonsterRecord values from wikitext."""

    def __init__(self, parser: Optional[InfoboxParser] = None):
        self.parser = parser or InfoboxParser()

    def _infobox(self, wikitext: str, kind: str) -> Dict[str, str]:
        """First infobox of ``kind``; pages can carry several infoboxes."""
        boxes = self.parser.parse_all(wikitext)
        if not boxes:
            raise NoInfobox("No infobox found", expected=kind)
        for infobox in boxes:
            if infobox.get("infobox_type") == kind:
                return infobox
        actual = boxes[0].get("infobox_type")
        raise WrongKind(f"Expected a {kind} infobox, found {actual}", expected=kind, actual=actual)

    @staticmethod
    def _require_id(infobox: Dict[str, str], kind: str) -> int:
        record_id = parse_int(infobox.get("id"))
        if record_id is None:
            raise WrongKind(f"{kind.capitalize()} infobox has no usable id", expected=kind, actual="missing_id")
        return record_id

    def extract_item(self, title: str, wikitext: str, wiki_slug: Optional[str] = None) -> ItemRecord:
        infobox = self._infobox(wikitext, "item")
        stats: Dict[str, Any] = {}
        for key, name in EQUIPMENT_STATS.items():
            parsed = parse_int(infobox.get(key))
            if parsed is not None:
                stats[name] = parsed
        return ItemRecord(
            item_id=self._require_id(infobox, "item"),
            name=infobox.get("name") or title,
            members=parse_bool(infobox.get("members")),
            tradeable=parse_bool(infobox.get("tradeable")),
            equipable=parse_bool(infobox.get("equipable")),
            stackable=parse_bool(infobox.get("stackable")),
            quest_item=parse_bool(infobox.get("quest")),
            buy_limit=parse_int(infobox.get("buy_limit") or infobox.get("buylimit")),
            high_alch=parse_int(infobox.get("highalch")),
            low_alch=parse_int(infobox.get("lowalch")),
            value=parse_int(infobox.get("value")),
            weight=parse_float(infobox.get("weight")),
            examine=_text(infobox.get("examine")),
            release_date=parse_date(infobox.get("release")),
            wiki_slug=wiki_slug,
            equipment_stats=stats,
        )

    def extract_monster(self, title: str, wikitext: str, wiki_slug: Optional[str] = None) -> MonsterRecord:
        infobox = self._infobox(wikitext, "monster")
        return MonsterRecord(
            monster_id=self._require_id(infobox, "monster"),
            name=infobox.get("name") or title,
            combat_level=parse_int(infobox.get("combat")),
            hitpoints=parse_int(infobox.get("hitpoints")),
            max_hit=parse_int(infobox.get("max_hit")),
            attack_style=_text(infobox.get("attack_style")),
            slayer_level=parse_int(infobox.get("slayer_level") or infobox.get("slaylvl")),
            slayer_xp=parse_float(infobox.get("slayer_xp") or infobox.get("slayxp")),
            members=parse_bool(infobox.get("members")),
            examine=_text(infobox.get("examine")),
            release_date=parse_date(infobox.get("release")),
            locations=parse_list(infobox.get("locations")),
            wiki_slug=wiki_slug,
        )
