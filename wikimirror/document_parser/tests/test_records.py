"""
Tests for infobox parsing and typed record extraction.
"""

from datetime import date

import pytest

from ...sync.error_tracker import NoInfobox, WrongKind
from ..infobox import InfoboxParser, clean_value
from ..records import RecordExtractor, parse_bool, parse_date, parse_float, parse_int, parse_list

WHIP = """Intro text.
{{Infobox Item
|name = Abyssal whip
|image = [[File:Abyssal whip.png]]
|release = 2005-01-26
|members = Yes
|quest = No
|tradeable = Yes
|equipable = Yes
|stackable = No
|examine = A weapon from the [[Abyss]].
|value = 120,001
|highalch = 72,000
|lowalch = 48,000
|weight = 0.453 kg
|buy limit = 70
|id = 4151
|aslash = +82
|str = 82
|prayer = 0
}}
The '''abyssal whip''' is a one-handed melee weapon."""

ZULRAH = """{{Infobox Monster
|name = Zulrah
|id = 2042
|combat = 725
|hitpoints = 500
|max hit = 41
|attack style = [[Ranged]], [[Magic]]
|slaylvl = N/A
|members = Yes
|release = 2015-01-08
|locations = Zul-Andra; Zulrah's shrine
}}"""


class TestInfoboxParser:

    def test_parses_type_and_cleans_values(self):
        infobox = InfoboxParser().parse(WHIP)

        assert infobox["infobox_type"] == "item"
        assert infobox["examine"] == "A weapon from the Abyss."
        assert infobox["image"] == ""
        assert infobox["buy_limit"] == "70"

    def test_nested_templates_do_not_split(self):
        infobox = InfoboxParser().parse("{{Infobox Item|name = Coins|value = {{Coins|1}}|id = 995}}")

        assert infobox["id"] == "995"
        assert infobox["value"] == ""

    def test_no_infobox(self):
        with pytest.raises(NoInfobox):
            InfoboxParser().parse("Just prose about [[Lumbridge]].")

    def test_unterminated_infobox(self):
        with pytest.raises(NoInfobox):
            InfoboxParser().parse("{{Infobox Item|name = Broken")

    def test_extract_fields(self):
        assert InfoboxParser().extract_fields(WHIP, ["id", "missing"]) == {"id": "4151", "missing": None}

    def test_parse_all(self):
        assert [box["infobox_type"] for box in InfoboxParser().parse_all(WHIP + "\n" + ZULRAH)] == ["item", "monster"]

    def test_clean_value(self):
        assert clean_value("[[Varrock|the city]] <br/> centre") == "the city centre"


class TestCoercion:

    def test_parse_int(self):
        assert parse_int("1,000") == 1000
        assert parse_int("+82") == 82
        assert parse_int("N/A") is None
        assert parse_int(None) is None

    def test_parse_float(self):
        assert parse_float("0.453 kg") == 0.453
        assert parse_float("") is None

    def test_parse_bool(self):
        assert parse_bool("Yes")
        assert not parse_bool("No")
        assert not parse_bool(None)

    def test_parse_date(self):
        assert parse_date("2005-01-26") == date(2005, 1, 26)
        assert parse_date("26 January 2005") is None

    def test_parse_list(self):
        assert parse_list("a, b;c") == ["a", "b", "c"]
        assert parse_list(None) == []


class TestRecordExtractor:

    @pytest.fixture
    def extractor(self):
        return RecordExtractor()

    def test_extract_item(self, extractor):
        item = extractor.extract_item("Abyssal whip", WHIP, wiki_slug="abyssal-whip")

        assert item.item_id == 4151
        assert item.name == "Abyssal whip"
        assert item.members and item.tradeable and item.equipable
        assert not item.stackable and not item.quest_item
        assert item.value == 120001
        assert item.high_alch == 72000
        assert item.low_alch == 48000
        assert item.weight == 0.453
        assert item.buy_limit == 70
        assert item.release_date == date(2005, 1, 26)
        assert item.equipment_stats == {"attack_slash": 82, "melee_strength": 82, "prayer": 0}
        assert item.wiki_slug == "abyssal-whip"

    def test_extract_monster(self, extractor):
        monster = extractor.extract_monster("Zulrah", ZULRAH)

        assert monster.monster_id == 2042
        assert monster.combat_level == 725
        assert monster.max_hit == 41
        assert monster.attack_style == "Ranged, Magic"
        assert monster.slayer_level is None
        assert monster.locations == ["Zul-Andra", "Zulrah's shrine"]

    def test_wrong_kind(self, extractor):
        with pytest.raises(WrongKind) as info:
            extractor.extract_item("Zulrah", ZULRAH)
        assert info.value.expected == "item"
        assert info.value.actual == "monster"

    def test_missing_id_is_wrong_kind(self, extractor):
        with pytest.raises(WrongKind) as info:
            extractor.extract_item("Coins", "{{Infobox Item|name = Coins}}")
        assert info.value.actual == "missing_id"

    def test_name_falls_back_to_title(self, extractor):
        assert extractor.extract_item("Coins", "{{Infobox Item|id = 995}}").name == "Coins"

    def test_picks_the_infobox_of_the_requested_kind(self, extractor):
        monster = extractor.extract_monster("Zulrah", WHIP + "\n" + ZULRAH)

        assert monster.monster_id == 2042

    def test_text_without_infobox(self, extractor):
        with pytest.raises(NoInfobox):
            extractor.extract_item("Lumbridge", "Lumbridge is a town.")
