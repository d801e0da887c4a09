"""
Tests for the MediaWiki client and the shared HTTP client behaviour.
"""

from datetime import datetime, timezone
from unittest.mock import Mock

import pytest
import requests

from ...sync.error_tracker import (
    NotFound, RateLimited, RequestFailed, TransientServerError, Unauthorized,
)
from ...sync.resilience import RetryPolicy
from ..base import classify_status
from ..mediawiki import MediaWikiClient


def response(payload=None, status=200, text=""):
    r = Mock()
    r.status_code = status
    r.json.return_value = payload
    r.text = text
    return r


@pytest.fixture
def session():
    return Mock()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def client(session, sleeps):
    return MediaWikiClient("https://oldschool.runescape.wiki/api.php", categories=["Items", "Monsters"],
                           rate_limit_ms=0, session=session, sleep=sleeps.append,
                           retry_policy=RetryPolicy(max_attempts=3, base_delay_seconds=1.0))


class TestClassifyStatus:

    @pytest.mark.parametrize("status,expected", [
        (404, NotFound), (429, RateLimited), (401, Unauthorized), (403, Unauthorized),
        (500, TransientServerError), (503, TransientServerError), (400, RequestFailed),
    ])
    def test_mapping(self, status, expected):
        assert isinstance(classify_status(status, "https://x"), expected)

    def test_success(self):
        assert classify_status(200, "https://x") is None


class TestMediaWikiClient:

    def test_sets_user_agent(self, client, session):
        session.headers.update.assert_called_once()
        headers = session.headers.update.call_args[0][0]
        assert headers["User-Agent"].startswith("WikiMirror/")

    def test_fetch_page(self, client, session):
        session.get.return_value = response({"parse": {
            "title": "Dragon scimitar", "pageid": 4587, "revid": 99,
            "text": {"*": "<p>A scimitar.</p>"}, "wikitext": {"*": "{{Infobox Item}}"},
        }})

        page = client.fetch_page("Dragon scimitar")

        assert page.slug == "Dragon scimitar"
        assert page.title == "Dragon scimitar"
        assert page.pre_rendered_html == "<p>A scimitar.</p>"
        assert page.raw_content == "{{Infobox Item}}"
        assert page.source_metadata == {"pageid": 4587, "revid": 99}
        params = session.get.call_args.kwargs["params"]
        assert params["action"] == "parse"
        assert params["page"] == "Dragon scimitar"
        assert params["format"] == "json"

    def test_missing_title_is_not_found(self, client, session):
        session.get.return_value = response({"error": {"code": "missingtitle", "info": "The page does not exist."}})

        with pytest.raises(NotFound):
            client.fetch_page("Nope")

    def test_other_api_error_is_request_failed(self, client, session):
        session.get.return_value = response({"error": {"code": "badvalue", "info": "bad"}})

        with pytest.raises(RequestFailed):
            client.search("whip")

    def test_retries_server_errors(self, client, session, sleeps):
        session.get.side_effect = [response(status=503), response(status=502),
                                   response({"query": {"search": [{"title": "Abyssal whip"}]}})]

        assert client.search("whip") == ["Abyssal whip"]
        assert sleeps == [1.0, 2.0]

    def test_does_not_retry_client_errors(self, client, session, sleeps):
        session.get.return_value = response(status=404)

        with pytest.raises(NotFound):
            client.fetch_page("Nope")
        assert session.get.call_count == 1
        assert sleeps == []

    def test_network_failure_becomes_request_failed(self, client, session):
        session.get.side_effect = requests.ConnectionError("reset")

        with pytest.raises(RequestFailed):
            client.fetch_page("Dragon scimitar")
        assert session.get.call_count == 3

    def test_list_changed_since_paginates_and_dedupes(self, client, session):
        session.get.side_effect = [
            response({"query": {"recentchanges": [{"title": "A"}, {"title": "B"}]},
                      "continue": {"rccontinue": "next"}}),
            response({"query": {"recentchanges": [{"title": "A"}, {"title": "C"}]}}),
        ]

        titles = client.list_changed_since(datetime(2024, 5, 1, tzinfo=timezone.utc))

        assert titles == ["A", "B", "C"]
        first, second = [c.kwargs["params"] for c in session.get.call_args_list]
        assert first["rcend"] == "2024-05-01T00:00:00Z"
        assert first["rcnamespace"] == 0
        assert second["rccontinue"] == "next"

    def test_list_category_prefixes_and_caps(self, client, session):
        session.get.return_value = response({"query": {"categorymembers": [{"title": t} for t in "ABCDE"]}})

        assert client.list_category("Items", limit=3) == ["A", "B", "C"]
        params = session.get.call_args.kwargs["params"]
        assert params["cmtitle"] == "Category:Items"
        assert params["cmlimit"] == 3

    def test_list_all_slugs_walks_categories(self, client, session):
        session.get.side_effect = [
            response({"query": {"categorymembers": [{"title": "Dragon scimitar"}, {"title": "Zulrah"}]}}),
            response({"query": {"categorymembers": [{"title": "Zulrah"}, {"title": "Vorkath"}]}}),
        ]

        assert client.list_all_slugs() == ["Dragon scimitar", "Zulrah", "Vorkath"]

    def test_list_all_slugs_fails_when_a_category_fails(self, client, session):
        session.get.side_effect = [
            response({"query": {"categorymembers": [{"title": "Dragon scimitar"}]}}),
            response(status=403),
        ]

        with pytest.raises(Unauthorized):
            client.list_all_slugs()

    def test_get_pages_batches_titles(self, client, session):
        def answer(url, params=None, headers=None, timeout=None):
            titles = params["titles"].split("|")
            return response({"query": {"pages": {
                str(i): {"title": t, "pageid": i, "revisions": [{"revid": 1, "slots": {"main": {"*": f"text of {t}"}}}]}
                for i, t in enumerate(titles)
            }}})
        session.get.side_effect = answer
        titles = [f"Page {i}" for i in range(120)]

        pages = client.get_pages(titles)

        assert session.get.call_count == 3
        assert len(pages) == 120
        assert pages["Page 7"]["wikitext"] == "text of Page 7"

