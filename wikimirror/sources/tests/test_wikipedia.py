"""
Tests for the Wikipedia REST client.
"""

from unittest.mock import Mock

import pytest

from ...sync.error_tracker import NotFound, UnsupportedOperation
from ..wikipedia import WikipediaClient


def response(payload=None, status=200, text=""):
    r = Mock()
    r.status_code = status
    r.json.return_value = payload
    r.text = text
    return r


class TestWikipediaClient:

    @pytest.fixture
    def session(self):
        return Mock()

    @pytest.fixture
    def client(self, session):
        return WikipediaClient(rate_limit_ms=0, session=session, sleep=lambda s: None)

    def test_fetch_page_combines_summary_and_html(self, client, session):
        session.get.side_effect = [
            response({"title": "Alan Turing", "description": "English mathematician",
                      "thumbnail": {"source": "https://upload.wikimedia.org/t.jpg"},
                      "extract": "Alan Turing was...", "timestamp": "2024-04-30T10:00:00Z"}),
            response(text="<html><body><p>Turing</p></body></html>"),
        ]

        page = client.fetch_page("Alan Turing")

        assert page.title == "Alan Turing"
        assert page.pre_rendered_html == "<html><body><p>Turing</p></body></html>"
        assert page.raw_content == page.pre_rendered_html
        assert page.source_metadata["description"] == "English mathematician"
        assert page.source_metadata["image_url"] == "https://upload.wikimedia.org/t.jpg"
        assert page.last_modified.year == 2024
        summary_url = session.get.call_args_list[0].args[0]
        html_call = session.get.call_args_list[1]
        assert summary_url == "https://en.wikipedia.org/api/rest_v1/page/summary/Alan_Turing"
        assert html_call.args[0] == "https://en.wikipedia.org/api/rest_v1/page/html/Alan_Turing"
        assert html_call.kwargs["headers"] == {"Accept": "text/html"}

    def test_title_falls_back_to_slug(self, client, session):
        session.get.side_effect = [response({}), response(text="<p>x</p>")]

        assert client.fetch_page("Enigma_machine").title == "Enigma Machine"

    def test_missing_page(self, client, session):
        session.get.return_value = response(status=404)

        with pytest.raises(NotFound):
            client.fetch_page("No_such_article")

    def test_search_returns_keys(self, client, session):
        session.get.return_value = response({"pages": [{"key": "Alan_Turing"}, {"key": "Turing_machine"}, {}]})

        assert client.search("turing", limit=5) == ["Alan_Turing", "Turing_machine"]
        assert session.get.call_args.kwargs["params"] == {"limit": 5}

    def test_no_full_listing(self, client):
        with pytest.raises(UnsupportedOperation):
            client.list_all_slugs()
