"""Tests for runner.ingest.extract module."""

from unittest.mock import patch

import pytest
import requests

from runner.ingest.extract import (
    FetchError,
    content_hash,
    extract_main_text,
    fetch_text,
    fetch_url,
    looks_like_challenge_page,
    looks_like_feed,
)

URL = "https://example.com/feed"


class TestFetchUrl:
    def test_returns_body_on_200(self, fake_session, fake_response) -> None:
        session = fake_session({URL: fake_response(200, "<rss></rss>")})
        assert fetch_url(URL, session=session) == ("<rss></rss>", None)

    @pytest.mark.parametrize("status", [403, 429, 503])
    def test_block_statuses(self, fake_session, fake_response, status) -> None:
        session = fake_session({URL: fake_response(status, "denied")})
        assert fetch_url(URL, session=session) == (None, f"blocked:{status}")
        assert len(session.calls) == 1

    def test_other_status_is_request_error(self, fake_session, fake_response) -> None:
        session = fake_session({URL: fake_response(404, "nope")})
        assert fetch_url(URL, session=session) == (None, "request_error:HTTP404")

    def test_empty_body(self, fake_session, fake_response) -> None:
        session = fake_session({URL: fake_response(200, "   \n")})
        assert fetch_url(URL, session=session) == (None, "empty_response")

    @patch("runner.ingest.extract.time.sleep")
    def test_retries_server_errors(self, mock_sleep, fake_session, fake_response) -> None:
        session = fake_session({URL: [fake_response(502, ""), fake_response(200, "ok")]})
        assert fetch_url(URL, session=session) == ("ok", None)
        assert len(session.calls) == 2

    @patch("runner.ingest.extract.time.sleep")
    def test_gives_up_after_backoffs(self, mock_sleep, fake_session, fake_response) -> None:
        session = fake_session({URL: fake_response(500, "")})
        assert fetch_url(URL, session=session) == (None, "request_error:HTTP500")
        assert len(session.calls) == 3

    def test_timeout(self, fake_session) -> None:
        session = fake_session({URL: requests.exceptions.ReadTimeout("slow")})
        assert fetch_url(URL, session=session) == (None, "request_error:timeout")

    def test_connection_error(self, fake_session) -> None:
        session = fake_session({URL: requests.exceptions.ConnectionError("refused")})
        assert fetch_url(URL, session=session) == (None, "request_error:ConnectionError")


class TestFetchText:
    def test_raises_fetch_error(self, fake_session, fake_response) -> None:
        session = fake_session({URL: fake_response(403, "")})
        with pytest.raises(FetchError) as exc:
            fetch_text(URL, session=session)
        assert exc.value.code == "blocked:403"
        assert exc.value.blocked

    def test_empty_is_not_blocked(self) -> None:
        assert not FetchError("empty_response", URL).blocked


class TestSniffing:
    @pytest.mark.parametrize(
        "body",
        [
            '<?xml version="1.0"?><rss version="2.0"><channel></channel></rss>',
            '<feed xmlns="http://www.w3.org/2005/Atom"></feed>',
            "<rdf:RDF></rdf:RDF>",
            '  {"version": "https://jsonfeed.org/version/1.1", "items": []}',
        ],
    )
    def test_feed_bodies(self, body) -> None:
        assert looks_like_feed(body)

    def test_html_is_not_a_feed(self) -> None:
        assert not looks_like_feed("<html><head><title>Just a moment...</title></head></html>")

    def test_feed_marker_beyond_sniff_window(self) -> None:
        assert not looks_like_feed("<html>" + " " * 5000 + "<rss>")

    @pytest.mark.parametrize(
        "html",
        [
            "<title>Just a moment...</title>",
            "<p>Checking your browser before accessing</p>",
            "<p>Verifying your browser</p>",
            '<script src="/cdn-cgi/challenge-platform/h/b"></script>',
        ],
    )
    def test_challenge_pages(self, html) -> None:
        assert looks_like_challenge_page(html)

    def test_normal_page(self) -> None:
        assert not looks_like_challenge_page("<p>An ordinary article</p>")


class TestText:
    def test_extract_main_text_drops_scripts(self) -> None:
        html = "<html><script>var x=1;</script><body><p>Hello</p>\n<p>world</p></body></html>"
        assert extract_main_text(html) == "Hello world"

    def test_content_hash_is_stable(self) -> None:
        assert content_hash("abc") == content_hash("abc")
        assert content_hash("abc") != content_hash("abd")
        assert len(content_hash("")) == 64
