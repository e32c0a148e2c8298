"""Tests for runner.ingest.readability module."""

from unittest.mock import patch

import pytest

from runner.ingest.extract import FetchError
from runner.ingest.readability import (
    ExtractedContent,
    extract_content,
    extract_from_html,
    truncate,
)

PARAGRAPH = (
    "Ingestion pipelines spend most of their time waiting on remote servers, "
    "and the interesting engineering lives in how they recover when a server "
    "misbehaves, times out, or decides that the client looks like a robot. "
)

ARTICLE_HTML = f"""
<html>
  <head><title>Resilient ingestion</title></head>
  <body>
    <nav><a href="/">Home</a> <a href="/about">About</a></nav>
    <article>
      <h1>Resilient ingestion</h1>
      <p>{PARAGRAPH * 3}</p>
      <p>{PARAGRAPH * 3}</p>
      <p>{PARAGRAPH * 3}</p>
    </article>
    <footer>Copyright</footer>
  </body>
</html>
"""


class TestExtractFromHtml:
    def test_extracts_title_and_text(self) -> None:
        result = extract_from_html(ARTICLE_HTML, "https://blog.example.com/post")
        assert result.title == "Resilient ingestion"
        assert "Ingestion pipelines spend most of their time" in result.content
        assert "<p>" not in result.content

    def test_empty_html(self) -> None:
        assert extract_from_html("", "https://e.com") == ExtractedContent()

    @patch("runner.ingest.readability.Document")
    def test_parser_failure_falls_back_to_truncated_text(self, mock_doc) -> None:
        mock_doc.side_effect = ValueError("unparseable")
        html = "<p>" + "word " * 300 + "</p>"
        result = extract_from_html(html, "https://e.com")
        assert result.title == ""
        assert result.content.endswith("...")
        assert len(result.content) == 503

    @patch("runner.ingest.readability.Document")
    def test_empty_summary_falls_back(self, mock_doc) -> None:
        mock_doc.return_value.short_title.return_value = "[no-title]"
        mock_doc.return_value.summary.return_value = "<div>   </div>"
        result = extract_from_html("<p>short page</p>", "https://e.com")
        assert result.title == ""
        assert result.content == "short page"


class TestExtractContent:
    def test_fetches_then_extracts(self, fake_session, fake_response) -> None:
        url = "https://blog.example.com/post"
        session = fake_session({url: fake_response(200, ARTICLE_HTML)})
        result = extract_content(url, session=session)
        assert result.title == "Resilient ingestion"

    def test_fetch_failure_raises(self, fake_session, fake_response) -> None:
        url = "https://blog.example.com/post"
        session = fake_session({url: fake_response(403, "")})
        with pytest.raises(FetchError, match="blocked:403"):
            extract_content(url, session=session)


class TestTruncate:
    def test_short_text_untouched(self) -> None:
        assert truncate("  abc  ", 10) == "abc"

    def test_long_text_gets_ellipsis(self) -> None:
        assert truncate("abcdef", 3) == "abc..."
