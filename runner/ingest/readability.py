from dataclasses import dataclass

import requests
from lxml import html as lxml_html
from readability import Document

from .extract import extract_main_text, fetch_text

FALLBACK_CHARS = 500
_NO_TITLE = "[no-title]"


@dataclass
class ExtractedContent:
    title: str = ""
    content: str = ""


def truncate(text: str, max_len: int) -> str:
    text = (text or "").strip()
    if len(text) <= max_len:
        return text
    return text[:max_len] + "..."


def _summary_text(summary_html: str) -> str:
    if not summary_html or not summary_html.strip():
        return ""
    tree = lxml_html.fromstring(summary_html)
    text = tree.text_content()
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    return "\n".join(lines)


def _fallback_text(html: str) -> str:
    try:
        return truncate(extract_main_text(html), FALLBACK_CHARS)
    except Exception:
        return truncate(html, FALLBACK_CHARS)


def extract_from_html(html: str, base_url: str = "") -> ExtractedContent:
    """Best-effort (title, text) for an HTML document. Never raises; when the
    readability pass yields nothing the first 500 characters of the page text
    are used instead."""
    if not html or not html.strip():
        return ExtractedContent()
    try:
        doc = Document(html, url=base_url or None)
        title = (doc.short_title() or "").strip()
        if title == _NO_TITLE:
            title = ""
        text = _summary_text(doc.summary(html_partial=True))
    except Exception as e:
        print(f"READABILITY_FAIL url={base_url} err={type(e).__name__}")
        return ExtractedContent(title="", content=_fallback_text(html))

    if not text:
        text = _fallback_text(html)
    return ExtractedContent(title=title, content=text)


def extract_content(url: str, session: requests.Session | None = None) -> ExtractedContent:
    html = fetch_text(url, session=session)
    return extract_from_html(html, url)
