import sys

import requests

from backend.models import Source
from .browser import BrowserError, BrowserFetcher
from .extract import HEADERS, FetchError, fetch_url, looks_like_challenge_page, looks_like_feed
from .readability import ExtractedContent, extract_from_html


def feed_looks_blocked(body: str | None) -> bool:
    # a non-feed page that is not a challenge is a dead feed url, not a block
    return not looks_like_feed(body) and looks_like_challenge_page(body)


class FetchStrategy:
    """Plain HTTP first, headless browser when the plain attempt looks blocked.

    A source that only works through the browser gets uses_browser_fetch set
    and skips the plain attempt from then on.
    """

    def __init__(self, store, browser=None, session: requests.Session | None = None):
        self.store = store
        self.browser = browser or BrowserFetcher()
        self.session = session

    def _plain(self, url: str, looks_blocked) -> str | None:
        """Return the body, or None when the browser should take over."""
        text, err = fetch_url(url, HEADERS, session=self.session)
        if err is None:
            if looks_blocked(text):
                print(f"FETCH_BLOCKED url={url} reason=content")
                return None
            return text
        if err.startswith("blocked:"):
            print(f"FETCH_BLOCKED url={url} reason={err}")
            return None
        # empty bodies and transport errors are not something a browser fixes
        raise FetchError(err, url)

    def _learn(self, source: Source) -> None:
        if source.uses_browser_fetch:
            return
        source.uses_browser_fetch = True
        try:
            if self.store.update_source(source):
                print(f"BROWSER_LEARNED source={source.id} name={source.label!r}")
            else:
                print(f"BROWSER_LEARN_SKIPPED source={source.id} reason=deleted")
        except Exception as e:
            print(
                f"BROWSER_LEARN_SAVE_FAIL source={source.id} err={str(e)[:200]}",
                file=sys.stderr,
            )

    def _browser(self, fn, url: str):
        try:
            return fn(url)
        except BrowserError as e:
            raise FetchError(f"browser_error:{str(e)[:200]}", url) from e

    def fetch_feed_body(self, source: Source) -> str:
        if not source.uses_browser_fetch:
            body = self._plain(source.url, feed_looks_blocked)
            if body is not None:
                return body
        body = self._browser(self.browser.fetch_body, source.url)
        self._learn(source)
        return body

    def fetch_page_body(self, source: Source, url: str | None = None) -> str:
        url = url or source.url
        if not source.uses_browser_fetch:
            body = self._plain(url, looks_like_challenge_page)
            if body is not None:
                return body
        body = self._browser(self.browser.fetch_body, url)
        self._learn(source)
        return body

    def extract_article(self, source: Source, url: str) -> ExtractedContent:
        if not source.uses_browser_fetch:
            html = self._plain(url, looks_like_challenge_page)
            if html is not None:
                return extract_from_html(html, url)
        extracted = self._browser(self.browser.extract_content, url)
        self._learn(source)
        return extracted
