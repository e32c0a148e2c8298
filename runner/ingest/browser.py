from contextlib import contextmanager

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeout
from playwright.sync_api import sync_playwright

from backend.config import get_bool, get_int
from .extract import HEADERS, looks_like_challenge_page
from .readability import ExtractedContent, extract_from_html

PAGE_TIMEOUT_MS = get_int("BROWSER_PAGE_TIMEOUT_MS", 40000)
RELOAD_TIMEOUT_MS = get_int("BROWSER_RELOAD_TIMEOUT_MS", 30000)
SETTLE_MS = 2000
IDLE_TIMEOUT_MS = 5000
HEADLESS = get_bool("BROWSER_HEADLESS", True)

LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--no-zygote",
    "--disable-blink-features=AutomationControlled",
]

_STEALTH_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', {get: () => undefined});
Object.defineProperty(navigator, 'languages', {get: () => ['en-US', 'en']});
window.chrome = window.chrome || {runtime: {}};
"""

_SERIALIZE_JS = "() => new XMLSerializer().serializeToString(document)"


class BrowserError(Exception):
    pass


class BrowserFetcher:
    """Renders pages in headless chromium for sources that block plain HTTP.

    A browser is launched per call; these fetches are rare and slow anyway.
    """

    def __init__(self, headless: bool = HEADLESS, page_timeout_ms: int = PAGE_TIMEOUT_MS):
        self.headless = headless
        self.page_timeout_ms = page_timeout_ms

    @contextmanager
    def _open_page(self, url: str):
        with sync_playwright() as p:
            browser = p.chromium.launch(headless=self.headless, args=LAUNCH_ARGS)
            try:
                context = browser.new_context(
                    user_agent=HEADERS["User-Agent"],
                    locale="en-US",
                    extra_http_headers={"Accept-Language": "en-US,en;q=0.9"},
                )
                context.add_init_script(_STEALTH_SCRIPT)
                page = context.new_page()
                try:
                    page.goto(url, wait_until="commit", timeout=self.page_timeout_ms)
                except PlaywrightError as e:
                    raise BrowserError(f"navigate_failed url={url}: {e}") from e
                self._wait_for_content(page, url)
                yield page
            finally:
                browser.close()

    def _wait_for_content(self, page, url: str) -> None:
        try:
            page.wait_for_load_state("load", timeout=self.page_timeout_ms)
        except PlaywrightTimeout:
            pass

        # give onload scripts (proof-of-work challenges) time to set cookies
        page.wait_for_timeout(SETTLE_MS)

        try:
            html = page.content()
        except PlaywrightError:
            html = ""
        if not looks_like_challenge_page(html):
            try:
                page.wait_for_load_state("networkidle", timeout=IDLE_TIMEOUT_MS)
            except PlaywrightTimeout:
                pass
            return

        print(f"BROWSER_CHALLENGE url={url} action=renavigate")
        try:
            page.goto(url, wait_until="load", timeout=RELOAD_TIMEOUT_MS)
            page.wait_for_load_state("networkidle", timeout=IDLE_TIMEOUT_MS)
        except PlaywrightTimeout:
            pass
        except PlaywrightError as e:
            print(f"BROWSER_CHALLENGE_FAIL url={url} err={str(e)[:200]}")

    def fetch_body(self, url: str) -> str:
        try:
            with self._open_page(url) as page:
                # XMLSerializer keeps feed XML intact and returns HTML for pages
                body = page.evaluate(_SERIALIZE_JS)
        except PlaywrightError as e:
            raise BrowserError(f"browser_fetch_failed url={url}: {e}") from e
        if not body or not str(body).strip():
            raise BrowserError(f"browser returned empty content url={url}")
        return str(body)

    def extract_content(self, url: str) -> ExtractedContent:
        try:
            with self._open_page(url) as page:
                html = page.content()
        except PlaywrightError as e:
            raise BrowserError(f"browser_extract_failed url={url}: {e}") from e
        return extract_from_html(html, url)
