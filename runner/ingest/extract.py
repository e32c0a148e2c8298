import hashlib
import re
import time
from typing import Optional

import requests
from urllib3.util.retry import Retry
from requests.adapters import HTTPAdapter
from bs4 import BeautifulSoup

from backend.config import get_bool, get_float


HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/122.0 Safari/537.36"
    ),
    "Accept": (
        "text/html,application/xhtml+xml,application/xml;q=0.9,"
        "application/rss+xml,application/atom+xml,application/feed+json,*/*;q=0.8"
    ),
    "Accept-Language": "en-US,en;q=0.9",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
    "Accept-Encoding": "gzip, deflate",
}

DEFAULT_CONNECT_TIMEOUT = get_float("FETCH_CONNECT_TIMEOUT", 10.0)
DEFAULT_READ_TIMEOUT = get_float("FETCH_READ_TIMEOUT", 30.0)
FETCH_LOG = get_bool("FETCH_LOG", False)

# statuses that mean "a browser might get through"
BLOCK_STATUSES = {403, 429, 503}
RETRY_STATUSES = {500, 502, 504}
RETRY_BACKOFFS = [0, 1, 3]

CHALLENGE_MARKERS = (
    "verifying your browser",
    "checking your browser",
    "just a moment",
    "challenge-platform",
)

FEED_SNIFF_CHARS = 4096

_session = None


class FetchError(Exception):
    def __init__(self, code: str, url: str = ""):
        super().__init__(f"{code} url={url}" if url else code)
        self.code = code
        self.url = url

    @property
    def blocked(self) -> bool:
        return self.code.startswith("blocked:")


def _get_session() -> requests.Session:
    global _session
    if _session is not None:
        return _session

    session = requests.Session()
    retries = Retry(
        total=0,
        status_forcelist=[],
        allowed_methods=["GET", "HEAD"],
        respect_retry_after_header=True,
    )
    adapter = HTTPAdapter(max_retries=retries)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    _session = session
    return _session


def _log_response(url: str, response, elapsed_ms: int) -> None:
    if not FETCH_LOG:
        return
    head = response.text[:120].replace("\n", " ")
    print(
        f"GET {url} status={response.status_code} "
        f"content-type={response.headers.get('content-type')} "
        f"bytes={len(response.content)} elapsed={elapsed_ms}ms head={head}"
    )


def fetch_url(
    url: str, headers: dict | None = None, session: requests.Session | None = None
) -> tuple[Optional[str], Optional[str]]:
    session = session or _get_session()
    headers = headers or HEADERS
    try:
        last_response = None
        for attempt, delay in enumerate(RETRY_BACKOFFS):
            if delay:
                time.sleep(delay)
            start_ts = time.monotonic()
            response = session.get(
                url,
                timeout=(DEFAULT_CONNECT_TIMEOUT, DEFAULT_READ_TIMEOUT),
                headers=headers,
            )
            last_response = response
            _log_response(url, response, int((time.monotonic() - start_ts) * 1000))
            if response.status_code in RETRY_STATUSES and attempt < len(RETRY_BACKOFFS) - 1:
                continue
            if response.status_code in BLOCK_STATUSES:
                return None, f"blocked:{response.status_code}"
            if response.status_code != 200:
                return None, f"request_error:HTTP{response.status_code}"
            text = response.text or ""
            if not text.strip():
                return None, "empty_response"
            return text, None
        if last_response is not None:
            return None, f"request_error:HTTP{last_response.status_code}"
        return None, "request_error:unknown"
    except requests.exceptions.Timeout:
        if FETCH_LOG:
            print(f"GET {url} status=timeout")
        return None, "request_error:timeout"
    except requests.exceptions.RequestException as e:
        if FETCH_LOG:
            print(f"GET {url} status=error err={type(e).__name__}")
        return None, f"request_error:{type(e).__name__}"


def fetch_text(url: str, session: requests.Session | None = None) -> str:
    text, err = fetch_url(url, HEADERS, session=session)
    if err:
        raise FetchError(err, url)
    return text or ""


def looks_like_feed(body: str | None) -> bool:
    text = (body or "").lstrip()
    if text.startswith("{"):
        return True
    head = text[:FEED_SNIFF_CHARS].lower()
    return "<rss" in head or "<feed" in head or "<rdf" in head


def looks_like_challenge_page(html: str | None) -> bool:
    lower = (html or "").lower()
    return any(marker in lower for marker in CHALLENGE_MARKERS)


def extract_main_text(html: str) -> str:
    soup = BeautifulSoup(html, "html.parser")

    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()

    text = soup.get_text(separator=" ")
    text = re.sub(r"\s+", " ", text).strip()
    return text


def content_hash(text: str) -> str:
    return hashlib.sha256((text or "").encode("utf-8")).hexdigest()
