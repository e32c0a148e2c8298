from datetime import datetime, timezone

import pytest

from backend.memory_store import MemoryStore
from backend.models import SOURCE_FEED, Source
from runner.ingest.browser import BrowserError
from runner.ingest.readability import ExtractedContent


class FakeResponse:
    def __init__(self, status_code: int = 200, text: str = "", headers: dict | None = None):
        self.status_code = status_code
        self.text = text
        self.content = text.encode("utf-8")
        self.headers = headers or {"content-type": "text/html"}


class FakeSession:
    """requests.Session stand-in; routes map url -> response or exception,
    or url -> list of them served in order."""

    def __init__(self, routes: dict | None = None):
        self.routes = dict(routes or {})
        self.calls: list[str] = []

    def get(self, url, timeout=None, headers=None):
        self.calls.append(url)
        value = self.routes.get(url)
        if isinstance(value, list):
            value = value.pop(0) if len(value) > 1 else value[0]
        if value is None:
            return FakeResponse(404, "not found")
        if isinstance(value, Exception):
            raise value
        return value


class FakeBrowser:
    def __init__(self, bodies: dict | None = None, articles: dict | None = None):
        self.bodies = dict(bodies or {})
        self.articles = dict(articles or {})
        self.calls: list[tuple[str, str]] = []

    def fetch_body(self, url: str) -> str:
        self.calls.append(("fetch_body", url))
        if url not in self.bodies:
            raise BrowserError(f"browser returned empty content url={url}")
        return self.bodies[url]

    def extract_content(self, url: str) -> ExtractedContent:
        self.calls.append(("extract_content", url))
        if url not in self.articles:
            raise BrowserError(f"navigate_failed url={url}")
        return self.articles[url]


class RecordingPool:
    def __init__(self):
        self.submitted = []
        self.retried = []

    def submit(self, entry):
        self.submitted.append(entry)

    def submit_nowait(self, entry):
        # nothing ever finishes here, so every submitted entry stays in flight
        if entry.id in {e.id for e in self.submitted + self.retried}:
            return False
        self.retried.append(entry)
        return True

    def wait(self, timeout=None):
        return True


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def now() -> datetime:
    return datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def make_source(store):
    def _make(url: str = "https://example.com/feed.xml", **kwargs) -> Source:
        kwargs.setdefault("kind", SOURCE_FEED)
        return store.save_source(Source(url=url, **kwargs))

    return _make


@pytest.fixture
def fake_session():
    return FakeSession


@pytest.fixture
def fake_response():
    return FakeResponse


@pytest.fixture
def fake_browser():
    return FakeBrowser


@pytest.fixture
def recording_pool() -> RecordingPool:
    return RecordingPool()
