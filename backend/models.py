from dataclasses import dataclass, field
from datetime import datetime, timezone


SOURCE_FEED = "feed"
SOURCE_WATCHLIST = "watchlist"

STATUS_HEALTHY = "healthy"
STATUS_FAILING = "failing"
STATUS_QUARANTINED = "quarantined"

PROCESSING_PENDING = "pending"
PROCESSING_DONE = "done"
PROCESSING_FAILED = "failed"

# consecutive failures before a source is quarantined
QUARANTINE_THRESHOLD = 5

FRAGMENT_MARKER = "#frag-"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_ts(value) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parent_guid(guid: str) -> str | None:
    """Return the parent item id of a fragment GUID, or None for plain GUIDs."""
    idx = guid.find(FRAGMENT_MARKER)
    if idx < 0:
        return None
    return guid[:idx]


@dataclass
class Source:
    url: str
    kind: str = SOURCE_FEED
    name: str = ""
    id: str | None = None
    active: bool = True
    uses_browser_fetch: bool = False
    is_fragment_source: bool = False
    article_selector: str = ""
    status: str = STATUS_HEALTHY
    consecutive_failures: int = 0
    last_error: str = ""
    quarantined_at: datetime | None = None
    last_checked_at: datetime | None = None
    fragment_content_hashes: dict[str, str] = field(default_factory=dict)

    @property
    def label(self) -> str:
        return self.name or self.url


@dataclass
class Entry:
    source_id: str
    url: str
    title: str
    guid: str
    raw_content: str = ""
    is_fragment: bool = False
    published_at: datetime | None = None
    discovered_at: datetime | None = None
    processing_status: str = PROCESSING_PENDING
    is_read: bool = False
    summary: str = ""
    ai_stars: int = 0
    user_stars: int = 0
    id: str | None = None
    created_at: datetime | None = None


@dataclass
class ExistingFragmentEntry:
    id: str
    title: str
    published_at: datetime | None


@dataclass
class PreferenceProfile:
    profile_text: str
    generated_at: datetime
    id: str | None = None
