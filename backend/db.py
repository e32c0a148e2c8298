import json
import os
import random
import time
from datetime import datetime

import httpx
from dotenv import load_dotenv
from supabase import create_client as _create_client

from backend.config import get_str
from backend.models import (
    PROCESSING_FAILED,
    PROCESSING_PENDING,
    STATUS_QUARANTINED,
    Entry,
    ExistingFragmentEntry,
    PreferenceProfile,
    Source,
    format_ts,
    parse_ts,
    utc_now,
)

_ENV_PATH = os.path.join(os.path.dirname(__file__), ".env")
load_dotenv(_ENV_PATH)

PAGE_SIZE = 1000

_sb = None
_store = None


def create_client(url: str | None = None, key: str | None = None):
    url = url or os.getenv("SUPABASE_URL")
    key = key or os.getenv("SUPABASE_SERVICE_ROLE_KEY") or os.getenv("SUPABASE_KEY")
    if not url or not key:
        missing = []
        if not url:
            missing.append("SUPABASE_URL")
        if not (os.getenv("SUPABASE_SERVICE_ROLE_KEY") or os.getenv("SUPABASE_KEY")):
            missing.append("SUPABASE_SERVICE_ROLE_KEY or SUPABASE_KEY")
        raise RuntimeError(f"Missing {', '.join(missing)}")
    return _create_client(url, key)


def get_client():
    global _sb
    if _sb:
        return _sb

    _sb = create_client()
    return _sb


def _is_transient_error(err: Exception) -> bool:
    if isinstance(err, (httpx.ConnectError, httpx.ReadError, httpx.RemoteProtocolError)):
        return True
    msg = str(err)
    transient_markers = [
        "UNEXPECTED_EOF_WHILE_READING",
        "SSL",
        "Connection reset",
        "Broken pipe",
        "timeout",
    ]
    return any(m in msg for m in transient_markers)


def _run_retry(fn, *args, **kwargs):
    delays = [1, 2, 4, 8, 16]
    for i, delay in enumerate(delays, start=1):
        try:
            return fn(*args, **kwargs)
        except Exception as e:
            if not _is_transient_error(e) or i == len(delays):
                raise
            jitter = random.uniform(0, 0.2)
            print(f"STORE_RETRY attempt={i} error={str(e)[:200]}")
            time.sleep(delay + jitter)


def dump_fragment_hashes(hashes: dict[str, str] | None) -> str:
    return json.dumps(hashes or {}, sort_keys=True)


def load_fragment_hashes(raw) -> dict[str, str]:
    if not raw:
        return {}
    if isinstance(raw, dict):
        return {str(k): str(v) for k, v in raw.items()}
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        print(f"FRAGMENT_HASHES_INVALID raw={str(raw)[:120]}")
        return {}
    if not isinstance(data, dict):
        return {}
    return {str(k): str(v) for k, v in data.items()}


def source_from_row(row: dict) -> Source:
    return Source(
        id=row.get("id"),
        url=row.get("url") or "",
        name=row.get("name") or "",
        kind=row.get("kind") or "",
        active=bool(row.get("active")),
        uses_browser_fetch=bool(row.get("uses_browser_fetch")),
        is_fragment_source=bool(row.get("is_fragment_source")),
        article_selector=row.get("article_selector") or "",
        status=row.get("status") or "healthy",
        consecutive_failures=int(row.get("consecutive_failures") or 0),
        last_error=row.get("last_error") or "",
        quarantined_at=parse_ts(row.get("quarantined_at")),
        last_checked_at=parse_ts(row.get("last_checked_at")),
        fragment_content_hashes=load_fragment_hashes(row.get("fragment_content_hashes")),
    )


def source_to_row(source: Source) -> dict:
    row = {
        "url": source.url,
        "name": source.name,
        "kind": source.kind,
        "active": source.active,
        "uses_browser_fetch": source.uses_browser_fetch,
        "is_fragment_source": source.is_fragment_source,
        "article_selector": source.article_selector,
        "status": source.status,
        "consecutive_failures": source.consecutive_failures,
        "last_error": source.last_error,
        "quarantined_at": format_ts(source.quarantined_at),
        "last_checked_at": format_ts(source.last_checked_at),
        "fragment_content_hashes": dump_fragment_hashes(source.fragment_content_hashes),
    }
    if source.id:
        row["id"] = source.id
    return row


def entry_from_row(row: dict) -> Entry:
    return Entry(
        id=row.get("id"),
        source_id=row.get("source_id") or "",
        url=row.get("url") or "",
        title=row.get("title") or "",
        guid=row.get("guid") or "",
        raw_content=row.get("raw_content") or "",
        is_fragment=bool(row.get("is_fragment")),
        published_at=parse_ts(row.get("published_at")),
        discovered_at=parse_ts(row.get("discovered_at")),
        processing_status=row.get("processing_status") or PROCESSING_PENDING,
        is_read=bool(row.get("is_read")),
        summary=row.get("summary") or "",
        ai_stars=int(row.get("ai_stars") or 0),
        user_stars=int(row.get("user_stars") or 0),
        created_at=parse_ts(row.get("created_at")),
    )


def entry_to_row(entry: Entry) -> dict:
    row = {
        "source_id": entry.source_id,
        "url": entry.url,
        "title": entry.title,
        "guid": entry.guid,
        "raw_content": entry.raw_content,
        "is_fragment": entry.is_fragment,
        "published_at": format_ts(entry.published_at),
        "discovered_at": format_ts(entry.discovered_at),
        "processing_status": entry.processing_status,
        "is_read": entry.is_read,
        "summary": entry.summary,
        "ai_stars": entry.ai_stars,
        "user_stars": entry.user_stars,
    }
    if entry.id:
        row["id"] = entry.id
    return row


def _is_correction_row(row: dict) -> bool:
    user_stars = int(row.get("user_stars") or 0)
    ai_stars = int(row.get("ai_stars") or 0)
    return user_stars > 0 and ai_stars > 0 and user_stars != ai_stars


class SupabaseStore:
    """Record store backed by the Supabase tables sources, entries,
    app_settings and preferences."""

    def __init__(self, sb=None):
        self.sb = sb or get_client()

    def _select_all(self, build) -> list[dict]:
        rows: list[dict] = []
        start = 0
        while True:
            res = _run_retry(build().range(start, start + PAGE_SIZE - 1).execute)
            batch = res.data or []
            rows.extend(batch)
            if len(batch) < PAGE_SIZE:
                return rows
            start += PAGE_SIZE

    # sources

    def list_active_sources(self) -> list[Source]:
        rows = self._select_all(
            lambda: self.sb.table("sources")
            .select("*")
            .eq("active", True)
            .neq("status", STATUS_QUARANTINED)
        )
        return [source_from_row(r) for r in rows]

    def get_source(self, source_id: str) -> Source | None:
        res = _run_retry(
            self.sb.table("sources").select("*").eq("id", source_id).limit(1).execute
        )
        if not res.data:
            return None
        return source_from_row(res.data[0])

    def save_source(self, source: Source) -> Source:
        res = _run_retry(self.sb.table("sources").upsert(source_to_row(source)).execute)
        if res.data and not source.id:
            source.id = res.data[0].get("id")
        return source

    def update_source(self, source: Source) -> bool:
        """Write back an existing source. A deleted source stays deleted."""
        if not source.id:
            return False
        row = source_to_row(source)
        row.pop("id", None)
        res = _run_retry(self.sb.table("sources").update(row).eq("id", source.id).execute)
        return bool(res.data)

    def delete_source(self, source_id: str) -> None:
        _run_retry(self.sb.table("entries").delete().eq("source_id", source_id).execute)
        _run_retry(self.sb.table("sources").delete().eq("id", source_id).execute)

    # entries

    def list_entry_guids(self, source_id: str, since: datetime | None = None) -> list[str]:
        def build():
            q = self.sb.table("entries").select("guid").eq("source_id", source_id)
            if since is not None:
                q = q.gte("created_at", format_ts(since))
            return q

        return [r["guid"] for r in self._select_all(build) if r.get("guid")]

    def list_entry_urls(self, source_id: str) -> set[str]:
        rows = self._select_all(
            lambda: self.sb.table("entries").select("url").eq("source_id", source_id)
        )
        return {r["url"] for r in rows if r.get("url")}

    def list_fragment_entries(self, source_id: str) -> list[ExistingFragmentEntry]:
        rows = self._select_all(
            lambda: self.sb.table("entries")
            .select("id,title,published_at")
            .eq("source_id", source_id)
            .eq("is_fragment", True)
        )
        return [
            ExistingFragmentEntry(
                id=r["id"],
                title=r.get("title") or "",
                published_at=parse_ts(r.get("published_at")),
            )
            for r in rows
        ]

    def create_entry(self, entry: Entry) -> Entry:
        row = entry_to_row(entry)
        row.pop("id", None)
        res = _run_retry(self.sb.table("entries").insert(row).execute)
        if not res.data:
            raise RuntimeError(f"entry insert returned no row guid={entry.guid}")
        entry.id = res.data[0].get("id")
        entry.created_at = parse_ts(res.data[0].get("created_at")) or utc_now()
        return entry

    def get_entry(self, entry_id: str) -> Entry | None:
        res = _run_retry(
            self.sb.table("entries").select("*").eq("id", entry_id).limit(1).execute
        )
        if not res.data:
            return None
        return entry_from_row(res.data[0])

    def save_entry(self, entry: Entry) -> Entry:
        row = entry_to_row(entry)
        row.pop("id", None)
        _run_retry(self.sb.table("entries").update(row).eq("id", entry.id).execute)
        return entry

    def list_entries(self, source_id: str) -> list[Entry]:
        rows = self._select_all(
            lambda: self.sb.table("entries")
            .select("*")
            .eq("source_id", source_id)
            .order("created_at", desc=True)
        )
        return [entry_from_row(r) for r in rows]

    def list_retry_entries(self, limit: int = 50) -> list[Entry]:
        res = _run_retry(
            self.sb.table("entries")
            .select("*")
            .in_("processing_status", [PROCESSING_FAILED, PROCESSING_PENDING])
            .order("created_at", desc=True)
            .limit(limit)
            .execute
        )
        return [entry_from_row(r) for r in (res.data or [])]

    # settings

    def get_setting(self, key: str) -> str | None:
        res = _run_retry(
            self.sb.table("app_settings").select("value").eq("key", key).limit(1).execute
        )
        if not res.data:
            return None
        return res.data[0].get("value")

    def set_setting(self, key: str, value: str) -> None:
        _run_retry(
            self.sb.table("app_settings")
            .upsert({"key": key, "value": value}, on_conflict="key")
            .execute
        )

    # preferences

    def _correction_rows(self, since: datetime | None) -> list[dict]:
        # PostgREST cannot compare two columns, so user_stars != ai_stars is
        # filtered here.
        def build():
            q = (
                self.sb.table("entries")
                .select("*")
                .gt("user_stars", 0)
                .gt("ai_stars", 0)
                .order("created_at", desc=True)
            )
            if since is not None:
                q = q.gt("created_at", format_ts(since))
            return q

        return [r for r in self._select_all(build) if _is_correction_row(r)]

    def list_corrections(self, limit: int = 10, since: datetime | None = None) -> list[Entry]:
        return [entry_from_row(r) for r in self._correction_rows(since)[:limit]]

    def count_corrections(self, since: datetime | None = None) -> int:
        return len(self._correction_rows(since))

    def get_preference_profile(self) -> PreferenceProfile | None:
        res = _run_retry(
            self.sb.table("preferences")
            .select("*")
            .order("generated_at", desc=True)
            .limit(1)
            .execute
        )
        if not res.data:
            return None
        row = res.data[0]
        return PreferenceProfile(
            id=row.get("id"),
            profile_text=row.get("profile_text") or "",
            generated_at=parse_ts(row.get("generated_at")) or utc_now(),
        )

    def save_preference_profile(
        self, profile_text: str, generated_at: datetime | None = None
    ) -> PreferenceProfile:
        generated_at = generated_at or utc_now()
        payload = {"profile_text": profile_text, "generated_at": format_ts(generated_at)}
        current = self.get_preference_profile()
        if current and current.id:
            _run_retry(
                self.sb.table("preferences").update(payload).eq("id", current.id).execute
            )
            return PreferenceProfile(profile_text, generated_at, id=current.id)
        res = _run_retry(self.sb.table("preferences").insert(payload).execute)
        profile_id = res.data[0].get("id") if res.data else None
        return PreferenceProfile(profile_text, generated_at, id=profile_id)


def get_store():
    global _store
    if _store is not None:
        return _store

    backend = (get_str("STORE_BACKEND", "supabase") or "supabase").lower()
    if backend == "memory":
        from backend.memory_store import MemoryStore

        _store = MemoryStore()
    elif backend == "supabase":
        _store = SupabaseStore()
    else:
        raise RuntimeError(f"Unknown STORE_BACKEND: {backend}")
    return _store
