import copy
import itertools
import threading
import uuid
from datetime import datetime

from backend.models import (
    PROCESSING_FAILED,
    PROCESSING_PENDING,
    STATUS_QUARANTINED,
    Entry,
    ExistingFragmentEntry,
    PreferenceProfile,
    Source,
    utc_now,
)


def _is_correction(entry: Entry) -> bool:
    return entry.user_stars > 0 and entry.ai_stars > 0 and entry.user_stars != entry.ai_stars


class MemoryStore:
    """In-process record store with the same surface as the Supabase store.

    Records are copied on the way in and out so callers cannot mutate stored
    state without going through save_*.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._sources: dict[str, Source] = {}
        self._entries: dict[str, Entry] = {}
        self._order: dict[str, int] = {}
        self._seq = itertools.count()
        self._settings: dict[str, str] = {}
        self._profile: PreferenceProfile | None = None

    def _newest_first(self, entries: list[Entry]) -> list[Entry]:
        return sorted(entries, key=lambda e: self._order[e.id], reverse=True)

    # sources

    def list_active_sources(self) -> list[Source]:
        with self._lock:
            return [
                copy.deepcopy(s)
                for s in self._sources.values()
                if s.active and s.status != STATUS_QUARANTINED
            ]

    def get_source(self, source_id: str) -> Source | None:
        with self._lock:
            source = self._sources.get(source_id)
            return copy.deepcopy(source) if source else None

    def save_source(self, source: Source) -> Source:
        with self._lock:
            if not source.id:
                source.id = uuid.uuid4().hex
            self._sources[source.id] = copy.deepcopy(source)
        return source

    def update_source(self, source: Source) -> bool:
        """Write back an existing source. A deleted source stays deleted."""
        with self._lock:
            if not source.id or source.id not in self._sources:
                return False
            self._sources[source.id] = copy.deepcopy(source)
        return True

    def delete_source(self, source_id: str) -> None:
        with self._lock:
            self._sources.pop(source_id, None)
            for entry_id in [e.id for e in self._entries.values() if e.source_id == source_id]:
                self._entries.pop(entry_id, None)
                self._order.pop(entry_id, None)

    # entries

    def list_entry_guids(self, source_id: str, since: datetime | None = None) -> list[str]:
        with self._lock:
            return [
                e.guid
                for e in self._entries.values()
                if e.source_id == source_id
                and e.guid
                and (since is None or e.created_at is None or e.created_at >= since)
            ]

    def list_entry_urls(self, source_id: str) -> set[str]:
        with self._lock:
            return {e.url for e in self._entries.values() if e.source_id == source_id and e.url}

    def list_fragment_entries(self, source_id: str) -> list[ExistingFragmentEntry]:
        with self._lock:
            return [
                ExistingFragmentEntry(id=e.id, title=e.title, published_at=e.published_at)
                for e in self._entries.values()
                if e.source_id == source_id and e.is_fragment
            ]

    def create_entry(self, entry: Entry) -> Entry:
        with self._lock:
            entry.id = uuid.uuid4().hex
            if entry.created_at is None:
                entry.created_at = utc_now()
            self._entries[entry.id] = copy.deepcopy(entry)
            self._order[entry.id] = next(self._seq)
        return entry

    def get_entry(self, entry_id: str) -> Entry | None:
        with self._lock:
            entry = self._entries.get(entry_id)
            return copy.deepcopy(entry) if entry else None

    def save_entry(self, entry: Entry) -> Entry:
        with self._lock:
            if entry.id not in self._entries:
                raise KeyError(f"Unknown entry: {entry.id}")
            self._entries[entry.id] = copy.deepcopy(entry)
        return entry

    def list_entries(self, source_id: str) -> list[Entry]:
        with self._lock:
            found = [e for e in self._entries.values() if e.source_id == source_id]
            return [copy.deepcopy(e) for e in self._newest_first(found)]

    def list_retry_entries(self, limit: int = 50) -> list[Entry]:
        with self._lock:
            found = [
                e
                for e in self._entries.values()
                if e.processing_status in (PROCESSING_FAILED, PROCESSING_PENDING)
            ]
            return [copy.deepcopy(e) for e in self._newest_first(found)[:limit]]

    # settings

    def get_setting(self, key: str) -> str | None:
        with self._lock:
            return self._settings.get(key)

    def set_setting(self, key: str, value: str) -> None:
        with self._lock:
            self._settings[key] = value

    # preferences

    def list_corrections(self, limit: int = 10, since: datetime | None = None) -> list[Entry]:
        with self._lock:
            found = [
                e
                for e in self._entries.values()
                if _is_correction(e)
                and (since is None or (e.created_at is not None and e.created_at > since))
            ]
            return [copy.deepcopy(e) for e in self._newest_first(found)[:limit]]

    def count_corrections(self, since: datetime | None = None) -> int:
        with self._lock:
            return sum(
                1
                for e in self._entries.values()
                if _is_correction(e)
                and (since is None or (e.created_at is not None and e.created_at > since))
            )

    def get_preference_profile(self) -> PreferenceProfile | None:
        with self._lock:
            return copy.deepcopy(self._profile)

    def save_preference_profile(self, profile_text: str, generated_at: datetime | None = None) -> PreferenceProfile:
        with self._lock:
            profile_id = self._profile.id if self._profile else uuid.uuid4().hex
            self._profile = PreferenceProfile(
                profile_text=profile_text,
                generated_at=generated_at or utc_now(),
                id=profile_id,
            )
            return copy.deepcopy(self._profile)
