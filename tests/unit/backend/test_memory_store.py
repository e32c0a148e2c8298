"""Tests for backend.memory_store module."""

from datetime import timedelta

import pytest

from backend.memory_store import MemoryStore
from backend.models import (
    PROCESSING_DONE,
    PROCESSING_FAILED,
    SOURCE_WATCHLIST,
    STATUS_QUARANTINED,
    Entry,
    Source,
)


def _entry(source_id: str, guid: str, **kwargs) -> Entry:
    kwargs.setdefault("url", f"https://example.com/{guid}")
    return Entry(source_id=source_id, title=guid, guid=guid, **kwargs)


class TestSources:
    def test_save_assigns_id(self) -> None:
        store = MemoryStore()
        source = store.save_source(Source(url="https://example.com/feed"))
        assert source.id
        assert store.get_source(source.id).url == "https://example.com/feed"

    def test_returned_records_are_copies(self) -> None:
        store = MemoryStore()
        source = store.save_source(Source(url="https://example.com/feed"))
        loaded = store.get_source(source.id)
        loaded.consecutive_failures = 9
        assert store.get_source(source.id).consecutive_failures == 0

    def test_active_excludes_inactive_and_quarantined(self) -> None:
        store = MemoryStore()
        keep = store.save_source(Source(url="https://a.example.com", kind=SOURCE_WATCHLIST))
        store.save_source(Source(url="https://b.example.com", active=False))
        store.save_source(Source(url="https://c.example.com", status=STATUS_QUARANTINED))
        assert [s.id for s in store.list_active_sources()] == [keep.id]

    def test_delete_cascades_to_entries(self) -> None:
        store = MemoryStore()
        source = store.save_source(Source(url="https://example.com/feed"))
        entry = store.create_entry(_entry(source.id, "a"))
        store.delete_source(source.id)
        assert store.get_source(source.id) is None
        assert store.get_entry(entry.id) is None

    def test_get_unknown(self) -> None:
        assert MemoryStore().get_source("nope") is None


class TestEntries:
    def test_create_assigns_id_and_created_at(self) -> None:
        store = MemoryStore()
        entry = store.create_entry(_entry("s1", "a"))
        assert entry.id
        assert entry.created_at is not None

    def test_save_unknown_entry_raises(self) -> None:
        with pytest.raises(KeyError):
            MemoryStore().save_entry(_entry("s1", "a", id="missing"))

    def test_guids_since(self, now) -> None:
        store = MemoryStore()
        store.create_entry(_entry("s1", "old", created_at=now - timedelta(days=400)))
        store.create_entry(_entry("s1", "new", created_at=now - timedelta(days=1)))
        store.create_entry(_entry("s2", "other", created_at=now))
        assert store.list_entry_guids("s1", since=now - timedelta(days=395)) == ["new"]
        assert sorted(store.list_entry_guids("s1")) == ["new", "old"]

    def test_urls_and_fragments(self, now) -> None:
        store = MemoryStore()
        store.create_entry(_entry("s1", "a"))
        frag = store.create_entry(_entry("s1", "p#frag-0011", is_fragment=True, published_at=now))
        assert store.list_entry_urls("s1") == {"https://example.com/a", "https://example.com/p#frag-0011"}
        (existing,) = store.list_fragment_entries("s1")
        assert existing.id == frag.id
        assert existing.published_at == now

    def test_lists_are_newest_first(self) -> None:
        store = MemoryStore()
        for guid in ("a", "b", "c"):
            store.create_entry(_entry("s1", guid))
        assert [e.guid for e in store.list_entries("s1")] == ["c", "b", "a"]

    def test_retry_entries(self) -> None:
        store = MemoryStore()
        store.create_entry(_entry("s1", "failed", processing_status=PROCESSING_FAILED))
        store.create_entry(_entry("s1", "done", processing_status=PROCESSING_DONE))
        store.create_entry(_entry("s1", "pending"))
        assert [e.guid for e in store.list_retry_entries(limit=50)] == ["pending", "failed"]
        assert len(store.list_retry_entries(limit=1)) == 1


class TestSettingsAndPreferences:
    def test_settings(self) -> None:
        store = MemoryStore()
        assert store.get_setting("k") is None
        store.set_setting("k", "v")
        assert store.get_setting("k") == "v"

    def test_corrections_need_both_ratings_and_a_difference(self, now) -> None:
        store = MemoryStore()
        store.create_entry(_entry("s1", "corr", ai_stars=2, user_stars=5, created_at=now))
        store.create_entry(_entry("s1", "same", ai_stars=3, user_stars=3, created_at=now))
        store.create_entry(_entry("s1", "unrated", ai_stars=3, created_at=now))
        assert [e.guid for e in store.list_corrections()] == ["corr"]
        assert store.count_corrections() == 1

    def test_corrections_since_is_exclusive(self, now) -> None:
        store = MemoryStore()
        store.create_entry(_entry("s1", "at", ai_stars=1, user_stars=5, created_at=now))
        store.create_entry(
            _entry("s1", "after", ai_stars=1, user_stars=5, created_at=now + timedelta(seconds=1))
        )
        assert store.count_corrections(since=now) == 1
        assert [e.guid for e in store.list_corrections(since=now)] == ["after"]

    def test_profile_keeps_single_row(self, now) -> None:
        store = MemoryStore()
        assert store.get_preference_profile() is None
        first = store.save_preference_profile("likes databases", now)
        second = store.save_preference_profile("likes queues", now + timedelta(hours=1))
        assert first.id == second.id
        assert store.get_preference_profile().profile_text == "likes queues"


class TestUpdateSource:
    def test_updates_existing(self) -> None:
        store = MemoryStore()
        source = store.save_source(Source(url="https://example.com/feed"))
        source.uses_browser_fetch = True
        assert store.update_source(source) is True
        assert store.get_source(source.id).uses_browser_fetch

    def test_deleted_source_is_not_recreated(self) -> None:
        store = MemoryStore()
        source = store.save_source(Source(url="https://example.com/feed"))
        store.delete_source(source.id)
        assert store.update_source(source) is False
        assert store.get_source(source.id) is None

    def test_unsaved_source_is_ignored(self) -> None:
        store = MemoryStore()
        assert store.update_source(Source(url="https://example.com/feed")) is False
        assert store.list_active_sources() == []
