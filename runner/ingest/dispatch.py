import sys

from backend.config import get_int
from backend.models import (
    PROCESSING_PENDING,
    SOURCE_FEED,
    SOURCE_WATCHLIST,
    Entry,
    Source,
    utc_now,
)
from runner.process.quarantine import record_failure, record_success
from .extract import FetchError
from .fragments import FragmentSession
from .page_ingest import scrape_article_links
from .readability import ExtractedContent
from .rss_ingest import FeedItem, fetch_feed_items

# feed content shorter than this is replaced by the extracted article
THIN_CONTENT_CHARS = 200
RETRY_BATCH = get_int("RETRY_BATCH", 50) or 50


def is_thin_content(content: str | None) -> bool:
    return len((content or "").strip()) < THIN_CONTENT_CHARS


class Fetcher:
    """Fetches sources, creates entries and hands them to the enrichment pool.

    fetch_all() and fetch_one() may run while the scheduler is ticking; the
    dedup steps make a second concurrent fetch of the same source harmless.
    """

    def __init__(self, store, strategy, pool, complete=None, clock=None):
        self.store = store
        self.strategy = strategy
        self.pool = pool
        self.complete = complete
        self.clock = clock or utc_now

    def _source_exists(self, source_id: str) -> bool:
        # best effort: a delete can still land right after this check
        return self.store.get_source(source_id) is not None

    def create_entry(self, entry: Entry) -> Entry | None:
        entry.discovered_at = self.clock()
        entry.processing_status = PROCESSING_PENDING
        entry.is_read = False
        try:
            created = self.store.create_entry(entry)
        except Exception as e:
            print(
                f"ENTRY_CREATE_FAIL source={entry.source_id} guid={entry.guid} err={str(e)[:200]}",
                file=sys.stderr,
            )
            return None
        print(f"ENTRY_CREATED source={created.source_id} entry={created.id} url={created.url}")
        self.pool.submit(created)
        return created

    def _feed_entry(self, source: Source, item: FeedItem) -> None:
        content = item.content
        if is_thin_content(content) and item.url:
            try:
                extracted = self.strategy.extract_article(source, item.url)
            except FetchError as e:
                print(f"EXTRACT_FAIL source={source.id} url={item.url} err={e.code}", file=sys.stderr)
            else:
                if extracted.content:
                    content = extracted.content
        self.create_entry(
            Entry(
                source_id=source.id,
                url=item.url,
                title=item.title,
                guid=item.guid,
                raw_content=content,
                published_at=item.published_at,
            )
        )

    def _fetch_feed(self, source: Source) -> bool:
        now = self.clock()
        items = fetch_feed_items(source, self.strategy, self.store, now)
        session = None
        if source.is_fragment_source:
            session = FragmentSession(
                self.store, source, self.create_entry, complete=self.complete, now=now
            )

        for item in items:
            if not self._source_exists(source.id):
                print(f"SOURCE_DELETED source={source.id} action=stop")
                return False
            if session is None:
                self._feed_entry(source, item)
                continue
            try:
                session.process_item(item)
            except Exception as e:
                print(
                    f"FRAGMENT_ITEM_FAIL source={source.id} guid={item.guid} err={str(e)[:200]}",
                    file=sys.stderr,
                )

        if session is not None:
            session.flush()
            print(
                f"FRAGMENTS_DONE source={source.id} created={session.created} "
                f"updated={session.updated}"
            )
        return True

    def _fetch_watchlist(self, source: Source) -> bool:
        links = scrape_article_links(source, self.strategy, self.store)
        for link in links:
            if not self._source_exists(source.id):
                print(f"SOURCE_DELETED source={source.id} action=stop")
                return False
            try:
                extracted = self.strategy.extract_article(source, link.url)
            except FetchError as e:
                print(f"EXTRACT_FAIL source={source.id} url={link.url} err={e.code}", file=sys.stderr)
                extracted = ExtractedContent(title=link.title)
            self.create_entry(
                Entry(
                    source_id=source.id,
                    url=link.url,
                    title=extracted.title or link.title,
                    guid=link.url,
                    raw_content=extracted.content,
                )
            )
        return True

    def fetch_resource(self, source: Source) -> bool:
        """Fetch one source. Returns False if it was deleted mid-fetch."""
        if source.kind == SOURCE_FEED:
            return self._fetch_feed(source)
        if source.kind == SOURCE_WATCHLIST:
            return self._fetch_watchlist(source)
        print(f"SOURCE_KIND_UNKNOWN source={source.id} kind={source.kind!r}")
        return True

    def fetch_single(self, source: Source) -> bool:
        try:
            still_there = self.fetch_resource(source)
        except Exception as e:
            message = str(e) or type(e).__name__
            print(
                f"SOURCE_FETCH_FAIL source={source.id} name={source.label!r} err={message[:200]}",
                file=sys.stderr,
            )
            try:
                record_failure(self.store, source, message, now=self.clock())
            except Exception as qe:
                print(f"QUARANTINE_SAVE_FAIL source={source.id} err={str(qe)[:200]}", file=sys.stderr)
            return False

        if not still_there:
            return False
        try:
            record_success(self.store, source, now=self.clock())
        except Exception as e:
            print(f"QUARANTINE_SAVE_FAIL source={source.id} err={str(e)[:200]}", file=sys.stderr)
        return True

    def fetch_all(self) -> int:
        try:
            sources = self.store.list_active_sources()
        except Exception as e:
            print(f"SOURCES_LOAD_FAIL err={str(e)[:200]}", file=sys.stderr)
            return 0
        print(f"FETCH_ALL sources={len(sources)}")
        ok = 0
        for source in sources:
            if self.fetch_single(source):
                ok += 1
        print(f"FETCH_ALL_DONE sources={len(sources)} ok={ok}")
        return ok

    def fetch_one(self, source_id: str) -> Source:
        source = self.store.get_source(source_id)
        if source is None:
            raise ValueError(f"Unknown source: {source_id}")
        self.fetch_single(source)
        return source

    def retry_pending(self, limit: int = RETRY_BATCH) -> int:
        try:
            entries = self.store.list_retry_entries(limit)
        except Exception as e:
            print(f"RETRY_LOAD_FAIL err={str(e)[:200]}", file=sys.stderr)
            return 0
        # entries created this tick are usually still queued; the pool skips those
        submitted = 0
        for entry in entries:
            if self.pool.submit_nowait(entry):
                submitted += 1
        print(f"RETRY_SUBMITTED entries={submitted} loaded={len(entries)}")
        return submitted
