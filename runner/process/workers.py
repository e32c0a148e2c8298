import sys
import threading
import traceback
from concurrent.futures import ThreadPoolExecutor

from backend.config import get_int
from backend.models import PROCESSING_FAILED, Entry

AI_CONCURRENCY = get_int("AI_CONCURRENCY", 5) or 5


class EnrichmentPool:
    """Runs the enrichment step for entries on a bounded set of threads.

    submit() blocks the caller while `capacity` entries are already in flight,
    so a burst of new entries slows down ingestion instead of opening more
    outbound AI calls. submit_nowait() queues without blocking; the worker
    count still bounds concurrency, and an entry already queued or running is
    not queued twice. Anything a worker raises is counted in panic_count and
    the entry is marked failed.
    """

    def __init__(self, store, process, capacity: int = AI_CONCURRENCY):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.store = store
        self.process = process
        self.capacity = capacity
        self._slots = threading.BoundedSemaphore(capacity)
        self._executor = ThreadPoolExecutor(
            max_workers=capacity, thread_name_prefix="enrich"
        )
        self._cond = threading.Condition()
        self._pending = 0
        self._inflight: set[str] = set()
        self._panics = 0

    @property
    def panic_count(self) -> int:
        with self._cond:
            return self._panics

    @property
    def pending(self) -> int:
        with self._cond:
            return self._pending

    def _track(self, entry: Entry) -> None:
        with self._cond:
            self._pending += 1
            if entry.id:
                self._inflight.add(entry.id)

    def _done(self, entry: Entry) -> None:
        with self._cond:
            self._pending -= 1
            self._inflight.discard(entry.id)
            if self._pending == 0:
                self._cond.notify_all()

    def submit(self, entry: Entry) -> None:
        self._slots.acquire()
        self._track(entry)
        try:
            self._executor.submit(self._run, entry, True)
        except RuntimeError:
            self._slots.release()
            self._done(entry)
            raise

    def submit_nowait(self, entry: Entry) -> bool:
        """Queue without waiting for a slot. False if the entry is already in flight."""
        with self._cond:
            if entry.id and entry.id in self._inflight:
                print(f"ENRICH_SKIP_INFLIGHT entry={entry.id}")
                return False
            self._pending += 1
            if entry.id:
                self._inflight.add(entry.id)
        try:
            self._executor.submit(self._run, entry, False)
        except RuntimeError:
            self._done(entry)
            raise
        return True

    def _mark_failed(self, entry: Entry) -> None:
        entry.processing_status = PROCESSING_FAILED
        try:
            self.store.save_entry(entry)
        except Exception as e:
            print(
                f"ENRICH_MARK_FAILED_ERROR entry={entry.id} err={str(e)[:200]}",
                file=sys.stderr,
            )

    def _run(self, entry: Entry, holds_slot: bool) -> None:
        try:
            self.process(entry)
        except Exception as e:
            with self._cond:
                self._panics += 1
            print(
                f"ENRICH_PANIC entry={entry.id} err={type(e).__name__}: {str(e)[:200]}\n"
                f"{traceback.format_exc()}",
                file=sys.stderr,
            )
            self._mark_failed(entry)
        finally:
            if holds_slot:
                self._slots.release()
            self._done(entry)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until every submitted entry has finished. False on timeout."""
        with self._cond:
            return self._cond.wait_for(lambda: self._pending == 0, timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
