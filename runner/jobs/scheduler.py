import argparse
import signal
import sys
import threading
import traceback

from backend.config import get_int
from backend.db import get_store
from backend.llm.client import store_completer
from runner.ingest.dispatch import Fetcher
from runner.ingest.fallback import FetchStrategy
from runner.process.preferences import check_and_regenerate
from runner.process.summarize import Enricher
from runner.process.workers import AI_CONCURRENCY, EnrichmentPool

INTERVAL_MIN = get_int("SCHEDULER_INTERVAL_MIN", 30) or 30


class Scheduler:
    """Runs fetch-all plus a retry pass right away, then every interval.

    stop() is cooperative: a tick in progress finishes, no new tick starts.
    """

    def __init__(self, fetcher: Fetcher, interval_sec: float = INTERVAL_MIN * 60):
        self.fetcher = fetcher
        self.interval_sec = interval_sec
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.ticks = 0

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def tick(self) -> None:
        self.ticks += 1
        print(f"SCHEDULER_TICK n={self.ticks}")
        try:
            self.fetcher.fetch_all()
        except Exception:
            print(f"SCHEDULER_FETCH_ALL_ERROR\n{traceback.format_exc()}", file=sys.stderr)
        try:
            self.fetcher.retry_pending()
        except Exception:
            print(f"SCHEDULER_RETRY_ERROR\n{traceback.format_exc()}", file=sys.stderr)

    def run(self) -> None:
        print(f"SCHEDULER_START interval_sec={self.interval_sec}")
        if not self._stop.is_set():
            self.tick()
        while not self._stop.wait(self.interval_sec):
            self.tick()
        print("SCHEDULER_STOPPED")

    def start(self) -> threading.Thread:
        self._thread = threading.Thread(target=self.run, name="scheduler", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self) -> None:
        self._stop.set()

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)


def build_fetcher(store=None, capacity: int = AI_CONCURRENCY) -> Fetcher:
    store = store or get_store()
    complete = store_completer(store)
    enricher = Enricher(store, complete, preferences=check_and_regenerate)
    pool = EnrichmentPool(store, enricher.process, capacity=capacity)
    strategy = FetchStrategy(store)
    return Fetcher(store, strategy, pool, complete=complete)


def main() -> int:
    ap = argparse.ArgumentParser(description="Periodic feed and watchlist ingestion")
    ap.add_argument("--once", action="store_true", help="run a single tick and exit")
    ap.add_argument("--interval-min", type=float, default=INTERVAL_MIN)
    args = ap.parse_args()

    fetcher = build_fetcher()
    scheduler = Scheduler(fetcher, interval_sec=args.interval_min * 60)

    if args.once:
        scheduler.tick()
        fetcher.pool.wait()
        fetcher.pool.shutdown()
        print(f"SCHEDULER_ONCE_DONE panics={fetcher.pool.panic_count}")
        return 0

    def _handle_term(signum, frame):
        print(f"SCHEDULER_SIGNAL sig={signum}")
        scheduler.stop()

    signal.signal(signal.SIGTERM, _handle_term)
    signal.signal(signal.SIGINT, _handle_term)

    scheduler.start()
    while scheduler.is_running():
        scheduler.join(timeout=1.0)
    fetcher.pool.shutdown(wait=True)
    print(f"SCHEDULER_EXIT panics={fetcher.pool.panic_count}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
