"""Tests for runner.jobs.scheduler module."""

import threading
from unittest.mock import Mock, patch

from runner.jobs.scheduler import Scheduler, build_fetcher
from runner.ingest.dispatch import Fetcher


class TestScheduler:
    def test_tick_runs_fetch_then_retry(self) -> None:
        fetcher = Mock()
        Scheduler(fetcher, interval_sec=60).tick()
        assert [c[0] for c in fetcher.method_calls] == ["fetch_all", "retry_pending"]

    def test_errors_do_not_escape_tick(self) -> None:
        fetcher = Mock()
        fetcher.fetch_all.side_effect = RuntimeError("db down")
        fetcher.retry_pending.side_effect = RuntimeError("db down")
        scheduler = Scheduler(fetcher, interval_sec=60)
        scheduler.tick()
        fetcher.retry_pending.assert_called_once()
        assert scheduler.ticks == 1

    def test_first_tick_is_immediate(self) -> None:
        ticked = threading.Event()
        fetcher = Mock()
        fetcher.fetch_all.side_effect = lambda: ticked.set()
        scheduler = Scheduler(fetcher, interval_sec=3600)
        scheduler.start()
        try:
            assert ticked.wait(2.0)
        finally:
            scheduler.stop()
            scheduler.join(2.0)
        assert not scheduler.is_running()
        assert scheduler.ticks == 1

    def test_ticks_repeat_on_interval(self) -> None:
        enough = threading.Event()
        fetcher = Mock()
        scheduler = Scheduler(fetcher, interval_sec=0.01)

        def count():
            if scheduler.ticks >= 3:
                enough.set()

        fetcher.fetch_all.side_effect = count
        scheduler.start()
        try:
            assert enough.wait(2.0)
        finally:
            scheduler.stop()
            scheduler.join(2.0)
        assert scheduler.ticks >= 3

    def test_stop_before_run_prevents_ticks(self) -> None:
        fetcher = Mock()
        scheduler = Scheduler(fetcher, interval_sec=0.01)
        scheduler.stop()
        scheduler.run()
        assert scheduler.stopped
        fetcher.fetch_all.assert_not_called()

    def test_stop_during_tick_lets_it_finish(self) -> None:
        entered = threading.Event()
        release = threading.Event()
        fetcher = Mock()

        def slow():
            entered.set()
            release.wait(2.0)

        fetcher.fetch_all.side_effect = slow
        scheduler = Scheduler(fetcher, interval_sec=0.01)
        scheduler.start()
        assert entered.wait(2.0)
        scheduler.stop()
        release.set()
        scheduler.join(2.0)

        assert not scheduler.is_running()
        assert scheduler.ticks == 1
        fetcher.retry_pending.assert_called_once()


class TestBuildFetcher:
    def test_wires_store_into_every_part(self, store) -> None:
        with patch("runner.ingest.fallback.BrowserFetcher"):
            fetcher = build_fetcher(store, capacity=2)
        try:
            assert isinstance(fetcher, Fetcher)
            assert fetcher.store is store
            assert fetcher.strategy.store is store
            assert fetcher.complete is not None
        finally:
            fetcher.pool.shutdown()
