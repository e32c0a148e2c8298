import argparse

from runner.ingest.dispatch import RETRY_BATCH
from runner.jobs.scheduler import build_fetcher


def main() -> int:
    ap = argparse.ArgumentParser(description="Resubmit failed and pending entries for enrichment")
    ap.add_argument("--limit", type=int, default=RETRY_BATCH)
    ap.add_argument("--timeout", type=float, default=None, help="seconds to wait for enrichment")
    args = ap.parse_args()

    fetcher = build_fetcher()
    try:
        submitted = fetcher.retry_pending(limit=args.limit)
        drained = fetcher.pool.wait(timeout=args.timeout)
    finally:
        fetcher.pool.shutdown(wait=True)
    print(
        f"SUMMARIZE_PENDING_DONE submitted={submitted} drained={int(drained)} "
        f"panics={fetcher.pool.panic_count}"
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
