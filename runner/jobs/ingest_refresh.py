import argparse
import sys

from runner.jobs.scheduler import build_fetcher


def main() -> int:
    ap = argparse.ArgumentParser(description="Fetch all sources, or one, right now")
    ap.add_argument("--source", help="source id to fetch, even when quarantined")
    ap.add_argument("--timeout", type=float, default=None, help="seconds to wait for enrichment")
    args = ap.parse_args()

    fetcher = build_fetcher()
    try:
        if args.source:
            try:
                source = fetcher.fetch_one(args.source)
            except ValueError as e:
                print(f"INGEST_REFRESH_FAIL err={e}", file=sys.stderr)
                return 2
            print(
                f"INGEST_REFRESH_SOURCE source={source.id} status={source.status} "
                f"failures={source.consecutive_failures}"
            )
        else:
            ok = fetcher.fetch_all()
            print(f"INGEST_REFRESH_ALL ok={ok}")
        drained = fetcher.pool.wait(timeout=args.timeout)
    finally:
        fetcher.pool.shutdown(wait=True)
    print(f"INGEST_REFRESH_DONE drained={int(drained)} panics={fetcher.pool.panic_count}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
