#!/usr/bin/env python3
"""Run one background job synchronously, without a Celery worker.

Usage:
  python scripts/run_job.py publish_scheduled_posts
  python scripts/run_job.py aggregate_daily --date 2026-03-01
  python scripts/run_job.py --list
"""

import argparse
import json
import sys
from datetime import date
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.ygops.tasks import JOBS, run_job  # noqa: E402

_DATED_JOBS = ("aggregate_daily", "aggregate_weekly", "aggregate_monthly")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run a ygops background job once.")
    parser.add_argument("job", nargs="?", help="Job name")
    parser.add_argument("--date", help="Target date (YYYY-MM-DD) for aggregation jobs")
    parser.add_argument("--list", action="store_true", help="List available jobs")
    args = parser.parse_args(argv)

    if args.list or not args.job:
        for name in sorted(JOBS):
            print(name)
        return 0
    if args.job not in JOBS:
        parser.error(f"unknown job {args.job!r}")

    kwargs = {}
    if args.date:
        if args.job not in _DATED_JOBS:
            parser.error("--date only applies to aggregation jobs")
        kwargs["day"] = date.fromisoformat(args.date)

    result = run_job(args.job, **kwargs)
    print(json.dumps(result, default=str, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
