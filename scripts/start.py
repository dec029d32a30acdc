#!/usr/bin/env python3
"""
Container entrypoint.

  python scripts/start.py          # release phase, then gunicorn (web)
  python scripts/start.py worker   # celery worker
  python scripts/start.py beat     # celery beat scheduler

The chosen process replaces this one so it receives signals directly.
"""
from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

logger = logging.getLogger("ygops.start")


def _port() -> int:
    raw = (os.environ.get("PORT") or "").strip() or "8080"
    if not raw.isdigit() or not 1 <= int(raw) <= 65535:
        raise SystemExit(f"PORT must be an integer between 1 and 65535, got {raw!r}")
    return int(raw)


def web_argv() -> list[str]:
    return [
        "gunicorn",
        "app.wsgi:app",
        f"--bind=0.0.0.0:{_port()}",
        f"--workers={os.environ.get('WEB_CONCURRENCY', '2')}",
        "--timeout=120",
        "--preload",
        "--access-logfile=-",
        "--error-logfile=-",
    ]


def celery_argv(mode: str) -> list[str]:
    level = os.environ.get("LOG_LEVEL", "INFO").lower()
    argv = ["celery", "-A", "app.ygops.tasks:celery_app", mode, f"--loglevel={level}"]
    if mode == "worker":
        argv.append(f"--concurrency={os.environ.get('CELERY_CONCURRENCY', '2')}")
    return argv


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Start a ygops process.")
    parser.add_argument("mode", nargs="?", default="web", choices=("web", "worker", "beat"))
    parser.add_argument("--skip-release", action="store_true", help="Do not migrate/seed before starting web")
    args = parser.parse_args(argv)

    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO").upper(), format="%(levelname)s %(name)s: %(message)s")

    if args.mode == "web":
        cmd = web_argv()
        if not args.skip_release:
            from scripts.release import run_release

            try:
                run_release()
            except Exception:
                logger.exception("Release phase failed")
                sys.exit(1)
    else:
        cmd = celery_argv(args.mode)

    logger.info("exec %s", " ".join(cmd))
    os.execvp(cmd[0], cmd)


if __name__ == "__main__":
    main()
