"""
Release phase: migrate the schema to head, then seed permissions and the admin user.

Refuses to migrate a SQLite database when ENV is production.

Usage:
  python scripts/release.py
"""
from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from alembic import command  # noqa: E402
from alembic.config import Config  # noqa: E402

from app.ygops.config import load_settings  # noqa: E402

logger = logging.getLogger("ygops.release")


class ReleaseError(RuntimeError):
    pass


def alembic_config(db_url: str) -> Config:
    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(ROOT / "migrations"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    return cfg


def run_release() -> None:
    if not (os.environ.get("DATABASE_URL") or "").strip():
        raise ReleaseError("DATABASE_URL must be set for a release")
    settings = load_settings()
    if settings.env in ("prod", "production") and settings.database_url.startswith("sqlite"):
        raise ReleaseError("Production releases need a Postgres DATABASE_URL, not sqlite")

    logger.info("Release starting (env=%s)", settings.env)
    command.upgrade(alembic_config(settings.database_url), "head")
    logger.info("Schema at head")

    from scripts import init_db

    init_db.seed_only(database_url=settings.database_url)
    logger.info("Release complete")


def main() -> None:
    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO").upper(), format="%(levelname)s %(name)s: %(message)s")
    run_release()


if __name__ == "__main__":
    main()
