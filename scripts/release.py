"""
Release step for revision-manager: migrate the schema to head, then seed
the revision permissions, the admin/editor roles and the admin user.

Seeding is idempotent and never resets an existing admin password.

Usage:
  DATABASE_URL=postgresql://... python scripts/release.py
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _database_url() -> str:
    db_url = (os.environ.get("DATABASE_URL") or "").strip()
    if not db_url:
        raise RuntimeError("DATABASE_URL must be set for a release.")
    env = (os.environ.get("ENV") or "").strip().lower()
    if env in ("prod", "production") and db_url.startswith("sqlite"):
        raise RuntimeError("Production releases need a Postgres DATABASE_URL, not sqlite.")
    return db_url


def migrate(db_url: str) -> None:
    from alembic import command
    from alembic.config import Config

    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(ROOT / "migrations"))
    # ConfigParser interpolation treats "%" specially (URL-encoded passwords).
    cfg.set_main_option("sqlalchemy.url", db_url.replace("%", "%%"))
    command.upgrade(cfg, "head")


def run_release() -> None:
    db_url = _database_url()
    print(f"[release] ENV={os.environ.get('ENV') or '(unset)'}", flush=True)

    print("[release] alembic upgrade head", flush=True)
    migrate(db_url)

    print("[release] seeding revision permissions and roles", flush=True)
    from scripts import init_db

    init_db.seed_only(database_url=db_url)
    print("[release] done", flush=True)


def main() -> None:
    run_release()


if __name__ == "__main__":
    main()
