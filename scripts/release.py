"""
Release-phase helper.

Steps:
- refuse to run without DATABASE_URL, or on SQLite when ENV=production
- alembic upgrade head
- verify the profile identity tables/columns the code expects are present

Usage:
  python scripts/release.py
  python scripts/release.py --check-only   # skip the upgrade, report drift
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.cdp import schema_drift
from app.cdp.db import build_engine


def release_db_url(environ=None) -> str:
    environ = os.environ if environ is None else environ
    db_url = (environ.get("DATABASE_URL") or "").strip()
    if not db_url:
        raise RuntimeError("Missing required environment variable DATABASE_URL.")
    env = (environ.get("ENV") or "").strip().lower()
    if env in ("prod", "production") and db_url.startswith("sqlite"):
        raise RuntimeError("Refusing to run release on sqlite DATABASE_URL in production. Set DATABASE_URL to Postgres.")
    return db_url


def alembic_config(db_url: str):
    from alembic.config import Config

    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(ROOT / "migrations"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    return cfg


def verify_schema(db_url: str) -> list[str]:
    engine = build_engine(db_url)
    try:
        return schema_drift(engine)
    finally:
        engine.dispose()


def run_release(*, check_only: bool = False) -> int:
    db_url = release_db_url()
    print("=== CDP release start ===", flush=True)

    if not check_only:
        from alembic import command

        print("Running Alembic migrations...", flush=True)
        command.upgrade(alembic_config(db_url), "head")
        print("Migrations complete.", flush=True)

    missing = verify_schema(db_url)
    if missing:
        print(f"Schema drift: missing {', '.join(missing)}", flush=True)
        return 1
    print("Schema OK.", flush=True)
    print("=== CDP release done ===", flush=True)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Migrate the database and verify the profile identity schema.")
    parser.add_argument("--check-only", action="store_true", help="Only report schema drift; do not migrate.")
    args = parser.parse_args(argv)
    return run_release(check_only=args.check_only)


if __name__ == "__main__":
    raise SystemExit(main())
