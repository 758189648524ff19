"""
Create all tables directly from the models (development and tests).

Production schemas are managed by alembic (see scripts/release.py).

Usage:
  python scripts/init_db.py
"""

import sys
from pathlib import Path

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.cdp.db import build_engine
from app.cdp.models import Base
from scripts._db_utils import script_db_url


def create_tables(*, database_url: str | None = None) -> list[str]:
    db_url = script_db_url(database_url)
    engine = build_engine(db_url)
    try:
        Base.metadata.create_all(bind=engine)
    finally:
        engine.dispose()
    return sorted(Base.metadata.tables)


def main() -> None:
    tables = create_tables(database_url=None)
    print(f"Initialized database ({len(tables)} tables): {', '.join(tables)}")


if __name__ == "__main__":
    main()
