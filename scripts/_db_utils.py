from __future__ import annotations

import os
from contextlib import contextmanager

from sqlalchemy.orm import Session

from app.cdp.db import build_engine, build_sessionmaker


def script_db_url(database_url: str | None = None) -> str:
    return (database_url or os.environ.get("DATABASE_URL") or "sqlite:///cdp.db").strip()


@contextmanager
def script_session(db_url: str):
    engine = build_engine(db_url)
    sm = build_sessionmaker(engine)
    s: Session = sm()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
        engine.dispose()
