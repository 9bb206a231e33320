from __future__ import annotations

import os
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker


def resolve_database_url(database_url: str | None = None) -> str:
    return (database_url or os.environ.get("DATABASE_URL") or "sqlite:///panotify.db").strip()


def create_script_engine(db_url: str):
    kwargs: dict[str, object] = {"future": True, "pool_pre_ping": True}
    if not db_url.startswith("sqlite"):
        kwargs["pool_recycle"] = 1800
    return create_engine(db_url, **kwargs)


@contextmanager
def script_session(db_url: str):
    engine = create_script_engine(db_url)
    sm = sessionmaker(bind=engine, class_=Session, autoflush=False, autocommit=False, expire_on_commit=False, future=True)
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
