"""Engine and session management for the manifest store and scan ledger."""

from __future__ import annotations

import contextlib
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from rto_recon.config import settings


class Base(DeclarativeBase):
    pass


def build_engine(database_url: str | None = None, **kwargs) -> Engine:
    url = database_url or settings.database_url
    options = {"pool_pre_ping": True}
    if url.startswith("sqlite"):
        options["connect_args"] = {
            "check_same_thread": False,
            "timeout": settings.pool_timeout_seconds,
        }
    else:
        options["pool_timeout"] = settings.pool_timeout_seconds
    options.update(kwargs)
    return create_engine(url, **options)


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


@contextlib.contextmanager
def session_scope(factory: sessionmaker) -> Iterator[Session]:
    """Yield a session that commits on success and rolls back on any exception."""
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
