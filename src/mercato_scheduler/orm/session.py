"""SQLAlchemy engine and session factory for the schedule store.

This module provides:

* ``create_scheduler_engine`` -- Create an engine from a URL with sane defaults.
* ``SchedulerSession``        -- Session subclass with ``expire_on_commit=False``.
* ``scheduler_session_factory`` -- ``sessionmaker`` producing ``SchedulerSession``.
* ``create_schema``           -- Create the scheduler tables.

Every store operation opens its own short-lived session from the factory,
so operations never share identity maps.

Tags:
    orm, sqlalchemy, session, engine

Doc-Types:
    api-reference
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import create_engine as _sa_create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from mercato_scheduler.orm.base import SchedulerBase


def _is_memory_sqlite(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in url


def create_scheduler_engine(
    url: str = "sqlite:///mercato_scheduler.db",
    *,
    echo: bool = False,
    pool_size: int | None = None,
    max_overflow: int | None = None,
    **kwargs: Any,
) -> Engine:
    """Create a SQLAlchemy engine.

    Parameters
    ----------
    url:
        Database URL (``sqlite:///…``, ``postgresql+psycopg://…``).
    echo:
        If ``True``, log all SQL.
    pool_size, max_overflow:
        Connection pool parameters (ignored for SQLite).
    **kwargs:
        Extra arguments forwarded to ``sqlalchemy.create_engine``.
    """
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
        if _is_memory_sqlite(url):
            # In-memory SQLite lives on a single connection.
            kwargs.setdefault("poolclass", StaticPool)
        return _sa_create_engine(url, echo=echo, **kwargs)

    pool_kwargs: dict[str, Any] = {"pool_pre_ping": True}
    if pool_size is not None:
        pool_kwargs["pool_size"] = pool_size
    if max_overflow is not None:
        pool_kwargs["max_overflow"] = max_overflow

    return _sa_create_engine(url, echo=echo, **pool_kwargs, **kwargs)


class SchedulerSession(Session):
    """Pre-configured session with ``expire_on_commit=False``.

    Objects stay readable after commit, which the change synchronizer and
    the store's detached return values rely on.
    """

    def __init__(self, bind: Engine | None = None, **kwargs: Any) -> None:
        kwargs.setdefault("expire_on_commit", False)
        super().__init__(bind=bind, **kwargs)


def scheduler_session_factory(engine: Engine) -> sessionmaker[SchedulerSession]:
    """Return a ``sessionmaker`` bound to *engine* that produces ``SchedulerSession`` instances."""
    return sessionmaker(bind=engine, class_=SchedulerSession)


def create_schema(engine: Engine) -> None:
    """Create the scheduler tables if they do not exist."""
    SchedulerBase.metadata.create_all(engine)


def drop_schema(engine: Engine) -> None:
    SchedulerBase.metadata.drop_all(engine)
