from __future__ import annotations

import logging
from contextlib import contextmanager
from collections.abc import Generator

from flask import Flask, g
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)


def _engine_kwargs(db_url: str) -> dict[str, object]:
    kwargs: dict[str, object] = {"future": True, "pool_pre_ping": True}
    if db_url.startswith("postgres"):
        kwargs.update({"pool_recycle": 1800, "pool_size": 5, "max_overflow": 10, "pool_timeout": 30})
    elif db_url.startswith("sqlite"):
        # Concurrent counter/quota writers queue on the database lock instead of failing immediately.
        kwargs["connect_args"] = {"timeout": 30, "check_same_thread": False}
    return kwargs


def _enable_sqlite_foreign_keys(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):  # type: ignore[no-redef]
        cur = dbapi_connection.cursor()
        cur.execute("PRAGMA foreign_keys=ON")
        cur.close()


def init_db(app: Flask) -> None:
    db_url = app.config["DATABASE_URL"]
    engine = create_engine(db_url, **_engine_kwargs(db_url))
    if engine.dialect.name == "sqlite":
        _enable_sqlite_foreign_keys(engine)
    app.extensions["sqlalchemy_engine"] = engine
    app.extensions["sqlalchemy_sessionmaker"] = sessionmaker(
        bind=engine,
        class_=Session,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )
    app.logger.info("Database engine ready (dialect=%s)", engine.dialect.name)


def db_session(app: Flask | None = None) -> Session:
    """
    Request-scoped session for reads and the few admin writes that bypass the
    engine (catalog edits, allowances, counter advances). Callers commit.
    """
    if getattr(g, "db_session", None) is not None:
        return g.db_session
    if app is None:
        from flask import current_app

        app = current_app
    g.db_session = app.extensions["sqlalchemy_sessionmaker"]()  # type: ignore[assignment]
    return g.db_session


def teardown_db_session(_exc: BaseException | None) -> None:
    s: Session | None = getattr(g, "db_session", None)
    if s is None:
        return
    try:
        if _exc is not None:
            s.rollback()
        s.close()
    except Exception:
        logger.warning("Failed to close request session", exc_info=True)
    g.db_session = None


@contextmanager
def session_scope(app: Flask) -> Generator[Session, None, None]:
    """
    Non-request unit of work: yields a session and commits/rolls back.
    Every workflow operation runs inside exactly one of these.
    """
    s: Session = app.extensions["sqlalchemy_sessionmaker"]()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
