from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker

from utils import ApiError, RequestTimeoutError, StorageError


Base = declarative_base()

# Bound in init_engine(); created up front so `from db import SessionLocal` works before app start.
SessionLocal = sessionmaker(autoflush=False, expire_on_commit=False)

_engine: Optional[Engine] = None

_TIMEOUT_MARKERS = ("timeout", "timed out", "canceling statement", "querycanceled", "lock wait")


def engine_connect_args(database_url: str, statement_timeout_s: Optional[float] = None) -> dict[str, Any]:
    """Driver arguments that bound how long one statement (or lock wait) may take."""

    url = str(database_url or "").strip()
    out: dict[str, Any] = {}
    if url.startswith("sqlite"):
        out["check_same_thread"] = False
        if statement_timeout_s:
            out["timeout"] = float(statement_timeout_s)
    elif url.startswith("postgresql") and statement_timeout_s:
        out["options"] = f"-c statement_timeout={int(float(statement_timeout_s) * 1000)}"
    return out


def init_engine(database_url: str, *, statement_timeout_s: Optional[float] = None) -> Engine:
    global _engine

    url = str(database_url or "").strip()
    kwargs: dict[str, Any] = {"pool_pre_ping": True, "future": True}
    connect_args = engine_connect_args(url, statement_timeout_s)
    if connect_args:
        kwargs["connect_args"] = connect_args
    if not url.startswith("sqlite"):
        kwargs.update(pool_size=10, max_overflow=20, pool_recycle=1800)

    _engine = create_engine(url, **kwargs)
    SessionLocal.configure(bind=_engine)
    return _engine


def get_engine() -> Optional[Engine]:
    return _engine


def get_pool_stats() -> dict[str, Any]:
    if _engine is None:
        return {"initialized": False}
    pool = _engine.pool
    out: dict[str, Any] = {"initialized": True, "class": type(pool).__name__}
    for name in ("size", "checkedin", "checkedout", "overflow"):
        fn = getattr(pool, name, None)
        if callable(fn):
            out[name] = fn()
    return out


def ping_db(db) -> bool:
    try:
        db.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError:
        return False


def is_timeout_error(exc: BaseException) -> bool:
    msg = f"{type(getattr(exc, 'orig', None)).__name__} {exc}".lower()
    return any(m in msg for m in _TIMEOUT_MARKERS)


def translate_storage_error(exc: SQLAlchemyError, sub_step: str) -> ApiError:
    if isinstance(exc, (OperationalError, DBAPIError)) and is_timeout_error(exc):
        return RequestTimeoutError(f"{sub_step} timed out", sub_step=sub_step)
    return StorageError(f"{sub_step} failed: {type(exc).__name__}", sub_step=sub_step)


@contextmanager
def storage_step(db, sub_step: str):
    """
    Run one write against the store and flush it immediately.

    Any SQLAlchemy failure inside the block (or during the flush) surfaces as a
    StorageError / RequestTimeoutError tagged with `sub_step`, so a multi-write
    operation reports exactly which write failed.
    """

    try:
        yield
        db.flush()
    except ApiError:
        raise
    except SQLAlchemyError as e:
        raise translate_storage_error(e, sub_step) from e
