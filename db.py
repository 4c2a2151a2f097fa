from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

Base = declarative_base()

# Bound by init_engine(); importing modules keep a reference to this factory.
SessionLocal = sessionmaker(autoflush=False, expire_on_commit=False)

engine: Optional[Engine] = None

_log = logging.getLogger("db")


def _install_sqlite_single_writer(eng: Engine) -> None:
    # pysqlite's deferred BEGIN lets two writers read the same snapshot; take the
    # write lock up front so every transaction is a single-writer section.
    @event.listens_for(eng, "connect")
    def _on_connect(dbapi_conn, _record):
        dbapi_conn.isolation_level = None

    @event.listens_for(eng, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def init_engine(database_url: str) -> Engine:
    global engine

    url = str(database_url or "").strip()
    if not url:
        raise RuntimeError("DATABASE_URL is empty")

    if engine is not None:
        engine.dispose()

    if url.startswith("sqlite"):
        eng = create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})
        _install_sqlite_single_writer(eng)
    else:
        from config import Config

        cfg = Config()
        eng = create_engine(
            url,
            pool_pre_ping=True,
            pool_size=max(1, cfg.DB_POOL_SIZE),
            max_overflow=max(0, cfg.DB_MAX_OVERFLOW),
            pool_recycle=1800,
        )

    SessionLocal.configure(bind=eng)
    engine = eng
    _log.info("engine initialised dialect=%s", eng.dialect.name)
    return eng


def ping_db() -> bool:
    if engine is None:
        return False
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        _log.warning("db ping failed", exc_info=True)
        return False


def get_pool_stats() -> dict[str, Any]:
    if engine is None:
        return {"initialized": False}
    pool = engine.pool
    out: dict[str, Any] = {"initialized": True, "class": type(pool).__name__}
    for name in ("size", "checkedin", "checkedout", "overflow"):
        fn = getattr(pool, name, None)
        if callable(fn):
            try:
                out[name] = int(fn())
            except Exception:
                out[name] = None
    return out
