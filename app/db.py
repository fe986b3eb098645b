"""DB helper for the PostgreSQL backend."""

from __future__ import annotations

import contextvars
import logging
import os
import threading
import time
from contextlib import contextmanager
from typing import Any, Iterable

import psycopg2
import psycopg2.extras
from psycopg2.pool import SimpleConnectionPool


def get_db_url() -> str:
    url = os.getenv("FORGE_DATABASE_URL") or os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("FORGE_DATABASE_URL or DATABASE_URL is required when USE_DB=1")
    return url


_POOL: SimpleConnectionPool | None = None
_POOL_LOCK = threading.Lock()
_logger = logging.getLogger("forge.db")
_query_logger = logging.getLogger("forge.db.query")
_DB_STATS: contextvars.ContextVar[dict] = contextvars.ContextVar("forge_db_stats", default=None)
_SLOW_MS = float(os.getenv("FORGE_QUERY_SLOW_MS", "200"))
_LOG_ALL = os.getenv("FORGE_QUERY_LOG", "").strip() == "1"
_ISOLATION_LEVELS = {"read committed", "repeatable read", "serializable"}


def _redact_params(params: Iterable[Any] | None) -> list[Any] | None:
    if params is None:
        return None
    redacted: list[Any] = []
    for val in params:
        if isinstance(val, (bytes, bytearray)):
            redacted.append(f"<bytes:{len(val)}>")
        elif isinstance(val, str) and len(val) > 80:
            redacted.append(f"{val[:40]}…{val[-10:]}")
        else:
            redacted.append(val)
    return redacted


def _log_query(query_name: str | None, params: Iterable[Any] | None, elapsed_ms: float, rowcount: int | None) -> None:
    if not query_name and not _LOG_ALL and elapsed_ms < _SLOW_MS:
        return
    message = {
        "query": query_name or "unnamed",
        "ms": round(elapsed_ms, 2),
        "rowcount": rowcount,
        "params": _redact_params(params),
    }
    if elapsed_ms >= _SLOW_MS:
        _query_logger.warning("db_slow_query=%s", message)
    elif _LOG_ALL:
        _query_logger.info("db_query=%s", message)
    else:
        _query_logger.debug("db_query=%s", message)


def init_pool(minconn: int | None = None, maxconn: int | None = None) -> None:
    global _POOL
    with _POOL_LOCK:
        if _POOL is not None:
            return
        if minconn is None:
            minconn = int(os.getenv("FORGE_DB_POOL_MIN", "1"))
        if maxconn is None:
            maxconn = int(os.getenv("FORGE_DB_POOL_MAX", "10"))
        _POOL = SimpleConnectionPool(minconn, maxconn, dsn=get_db_url())
        _logger.info("db_pool_opened min=%s max=%s", minconn, maxconn)


def close_pool() -> None:
    global _POOL
    with _POOL_LOCK:
        if _POOL is None:
            return
        _POOL.closeall()
        _POOL = None
        _logger.info("db_pool_closed")


def reset_db_stats() -> None:
    _DB_STATS.set({"queries": 0, "total_ms": 0.0})


def get_db_stats() -> dict:
    stats = _DB_STATS.get()
    if not isinstance(stats, dict):
        return {"queries": 0, "total_ms": 0.0}
    return stats


def _add_db_ms(delta: float) -> None:
    stats = dict(get_db_stats())
    stats["total_ms"] = stats.get("total_ms", 0.0) + delta
    stats["queries"] = stats.get("queries", 0) + 1
    _DB_STATS.set(stats)


def _get_pool() -> SimpleConnectionPool:
    if _POOL is None:
        init_pool()
    return _POOL


@contextmanager
def get_conn(isolation: str | None = None):
    """Borrow a pooled connection; everything inside commits or rolls back together."""
    pool = _get_pool()
    conn = pool.getconn()
    _logger.debug("db_conn borrowed")
    try:
        if isolation:
            level = isolation.strip().lower()
            if level not in _ISOLATION_LEVELS:
                raise ValueError(f"unsupported isolation level: {isolation}")
            with conn.cursor() as cur:
                cur.execute(f"SET TRANSACTION ISOLATION LEVEL {level.upper()}")
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        pool.putconn(conn)
        _logger.debug("db_conn returned")


def fetch_one(conn, sql: str, params: Iterable[Any] | None = None, query_name: str | None = None) -> dict | None:
    start = time.perf_counter()
    with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
        cur.execute(sql, params)
        row = cur.fetchone()
        rowcount = cur.rowcount
    elapsed_ms = (time.perf_counter() - start) * 1000
    _add_db_ms(elapsed_ms)
    _log_query(query_name, params, elapsed_ms, rowcount)
    return dict(row) if row else None


def fetch_all(conn, sql: str, params: Iterable[Any] | None = None, query_name: str | None = None) -> list[dict]:
    start = time.perf_counter()
    with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
        cur.execute(sql, params)
        rows = [dict(r) for r in cur.fetchall()]
        rowcount = cur.rowcount
    elapsed_ms = (time.perf_counter() - start) * 1000
    _add_db_ms(elapsed_ms)
    _log_query(query_name, params, elapsed_ms, rowcount)
    return rows


def execute(conn, sql: str, params: Iterable[Any] | None = None, query_name: str | None = None) -> int:
    """Run a statement; DDL without params is sent verbatim (no %-interpolation)."""
    start = time.perf_counter()
    with conn.cursor() as cur:
        cur.execute(sql, params)
        rowcount = cur.rowcount
    elapsed_ms = (time.perf_counter() - start) * 1000
    _add_db_ms(elapsed_ms)
    _log_query(query_name, params, elapsed_ms, rowcount)
    return rowcount


def ping() -> float:
    start = time.perf_counter()
    with get_conn() as conn:
        fetch_one(conn, "select 1 as ok", query_name="ops.db_ping")
    return (time.perf_counter() - start) * 1000
