from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from typing import Any, Iterator

from psycopg import Cursor
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from nab_batch.errors import ConfigurationError, ExternalServiceError

_db_pool: ConnectionPool | None = None
_logger = logging.getLogger(__name__)


def init_db_pool(dsn: str | None = None, max_size: int | None = None) -> None:
    """
    Initialise the global DB pool from `dsn` or `NAB_DB_DSN`.

    Unlike a long-running API, a pipeline phase cannot do anything useful without the store,
    so a pool that cannot be opened is reported as an error instead of a degraded mode.
    """
    global _db_pool
    if _db_pool is not None:
        return

    dsn = dsn or os.environ.get("NAB_DB_DSN")
    if not dsn:
        raise ConfigurationError("NAB_DB_DSN is not configured", missing=["NAB_DB_DSN"])

    if max_size is None:
        max_size = int(os.environ.get("NAB_DB_POOL_MAX", "6"))
    max_size = max(1, min(max_size, 32))
    pool = ConnectionPool(
        conninfo=dsn,
        min_size=1,
        max_size=max_size,
        open=False,
        kwargs={"autocommit": True},
    )
    try:
        pool.open(wait=True, timeout=30.0)
    except Exception as exc:
        _logger.exception("Failed to initialise DB pool.")
        try:
            pool.close()
        except Exception:
            _logger.debug("Failed to close DB pool after init failure.", exc_info=True)
        raise ConfigurationError(f"Database is unreachable: {exc}") from exc

    _db_pool = pool


def shutdown_db_pool() -> None:
    global _db_pool
    if _db_pool is None:
        return
    _db_pool.close()
    _db_pool = None


def _db_pool_or_raise() -> ConnectionPool:
    if _db_pool is None:
        init_db_pool()
    if _db_pool is None:
        raise ExternalServiceError("Database is not ready (check Postgres and NAB_DB_DSN).")
    return _db_pool


def _db_fetch_all(sql: str, params: tuple[Any, ...] = ()) -> list[dict[str, Any]]:
    pool = _db_pool_or_raise()
    with pool.connection() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(sql, params)
            rows = cur.fetchall()
            return [dict(r) for r in rows]


def _db_execute(sql: str, params: tuple[Any, ...] = ()) -> int:
    pool = _db_pool_or_raise()
    with pool.connection() as conn:
        with conn.cursor() as cur:
            cur.execute(sql, params)
            return cur.rowcount


@contextmanager
def _db_transaction() -> Iterator[Cursor[dict[str, Any]]]:
    """
    Run several statements as one atomic unit.

    Everything executed on the yielded cursor commits together, or not at all if the block raises.
    """
    pool = _db_pool_or_raise()
    with pool.connection() as conn:
        with conn.transaction():
            with conn.cursor(row_factory=dict_row) as cur:
                yield cur


def db_ping() -> bool:
    try:
        pool = _db_pool_or_raise()
    except (ConfigurationError, ExternalServiceError):
        return False

    try:
        with pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1")
        return True
    except Exception:
        _logger.debug("DB ping failed.", exc_info=True)
        return False
