from contextlib import contextmanager
from typing import Iterator

import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.pool import SimpleConnectionPool

from settings import settings

_pool: SimpleConnectionPool | None = None

APPLICATION_NAME = "school_payments"


def init_pool() -> SimpleConnectionPool:
    """
    Open the PostgreSQL pool on first use.

    The API and the reconcile script both share this module; neither opens
    a connection until a repository call actually needs one.
    """
    global _pool
    if _pool is not None:
        return _pool

    dsn = (settings.DATABASE_URL or "").strip()
    if not dsn:
        raise RuntimeError("DATABASE_URL is not set.")

    psycopg2.extras.register_uuid()
    _pool = SimpleConnectionPool(
        minconn=settings.DB_POOL_MIN,
        maxconn=settings.DB_POOL_MAX,
        dsn=dsn,
        connect_timeout=5,
        application_name=APPLICATION_NAME,
    )
    return _pool


def close_pool() -> None:
    global _pool
    if _pool is not None:
        _pool.closeall()
        _pool = None


def _apply_session_limits(conn: PgConnection) -> None:
    timeout = f"{int(settings.DB_STATEMENT_TIMEOUT_MS)}ms"
    with conn.cursor() as cur:
        cur.execute("SET statement_timeout = %s", (timeout,))
        cur.execute("SET idle_in_transaction_session_timeout = %s", (timeout,))


@contextmanager
def get_conn() -> Iterator[PgConnection]:
    """One transaction per block: commit when it exits cleanly, roll back otherwise."""
    pool = init_pool()
    conn = pool.getconn()
    try:
        _apply_session_limits(conn)
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        pool.putconn(conn)


def ping() -> bool:
    with get_conn() as conn, conn.cursor() as cur:
        cur.execute("SELECT 1")
        return cur.fetchone() is not None
