from __future__ import annotations

import logging
import os

from fastapi import APIRouter

from app.providers.mobile_money.config import mpesa_mode
from db import get_conn, ping
from settings import settings

router = APIRouter(tags=["health"])
logger = logging.getLogger("school_pay.http")

MIGRATION_REVISION = "0001_school_payments"


def _check_db() -> tuple[bool, str | None]:
    try:
        return ping(), None
    except Exception as exc:
        logger.warning("readyz db check failed error=%s", type(exc).__name__)
        return False, type(exc).__name__


def _migration_revision() -> str | None:
    try:
        with get_conn() as conn, conn.cursor() as cur:
            cur.execute("SELECT to_regclass('public.alembic_version')")
            if not cur.fetchone()[0]:
                return None
            cur.execute("SELECT version_num FROM alembic_version LIMIT 1")
            row = cur.fetchone()
            return row[0] if row else None
    except Exception as exc:
        logger.warning("readyz migration check failed error=%s", type(exc).__name__)
        return None


def _git_sha() -> str | None:
    return (os.getenv("GIT_SHA") or "").strip() or None


@router.get("/health")
def health():
    return {
        "ok": True,
        "env": settings.ENV,
        "mpesa_env": mpesa_mode(),
        "git_sha": _git_sha(),
    }


@router.get("/readyz")
def readyz():
    """Ready once the database answers and the payments schema is at the expected revision."""
    db_ok, db_error = _check_db()
    revision = _migration_revision() if db_ok else None
    migrations_ok = revision == MIGRATION_REVISION
    return {
        "ready": db_ok and migrations_ok,
        "git_sha": _git_sha(),
        "db_ok": db_ok,
        "db_error": db_error,
        "migrations_ok": migrations_ok,
        "migration_revision": revision,
        "expected_revision": MIGRATION_REVISION,
    }
