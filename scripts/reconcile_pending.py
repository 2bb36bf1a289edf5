# scripts/reconcile_pending.py
"""
Query M-Pesa for payments stuck in `processing` whose callback never arrived.

    python -m scripts.reconcile_pending                 # one pass
    python -m scripts.reconcile_pending --interval 300  # keep running
"""
from __future__ import annotations

import argparse
import logging
import os
import time

from app.payments.repository import PgPaymentRepository
from app.providers.mobile_money.factory import get_mpesa_provider
from db import get_conn
from services.observability import configure_logging
from services.reconcile import reconcile_stale_payments
from settings import settings


logger = logging.getLogger("school_pay.reconcile_pending")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default))
    try:
        return int(raw)
    except ValueError:
        return default


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Reconcile stale M-Pesa payments")
    parser.add_argument(
        "--stale-minutes",
        type=int,
        default=_env_int("RECONCILE_STALE_MINUTES", 2),
        help="only query payments untouched for at least this long",
    )
    parser.add_argument("--limit", type=int, default=50, help="max payments per pass")
    parser.add_argument(
        "--interval",
        type=int,
        default=0,
        help="seconds between passes; 0 runs a single pass and exits",
    )
    return parser.parse_args(argv)


def run_once(stale_minutes: int, limit: int) -> dict:
    repo = PgPaymentRepository(get_conn)
    result = reconcile_stale_payments(
        repo,
        get_mpesa_provider(),
        stale_minutes=stale_minutes,
        limit=limit,
    )
    summary = result["summary"]
    logger.info(
        "Reconcile pass at %s | checked=%s applied=%s still_pending=%s query_failed=%s anomalies=%s",
        result["run_at"],
        summary["checked"],
        summary["applied"],
        summary["still_pending"],
        summary["query_failed"],
        summary["anomalies"],
    )
    return result


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    configure_logging(settings.LOG_LEVEL)

    if args.interval <= 0:
        run_once(args.stale_minutes, args.limit)
        return

    interval = max(1, args.interval)
    logger.info("Reconcile daemon starting; interval=%ss", interval)
    while True:
        try:
            run_once(args.stale_minutes, args.limit)
        except KeyboardInterrupt:
            logger.info("Reconcile daemon exiting")
            raise
        except Exception:
            logger.exception("Reconcile daemon failed")
            raise
        time.sleep(interval)


if __name__ == "__main__":
    main()
