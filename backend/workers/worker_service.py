#!/usr/bin/env python3
"""
Long-running billing worker.

Every `--interval` seconds, runs the membership billing engine for each
location (or a specified subset) that has hybrid memberships due.
"""

import argparse
import sys
import time
import traceback
from datetime import datetime, timezone

import psycopg
from psycopg.rows import dict_row

from backend.app.config import settings
from backend.app.db import DATABASE_URL_ADMIN
from backend.app.logs import json_log
from backend.app.membership_billing import BILLABLE_STATES, HYBRID_BILLING_TYPES

from .billing_engine import run_billing_engine
from .payment_gateway import StripeGateway


def list_due_location_ids(db_url: str, now: datetime) -> list[str]:
    with psycopg.connect(db_url, row_factory=dict_row) as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT DISTINCT location_id
                FROM customer_memberships
                WHERE location_id IS NOT NULL
                  AND billing_type = ANY(%s)
                  AND billing_status = ANY(%s)
                  AND COALESCE(status, 'active') NOT IN ('cancelled', 'expired', 'suspended')
                  AND (next_billing_date IS NULL OR next_billing_date <= %s)
                ORDER BY location_id
                """,
                (list(HYBRID_BILLING_TYPES), list(BILLABLE_STATES), now),
            )
            return [str(r["location_id"]) for r in cur.fetchall()]


def run_once(db_url: str, gateway, location_ids=None) -> dict:
    now = datetime.now(timezone.utc)
    summary = {}
    for lid in location_ids or list_due_location_ids(db_url, now):
        try:
            out = run_billing_engine(lid, gateway, now, db_url=db_url)
            summary[lid] = out["results"]
        except Exception as ex:
            # One location failing must not stop the others.
            json_log("error", "worker.billing.error", location_id=lid, error=str(ex))
            traceback.print_exc(file=sys.stderr)
            summary[lid] = {"error": str(ex)}
    return summary


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--db", default=DATABASE_URL_ADMIN)
    parser.add_argument("--interval", type=float, default=settings.billing_run_interval_seconds)
    parser.add_argument("--locations", nargs="*", help="Optional list of location UUIDs to bill")
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    args = parser.parse_args()

    gateway = StripeGateway.from_settings()
    while True:
        started = time.monotonic()
        summary = run_once(args.db, gateway, args.locations)
        json_log(
            "info",
            "worker.billing.pass",
            locations=len(summary),
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        if args.once:
            break
        time.sleep(args.interval)


if __name__ == "__main__":
    main()
