#!/usr/bin/env python3
"""
Membership billing engine.

Bills hybrid memberships of one location whose `next_billing_date` has passed:
converts finished trials, charges the plan (plus usage for `hybrid_usage`),
writes the billing cycle / invoice / recurring transaction and moves the
membership through the billing state machine.

Each membership is claimed and billed in its own committed transaction; a
failure is recorded in `results.errors` and the run continues. Stripe calls
carry a per-attempt idempotency key, so re-billing a cycle whose writes were
rolled back reuses the original PaymentIntent.
"""

from __future__ import annotations

import argparse
import json
from datetime import datetime, timedelta, timezone
from typing import Optional

import psycopg
from psycopg.rows import dict_row

from backend.app.db import get_admin_conn, set_location_context
from backend.app.logs import json_log
from backend.app.membership_billing import (
    BILLABLE_STATES,
    HYBRID_BILLING_TYPES,
    as_utc,
    effective_billing_settings,
    trial_ended,
    transition,
    usage_amount_cents,
)
from backend.app.money import from_cents

INVOICE_DUE_DAYS = 7


def _connect(db_url: Optional[str]):
    if db_url:
        return psycopg.connect(db_url, row_factory=dict_row)
    return get_admin_conn()


def _update_membership(cur, membership_id, updates: dict):
    sets = ", ".join(f"{k} = %s" for k in updates)
    cur.execute(
        f"""
        UPDATE customer_memberships
        SET {sets}, updated_at = now()
        WHERE id = %s
        """,
        [*updates.values(), membership_id],
    )


def _next_invoice_number(cur, now: datetime) -> str:
    cur.execute("SELECT generate_invoice_number() AS invoice_number")
    row = cur.fetchone()
    if row and row.get("invoice_number"):
        return row["invoice_number"]
    return f"INV-{int(now.timestamp() * 1000)}"


def _usage_rows(cur, membership: dict, now: datetime) -> list[dict]:
    if membership.get("billing_type") != "hybrid_usage":
        return []
    start = membership.get("last_billed_date") or membership.get("current_period_start") or now
    cur.execute(
        """
        SELECT tracking_date, transaction_count
        FROM usage_tracking
        WHERE customer_membership_id = %s
          AND tracking_date >= %s::date
          AND tracking_date < %s::date
        """,
        (membership["id"], start, now),
    )
    return cur.fetchall()


def _convert_trial(cur, membership: dict, now: datetime):
    updates = transition(membership, "convert_trial", now, plan=membership.get("plan"))
    _update_membership(cur, membership["id"], updates)
    cur.execute(
        """
        UPDATE membership_trials
        SET converted = true, converted_at = %s
        WHERE customer_membership_id = %s
        """,
        (now, membership["id"]),
    )


def _cycle_start(membership: dict) -> Optional[datetime]:
    return as_utc(membership.get("last_billed_date") or membership.get("current_period_start"))


def charge_idempotency_key(membership: dict) -> str:
    # Stable across retries of one attempt; a new failed attempt gets a fresh key.
    start = _cycle_start(membership)
    attempts = int(membership.get("failed_payment_attempts") or 0)
    return f"membership:{membership['id']}:{start.isoformat() if start else 'first'}:{attempts}"


def _pending_invoice(cur, membership: dict) -> Optional[dict]:
    cur.execute(
        """
        SELECT id, billing_cycle_id, invoice_number
        FROM billing_invoices
        WHERE customer_membership_id = %s AND status = 'pending'
        ORDER BY created_at DESC
        LIMIT 1
        """,
        (membership["id"],),
    )
    return cur.fetchone()


def _charge(cur, membership: dict, gateway, amount_cents: int, now: datetime):
    plan = membership.get("plan") or {}
    customer = membership.get("customer") or {}
    pending = _pending_invoice(cur, membership)

    if pending:
        # An earlier run left this cycle in flight; settle the same invoice.
        invoice_number = pending["invoice_number"]
        cycle_id = pending["billing_cycle_id"]
    else:
        invoice_number = _next_invoice_number(cur, now)
        cur.execute(
            """
            INSERT INTO billing_cycles (id, customer_membership_id, cycle_start, cycle_end, amount_cents, status, location_id)
            VALUES (gen_random_uuid(), %s, %s, %s, %s, 'pending', %s)
            RETURNING id
            """,
            (membership["id"], _cycle_start(membership), now, amount_cents, membership.get("location_id")),
        )
        cycle_id = cur.fetchone()["id"]

    result = gateway.charge(
        stripe_customer_id=membership.get("stripe_customer_id"),
        email=customer.get("email"),
        name=customer.get("name"),
        amount_cents=amount_cents,
        # Only values that stay the same when this attempt is retried.
        metadata={
            "membership_id": str(membership["id"]),
            "customer_id": str(membership.get("customer_id")),
            "cycle_start": str(_cycle_start(membership) or ""),
        },
        idempotency_key=charge_idempotency_key(membership),
    )
    if result.customer_id and result.customer_id != membership.get("stripe_customer_id"):
        _update_membership(cur, membership["id"], {"stripe_customer_id": result.customer_id})

    if result.success:
        invoice_status, cycle_status = "paid", "processed"
    elif result.pending:
        invoice_status, cycle_status = "pending", "pending"
    else:
        invoice_status, cycle_status = "failed", "failed"

    if pending:
        cur.execute(
            """
            UPDATE billing_invoices
            SET status = %s, stripe_payment_intent_id = %s, paid_at = %s
            WHERE id = %s
            """,
            (invoice_status, result.payment_intent_id, now if result.success else None, pending["id"]),
        )
        invoice_id = pending["id"]
    else:
        line_items = [
            {
                "description": f"{plan.get('name') or 'Membership'} - {(plan.get('billing_interval') or 'monthly').title()} Subscription",
                "amount": amount_cents,
                "quantity": 1,
            }
        ]
        cur.execute(
            """
            INSERT INTO billing_invoices
              (id, customer_membership_id, billing_cycle_id, invoice_number, amount_cents, total_cents,
               stripe_payment_intent_id, due_date, status, paid_at, location_id, line_items)
            VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb)
            RETURNING id
            """,
            (
                membership["id"],
                cycle_id,
                invoice_number,
                amount_cents,
                amount_cents,
                result.payment_intent_id,
                now + timedelta(days=INVOICE_DUE_DAYS),
                invoice_status,
                now if result.success else None,
                membership.get("location_id"),
                json.dumps(line_items),
            ),
        )
        invoice_id = cur.fetchone()["id"]
    cur.execute(
        """
        UPDATE billing_cycles
        SET status = %s, processed_at = %s
        WHERE id = %s
        """,
        (cycle_status, now if result.success else None, cycle_id),
    )
    return result, invoice_id, cycle_id


def _record_recurring_transaction(cur, membership: dict, amount_cents: int, invoice_id, cycle_id, payment_intent_id):
    cur.execute(
        """
        INSERT INTO transactions (id, customer_id, location_id, total_amount, payment_method, status, source, user_data)
        VALUES (gen_random_uuid(), %s, %s, %s, 'card', 'completed', 'recurring', %s::jsonb)
        """,
        (
            membership.get("customer_id"),
            membership.get("location_id"),
            from_cents(amount_cents),
            json.dumps(
                {
                    "membership_id": membership["id"],
                    "invoice_id": invoice_id,
                    "billing_cycle_id": cycle_id,
                    "stripe_payment_intent_id": payment_intent_id,
                },
                default=str,
            ),
        ),
    )


def process_membership(cur, membership: dict, gateway, billing_settings: dict, now: datetime) -> str:
    """
    Bill one locked membership row. Returns the outcome:
    trial_pending | trial_converted | paid | pending | failed | suspended.
    """
    if membership.get("billing_status") == "trial":
        if not trial_ended(membership, now):
            return "trial_pending"
        _convert_trial(cur, membership, now)
        return "trial_converted"

    plan = membership.get("plan") or {}
    amount = usage_amount_cents(membership, plan, _usage_rows(cur, membership, now))
    if amount <= 0:
        # Nothing to collect; still roll the cycle forward.
        _update_membership(cur, membership["id"], transition(membership, "payment_succeeded", now, plan=plan))
        return "paid"

    result, invoice_id, cycle_id = _charge(cur, membership, gateway, amount, now)
    if result.success:
        _update_membership(cur, membership["id"], transition(membership, "payment_succeeded", now, plan=plan))
        _record_recurring_transaction(cur, membership, amount, invoice_id, cycle_id, result.payment_intent_id)
        return "paid"

    if result.pending:
        _update_membership(cur, membership["id"], transition(membership, "payment_pending", now, settings=billing_settings))
        json_log(
            "info",
            "membership_payment_pending",
            membership_id=membership["id"],
            payment_intent_id=result.payment_intent_id,
            status=result.status,
        )
        return "pending"

    updates = transition(membership, "payment_failed", now, settings=billing_settings)
    _update_membership(cur, membership["id"], updates)
    json_log(
        "warn",
        "membership_payment_failed",
        membership_id=membership["id"],
        attempts=updates["failed_payment_attempts"],
        billing_status=updates["billing_status"],
        error=result.error,
    )
    return "suspended" if updates["billing_status"] == "suspended" else "failed"


DUE_FILTER = """
    m.location_id = %s
    AND m.billing_type = ANY(%s)
    AND m.billing_status = ANY(%s)
    AND COALESCE(m.status, 'active') NOT IN ('cancelled', 'expired', 'suspended')
    AND (m.next_billing_date IS NULL OR m.next_billing_date <= %s)
"""


def _due_membership_ids(cur, location_id: str, now: datetime) -> list:
    cur.execute(
        f"""
        SELECT m.id
        FROM customer_memberships m
        WHERE {DUE_FILTER}
        ORDER BY m.next_billing_date NULLS FIRST
        """,
        (location_id, list(HYBRID_BILLING_TYPES), list(BILLABLE_STATES), now),
    )
    return [r["id"] for r in cur.fetchall() or []]


def _claim_membership(cur, location_id: str, membership_id, now: datetime) -> Optional[dict]:
    # SKIP LOCKED: a row another run is billing right now is left to that run.
    # The due filter is re-checked so a row billed since the listing is skipped.
    cur.execute(
        f"""
        SELECT m.*, to_jsonb(p) AS plan, to_jsonb(c) AS customer
        FROM customer_memberships m
        LEFT JOIN membership_plans p ON p.id = m.membership_plan_id
        LEFT JOIN customers c ON c.id = m.customer_id
        WHERE m.id = %s AND {DUE_FILTER}
        FOR UPDATE OF m SKIP LOCKED
        """,
        (membership_id, location_id, list(HYBRID_BILLING_TYPES), list(BILLABLE_STATES), now),
    )
    return cur.fetchone()


def run_billing_engine(location_id: str, gateway, now: Optional[datetime] = None, db_url: Optional[str] = None) -> dict:
    now = now or datetime.now(timezone.utc)
    results = {
        "processed": 0,
        "successful": 0,
        "failed": 0,
        "pending": 0,
        "trials_converted": 0,
        "suspended": 0,
        "errors": [],
    }

    with _connect(db_url) as conn:
        with conn.transaction():
            set_location_context(conn, location_id)
            with conn.cursor() as cur:
                cur.execute("SELECT * FROM billing_settings WHERE location_id = %s", (location_id,))
                billing_settings = effective_billing_settings(cur.fetchone())
                due_ids = _due_membership_ids(cur, location_id, now)
        json_log("info", "billing_run_started", location_id=location_id, due=len(due_ids))

        # One committed transaction per membership: a charge is never left
        # behind a rollback caused by another row or by the end of the run.
        for membership_id in due_ids:
            try:
                with conn.transaction():
                    set_location_context(conn, location_id)
                    with conn.cursor() as cur:
                        m = _claim_membership(cur, location_id, membership_id, now)
                        outcome = process_membership(cur, m, gateway, billing_settings, now) if m else "skipped"
            except Exception as ex:
                json_log("error", "billing_membership_error", membership_id=membership_id, error=str(ex))
                results["errors"].append({"membershipId": membership_id, "error": str(ex)})
                continue

            if outcome in ("skipped", "trial_pending"):
                continue
            if outcome == "trial_converted":
                results["trials_converted"] += 1
                continue
            results["processed"] += 1
            if outcome == "paid":
                results["successful"] += 1
            elif outcome == "pending":
                results["pending"] += 1
            else:
                results["failed"] += 1
                if outcome == "suspended":
                    results["suspended"] += 1

    json_log("info", "billing_run_completed", location_id=location_id, **{k: v for k, v in results.items() if k != "errors"})
    return {"success": True, "results": results, "processed_at": now}


def main():
    # Local usage:
    #   python3 -m backend.workers.billing_engine --db "$DATABASE_URL" --location <uuid>
    from .payment_gateway import StripeGateway

    parser = argparse.ArgumentParser()
    parser.add_argument("--db", default=None)
    parser.add_argument("--location", required=True)
    args = parser.parse_args()
    out = run_billing_engine(args.location, StripeGateway.from_settings(), db_url=args.db)
    print(json.dumps(out, default=str))


if __name__ == "__main__":
    main()
