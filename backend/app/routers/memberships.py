import json
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import psycopg
from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from backend.workers import billing_engine
from backend.workers.payment_gateway import PaymentGatewayError, StripeGateway

from ..cache import QueryCache, cache_key
from ..config import settings
from ..db import get_conn, set_location_context
from ..deps import get_current_user, get_location_id
from ..logs import json_log
from ..membership_billing import (
    HYBRID_BILLING_TYPES,
    TransitionError,
    apply_admin_updates,
    as_utc,
    create,
    effective_billing_settings,
    filter_plans_for_location,
    format_due_membership,
    transition,
)
from ..money import to_cents
from ..validation import BillingInterval, BillingStatus, BillingType, MembershipStatus

router = APIRouter(prefix="/memberships", tags=["memberships"])

plan_cache = QueryCache.from_url(settings.redis_url, ttl_seconds=settings.plan_cache_ttl_seconds)

DUE_BILLING_STATES = ("active", "trial", "past_due")


class ActionError(Exception):
    """Client error rendered as `{"error": ...}` (plus any extra fields)."""

    def __init__(self, message: str, status_code: int = 400, **extra):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.extra = extra

    def body(self) -> dict:
        return {"error": self.message, **self.extra}


class MembershipActionIn(BaseModel):
    # The admin UI posts camelCase keys.
    model_config = ConfigDict(populate_by_name=True)

    action: str
    location_id: Optional[str] = Field(None, alias="locationId")
    plan_id: Optional[str] = Field(None, alias="planId")
    customer_id: Optional[str] = Field(None, alias="customerId")
    membership_id: Optional[str] = Field(None, alias="membershipId")
    plan_data: Optional[dict] = Field(None, alias="planData")
    location_ids: Optional[list[str]] = Field(None, alias="locationIds")
    settings: Optional[dict] = None
    updates: Optional[dict] = None
    start_date: Optional[str] = Field(None, alias="startDate")
    end_date: Optional[str] = Field(None, alias="endDate")
    expected_updated_at: Optional[str] = Field(None, alias="expectedUpdatedAt")


class PlanData(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None
    description: Optional[str] = None
    price_cents: Optional[int] = Field(None, ge=0)
    billing_interval: Optional[BillingInterval] = None
    billing_interval_count: Optional[int] = Field(None, ge=1)
    trial_days: Optional[int] = Field(None, ge=0)
    billing_type: Optional[BillingType] = None
    usage_based: Optional[bool] = None
    usage_rate_cents: Optional[int] = Field(None, ge=0)
    is_active: Optional[bool] = None


class BillingSettingsIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_retry_attempts: Optional[int] = Field(None, ge=1)
    retry_delay_hours: Optional[int] = Field(None, ge=0)
    grace_period_days: Optional[int] = Field(None, ge=0)
    auto_suspend_after_grace: Optional[bool] = None
    usage_calculation_method: Optional[str] = None


class MembershipCodesIn(BaseModel):
    status: Optional[MembershipStatus] = None
    billing_status: Optional[BillingStatus] = None
    billing_type: Optional[BillingType] = None


def _clean_location(raw: Optional[str]) -> Optional[str]:
    v = (raw or "").strip()
    if not v or v in {"null", "undefined"}:
        return None
    return v


def _require(value, name: str):
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ActionError(f"{name} is required")
    return value


def _validated(model, raw: Optional[dict], name: str) -> dict:
    if raw is None:
        raise ActionError(f"{name} is required")
    try:
        return model.model_validate(raw).model_dump(exclude_unset=True)
    except ValidationError as e:
        first = e.errors()[0]
        loc = ".".join(str(p) for p in first.get("loc", ()))
        raise ActionError(f"invalid {name}: {loc} {first.get('msg')}".strip())


@contextmanager
def _tx(location_id: Optional[str]):
    with get_conn() as conn:
        set_location_context(conn, location_id)
        with conn.transaction():
            with conn.cursor() as cur:
                yield cur


def _audit(cur, ctx: dict, action: str, entity_type: str, entity_id, details: dict):
    cur.execute(
        """
        INSERT INTO audit_logs (id, location_id, user_id, action, entity_type, entity_id, details)
        VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s::jsonb)
        """,
        (ctx["location_id"], ctx["user_id"], action, entity_type, entity_id, json.dumps(details, default=str)),
    )


def _set_clause(fields: dict) -> tuple[str, list]:
    # Keys come from validated models / whitelists only.
    return ", ".join(f"{k} = %s" for k in fields), list(fields.values())


def _invalidate_plans():
    plan_cache.invalidate_prefix("plans:")


def _load_membership(cur, membership_id: str, expected_updated_at: Optional[str] = None) -> dict:
    cur.execute(
        """
        SELECT *
        FROM customer_memberships
        WHERE id = %s
        FOR UPDATE
        """,
        (membership_id,),
    )
    row = cur.fetchone()
    if not row:
        raise ActionError("membership not found", 404)
    if expected_updated_at:
        try:
            expected = as_utc(expected_updated_at)
        except ValueError:
            raise ActionError("invalid expectedUpdatedAt")
        if as_utc(row.get("updated_at")) != expected:
            raise ActionError("membership was modified by someone else; reload and retry", 409)
    return row


def _write_membership(cur, membership_id: str, updates: dict) -> dict:
    sets, params = _set_clause(updates)
    cur.execute(
        f"""
        UPDATE customer_memberships
        SET {sets}, updated_at = now()
        WHERE id = %s
        RETURNING *
        """,
        [*params, membership_id],
    )
    return cur.fetchone()


def _transition_or_conflict(membership: dict, event: str, now: datetime, **kw) -> dict:
    try:
        return transition(membership, event, now, **kw)
    except TransitionError as e:
        raise ActionError(str(e), 409)


def get_customer_memberships(data: MembershipActionIn, ctx: dict):
    customer_id = _require(data.customer_id, "customerId")
    with _tx(ctx["location_id"]) as cur:
        cur.execute(
            """
            SELECT m.*, to_jsonb(p) AS membership_plans
            FROM customer_memberships m
            LEFT JOIN membership_plans p ON p.id = m.membership_plan_id
            WHERE m.customer_id = %s
            ORDER BY m.created_at DESC
            """,
            (customer_id,),
        )
        return cur.fetchall()


def get_all_plans(data: MembershipActionIn, ctx: dict):
    location_id = ctx["location_id"]

    def load():
        with _tx(location_id) as cur:
            cur.execute(
                """
                SELECT p.*,
                       COALESCE(array_agg(pl.location_id) FILTER (WHERE pl.location_id IS NOT NULL), '{}') AS location_ids
                FROM membership_plans p
                LEFT JOIN membership_plan_locations pl ON pl.membership_plan_id = p.id
                WHERE p.is_active = true
                GROUP BY p.id
                ORDER BY p.created_at DESC
                """
            )
            return filter_plans_for_location(cur.fetchall(), location_id)

    return plan_cache.get_or_set(cache_key("plans", location_id or "*"), load)


def get_all_benefits(data: MembershipActionIn, ctx: dict):
    with _tx(ctx["location_id"]) as cur:
        if ctx["location_id"]:
            cur.execute("SELECT * FROM membership_benefits WHERE location_id = %s", (ctx["location_id"],))
        else:
            cur.execute("SELECT * FROM membership_benefits")
        return cur.fetchall()


def create_plan(data: MembershipActionIn, ctx: dict):
    fields = _validated(PlanData, data.plan_data, "planData")
    if not (fields.get("name") or "").strip():
        raise ActionError("plan name is required")
    fields["location_id"] = ctx["location_id"]
    cols = ", ".join(fields)
    marks = ", ".join(["%s"] * len(fields))
    with _tx(ctx["location_id"]) as cur:
        cur.execute(
            f"""
            INSERT INTO membership_plans (id, {cols})
            VALUES (gen_random_uuid(), {marks})
            RETURNING *
            """,
            list(fields.values()),
        )
        plan = cur.fetchone()
        _audit(cur, ctx, "membership_plan_create", "membership_plan", plan["id"], fields)
    _invalidate_plans()
    return plan


def update_plan(data: MembershipActionIn, ctx: dict):
    plan_id = _require(data.plan_id, "planId")
    fields = _validated(PlanData, data.plan_data, "planData")
    if not fields:
        raise ActionError("planData has no fields to update")
    sets, params = _set_clause(fields)
    with _tx(ctx["location_id"]) as cur:
        cur.execute(
            f"""
            UPDATE membership_plans
            SET {sets}, updated_at = now()
            WHERE id = %s
            RETURNING *
            """,
            [*params, plan_id],
        )
        plan = cur.fetchone()
        if not plan:
            raise ActionError("membership plan not found", 404)
        _audit(cur, ctx, "membership_plan_update", "membership_plan", plan_id, fields)
    _invalidate_plans()
    return plan


def add_plan_locations(data: MembershipActionIn, ctx: dict):
    plan_id = _require(data.plan_id, "planId")
    location_ids = [x.strip() for x in (data.location_ids or []) if x and x.strip()]
    with _tx(ctx["location_id"]) as cur:
        # Replace, not merge: the posted list is the full set.
        cur.execute("DELETE FROM membership_plan_locations WHERE membership_plan_id = %s", (plan_id,))
        for loc in location_ids:
            cur.execute(
                """
                INSERT INTO membership_plan_locations (membership_plan_id, location_id)
                VALUES (%s, %s)
                """,
                (plan_id, loc),
            )
        _audit(cur, ctx, "membership_plan_locations_set", "membership_plan", plan_id, {"location_ids": location_ids})
    _invalidate_plans()
    return {"success": True}


def get_plan_locations(data: MembershipActionIn, ctx: dict):
    plan_id = _require(data.plan_id, "planId")
    with _tx(ctx["location_id"]) as cur:
        cur.execute(
            """
            SELECT pl.location_id, jsonb_build_object('name', l.name) AS locations
            FROM membership_plan_locations pl
            LEFT JOIN locations l ON l.id = pl.location_id
            WHERE pl.membership_plan_id = %s
            """,
            (plan_id,),
        )
        return cur.fetchall()


def delete_plan(data: MembershipActionIn, ctx: dict):
    plan_id = _require(data.plan_id, "planId")
    with _tx(ctx["location_id"]) as cur:
        cur.execute("DELETE FROM membership_plans WHERE id = %s RETURNING id", (plan_id,))
        if not cur.fetchone():
            raise ActionError("membership plan not found", 404)
        _audit(cur, ctx, "membership_plan_delete", "membership_plan", plan_id, {})
    _invalidate_plans()
    return {"success": True}


def add_customer_membership(data: MembershipActionIn, ctx: dict):
    customer_id = _require(data.customer_id, "customerId")
    plan_id = _require(data.plan_id, "planId")
    now = datetime.now(timezone.utc)
    with _tx(ctx["location_id"]) as cur:
        cur.execute("SELECT * FROM membership_plans WHERE id = %s", (plan_id,))
        plan = cur.fetchone()
        if not plan:
            raise ActionError("Membership plan not found", 404)
        try:
            fields = create(plan, now)
        except ValueError as e:
            raise ActionError(str(e))
        fields.update({"customer_id": customer_id, "membership_plan_id": plan_id, "location_id": ctx["location_id"]})
        cols = ", ".join(fields)
        marks = ", ".join(["%s"] * len(fields))
        cur.execute(
            f"""
            INSERT INTO customer_memberships (id, {cols})
            VALUES (gen_random_uuid(), {marks})
            RETURNING *
            """,
            list(fields.values()),
        )
        membership = cur.fetchone()
        _audit(
            cur,
            ctx,
            "customer_membership_create",
            "customer_membership",
            membership["id"],
            {"customer_id": customer_id, "plan_id": plan_id, "billing_status": fields["billing_status"]},
        )
    json_log(
        "info",
        "membership_created",
        membership_id=membership["id"],
        billing_status=fields["billing_status"],
        next_billing_date=fields["next_billing_date"],
    )
    return membership


def cancel_customer_membership(data: MembershipActionIn, ctx: dict):
    membership_id = _require(data.membership_id, "membershipId")
    now = datetime.now(timezone.utc)
    with _tx(ctx["location_id"]) as cur:
        membership = _load_membership(cur, membership_id, data.expected_updated_at)
        updates = _transition_or_conflict(membership, "cancel", now)
        row = _write_membership(cur, membership_id, updates)
        _audit(cur, ctx, "customer_membership_cancel", "customer_membership", membership_id, updates)
    return row


def reactivate_customer_membership(data: MembershipActionIn, ctx: dict):
    membership_id = _require(data.membership_id, "membershipId")
    now = datetime.now(timezone.utc)
    with _tx(ctx["location_id"]) as cur:
        membership = _load_membership(cur, membership_id, data.expected_updated_at)
        cur.execute("SELECT * FROM membership_plans WHERE id = %s", (membership.get("membership_plan_id"),))
        plan = cur.fetchone()
        updates = _transition_or_conflict(membership, "reactivate", now, plan=plan)
        row = _write_membership(cur, membership_id, updates)
        _audit(cur, ctx, "customer_membership_reactivate", "customer_membership", membership_id, updates)
    return row


def update_customer_membership(data: MembershipActionIn, ctx: dict):
    if not data.membership_id:
        raise ActionError("membershipId is required for update_customer_membership")
    if data.updates is None:
        raise ActionError("updates object is required for update_customer_membership")
    codes = {k: data.updates[k] for k in MembershipCodesIn.model_fields if k in data.updates}
    requested = {**data.updates, **_validated(MembershipCodesIn, codes, "updates")}
    now = datetime.now(timezone.utc)
    with _tx(ctx["location_id"]) as cur:
        membership = _load_membership(cur, data.membership_id, data.expected_updated_at)
        try:
            updates = apply_admin_updates(membership, requested, now)
        except TransitionError as e:
            raise ActionError(str(e), 409)
        except ValueError as e:
            raise ActionError(str(e))
        if not updates:
            return [membership]
        row = _write_membership(cur, data.membership_id, updates)
        _audit(cur, ctx, "customer_membership_update", "customer_membership", data.membership_id, updates)
    return [row]


def get_billing_settings(data: MembershipActionIn, ctx: dict):
    location_id = _require(ctx["location_id"], "locationId")
    with _tx(location_id) as cur:
        cur.execute("SELECT * FROM billing_settings WHERE location_id = %s", (location_id,))
        return cur.fetchone() or {}


def update_billing_settings(data: MembershipActionIn, ctx: dict):
    location_id = _require(ctx["location_id"], "locationId")
    fields = _validated(BillingSettingsIn, data.settings, "settings")
    merged = effective_billing_settings(fields)
    cols = ", ".join(merged)
    marks = ", ".join(["%s"] * len(merged))
    updates = ", ".join(f"{k} = EXCLUDED.{k}" for k in fields) or "location_id = EXCLUDED.location_id"
    with _tx(location_id) as cur:
        cur.execute(
            f"""
            INSERT INTO billing_settings (location_id, {cols})
            VALUES (%s, {marks})
            ON CONFLICT (location_id) DO UPDATE SET {updates}
            RETURNING *
            """,
            [location_id, *merged.values()],
        )
        row = cur.fetchone()
        _audit(cur, ctx, "billing_settings_update", "billing_settings", location_id, fields)
    return row


def get_usage_tracking(data: MembershipActionIn, ctx: dict):
    membership_id = _require(data.membership_id, "membershipId")
    where = ["customer_membership_id = %s"]
    params: list[Any] = [membership_id]
    if data.start_date:
        where.append("tracking_date >= %s")
        params.append(data.start_date)
    if data.end_date:
        where.append("tracking_date <= %s")
        params.append(data.end_date)
    with _tx(ctx["location_id"]) as cur:
        cur.execute(
            f"""
            SELECT *
            FROM usage_tracking
            WHERE {' AND '.join(where)}
            ORDER BY tracking_date DESC
            """,
            params,
        )
        return cur.fetchall()


def get_billing_invoices(data: MembershipActionIn, ctx: dict):
    membership_id = _require(data.membership_id, "membershipId")
    with _tx(ctx["location_id"]) as cur:
        cur.execute(
            """
            SELECT *
            FROM billing_invoices
            WHERE customer_membership_id = %s
            ORDER BY created_at DESC
            """,
            (membership_id,),
        )
        return cur.fetchall()


def trigger_billing_run(data: MembershipActionIn, ctx: dict):
    location_id = _require(ctx["location_id"], "locationId")
    json_log("info", "billing_run_triggered", location_id=location_id, user_id=ctx["user_id"])
    try:
        gateway = StripeGateway.from_settings()
    except PaymentGatewayError as e:
        raise ActionError(str(e))
    return billing_engine.run_billing_engine(location_id, gateway, datetime.now(timezone.utc))


def _due_memberships(cur, location_id: str, start: Optional[str], end: str) -> list[dict]:
    where = [
        "m.location_id = %s",
        "m.billing_status = ANY(%s)",
        "m.billing_type = ANY(%s)",
        "m.next_billing_date < (%s::date + 1)",
    ]
    params: list[Any] = [location_id, list(DUE_BILLING_STATES), list(HYBRID_BILLING_TYPES), end]
    if start:
        where.append("m.next_billing_date >= %s::date")
        params.append(start)
    cur.execute(
        f"""
        SELECT m.id, m.customer_id, m.next_billing_date, m.billing_status,
               c.name AS customer_name, p.name AS plan_name, p.price_cents
        FROM customer_memberships m
        LEFT JOIN customers c ON c.id = m.customer_id
        LEFT JOIN membership_plans p ON p.id = m.membership_plan_id
        WHERE {' AND '.join(where)}
        ORDER BY m.next_billing_date
        """,
        params,
    )
    return cur.fetchall()


def billing_dashboard(location_id: str, now: datetime) -> dict:
    today = now.date()
    month_start = today.replace(day=1)
    with _tx(location_id) as cur:
        cur.execute(
            """
            SELECT COUNT(*) AS n
            FROM customer_memberships
            WHERE location_id = %s AND billing_status = ANY(%s)
            """,
            (location_id, list(DUE_BILLING_STATES)),
        )
        total_memberships = cur.fetchone()["n"]

        cur.execute(
            """
            SELECT COALESCE(SUM(total_amount), 0) AS total
            FROM transactions
            WHERE location_id = %s AND source = 'recurring' AND created_at >= %s
            """,
            (location_id, month_start),
        )
        monthly_revenue = to_cents(cur.fetchone()["total"])

        cur.execute(
            """
            SELECT COUNT(*) FILTER (WHERE status = 'pending') AS pending,
                   COUNT(*) FILTER (WHERE status IN ('failed', 'past_due')) AS failed
            FROM billing_invoices
            WHERE location_id = %s
            """,
            (location_id,),
        )
        counts = cur.fetchone()

        cur.execute(
            """
            SELECT i.id, i.invoice_number, i.total_cents, i.status, i.due_date, i.created_at,
                   c.name AS customer_name
            FROM billing_invoices i
            LEFT JOIN customer_memberships m ON m.id = i.customer_membership_id
            LEFT JOIN customers c ON c.id = m.customer_id
            WHERE i.location_id = %s
            ORDER BY i.created_at DESC
            LIMIT 10
            """,
            (location_id,),
        )
        invoices = cur.fetchall()

        due_today = _due_memberships(cur, location_id, None, today.isoformat())
        upcoming = _due_memberships(
            cur,
            location_id,
            (today + timedelta(days=1)).isoformat(),
            (today + timedelta(days=7)).isoformat(),
        )

    return {
        "stats": {
            "total_memberships": total_memberships or 0,
            "monthly_revenue": monthly_revenue,
            "pending_invoices": counts["pending"] or 0,
            "failed_payments": counts["failed"] or 0,
        },
        "recentInvoices": [
            {
                "id": r["id"],
                "invoice_number": r["invoice_number"],
                "customer_name": r.get("customer_name") or "Unknown Customer",
                "amount_cents": r["total_cents"],
                "status": r["status"],
                "due_date": r["due_date"],
                "created_at": r["created_at"],
            }
            for r in invoices
        ],
        "customersDueToday": [format_due_membership(r, now) for r in due_today],
        "customersUpcoming": [format_due_membership(r, now) for r in upcoming],
    }


def get_billing_dashboard_stats(data: MembershipActionIn, ctx: dict):
    location_id = _require(ctx["location_id"], "locationId")
    return billing_dashboard(location_id, datetime.now(timezone.utc))


ACTIONS = {
    "get_customer_memberships": get_customer_memberships,
    "get_all_plans": get_all_plans,
    "get_all_benefits": get_all_benefits,
    "create_plan": create_plan,
    "update_plan": update_plan,
    "add_plan_locations": add_plan_locations,
    "get_plan_locations": get_plan_locations,
    "delete_plan": delete_plan,
    "add_customer_membership": add_customer_membership,
    "cancel_customer_membership": cancel_customer_membership,
    "reactivate_customer_membership": reactivate_customer_membership,
    "update_customer_membership": update_customer_membership,
    "get_billing_settings": get_billing_settings,
    "update_billing_settings": update_billing_settings,
    "get_usage_tracking": get_usage_tracking,
    "get_billing_invoices": get_billing_invoices,
    "trigger_billing_run": trigger_billing_run,
    "get_billing_dashboard_stats": get_billing_dashboard_stats,
}


@router.post("")
def membership_action(
    data: MembershipActionIn,
    user=Depends(get_current_user),
    header_location_id: Optional[str] = Depends(get_location_id),
):
    handler = ACTIONS.get((data.action or "").strip())
    if handler is None:
        raise ActionError(f"Invalid action: {data.action}")
    ctx = {"user_id": user["user_id"], "location_id": _clean_location(data.location_id) or header_location_id}
    try:
        return handler(data, ctx)
    except (psycopg.errors.IntegrityError, psycopg.errors.DataError) as e:
        json_log("warn", "membership_action_db_error", action=data.action, error=type(e).__name__)
        diag = getattr(e, "diag", None)
        raise ActionError((diag.message_primary if diag else None) or "invalid request")


@router.get("/billing/dashboard")
def billing_dashboard_view(location_id: Optional[str] = Query(None), user=Depends(get_current_user)):
    location_id = _clean_location(location_id)
    if not location_id:
        return JSONResponse(
            status_code=400,
            content={
                "error": "Valid location ID is required",
                "message": "Please select a location to view billing data",
            },
        )
    return billing_dashboard(location_id, datetime.now(timezone.utc))
