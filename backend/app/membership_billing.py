"""
Hybrid membership billing lifecycle.

All membership status changes (admin edits, cancellation, the billing engine's
trial conversion and payment outcomes) go through `transition()`, which checks
the move against one table and returns the column updates to write. Callers
own persistence; nothing here touches the database.

The lifecycle state of a membership row is its `status` when that is a
cancelled/expired/suspended override, otherwise its `billing_status`.
"""

from __future__ import annotations

import calendar
import math
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Optional

HYBRID_BILLING_TYPES = ("hybrid_usage", "hybrid_fixed")
DEFAULT_BILLING_TYPE = "hybrid_fixed"
BILLABLE_STATES = ("active", "trial", "past_due")
STATUS_OVERRIDES = ("cancelled", "expired", "suspended")

# Allowed moves between lifecycle states. Leaving cancelled/suspended for active
# is only possible through the explicit `reactivate` event.
TRANSITIONS: dict[str, frozenset[str]] = {
    "trial": frozenset({"active", "past_due", "cancelled", "expired"}),
    "active": frozenset({"past_due", "suspended", "cancelled", "expired"}),
    "past_due": frozenset({"active", "suspended", "cancelled", "expired"}),
    "suspended": frozenset({"cancelled", "expired"}),
    "cancelled": frozenset({"expired"}),
    "expired": frozenset(),
}
REACTIVATABLE = frozenset({"cancelled", "suspended"})

DEFAULT_BILLING_SETTINGS: dict[str, Any] = {
    "max_retry_attempts": 5,
    "retry_delay_hours": 24,
    "grace_period_days": 5,
    "auto_suspend_after_grace": True,
    "usage_calculation_method": "transaction_count",
}

MEMBERSHIP_DATE_FIELDS = (
    "next_billing_date",
    "current_period_start",
    "current_period_end",
    "trial_end_date",
    "cancelled_at",
    "grace_period_end",
)
EDITABLE_MEMBERSHIP_FIELDS = frozenset(
    {
        "status",
        "billing_status",
        "billing_type",
        "membership_plan_id",
        "location_id",
        "cancel_at_period_end",
        "failed_payment_attempts",
        *MEMBERSHIP_DATE_FIELDS,
    }
)


class TransitionError(ValueError):
    pass


def as_utc(value) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value.astimezone(timezone.utc)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    raw = str(value).strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        raise ValueError(f"invalid date: {value}") from None
    return as_utc(parsed)


def add_months(start: datetime, months: int) -> datetime:
    idx = start.month - 1 + months
    year = start.year + idx // 12
    month = idx % 12 + 1
    # Jan 31 + 1 month lands on the last day of February, not in March.
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def add_interval(start: datetime, interval: Optional[str], count: Optional[int] = 1) -> datetime:
    n = int(count or 1)
    if n < 1:
        raise ValueError("billing_interval_count must be >= 1")
    kind = (interval or "monthly").strip().lower()
    if kind == "monthly":
        return add_months(start, n)
    if kind == "yearly":
        return add_months(start, 12 * n)
    raise ValueError(f"unsupported billing interval: {interval}")


def lifecycle_state(membership: dict) -> str:
    status = str(membership.get("status") or "").strip().lower()
    if status in STATUS_OVERRIDES:
        return status
    return str(membership.get("billing_status") or "active").strip().lower()


def _check(current: str, target: str) -> None:
    if current == target:
        return
    allowed = TRANSITIONS.get(current)
    if allowed is None:
        raise TransitionError(f"unknown membership state: {current}")
    if target not in allowed:
        hint = " (use reactivate)" if current in REACTIVATABLE and target == "active" else ""
        raise TransitionError(f"cannot move membership from {current} to {target}{hint}")


def _plan_interval(plan: Optional[dict]) -> tuple[str, int]:
    plan = plan or {}
    return (plan.get("billing_interval") or "monthly"), int(plan.get("billing_interval_count") or 1)


def create(plan: dict, now: datetime) -> dict:
    now = as_utc(now)
    interval, count = _plan_interval(plan)
    period_end = add_interval(now, interval, count)
    billing_type = plan.get("billing_type") or DEFAULT_BILLING_TYPE
    trial_days = int(plan.get("trial_days") or 0)

    billing_status = "active"
    trial_end = None
    next_billing = period_end
    if billing_type in HYBRID_BILLING_TYPES and trial_days > 0:
        billing_status = "trial"
        trial_end = now + timedelta(days=trial_days)
        next_billing = trial_end

    return {
        "status": "active",
        "billing_status": billing_status,
        "billing_type": billing_type,
        "current_period_start": now,
        "current_period_end": period_end,
        "next_billing_date": next_billing,
        "trial_end_date": trial_end,
        "failed_payment_attempts": 0,
        "cancel_at_period_end": False,
    }


def cancel(membership: dict, now: datetime) -> dict:
    current = lifecycle_state(membership)
    if current == "cancelled":
        # Keeps the original cancelled_at.
        raise TransitionError("membership is already cancelled")
    _check(current, "cancelled")
    return {
        "status": "cancelled",
        # Stops the billing engine from picking the row up again.
        "billing_status": "cancelled",
        "cancelled_at": as_utc(now),
        "cancel_at_period_end": True,
    }


def reactivate(membership: dict, now: datetime, plan: Optional[dict] = None) -> dict:
    current = lifecycle_state(membership)
    if current not in REACTIVATABLE:
        raise TransitionError(f"cannot reactivate a membership that is {current}")
    interval, count = _plan_interval(plan)
    return {
        "status": "active",
        "billing_status": "active",
        "cancelled_at": None,
        "cancel_at_period_end": False,
        "failed_payment_attempts": 0,
        "next_billing_date": add_interval(as_utc(now), interval, count),
    }


def update_status(
    membership: dict,
    now: datetime,
    new_status: Optional[str] = None,
    new_billing_status: Optional[str] = None,
) -> dict:
    current = lifecycle_state(membership)
    status = (new_status or membership.get("status") or "active").strip().lower()

    if new_status and status in STATUS_OVERRIDES:
        target = status
    elif new_billing_status:
        target = new_billing_status.strip().lower()
    elif status in STATUS_OVERRIDES:
        target = status
    elif current in STATUS_OVERRIDES:
        # Reopening the membership status without naming a billing state.
        target = "active"
    else:
        target = current
    _check(current, target)

    updates: dict[str, Any] = {}
    if new_status and new_status != membership.get("status"):
        updates["status"] = status
    if new_billing_status and new_billing_status != membership.get("billing_status"):
        updates["billing_status"] = target
    if target in ("cancelled", "expired"):
        updates["status"] = target
        updates["billing_status"] = target
    if target == "cancelled" and current != "cancelled":
        updates["cancelled_at"] = as_utc(now)
    return updates


def update_billing_date(value) -> dict:
    # Billing dates are whole days; store them as UTC midnight.
    dt = as_utc(value)
    if dt is None:
        return {"next_billing_date": None}
    return {"next_billing_date": datetime.combine(dt.date(), time.min, tzinfo=timezone.utc)}


def effective_billing_settings(row: Optional[dict]) -> dict:
    out = dict(DEFAULT_BILLING_SETTINGS)
    for k, v in (row or {}).items():
        if k in DEFAULT_BILLING_SETTINGS and v is not None:
            out[k] = v
    return out


def transition(membership: dict, event: str, now: datetime, **kw) -> dict:
    now = as_utc(now)
    current = lifecycle_state(membership)

    if event == "cancel":
        return cancel(membership, now)
    if event == "reactivate":
        return reactivate(membership, now, kw.get("plan"))
    if event == "expire":
        _check(current, "expired")
        return {"status": "expired", "billing_status": "expired"}
    if event == "set_status":
        return update_status(membership, now, kw.get("new_status"), kw.get("new_billing_status"))

    if event == "convert_trial":
        if current != "trial":
            raise TransitionError(f"cannot convert trial for a membership that is {current}")
        interval, count = _plan_interval(kw.get("plan"))
        return {
            "billing_status": "active",
            "trial_end_date": None,
            "next_billing_date": add_interval(now, interval, count),
        }

    if event == "payment_succeeded":
        if current not in BILLABLE_STATES:
            raise TransitionError(f"cannot bill a membership that is {current}")
        _check(current, "active")
        interval, count = _plan_interval(kw.get("plan"))
        return {
            "billing_status": "active",
            "last_billed_date": now,
            "next_billing_date": add_interval(now, interval, count),
            "failed_payment_attempts": 0,
        }

    if event == "payment_pending":
        # The charge is still settling; look again after the retry delay instead of charging anew.
        if current not in BILLABLE_STATES:
            raise TransitionError(f"cannot bill a membership that is {current}")
        settings = effective_billing_settings(kw.get("settings"))
        return {"next_billing_date": now + timedelta(hours=int(settings["retry_delay_hours"]))}

    if event == "payment_failed":
        if current not in BILLABLE_STATES:
            raise TransitionError(f"cannot bill a membership that is {current}")
        settings = effective_billing_settings(kw.get("settings"))
        attempts = int(membership.get("failed_payment_attempts") or 0) + 1
        target = "past_due"
        if attempts >= int(settings["max_retry_attempts"]) and settings["auto_suspend_after_grace"]:
            target = "suspended"
        _check(current, target)
        return {
            "failed_payment_attempts": attempts,
            "billing_status": target,
            "grace_period_end": now + timedelta(days=int(settings["grace_period_days"])),
        }

    raise TransitionError(f"unknown membership event: {event}")


def clean_membership_updates(updates: dict) -> dict:
    out = {}
    for k, v in (updates or {}).items():
        if k not in EDITABLE_MEMBERSHIP_FIELDS:
            raise ValueError(f"field cannot be updated: {k}")
        # The admin UI sends "" for cleared date inputs.
        if k in MEMBERSHIP_DATE_FIELDS and v == "":
            v = None
        out[k] = v
    return out


def apply_admin_updates(membership: dict, updates: dict, now: datetime) -> dict:
    cleaned = clean_membership_updates(updates)
    new_status = cleaned.pop("status", None)
    new_billing_status = cleaned.pop("billing_status", None)
    out: dict[str, Any] = {}
    if new_status or new_billing_status:
        out.update(transition(membership, "set_status", now, new_status=new_status, new_billing_status=new_billing_status))
    if "next_billing_date" in cleaned:
        out.update(update_billing_date(cleaned.pop("next_billing_date")))
    for k in MEMBERSHIP_DATE_FIELDS:
        if k in cleaned:
            cleaned[k] = as_utc(cleaned[k])
    for k, v in cleaned.items():
        # A cleared input never erases a stamp the transition just set (cancelled_at).
        if v is None and k in out:
            continue
        out[k] = v
    return out


def trial_ended(membership: dict, now: datetime) -> bool:
    end = as_utc(membership.get("trial_end_date"))
    return end is None or as_utc(now) > end


def usage_amount_cents(membership: dict, plan: dict, usage_rows: Optional[list] = None) -> int:
    base = int(plan.get("price_cents") or 0)
    if membership.get("billing_type") == "hybrid_fixed":
        return base
    rate = int(plan.get("usage_rate_cents") or 0)
    if not plan.get("usage_based") or rate <= 0:
        return base
    transactions = sum(int(r.get("transaction_count") or 0) for r in (usage_rows or []))
    return base + transactions * rate


def days_until_due(due, now: datetime) -> int:
    due_dt = as_utc(due)
    if due_dt is None:
        return 0
    return math.ceil((due_dt - as_utc(now)).total_seconds() / 86400)


def filter_plans_for_location(plans: list[dict], location_id: Optional[str]) -> list[dict]:
    if not location_id:
        return list(plans)
    out = []
    for plan in plans:
        linked = [str(x) for x in (plan.get("location_ids") or []) if x]
        own = plan.get("location_id")
        unrestricted = not own and not linked
        if unrestricted or str(own or "") == str(location_id) or str(location_id) in linked:
            out.append(plan)
    return out


def format_due_membership(row: dict, now: datetime) -> dict:
    return {
        "id": row.get("id"),
        "customer_name": row.get("customer_name") or "Unknown Customer",
        "membership_plan_name": row.get("plan_name") or "Unknown Plan",
        "amount_cents": int(row.get("price_cents") or 0),
        "due_date": row.get("next_billing_date"),
        "days_until_due": days_until_due(row.get("next_billing_date"), now),
    }
