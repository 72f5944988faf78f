import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from backend.app.cache import QueryCache
from backend.app.routers import memberships as memberships_router
from backend.app.routers.memberships import ActionError, MembershipActionIn

USER = {"user_id": "u1", "email": "admin@example.com"}
UPDATED_AT = datetime(2024, 1, 10, 8, 0, tzinfo=timezone.utc)


class _ScriptedCursor:
    def __init__(self, fetchone=(), fetchall=()):
        self._one = list(fetchone)
        self._all = list(fetchall)
        self.executed: list[tuple[str, tuple]] = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=()):
        self.executed.append((sql, tuple(params)))

    def fetchone(self):
        return self._one.pop(0) if self._one else None

    def fetchall(self):
        return self._all.pop(0) if self._all else []

    def sql(self, needle: str):
        return [(s, p) for s, p in self.executed if needle in s]


class _Tx:
    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False


class _DummyConn:
    def __init__(self, cursor):
        self._cursor = cursor

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def cursor(self):
        return self._cursor

    def transaction(self):
        return _Tx()


@pytest.fixture(autouse=True)
def _plan_cache(monkeypatch, fake_redis):
    monkeypatch.setattr(memberships_router, "plan_cache", QueryCache(fake_redis, ttl_seconds=300))


def _patch_db(monkeypatch, fetchone=(), fetchall=()):
    cur = _ScriptedCursor(fetchone, fetchall)
    conn = _DummyConn(cur)
    monkeypatch.setattr(memberships_router, "get_conn", lambda: conn)
    monkeypatch.setattr(memberships_router, "set_location_context", lambda *_args, **_kwargs: None)
    return cur


def _call(payload: dict, location_id=None):
    return memberships_router.membership_action(
        MembershipActionIn.model_validate(payload), user=USER, header_location_id=location_id
    )


def test_unknown_action():
    with pytest.raises(ActionError) as exc_info:
        _call({"action": "drop_everything"})
    assert exc_info.value.status_code == 400
    assert exc_info.value.body() == {"error": "Invalid action: drop_everything"}


def test_add_customer_membership_starts_trial(monkeypatch):
    plan = {"id": "p1", "trial_days": 14, "billing_interval": "monthly", "billing_interval_count": 1, "billing_type": None}
    cur = _patch_db(monkeypatch, fetchone=[plan, {"id": "m1", "billing_status": "trial"}])

    out = _call({"action": "add_customer_membership", "customerId": "c1", "planId": "p1", "locationId": "L1"})

    assert out == {"id": "m1", "billing_status": "trial"}
    sql, params = cur.sql("INSERT INTO customer_memberships")[0]
    assert "billing_status" in sql
    assert "trial" in params
    assert "hybrid_fixed" in params
    assert "c1" in params and "p1" in params and "L1" in params
    assert cur.sql("INSERT INTO audit_logs")


def test_add_customer_membership_missing_plan(monkeypatch):
    _patch_db(monkeypatch, fetchone=[None])
    with pytest.raises(ActionError) as exc_info:
        _call({"action": "add_customer_membership", "customerId": "c1", "planId": "nope"})
    assert exc_info.value.status_code == 404


def test_cancel_customer_membership(monkeypatch):
    row = {"id": "m1", "status": "active", "billing_status": "active", "updated_at": UPDATED_AT}
    cur = _patch_db(monkeypatch, fetchone=[row, {"id": "m1", "status": "cancelled"}])

    out = _call(
        {"action": "cancel_customer_membership", "membershipId": "m1", "expectedUpdatedAt": "2024-01-10T08:00:00Z"}
    )

    assert out["status"] == "cancelled"
    sql, params = cur.sql("UPDATE customer_memberships")[0]
    assert "cancel_at_period_end = %s" in sql
    assert params[0] == "cancelled"
    assert True in params
    assert params[-1] == "m1"


def test_stale_expected_updated_at_conflicts(monkeypatch):
    row = {"id": "m1", "status": "active", "billing_status": "active", "updated_at": UPDATED_AT}
    cur = _patch_db(monkeypatch, fetchone=[row])
    with pytest.raises(ActionError) as exc_info:
        _call({"action": "cancel_customer_membership", "membershipId": "m1", "expectedUpdatedAt": "2024-01-09T00:00:00Z"})
    assert exc_info.value.status_code == 409
    assert not cur.sql("UPDATE customer_memberships")


def test_update_membership_rejects_reopening_cancelled(monkeypatch):
    row = {"id": "m1", "status": "cancelled", "billing_status": "cancelled", "updated_at": UPDATED_AT}
    _patch_db(monkeypatch, fetchone=[row])
    with pytest.raises(ActionError) as exc_info:
        _call({"action": "update_customer_membership", "membershipId": "m1", "updates": {"status": "active"}})
    assert exc_info.value.status_code == 409
    assert "reactivate" in exc_info.value.message


def test_update_membership_requires_ids():
    with pytest.raises(ActionError) as exc_info:
        _call({"action": "update_customer_membership", "updates": {}})
    assert exc_info.value.message == "membershipId is required for update_customer_membership"
    with pytest.raises(ActionError) as exc_info:
        _call({"action": "update_customer_membership", "membershipId": "m1"})
    assert exc_info.value.message == "updates object is required for update_customer_membership"


def test_update_membership_rejects_unknown_status_codes():
    with pytest.raises(ActionError) as exc_info:
        _call({"action": "update_customer_membership", "membershipId": "m1", "updates": {"billing_status": "paused"}})
    assert exc_info.value.status_code == 400
    assert exc_info.value.message.startswith("invalid updates: billing_status")


def test_update_membership_clears_blank_dates(monkeypatch):
    row = {"id": "m1", "status": "active", "billing_status": "active", "updated_at": UPDATED_AT}
    cur = _patch_db(monkeypatch, fetchone=[row, {"id": "m1"}])
    out = _call(
        {
            "action": "update_customer_membership",
            "membershipId": "m1",
            "updates": {"next_billing_date": "2024-02-10", "trial_end_date": ""},
        }
    )
    assert out == [{"id": "m1"}]
    sql, params = cur.sql("UPDATE customer_memberships")[0]
    assert params[:2] == (datetime(2024, 2, 10, tzinfo=timezone.utc), None)


def test_reactivate_customer_membership(monkeypatch):
    row = {"id": "m1", "status": "cancelled", "billing_status": "cancelled", "membership_plan_id": "p1"}
    plan = {"id": "p1", "billing_interval": "monthly", "billing_interval_count": 1}
    cur = _patch_db(monkeypatch, fetchone=[row, plan, {"id": "m1", "status": "active"}])
    out = _call({"action": "reactivate_customer_membership", "membershipId": "m1"})
    assert out["status"] == "active"
    _sql, params = cur.sql("UPDATE customer_memberships")[0]
    assert params[:2] == ("active", "active")


def test_get_all_plans_filters_and_caches(monkeypatch):
    plans = [
        {"id": "open", "location_id": None, "location_ids": []},
        {"id": "mine", "location_id": None, "location_ids": ["L1"]},
        {"id": "theirs", "location_id": "L2", "location_ids": []},
    ]
    cur = _patch_db(monkeypatch, fetchall=[plans])

    first = _call({"action": "get_all_plans", "locationId": "L1"})
    second = _call({"action": "get_all_plans", "locationId": "L1"})

    assert [p["id"] for p in first] == ["open", "mine"]
    assert second == first
    assert len(cur.sql("FROM membership_plans p")) == 1


def test_plan_mutation_invalidates_plan_cache(monkeypatch):
    memberships_router.plan_cache.set("plans:L1", ["stale"])
    cur = _patch_db(monkeypatch, fetchone=[{"id": "p9", "name": "Gold"}])

    out = _call({"action": "create_plan", "locationId": "L1", "planData": {"name": "Gold", "price_cents": 2500}})

    assert out["id"] == "p9"
    assert memberships_router.plan_cache.get("plans:L1") is None
    sql, params = cur.sql("INSERT INTO membership_plans")[0]
    assert params == ("Gold", 2500, "L1")


def test_create_plan_rejects_unknown_fields(monkeypatch):
    _patch_db(monkeypatch)
    with pytest.raises(ActionError) as exc_info:
        _call({"action": "create_plan", "planData": {"name": "Gold", "owner": "me"}})
    assert exc_info.value.status_code == 400
    assert "planData" in exc_info.value.message


def test_delete_missing_plan(monkeypatch):
    _patch_db(monkeypatch, fetchone=[None])
    with pytest.raises(ActionError) as exc_info:
        _call({"action": "delete_plan", "planId": "p404"})
    assert exc_info.value.status_code == 404


def test_add_plan_locations_replaces_set(monkeypatch):
    cur = _patch_db(monkeypatch)
    out = _call({"action": "add_plan_locations", "planId": "p1", "locationIds": ["L1", "L2"]})
    assert out == {"success": True}
    assert cur.sql("DELETE FROM membership_plan_locations")
    assert [p for _s, p in cur.sql("INSERT INTO membership_plan_locations")] == [("p1", "L1"), ("p1", "L2")]


def test_billing_settings_default_to_empty(monkeypatch):
    _patch_db(monkeypatch, fetchone=[None])
    assert _call({"action": "get_billing_settings", "locationId": "L1"}) == {}


def test_update_billing_settings_upserts(monkeypatch):
    cur = _patch_db(monkeypatch, fetchone=[{"location_id": "L1", "grace_period_days": 10}])
    out = _call({"action": "update_billing_settings", "locationId": "L1", "settings": {"grace_period_days": 10}})
    assert out["grace_period_days"] == 10
    sql, params = cur.sql("INSERT INTO billing_settings")[0]
    assert "ON CONFLICT (location_id) DO UPDATE SET grace_period_days = EXCLUDED.grace_period_days" in sql
    assert params[0] == "L1"
    assert 10 in params and 5 in params


def test_usage_tracking_date_filters(monkeypatch):
    cur = _patch_db(monkeypatch, fetchall=[[{"tracking_date": "2024-01-02", "transaction_count": 3}]])
    out = _call({"action": "get_usage_tracking", "membershipId": "m1", "startDate": "2024-01-01", "endDate": "2024-01-31"})
    assert len(out) == 1
    sql, params = cur.executed[0]
    assert "tracking_date >= %s" in sql and "tracking_date <= %s" in sql
    assert "ORDER BY tracking_date DESC" in sql
    assert params == ("m1", "2024-01-01", "2024-01-31")


def test_trigger_billing_run_uses_engine(monkeypatch):
    calls = []
    gateway = object()
    monkeypatch.setattr(memberships_router.StripeGateway, "from_settings", classmethod(lambda cls: gateway))

    def _run(location_id, gw, now):
        calls.append((location_id, gw))
        return {"success": True, "results": {"processed": 0}}

    monkeypatch.setattr(memberships_router.billing_engine, "run_billing_engine", _run)
    out = _call({"action": "trigger_billing_run"}, location_id="L1")
    assert out["success"] is True
    assert calls == [("L1", gateway)]


def test_trigger_billing_run_requires_location():
    with pytest.raises(ActionError) as exc_info:
        _call({"action": "trigger_billing_run", "locationId": "undefined"})
    assert exc_info.value.message == "locationId is required"


def test_dashboard_requires_valid_location():
    resp = memberships_router.billing_dashboard_view(location_id="null", user=USER)
    assert resp.status_code == 400
    assert json.loads(resp.body) == {
        "error": "Valid location ID is required",
        "message": "Please select a location to view billing data",
    }


def test_dashboard_contract(monkeypatch):
    now = datetime.now(timezone.utc)
    _patch_db(
        monkeypatch,
        fetchone=[{"n": 3}, {"total": Decimal("125.505")}, {"pending": 1, "failed": 2}],
        fetchall=[
            [
                {
                    "id": "i1",
                    "invoice_number": "INV-1",
                    "total_cents": 2500,
                    "status": "paid",
                    "due_date": now,
                    "created_at": now,
                    "customer_name": None,
                }
            ],
            [{"id": "m1", "customer_name": "Ana", "plan_name": "Gold", "price_cents": 2500, "next_billing_date": now}],
            [{"id": "m2", "next_billing_date": now + timedelta(days=3)}],
        ],
    )

    out = memberships_router.billing_dashboard_view(location_id="L1", user=USER)

    assert out["stats"] == {"total_memberships": 3, "monthly_revenue": 12551, "pending_invoices": 1, "failed_payments": 2}
    assert out["recentInvoices"][0]["customer_name"] == "Unknown Customer"
    assert out["recentInvoices"][0]["amount_cents"] == 2500
    assert out["customersDueToday"][0]["membership_plan_name"] == "Gold"
    upcoming = out["customersUpcoming"][0]
    assert upcoming["customer_name"] == "Unknown Customer"
    assert upcoming["days_until_due"] == 3
