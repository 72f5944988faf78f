from decimal import Decimal

import pytest
from fastapi import HTTPException

from backend.app.routers import checkout as checkout_router


class _DummyCursor:
    def __init__(self, row):
        self._row = row
        self.executed: list[tuple[str, tuple]] = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=()):
        self.executed.append((sql, tuple(params)))

    def fetchone(self):
        return self._row


class _DummyConn:
    def __init__(self, cursor: _DummyCursor):
        self._cursor = cursor

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def cursor(self):
        return self._cursor


def _patch_db(monkeypatch, row):
    cur = _DummyCursor(row)
    conn = _DummyConn(cur)
    monkeypatch.setattr(checkout_router, "get_conn", lambda: conn)
    monkeypatch.setattr(checkout_router, "set_location_context", lambda *_args, **_kwargs: None)
    return cur


def test_settlement_contract():
    out = checkout_router.compute_settlement(
        checkout_router.CartIn(
            subtotal="100",
            discount={"type": "Percentage", "value": "10"},
            tax_rate="8",
            tax_mode="additive",
            cash_received="100",
        )
    )
    assert out["discount_amount"] == Decimal("10.00")
    assert out["tax_amount"] == Decimal("7.20")
    assert out["final_total"] == Decimal("97.20")
    assert out["change_due"] == Decimal("2.80")
    assert out["tax_mode"] == "additive"


def test_settlement_uses_configured_tax_mode(monkeypatch):
    monkeypatch.setattr(checkout_router.settings, "checkout_tax_mode", "inclusive")
    out = checkout_router.compute_settlement(checkout_router.CartIn(subtotal="108", tax_rate="8"))
    assert out["tax_mode"] == "inclusive"
    assert out["final_total"] == Decimal("108.00")


def test_blank_cash_received_is_treated_as_missing():
    data = checkout_router.CartIn(subtotal="18.25", cash_received="")
    assert data.cash_received is None


def test_settlement_rejects_negative_discount():
    with pytest.raises(HTTPException) as exc_info:
        checkout_router.compute_settlement(
            checkout_router.CartIn(subtotal="10", discount={"type": "fixed", "value": "-5"})
        )
    assert exc_info.value.status_code == 400


def test_add_split_payment_clamps_to_remaining():
    out = checkout_router.add_split_payment(
        checkout_router.SplitPaymentIn(
            subtotal="43.50",
            split_payments=[{"payment_method": "cash", "amount": "20"}],
            payment_method="credit",
            amount="30",
        )
    )
    assert [t["amount"] for t in out["split_payments"]] == [Decimal("20"), Decimal("23.50")]
    assert out["settlement"]["remaining_balance"] == Decimal("0.00")
    assert out["settlement"]["is_settled"] is True


def test_verify_gift_card_full_payment(monkeypatch):
    cur = _patch_db(monkeypatch, {"id": 7, "card_number": "GC-100", "current_balance": Decimal("50"), "is_active": True})
    out = checkout_router.verify_gift_card(
        checkout_router.GiftCardVerifyIn(subtotal="25", card_number=" GC-100 "),
        location_id="loc-1",
    )
    assert out["gift_card_id"] == "7"
    assert out["amount_applied"] == Decimal("25.00")
    assert cur.executed[0][1] == ("GC-100",)


def test_verify_gift_card_split_adds_tender(monkeypatch):
    _patch_db(monkeypatch, {"id": 7, "card_number": "GC-100", "current_balance": Decimal("10"), "is_active": True})
    out = checkout_router.verify_gift_card(
        checkout_router.GiftCardVerifyIn(subtotal="25", card_number="GC-100", split=True),
        location_id="loc-1",
    )
    assert out["gift_card_id"] is None
    assert out["split_payments"][0]["payment_method"] == "gift_card"
    assert out["settlement"]["remaining_balance"] == Decimal("15.00")


def test_verify_gift_card_not_found(monkeypatch):
    _patch_db(monkeypatch, None)
    with pytest.raises(HTTPException) as exc_info:
        checkout_router.verify_gift_card(
            checkout_router.GiftCardVerifyIn(subtotal="25", card_number="NOPE"),
            location_id="loc-1",
        )
    assert exc_info.value.status_code == 400
    assert "invalid gift card number" in str(exc_info.value.detail)


def test_submit_requires_cashier():
    with pytest.raises(HTTPException) as exc_info:
        checkout_router.validate_submission(checkout_router.SubmitIn(subtotal="10", payment_method="cash"))
    assert "please select a staff member" in str(exc_info.value.detail)


def test_submit_cash_without_amount_is_exact_change():
    out = checkout_router.validate_submission(
        checkout_router.SubmitIn(subtotal="18.25", payment_method="cash", cashier_id="staff-1", cash_received="")
    )
    assert out["cash_received"] == Decimal("18.25")
    assert out["settlement"]["change_due"] == Decimal("0.00")
    assert out["split_payments"] == []


def test_submit_non_split_ignores_leftover_split_lines():
    out = checkout_router.validate_submission(
        checkout_router.SubmitIn(
            subtotal="18.25",
            payment_method="cash",
            cashier_id="staff-1",
            is_split=False,
            split_payments=[{"payment_method": "credit", "amount": "10"}],
            cash_received="20",
        )
    )
    assert out["split_payments"] == []
    assert out["settlement"]["change_due"] == Decimal("1.75")
    assert out["settlement"]["remaining_balance"] == Decimal("18.25")
    assert out["settlement"]["total_tendered"] == Decimal("0.00")


def test_submit_split_with_cash_closes_remainder():
    out = checkout_router.validate_submission(
        checkout_router.SubmitIn(
            subtotal="43.50",
            payment_method="cash",
            cashier_id="staff-1",
            is_split=True,
            split_payments=[{"payment_method": "credit", "amount": "23.50"}],
            cash_received="25",
        )
    )
    assert [t["payment_method"] for t in out["split_payments"]] == ["credit", "cash"]
    assert out["settlement"]["remaining_balance"] == Decimal("0.00")
    assert out["settlement"]["change_due"] == Decimal("5.00")


def test_submit_gift_card_requires_verification():
    with pytest.raises(HTTPException) as exc_info:
        checkout_router.validate_submission(
            checkout_router.SubmitIn(subtotal="10", payment_method="gift_card", cashier_id="staff-1")
        )
    assert "verify a valid gift card" in str(exc_info.value.detail)
