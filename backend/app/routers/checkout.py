from dataclasses import replace
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, field_validator

from ..config import settings
from ..db import get_conn, set_location_context
from ..deps import get_current_user, get_location_id
from ..logs import json_log
from ..payment_guards import (
    assert_cashier_selected,
    assert_gift_card_verified,
    assert_not_overtendered,
    finalize_split_tenders,
)
from ..settlement import (
    Discount,
    GiftCard,
    LoyaltyRedemption,
    SettlementError,
    TenderLine,
    add_tender,
    gift_card_tender,
    settle,
)
from ..validation import DiscountType, PaymentMethod, TaxMode

router = APIRouter(prefix="/checkout", tags=["checkout"], dependencies=[Depends(get_current_user)])


def _blank_to_none(v):
    if isinstance(v, str) and not v.strip():
        return None
    return v


class DiscountIn(BaseModel):
    type: DiscountType
    value: Decimal = Decimal("0")


class LoyaltyIn(BaseModel):
    points_available: int = 0
    points_value_cents: Decimal = Decimal("1")
    minimum_points_to_redeem: int = 0
    use_points: bool = False


class TenderIn(BaseModel):
    payment_method: PaymentMethod
    amount: Decimal
    gift_card_id: Optional[str] = None
    gift_card_number: Optional[str] = None

    @field_validator("gift_card_id", mode="before")
    @classmethod
    def _id_to_str(cls, v):
        return None if v is None else str(v)


class CartIn(BaseModel):
    subtotal: Decimal
    discount: Optional[DiscountIn] = None
    loyalty: Optional[LoyaltyIn] = None
    tax_rate: Decimal = Decimal("0")
    tax_mode: Optional[TaxMode] = None
    split_payments: list[TenderIn] = []
    cash_received: Optional[Decimal] = None

    @field_validator("cash_received", mode="before")
    @classmethod
    def _blank_cash(cls, v):
        # An untouched cash input arrives as "".
        return _blank_to_none(v)


class SplitPaymentIn(CartIn):
    payment_method: PaymentMethod
    amount: Decimal
    gift_card_id: Optional[str] = None
    gift_card_number: Optional[str] = None


class GiftCardVerifyIn(CartIn):
    card_number: str
    split: bool = False


class SubmitIn(CartIn):
    customer_id: Optional[str] = None
    cashier_id: Optional[str] = None
    payment_method: PaymentMethod
    is_split: bool = False
    gift_card_id: Optional[str] = None


def _tenders(data: CartIn) -> tuple[TenderLine, ...]:
    return tuple(
        TenderLine(
            method=t.payment_method,
            amount=t.amount,
            gift_card_id=t.gift_card_id,
            gift_card_number=t.gift_card_number,
        )
        for t in data.split_payments
    )


def _settle(data: CartIn, tenders: Optional[tuple[TenderLine, ...]] = None, cash_received=None):
    discount = Discount(type=data.discount.type, value=data.discount.value) if data.discount else None
    loyalty = None
    if data.loyalty:
        loyalty = LoyaltyRedemption(
            points_available=data.loyalty.points_available,
            points_value_cents=data.loyalty.points_value_cents,
            minimum_points_to_redeem=data.loyalty.minimum_points_to_redeem,
            use_points=data.loyalty.use_points,
        )
    try:
        return settle(
            data.subtotal,
            discount=discount,
            loyalty=loyalty,
            tax_rate=data.tax_rate,
            tax_mode=data.tax_mode or settings.checkout_tax_mode,
            tenders=_tenders(data) if tenders is None else tenders,
            cash_received=data.cash_received if cash_received is None else cash_received,
        )
    except SettlementError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/settlement")
def compute_settlement(data: CartIn):
    return _settle(data).as_dict()


@router.post("/split-payments")
def add_split_payment(data: SplitPaymentIn):
    result = _settle(data)
    try:
        tenders = add_tender(
            _tenders(data),
            data.payment_method,
            data.amount,
            result.final_total,
            gift_card_id=data.gift_card_id,
            gift_card_number=data.gift_card_number,
        )
    except SettlementError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {
        "split_payments": [t.as_dict() for t in tenders],
        "settlement": _settle(data, tenders=tenders).as_dict(),
    }


@router.post("/gift-cards/verify")
def verify_gift_card(data: GiftCardVerifyIn, location_id: Optional[str] = Depends(get_location_id)):
    card_number = (data.card_number or "").strip()
    if not card_number:
        raise HTTPException(status_code=400, detail="please enter a gift card number")
    result = _settle(data)
    with get_conn() as conn:
        set_location_context(conn, location_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, card_number, current_balance, is_active
                FROM gift_cards
                WHERE card_number = %s
                """,
                (card_number,),
            )
            row = cur.fetchone()

    card = None
    if row:
        card = GiftCard(
            id=str(row["id"]),
            card_number=row["card_number"],
            current_balance=row["current_balance"] or Decimal("0"),
            is_active=bool(row["is_active"]),
        )
    try:
        check = gift_card_tender(card, result.final_total, _tenders(data), split=data.split)
    except SettlementError as e:
        json_log("info", "gift_card_rejected", card_number=card_number, reason=str(e))
        raise HTTPException(status_code=400, detail=str(e))
    return {
        "gift_card_id": check.gift_card_id,
        "amount_applied": check.amount_applied,
        "balance": card.current_balance,
        "split_payments": [t.as_dict() for t in check.tenders],
        "settlement": _settle(data, tenders=check.tenders).as_dict(),
    }


@router.post("/submit/validate")
def validate_submission(data: SubmitIn):
    assert_cashier_selected(data.cashier_id)
    assert_gift_card_verified(data.payment_method, data.is_split, data.gift_card_id)

    # Leftover split lines are ignored once the cashier leaves split mode.
    tenders = _tenders(data) if data.is_split else ()
    result = _settle(data, tenders=tenders)
    cash_received = data.cash_received
    if data.is_split:
        assert_not_overtendered(result.final_total, tenders)
        tenders = finalize_split_tenders(result.final_total, tenders, data.payment_method, cash_received)
    elif data.payment_method == "cash" and cash_received is None:
        # Submitting a cash sale without an amount means exact change.
        cash_received = result.final_total

    settlement = _settle(data, tenders=tenders, cash_received=cash_received)
    if data.is_split:
        # Change is owed against what was outstanding before the closing tender.
        settlement = replace(settlement, change_due=result.change_due)
    return {
        "customer_id": data.customer_id,
        "use_points": bool(data.loyalty and data.loyalty.use_points and settlement.loyalty_discount > 0),
        "cashier_id": data.cashier_id,
        "gift_card_id": data.gift_card_id if data.payment_method == "gift_card" and not data.is_split else None,
        "split_payments": [t.as_dict() for t in tenders] if data.is_split else [],
        "cash_received": cash_received,
        "settlement": settlement.as_dict(),
    }
