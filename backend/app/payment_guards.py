from decimal import Decimal
from typing import Optional, Sequence

from fastapi import HTTPException

from .settlement import COMPLETION_EPSILON, TenderLine, remaining_balance, total_tendered

SPLIT_MATCH_TOLERANCE = Decimal("0.01")


def assert_cashier_selected(cashier_id: Optional[str]):
    if not (cashier_id or "").strip():
        raise HTTPException(status_code=400, detail="please select a staff member")


def assert_gift_card_verified(payment_method: str, is_split: bool, gift_card_id: Optional[str]):
    if payment_method == "gift_card" and not is_split and not gift_card_id:
        raise HTTPException(status_code=400, detail="please verify a valid gift card first")


def assert_not_overtendered(
    final_total: Decimal,
    tenders: Sequence[TenderLine],
    detail: str = "payments exceed the final total",
):
    if total_tendered(tenders) > (final_total + SPLIT_MATCH_TOLERANCE):
        raise HTTPException(status_code=400, detail=detail)


def assert_split_matches_total(final_total: Decimal, tenders: Sequence[TenderLine]):
    if abs(total_tendered(tenders) - final_total) > SPLIT_MATCH_TOLERANCE:
        raise HTTPException(status_code=400, detail="split payment amounts do not match the final total")


def finalize_split_tenders(
    final_total: Decimal,
    tenders: Sequence[TenderLine],
    payment_method: str,
    cash_received: Optional[Decimal] = None,
) -> tuple[TenderLine, ...]:
    """
    Close out a split payment before submission.

    A remaining balance is only acceptable when the active method can absorb it:
    credit takes the remainder as a final card tender, cash takes it once the
    cashier has entered the amount received. Anything else must be tendered first.
    """
    out = tuple(tenders)
    remaining = remaining_balance(final_total, out)
    if remaining > COMPLETION_EPSILON:
        if payment_method == "credit":
            out = (*out, TenderLine(method="credit", amount=remaining))
        elif payment_method == "cash":
            if cash_received is None:
                raise HTTPException(status_code=400, detail="please complete the cash amount")
            out = (*out, TenderLine(method="cash", amount=remaining))
        else:
            raise HTTPException(status_code=400, detail=f"please add a payment for the remaining ${remaining}")
    elif not out:
        raise HTTPException(status_code=400, detail="split payment requires at least one tender")

    assert_split_matches_total(final_total, out)
    return out
