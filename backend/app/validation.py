from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BeforeValidator


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower()


# Canonical codes mirror the enums used by the hosted database.
PaymentMethod = Annotated[
    Literal["cash", "credit", "card_reader", "gift_card", "manual_credit"],
    BeforeValidator(_to_lower_str),
]
DiscountType = Annotated[Literal["percentage", "fixed"], BeforeValidator(_to_lower_str)]
TaxMode = Annotated[Literal["additive", "inclusive"], BeforeValidator(_to_lower_str)]

MembershipStatus = Annotated[
    Literal["active", "cancelled", "expired", "suspended"],
    BeforeValidator(_to_lower_str),
]
BillingStatus = Annotated[
    Literal["trial", "active", "past_due", "suspended", "cancelled", "expired"],
    BeforeValidator(_to_lower_str),
]
BillingType = Annotated[Literal["hybrid_usage", "hybrid_fixed"], BeforeValidator(_to_lower_str)]
BillingInterval = Annotated[Literal["monthly", "yearly"], BeforeValidator(_to_lower_str)]
