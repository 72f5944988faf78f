"""
Checkout settlement math.

Derives the amounts a checkout screen displays and submits: discount, loyalty
redemption, tax, final total, split-tender remaining balance and cash change.
Nothing here touches the database; every value is recomputed from the cart
state the caller passes in.

Order of application: discount first (clamped to the subtotal), then loyalty
points (clamped to what is left), then tax on the discounted amount.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_FLOOR
from typing import Optional, Sequence

from .money import ZERO, q_cents, to_decimal

HUNDRED = Decimal("100")

# Split payments may complete once the remaining balance is within this tolerance.
COMPLETION_EPSILON = Decimal("0.001")


class SettlementError(ValueError):
    pass


@dataclass(frozen=True)
class Discount:
    type: str  # percentage|fixed
    value: Decimal


@dataclass(frozen=True)
class LoyaltyRedemption:
    points_available: int
    points_value_cents: Decimal
    minimum_points_to_redeem: int
    use_points: bool = True


@dataclass(frozen=True)
class TenderLine:
    method: str
    amount: Decimal
    gift_card_id: Optional[str] = None
    gift_card_number: Optional[str] = None

    def as_dict(self) -> dict:
        return {
            "payment_method": self.method,
            "amount": self.amount,
            "gift_card_id": self.gift_card_id,
            "gift_card_number": self.gift_card_number,
        }


@dataclass(frozen=True)
class GiftCard:
    id: str
    card_number: str
    current_balance: Decimal
    is_active: bool


@dataclass(frozen=True)
class GiftCardCheck:
    # Non-split: the verified card id. Split: the tender list with the card applied.
    gift_card_id: Optional[str]
    tenders: tuple[TenderLine, ...]
    amount_applied: Decimal


@dataclass(frozen=True)
class SettlementResult:
    subtotal: Decimal
    discount_amount: Decimal
    loyalty_discount: Decimal
    subtotal_after_discounts: Decimal
    tax_rate: Decimal
    tax_mode: str
    tax_amount: Decimal
    final_total: Decimal
    total_tendered: Decimal
    remaining_balance: Decimal
    change_due: Decimal

    @property
    def is_settled(self) -> bool:
        return self.remaining_balance <= COMPLETION_EPSILON

    def as_dict(self) -> dict:
        return {
            "subtotal": self.subtotal,
            "discount_amount": self.discount_amount,
            "loyalty_discount": self.loyalty_discount,
            "subtotal_after_discounts": self.subtotal_after_discounts,
            "tax_rate": self.tax_rate,
            "tax_mode": self.tax_mode,
            "tax_amount": self.tax_amount,
            "final_total": self.final_total,
            "total_tendered": self.total_tendered,
            "remaining_balance": self.remaining_balance,
            "change_due": self.change_due,
            "is_settled": self.is_settled,
        }


def discount_amount(subtotal: Decimal, discount: Optional[Discount]) -> Decimal:
    if discount is None:
        return ZERO
    subtotal = to_decimal(subtotal)
    value = to_decimal(discount.value)
    if value < 0:
        raise SettlementError("discount value must be >= 0")
    kind = (discount.type or "").strip().lower()
    if kind == "percentage":
        nominal = subtotal * value / HUNDRED
    elif kind == "fixed":
        nominal = value
    else:
        raise SettlementError(f"unknown discount type: {discount.type}")
    return q_cents(max(ZERO, min(nominal, subtotal)))


def points_value(points, points_value_cents) -> Decimal:
    pts = to_decimal(points)
    if pts <= 0:
        return ZERO
    cents = to_decimal(points_value_cents)
    if cents <= 0:
        # Programs saved without a point value redeem at one cent per point.
        cents = Decimal("1")
    return q_cents(pts * cents / HUNDRED)


def can_redeem_points(redemption: Optional[LoyaltyRedemption]) -> bool:
    if redemption is None:
        return False
    available = int(redemption.points_available or 0)
    return available > 0 and available >= int(redemption.minimum_points_to_redeem or 0)


def loyalty_discount(remaining_after_discount: Decimal, redemption: Optional[LoyaltyRedemption]) -> Decimal:
    if redemption is None or not redemption.use_points or not can_redeem_points(redemption):
        return ZERO
    ceiling = max(ZERO, to_decimal(remaining_after_discount))
    return q_cents(min(points_value(redemption.points_available, redemption.points_value_cents), ceiling))


def tax_amount(taxable: Decimal, tax_rate, mode: str = "additive") -> Decimal:
    taxable = to_decimal(taxable)
    rate = to_decimal(tax_rate)
    if rate < 0:
        raise SettlementError("tax rate must be >= 0")
    if mode == "additive":
        return q_cents(taxable * rate / HUNDRED) if taxable > 0 else ZERO
    if mode == "inclusive":
        # Tax already sits inside the amount; extract it.
        return q_cents(taxable - taxable / (1 + rate / HUNDRED)) if taxable > 0 else ZERO
    raise SettlementError(f"unknown tax mode: {mode}")


def total_tendered(tenders: Sequence[TenderLine]) -> Decimal:
    return q_cents(sum((to_decimal(t.amount) for t in tenders), ZERO))


def remaining_balance(final_total: Decimal, tenders: Sequence[TenderLine]) -> Decimal:
    return max(ZERO, q_cents(to_decimal(final_total) - total_tendered(tenders)))


def change_due(cash_received, amount_due: Decimal) -> Decimal:
    if cash_received is None or cash_received == "":
        # An empty cash field means exact change.
        return ZERO
    return max(ZERO, q_cents(to_decimal(cash_received) - to_decimal(amount_due)))


def settle(
    subtotal,
    *,
    discount: Optional[Discount] = None,
    loyalty: Optional[LoyaltyRedemption] = None,
    tax_rate=0,
    tax_mode: str = "additive",
    tenders: Sequence[TenderLine] = (),
    cash_received=None,
) -> SettlementResult:
    sub = q_cents(subtotal)
    if sub < 0:
        raise SettlementError("subtotal must be >= 0")

    disc = discount_amount(sub, discount)
    loyalty_amt = loyalty_discount(sub - disc, loyalty)
    after = max(ZERO, q_cents(sub - disc - loyalty_amt))
    tax = tax_amount(after, tax_rate, tax_mode)
    final = q_cents(after + tax) if tax_mode == "additive" else after

    tendered = total_tendered(tenders)
    remaining = remaining_balance(final, tenders)
    # With split tenders, the cash drawer only covers what is still owed.
    amount_due = remaining if tenders else final

    return SettlementResult(
        subtotal=sub,
        discount_amount=disc,
        loyalty_discount=loyalty_amt,
        subtotal_after_discounts=after,
        tax_rate=to_decimal(tax_rate),
        tax_mode=tax_mode,
        tax_amount=tax,
        final_total=final,
        total_tendered=tendered,
        remaining_balance=remaining,
        change_due=change_due(cash_received, amount_due),
    )


def add_tender(
    tenders: Sequence[TenderLine],
    method: str,
    amount,
    final_total: Decimal,
    *,
    gift_card_id: Optional[str] = None,
    gift_card_number: Optional[str] = None,
) -> tuple[TenderLine, ...]:
    remaining = remaining_balance(final_total, tenders)
    requested = q_cents(amount)
    if requested <= 0 or remaining <= 0:
        raise SettlementError("invalid amount")
    line = TenderLine(
        method=method,
        amount=min(requested, remaining),
        gift_card_id=gift_card_id,
        gift_card_number=gift_card_number,
    )
    return (*tenders, line)


def remove_tender(tenders: Sequence[TenderLine], index: int) -> tuple[TenderLine, ...]:
    if index < 0 or index >= len(tenders):
        raise SettlementError("tender index out of range")
    return tuple(t for i, t in enumerate(tenders) if i != index)


def gift_card_tender(
    card: Optional[GiftCard],
    final_total: Decimal,
    tenders: Sequence[TenderLine] = (),
    *,
    split: bool = False,
) -> GiftCardCheck:
    if card is None:
        raise SettlementError("invalid gift card number")
    if not card.is_active:
        raise SettlementError("gift card is not active")

    balance = q_cents(card.current_balance)
    if split:
        if balance <= 0:
            raise SettlementError("gift card has no balance")
        remaining = remaining_balance(final_total, tenders)
        if remaining <= 0:
            raise SettlementError("order is already paid in full")
        amount = min(balance, remaining)
        new_tenders = add_tender(
            tenders,
            "gift_card",
            amount,
            final_total,
            gift_card_id=card.id,
            gift_card_number=card.card_number,
        )
        return GiftCardCheck(gift_card_id=None, tenders=new_tenders, amount_applied=amount)

    total = q_cents(final_total)
    if balance < total:
        raise SettlementError(f"insufficient balance (available {balance}); consider using split payment")
    return GiftCardCheck(gift_card_id=card.id, tenders=tuple(tenders), amount_applied=total)


def max_usable_points(available_points: int, max_amount, points_value_cents) -> int:
    cents = to_decimal(points_value_cents)
    limit = to_decimal(max_amount)
    if available_points <= 0 or limit <= 0 or cents <= 0:
        return 0
    by_value = int((limit * HUNDRED / cents).to_integral_value(rounding=ROUND_FLOOR))
    return min(int(available_points), by_value)


def validate_redemption(points_to_redeem: int, available_points: int, minimum_points: int) -> None:
    if points_to_redeem <= 0:
        raise SettlementError("points to redeem must be greater than 0")
    if points_to_redeem > available_points:
        raise SettlementError("insufficient points balance")
    if points_to_redeem < minimum_points:
        raise SettlementError(f"minimum redemption is {minimum_points} points")


def points_earned(amount, points_per_dollar) -> int:
    amt = to_decimal(amount)
    rate = to_decimal(points_per_dollar)
    if amt <= 0 or rate <= 0:
        return 0
    return int((amt * rate).to_integral_value(rounding=ROUND_FLOOR))
