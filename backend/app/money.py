from decimal import Decimal, ROUND_HALF_UP

CENTS_Q = Decimal("0.01")
ZERO = Decimal("0")


def to_decimal(v) -> Decimal:
    if v is None or v == "":
        return ZERO
    if isinstance(v, Decimal):
        return v
    # Go through str() so floats like 0.1 don't carry binary noise.
    return Decimal(str(v))


def q_cents(v) -> Decimal:
    return to_decimal(v).quantize(CENTS_Q, rounding=ROUND_HALF_UP)


def to_cents(v) -> int:
    return int((to_decimal(v) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents) -> Decimal:
    return q_cents(Decimal(int(cents or 0)) / 100)
