from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal

QUANTUM = Decimal("0.000001")
ZERO = Decimal("0")


def to_money(value) -> Decimal:
    """Coerce floats, strings and Decimals to a 6-decimal Decimal."""
    if value is None:
        return ZERO
    if not isinstance(value, Decimal):
        # str() keeps 0.1 as 0.1 instead of its binary expansion
        value = Decimal(str(value))
    return value.quantize(QUANTUM, rounding=ROUND_HALF_UP)


def round_down(value: Decimal) -> Decimal:
    return value.quantize(QUANTUM, rounding=ROUND_DOWN)


def bps(amount: Decimal, basis_points: int) -> Decimal:
    """Basis-point fraction of amount, rounded toward zero."""
    return round_down(amount * Decimal(basis_points) / Decimal(10000))
