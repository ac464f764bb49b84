"""Fee and amount arithmetic on USD / USDC values.

Prices are Decimal everywhere; floats never touch money.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")
DEFAULT_FEE_RATE = Decimal("0.10")


def to_cents(amount: Decimal) -> Decimal:
    """Round half-up to two decimal places."""
    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


def platform_fee(price: Decimal, rate: Decimal = DEFAULT_FEE_RATE) -> Decimal:
    """Platform fee charged on top of a quoted price.

    >>> platform_fee(Decimal("10"))
    Decimal('1.00')
    """
    return to_cents(Decimal(price) * rate)


def total_due(price: Decimal, fee: Decimal) -> Decimal:
    """Amount the client must transfer to the treasury."""
    return to_cents(Decimal(price) + Decimal(fee))
