"""Money unit helpers.

Every money field in the engine is an ``int`` of minor units (cents). Decimal
is only used at the edges: parsing user input and computing the platform
fee. Floats are rejected outright.

Fee policy: the platform fee is ``gross * rate / 100`` rounded half-up to a
whole minor unit, and the seller receives the remainder, so the two parts
always sum exactly to the gross.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

_CENT = Decimal("0.01")
_ONE = Decimal("1")
_HUNDRED = Decimal("100")


@dataclass(frozen=True)
class FeeSplit:
    """Gross amount split into platform fee and seller net (minor units)."""

    gross: int
    platform_fee: int
    seller_receives: int

    def reconciles(self) -> bool:
        return self.platform_fee + self.seller_receives == self.gross

    def to_dict(self) -> dict:
        return {
            "gross": self.gross,
            "platform_fee": self.platform_fee,
            "seller_receives": self.seller_receives,
        }


def to_minor_units(value: Decimal | int | str) -> int:
    """Convert a major-unit amount ("12.34", Decimal("12.345")) to cents.

    Sub-cent input is rounded half-up.
    """
    if isinstance(value, (bool, float)):
        raise TypeError(f"Money must be Decimal, int or str, got {type(value).__name__}")
    try:
        amount = Decimal(value)
    except InvalidOperation as err:
        raise ValueError(f"Not a monetary amount: {value!r}") from err
    if not amount.is_finite():
        raise ValueError(f"Not a monetary amount: {value!r}")
    return int((amount.quantize(_CENT, rounding=ROUND_HALF_UP) * 100).to_integral_value())


def from_minor_units(cents: int) -> Decimal:
    return (Decimal(cents) / _HUNDRED).quantize(_CENT)


def format_minor_units(cents: int, symbol: str = "$") -> str:
    """Format cents for display, e.g. 123456 -> "$1,234.56"."""
    sign = "-" if cents < 0 else ""
    return f"{sign}{symbol}{from_minor_units(abs(cents)):,.2f}"


def compute_platform_fee(gross: int, rate_percent: Decimal) -> int:
    fee = (Decimal(gross) * Decimal(rate_percent) / _HUNDRED).quantize(
        _ONE, rounding=ROUND_HALF_UP
    )
    return int(fee)


def compute_fee_split(gross: int, rate_percent: Decimal | str | int) -> FeeSplit:
    """Split a gross amount into platform fee and seller net.

    Args:
        gross: Gross charge in minor units. Must be a positive int.
        rate_percent: Platform fee rate as a percentage (5 means 5%).

    Raises:
        ValueError: If gross is not a positive int or the rate is out of range.
    """
    if isinstance(gross, bool) or not isinstance(gross, int) or gross <= 0:
        raise ValueError("Amount must be a positive integer of minor units")
    rate = Decimal(rate_percent)
    if rate < 0 or rate >= _HUNDRED:
        raise ValueError(f"Fee rate must be in [0, 100): {rate}")

    platform_fee = compute_platform_fee(gross, rate)
    return FeeSplit(gross=gross, platform_fee=platform_fee, seller_receives=gross - platform_fee)
