from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union

CENT = Decimal("0.01")


def to_cents(value: Union[Decimal, int, str]) -> int:
    """Convert a decimal amount with at most two fractional digits to cents."""
    try:
        amount = Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    if not amount.is_finite():
        raise ValueError("Invalid amount")
    if amount != amount.quantize(CENT):
        raise ValueError("Amount must have at most two decimal places")
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


def format_money(cents: int, currency: str) -> str:
    return f"{from_cents(cents):,.2f}".replace(",", " ") + f" {currency}"
