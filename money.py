from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

from errors import ValidationFailed

CENT = Decimal("0.01")

Amount = Union[Decimal, str, int, float]


def to_cents(value: Amount) -> int:
    """Round a currency amount to whole cents (half-up) and return it as an int."""
    if isinstance(value, float):
        value = str(value)
    try:
        amount = Decimal(value)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValidationFailed("Invalid amount") from exc
    if not amount.is_finite():
        raise ValidationFailed("Invalid amount")
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


def allocate_cents(total_cents: int, count: int) -> list[int]:
    """
    Split ``total_cents`` into ``count`` positive parts that sum back exactly.

    Every part gets the floor share; the leftover cents go one each to the
    first positions, so 10000 over 7 yields four parts of 1429 then three of 1428.
    """
    if count < 1:
        raise ValidationFailed("Installment count must be at least 1")
    if total_cents <= 0:
        raise ValidationFailed("Amount must be positive")
    if total_cents < count:
        raise ValidationFailed("Amount is too small to split into that many parts")

    base, remainder = divmod(total_cents, count)
    return [base + 1 if index < remainder else base for index in range(count)]


def allocate(total: Amount, count: int) -> list[Decimal]:
    return [from_cents(part) for part in allocate_cents(to_cents(total), count)]
