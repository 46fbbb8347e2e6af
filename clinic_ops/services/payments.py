"""Money amounts are kept as integer cents; these convert at the edges."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation

MAX_MONEY_CENTS = 10_000_000 * 100


def parse_money_to_cents(text: str) -> int:
    """``"1,250.5"`` -> ``125050``. Blank text is zero; anything else malformed raises."""

    cleaned = (text or "").strip().replace(",", "")
    if not cleaned:
        return 0
    try:
        amount = Decimal(cleaned)
    except InvalidOperation as exc:
        raise ValueError(f"invalid money amount: {text!r}") from exc
    if not amount.is_finite() or amount.as_tuple().exponent < -2:
        raise ValueError(f"invalid money amount: {text!r}")
    return int(amount * 100)


def cents_guard(value_cents: int | None, label: str) -> int:
    if value_cents is None:
        return 0
    if value_cents < 0:
        raise ValueError(f"{label} cannot be negative.")
    if value_cents > MAX_MONEY_CENTS:
        raise ValueError(f"{label} too large (max 10,000,000.00).")
    return int(value_cents)


def money(cents: int | None) -> str:
    return f"{Decimal(cents or 0) / 100:.2f}"
