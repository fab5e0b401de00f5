from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

CENT = Decimal("0.01")


def to_decimal(value: object) -> Decimal | None:
    """Parse numbers, numeric strings (``"1.234,56"`` included) and Decimals.

    Returns None for None, empty strings and anything non-numeric.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(str(value))
    text = str(value).strip()
    if not text:
        return None
    if "," in text:
        text = text.replace(".", "").replace(",", ".")
    try:
        d = Decimal(text)
    except InvalidOperation:
        return None
    return d if d.is_finite() else None


def money(value: Decimal) -> Decimal:
    """Round half-up to cents."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def fmt_decimal(value: Decimal | None) -> str:
    """Format as the gateway expects numeric strings: dot separator, 2 decimals."""
    return f"{money(value or Decimal(0)):.2f}"


def fmt_percent(value: Decimal) -> str:
    """Format a percentage as ``15,25``."""
    return f"{value:.2f}".replace(".", ",")


def format_brl(value: Decimal | str) -> str:
    """Format a numeric value as R$ X.XXX,XX."""
    d = Decimal(value)
    formatted = f"{d:,.2f}".replace(",", "X").replace(".", ",").replace("X", ".")
    return f"R$ {formatted}"


def only_digits(value: object) -> str:
    if value is None:
        return ""
    return "".join(ch for ch in str(value) if ch.isdigit())


def first_present(d: dict, *keys: str) -> object:
    """Return the first non-empty value among *keys* (historical column names)."""
    for key in keys:
        value = d.get(key)
        if value is not None and value != "":
            return value
    return None


def parse_flag(value: object) -> bool | None:
    """Parse booleans stored as bools, ints or ``"true"``/``"false"`` strings. None stays None."""
    if value is None or value == "":
        return None
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "sim", "s")
    return bool(value)
