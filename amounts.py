from decimal import Decimal, DecimalException, ROUND_HALF_UP
from typing import Optional

from errors import InvalidAmount


CURRENCY_SYMBOLS = ("€", "$", "£", "¥", "₴", "zł")

# Ten billion in major units.
MAX_CENTS = 10**12


def parse_amount(
    value: str, *, symbol: Optional[str] = None, allow_negative: bool = False
) -> int:
    """Parse a user-entered amount into minor units.

    Accepts either decimal separator ("12,50", "12.50"). Spaces are ignored
    ("1 234,56"); dot or comma grouping is recognised only when both
    separators are present ("1.234,56", "1,234.56"). A lone comma is always
    the decimal separator, so "1,234" reads as 1.234 and rounds to 123 cents.
    Currency symbols are stripped.
    """
    clean = value.strip()
    for sym in (symbol, *CURRENCY_SYMBOLS):
        if sym:
            clean = clean.replace(sym, "")
    clean = clean.replace(" ", "").replace(" ", "")
    clean = clean.replace(",", ".")
    if clean.count(".") > 1:
        parts = clean.split(".")
        clean = "".join(parts[:-1]) + "." + parts[-1]
    try:
        amount = Decimal(clean) * 100
        if not amount.is_finite() or abs(amount) > MAX_CENTS:
            raise InvalidAmount(f"Invalid amount: {value!r}")
        cents = int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    except DecimalException as exc:
        raise InvalidAmount(f"Invalid amount: {value!r}") from exc
    if cents < 0 and not allow_negative:
        raise InvalidAmount("Amount must be positive")
    return cents


def format_amount(cents: int, currency_code: Optional[str] = None) -> str:
    text = f"{cents / 100:,.2f}".replace(",", " ").replace(".", ",")
    if currency_code:
        return f"{text} {currency_code}"
    return text
