"""Display formatting for order documents.

Prices, phone numbers and courier names are stored raw and rendered in the
Brazilian formats the pharmacy apps show.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Union


def format_price(amount: Optional[Union[Decimal, float, int]]) -> Optional[str]:
    """
    Render an amount in reais.

    Example:
        >>> format_price(Decimal("1234.5"))
        'R$ 1.234,50'
    """
    if amount is None:
        return None
    quantized = Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    integer_part, _, cents = f"{abs(quantized):.2f}".partition(".")
    grouped = f"{int(integer_part):,}".replace(",", ".")
    sign = "-" if quantized < 0 else ""
    return f"{sign}R$ {grouped},{cents}"


def format_phone(phone: Optional[str]) -> Optional[str]:
    """
    Format an 11-digit mobile number as ``(XX) XXXXX-XXXX``.

    Other inputs are returned stripped and otherwise untouched.
    """
    if phone is None:
        return None
    digits = "".join(ch for ch in phone if ch.isdigit())
    if len(digits) == 11:
        return f"({digits[:2]}) {digits[2:7]}-{digits[7:]}"
    return phone.strip()


def short_name(full_name: Optional[str]) -> Optional[str]:
    """First two names of a person, as shown to customers."""
    if not full_name:
        return full_name
    return " ".join(full_name.split()[:2])
