from __future__ import annotations

from decimal import Decimal, InvalidOperation

from market_escrow.config import settings


class MoneyError(ValueError):
    pass


def minor_digits(currency: str) -> int:
    try:
        return settings.currencies[currency.upper()]
    except KeyError:
        raise MoneyError(f"Unsupported currency: {currency}") from None


def to_minor(amount: Decimal | int | str, currency: str) -> int:
    """Convert a major-unit amount to integer minor units, rejecting sub-unit precision."""
    digits = minor_digits(currency)
    try:
        value = Decimal(str(amount))
    except InvalidOperation:
        raise MoneyError(f"Invalid amount: {amount!r}") from None
    if not value.is_finite() or value <= 0:
        raise MoneyError("Amount must be positive")
    scaled = value.scaleb(digits)
    if scaled != scaled.to_integral_value():
        raise MoneyError(f"{currency.upper()} supports at most {digits} decimal places")
    return int(scaled)


def to_major(amount: int, currency: str) -> Decimal:
    return Decimal(amount).scaleb(-minor_digits(currency))


def split_shares(amount: int) -> tuple[int, int]:
    """Return ``(buyer_share, seller_share)``; the odd minor unit goes to the seller."""
    buyer_share = amount // 2
    return buyer_share, amount - buyer_share
