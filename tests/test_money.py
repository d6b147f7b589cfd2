from __future__ import annotations

from decimal import Decimal

import pytest

from market_escrow.money import MoneyError, minor_digits, split_shares, to_major, to_minor


def test_to_minor_uses_currency_precision():
    assert to_minor("100", "USD") == 10_000
    assert to_minor("1.5", "usd") == 150
    assert to_minor(Decimal("0.000001"), "USDC") == 1
    assert to_minor(2, "SOL") == 2_000_000_000


@pytest.mark.parametrize("amount", ["0", "-1", "NaN", "Infinity", "abc", "1.001"])
def test_to_minor_rejects_bad_amounts(amount):
    with pytest.raises(MoneyError):
        to_minor(amount, "USD")


def test_unknown_currency():
    with pytest.raises(MoneyError):
        minor_digits("XYZ")
    with pytest.raises(MoneyError):
        to_minor("1", "XYZ")


def test_to_major():
    assert to_major(10_050, "USD") == Decimal("100.50")
    assert str(to_major(100_000_000, "USDC")) == "100.000000"


def test_split_shares_sends_remainder_to_seller():
    assert split_shares(10_000) == (5_000, 5_000)
    assert split_shares(10_001) == (5_000, 5_001)
    assert split_shares(1) == (0, 1)
    buyer, seller = split_shares(999_999_999)
    assert buyer + seller == 999_999_999
