"""Unit tests for currency formatting helpers."""

import math

import pytest

from receiptsync.currency import convert, format_amount, get_config, normalize_code, round_amount

pytestmark = pytest.mark.unit


class TestFormatAmount:
    @pytest.mark.parametrize(
        "amount,code,expected",
        [
            (1234.5, "MYR", "MYR 1,234.50"),
            (1234.5, "USD", "$1,234.50"),
            (12, "EUR", "12.00 €"),
            (1234.4, "JPY", "¥1,234"),
            (5, "xyz", "XYZ 5.00"),
            (-20, "GBP", "£-20.00"),
        ],
    )
    def test_symbol_and_decimals(self, amount, code, expected):
        assert format_amount(amount, code) == expected

    @pytest.mark.parametrize("amount", [None, math.nan, math.inf, -math.inf])
    def test_invalid_amounts_format_as_zero(self, amount):
        assert format_amount(amount, "USD") == "$0.00"

    def test_compact(self):
        assert format_amount(1234.5, "MYR", compact=True) == "MYR 1.2K"
        assert format_amount(2_500_000, "USD", compact=True) == "$2.5M"
        assert format_amount(999, "USD", compact=True) == "$999.00"

    def test_symbol_and_code_flags(self):
        assert format_amount(5, "USD", show_symbol=False) == "5.00"
        assert format_amount(5, "USD", show_code=True) == "$5.00 USD"


class TestNormalizeCode:
    @pytest.mark.parametrize(
        "raw,expected",
        [("RM", "MYR"), ("rm", "MYR"), (" usd ", "USD"), ("S$", "SGD"), ("€", "EUR"), ("AUD", "AUD")],
    )
    def test_aliases(self, raw, expected):
        assert normalize_code(raw) == expected

    def test_missing_uses_fallback(self):
        assert normalize_code(None) == "MYR"
        assert normalize_code("  ", fallback="USD") == "USD"


def test_get_config_unknown_code():
    config = get_config("aud")
    assert config.code == "AUD"
    assert config.decimals == 2


def test_rounding_and_conversion():
    assert round_amount(10.456, "USD") == 10.46
    assert round_amount(10.6, "JPY") == 11
    assert convert(100, 0.21, "USD") == 21.0
