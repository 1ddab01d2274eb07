"""Currency metadata, formatting and conversion helpers."""

import math
from dataclasses import dataclass
from enum import Enum

DEFAULT_CURRENCY = "MYR"


class SymbolPosition(str, Enum):
    BEFORE = "before"
    AFTER = "after"


@dataclass(frozen=True)
class CurrencyConfig:
    code: str
    symbol: str
    name: str
    decimals: int = 2
    position: SymbolPosition = SymbolPosition.BEFORE


CURRENCIES: dict[str, CurrencyConfig] = {
    "MYR": CurrencyConfig("MYR", "MYR", "Malaysian Ringgit"),
    "USD": CurrencyConfig("USD", "$", "US Dollar"),
    "EUR": CurrencyConfig("EUR", "€", "Euro", position=SymbolPosition.AFTER),
    "GBP": CurrencyConfig("GBP", "£", "British Pound"),
    "SGD": CurrencyConfig("SGD", "S$", "Singapore Dollar"),
    "JPY": CurrencyConfig("JPY", "¥", "Japanese Yen", decimals=0),
    "CNY": CurrencyConfig("CNY", "¥", "Chinese Yuan"),
    "THB": CurrencyConfig("THB", "฿", "Thai Baht"),
}

# Symbols and local abbreviations seen on receipts
_SYMBOL_ALIASES = {
    "RM": "MYR",
    "$": "USD",
    "US$": "USD",
    "S$": "SGD",
    "€": "EUR",
    "£": "GBP",
    "¥": "JPY",
    "RMB": "CNY",
    "฿": "THB",
    "RP": "IDR",
    "₱": "PHP",
    "₫": "VND",
    "₩": "KRW",
    "₹": "INR",
}


def get_config(code: str) -> CurrencyConfig:
    """Config for ``code``; unknown codes use the code as symbol, 2 decimals."""
    normalized = code.upper()
    return CURRENCIES.get(normalized) or CurrencyConfig(normalized, normalized, normalized)


def normalize_code(currency: str | None, fallback: str = DEFAULT_CURRENCY) -> str:
    if currency is None or not currency.strip():
        return fallback
    upper = currency.strip().upper()
    return _SYMBOL_ALIASES.get(upper, upper)


def format_amount(
    amount: float | None,
    code: str,
    show_symbol: bool = True,
    show_code: bool = False,
    compact: bool = False,
) -> str:
    """Format ``amount`` using the currency's symbol, decimals and position.

    Args:
        amount: Amount to format; None, NaN and infinities format as zero
        code: Currency code
        show_symbol: Include the currency symbol
        show_code: Append the ISO code
        compact: Abbreviate thousands and millions as K and M

    Returns:
        The formatted string, e.g. ``$1,234.50`` or ``12.00 €``
    """
    config = get_config(code)
    if amount is None or math.isnan(amount) or math.isinf(amount):
        amount = 0.0

    if compact and abs(amount) >= 1_000_000:
        number = f"{amount / 1_000_000:.1f}M"
    elif compact and abs(amount) >= 1_000:
        number = f"{amount / 1_000:.1f}K"
    else:
        number = f"{amount:,.{config.decimals}f}"

    result = number
    if show_symbol and config.symbol:
        if config.position is SymbolPosition.AFTER:
            result = f"{number} {config.symbol}"
        elif config.symbol.isalpha():
            result = f"{config.symbol} {number}"
        else:
            result = f"{config.symbol}{number}"
    if show_code:
        result = f"{result} {config.code}"
    return result


def round_amount(amount: float, code: str) -> float:
    return round(amount, get_config(code).decimals)


def convert(amount: float, rate: float, to_code: str) -> float:
    return round_amount(amount * rate, to_code)
