from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

from backend.currency_conversion import normalize_currency, parse_amount

# Closed list offered to users as a display currency.
SUPPORTED_CURRENCIES: tuple[str, ...] = (
    "USD",
    "EUR",
    "GBP",
    "MXN",
    "CAD",
    "AUD",
    "JPY",
    "CHF",
    "BRL",
    "COP",
)

# Currencies the exchange-rate service keeps snapshots for.
KNOWN_CURRENCIES: tuple[str, ...] = SUPPORTED_CURRENCIES + ("CNY", "ARS", "CLP", "PEN")

CURRENCY_SYMBOLS: dict[str, str] = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "MXN": "$",
    "CAD": "C$",
    "AUD": "A$",
    "JPY": "¥",
    "CHF": "Fr",
    "CNY": "¥",
    "BRL": "R$",
    "ARS": "$",
    "COP": "$",
    "CLP": "$",
    "PEN": "S/",
}

CURRENCY_NAMES: dict[str, str] = {
    "USD": "US Dollar",
    "EUR": "Euro",
    "GBP": "British Pound",
    "MXN": "Mexican Peso",
    "CAD": "Canadian Dollar",
    "AUD": "Australian Dollar",
    "JPY": "Japanese Yen",
    "CHF": "Swiss Franc",
    "CNY": "Chinese Yuan",
    "BRL": "Brazilian Real",
    "ARS": "Argentine Peso",
    "COP": "Colombian Peso",
    "CLP": "Chilean Peso",
    "PEN": "Peruvian Sol",
}

CENTS = Decimal("0.01")


def is_supported_currency(value: str) -> bool:
    try:
        return normalize_currency(value) in SUPPORTED_CURRENCIES
    except ValueError:
        return False


def currency_symbol(currency: str) -> str:
    return CURRENCY_SYMBOLS.get(currency.strip().upper(), currency)


def currency_name(currency: str) -> str:
    return CURRENCY_NAMES.get(currency.strip().upper(), currency)


def format_currency(amount: Decimal | int | float | str, currency: str) -> str:
    """Format ``amount`` as money, e.g. ``€1,234.50`` or ``-$5.00``."""
    value = parse_amount(amount).quantize(CENTS, rounding=ROUND_HALF_UP)
    code = normalize_currency(currency)
    symbol = CURRENCY_SYMBOLS.get(code, f"{code} ")
    sign = "-" if value < 0 else ""
    return f"{sign}{symbol}{abs(value):,.2f}"
