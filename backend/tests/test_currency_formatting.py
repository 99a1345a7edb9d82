import unittest
from decimal import Decimal

from backend.currency_formatting import (
    SUPPORTED_CURRENCIES,
    currency_name,
    currency_symbol,
    format_currency,
    is_supported_currency,
)


class CurrencyFormattingTests(unittest.TestCase):
    def test_formats_with_symbol_and_grouping(self) -> None:
        self.assertEqual(format_currency(Decimal("100"), "EUR"), "€100.00")
        self.assertEqual(format_currency(Decimal("1234.5"), "USD"), "$1,234.50")
        self.assertEqual(format_currency(Decimal("1000"), "JPY"), "¥1,000.00")

    def test_negative_amounts_put_sign_before_symbol(self) -> None:
        self.assertEqual(format_currency(Decimal("-5.5"), "USD"), "-$5.50")

    def test_rounds_half_up_to_cents(self) -> None:
        self.assertEqual(format_currency(Decimal("2.345"), "GBP"), "£2.35")
        self.assertEqual(format_currency(Decimal("-0.004"), "USD"), "$0.00")

    def test_unknown_code_uses_code_prefix(self) -> None:
        self.assertEqual(format_currency(Decimal("3"), "sek"), "SEK 3.00")

    def test_accepts_raw_strings(self) -> None:
        self.assertEqual(format_currency("19.99", "CAD"), "C$19.99")

    def test_supported_list_is_closed(self) -> None:
        self.assertEqual(
            SUPPORTED_CURRENCIES,
            ("USD", "EUR", "GBP", "MXN", "CAD", "AUD", "JPY", "CHF", "BRL", "COP"),
        )
        self.assertTrue(is_supported_currency(" eur "))
        self.assertFalse(is_supported_currency("CNY"))
        self.assertFalse(is_supported_currency("euro"))

    def test_symbol_and_name_lookup(self) -> None:
        self.assertEqual(currency_symbol("brl"), "R$")
        self.assertEqual(currency_name("COP"), "Colombian Peso")
        self.assertEqual(currency_symbol("XYZ"), "XYZ")


if __name__ == "__main__":
    unittest.main()
