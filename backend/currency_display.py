"""Presentational pieces for monetary values.

Every component reads the preference and rates from a ``CurrencyStore`` at
render time and renders plain HTML fragments.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from html import escape
from typing import Callable, Optional

from backend.currency_conversion import ConversionFailure, normalize_currency
from backend.currency_formatting import (
    CURRENCY_NAMES,
    CURRENCY_SYMBOLS,
    SUPPORTED_CURRENCIES,
    format_currency,
)
from backend.currency_store import CurrencyStore


@dataclass(frozen=True)
class AmountDisplay:
    text: str
    value: Decimal
    currency: str
    original_currency: str
    was_converted: bool
    title: Optional[str] = None


@dataclass(frozen=True)
class ConvertedAmount:
    amount: Decimal
    currency: str
    class_name: Optional[str] = None
    show_original: bool = True
    prefix: str = ""

    def resolve(self, store: CurrencyStore) -> AmountDisplay:
        currency = normalize_currency(self.currency)
        original_text = f"{self.prefix}{format_currency(self.amount, currency)}"
        if currency == store.preferred_currency:
            return AmountDisplay(
                text=original_text,
                value=self.amount,
                currency=currency,
                original_currency=currency,
                was_converted=False,
            )

        converted = store.convert_amount(self.amount, currency)
        if isinstance(converted, ConversionFailure):
            return AmountDisplay(
                text=original_text,
                value=self.amount,
                currency=currency,
                original_currency=currency,
                was_converted=False,
            )

        return AmountDisplay(
            text=f"{self.prefix}{store.format_amount(converted)}",
            value=converted,
            currency=store.preferred_currency,
            original_currency=currency,
            was_converted=True,
            title=f"Original: {original_text}" if self.show_original else None,
        )

    def render(self, store: CurrencyStore) -> str:
        display = self.resolve(store)
        classes = [self.class_name] if self.class_name else []
        if display.title:
            classes.append("converted-amount")
        attrs = ""
        if classes:
            attrs += f' class="{escape(" ".join(classes))}"'
        if display.title:
            attrs += f' title="{escape(display.title)}"'
        return f"<span{attrs}>{escape(display.text)}</span>"


@dataclass(frozen=True)
class ConvertedAmountInfo:
    converted: Decimal
    formatted: str
    was_converted: bool
    original_currency: str


def converted_amount_info(store: CurrencyStore, amount: Decimal, currency: str) -> ConvertedAmountInfo:
    currency = normalize_currency(currency)
    if currency == store.preferred_currency:
        return ConvertedAmountInfo(
            converted=amount,
            formatted=store.format_amount(amount),
            was_converted=False,
            original_currency=currency,
        )

    converted = store.convert_amount(amount, currency)
    if isinstance(converted, ConversionFailure):
        return ConvertedAmountInfo(
            converted=amount,
            formatted=format_currency(amount, currency),
            was_converted=False,
            original_currency=currency,
        )
    return ConvertedAmountInfo(
        converted=converted,
        formatted=store.format_amount(converted),
        was_converted=True,
        original_currency=currency,
    )


@dataclass(frozen=True)
class CurrencyOption:
    code: str
    symbol: str
    name: str


class CurrencySelector:
    def __init__(self, compact: bool = False, currencies: tuple[str, ...] = SUPPORTED_CURRENCIES) -> None:
        self.compact = compact
        self.currencies = currencies

    def options(self) -> list[CurrencyOption]:
        return [
            CurrencyOption(
                code=code,
                symbol=CURRENCY_SYMBOLS.get(code, code),
                name=CURRENCY_NAMES.get(code, code),
            )
            for code in self.currencies
        ]

    def select(self, store: CurrencyStore, currency: str) -> None:
        store.set_preferred_currency(currency)

    def render(self, store: CurrencyStore) -> str:
        items = []
        for option in self.options():
            selected = " selected" if option.code == store.preferred_currency else ""
            label = f"{option.symbol} {option.code}"
            if not self.compact:
                label += f" - {option.name}"
            items.append(
                f'<option value="{escape(option.code)}"{selected}>{escape(label)}</option>'
            )
        css = "currency-selector compact" if self.compact else "currency-selector"
        return f'<select class="{css}" name="currency">{"".join(items)}</select>'


class CurrencyBadge:
    def __init__(self) -> None:
        self.markup = ""

    def render(self, store: CurrencyStore) -> str:
        currency = store.preferred_currency
        return (
            '<div class="currency-badge">'
            f"<span>{escape(CURRENCY_SYMBOLS.get(currency, currency))}</span>"
            f"<span>{escape(currency)}</span>"
            "</div>"
        )

    def watch(self, store: CurrencyStore) -> Callable[[], None]:
        """Keep ``markup`` in step with ``store``; returns the unsubscribe callable."""

        def _rerender(current: CurrencyStore) -> None:
            self.markup = self.render(current)

        _rerender(store)
        return store.subscribe(_rerender)
