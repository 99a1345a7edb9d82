"""Session-wide display currency state.

``CurrencyStore`` owns the preferred display currency and the current rate
table. Views read from it and subscribe to it; nothing else keeps a copy of
the preference.
"""

from __future__ import annotations

from decimal import Decimal
import json
import logging
from pathlib import Path
from typing import Callable, Optional, Protocol

from backend.currency_conversion import (
    BASE_CURRENCY,
    ConversionFailure,
    RateProviderUnavailable,
    RatesUnavailable,
    RateTable,
    convert,
    normalize_currency,
)
from backend.currency_formatting import (
    SUPPORTED_CURRENCIES,
    currency_name,
    currency_symbol,
    format_currency,
)

logger = logging.getLogger("ledgerly.currency_store")

PREFERRED_CURRENCY_KEY = "preferredCurrency"

Listener = Callable[["CurrencyStore"], None]


class PreferenceStorage(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...


class RateSource(Protocol):
    def get_rates(self, base_currency: str = BASE_CURRENCY) -> RateTable: ...


class InMemoryPreferenceStorage:
    def __init__(self, values: dict[str, str] | None = None) -> None:
        self._values = dict(values or {})

    def get(self, key: str) -> Optional[str]:
        return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        self._values[key] = value


class JsonFilePreferenceStorage:
    """Key-value preferences kept in a small JSON document on disk."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def _load(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable preferences file %s", self.path)
            return {}
        return payload if isinstance(payload, dict) else {}

    def get(self, key: str) -> Optional[str]:
        value = self._load().get(key)
        return value if isinstance(value, str) else None

    def set(self, key: str, value: str) -> None:
        payload = self._load()
        payload[key] = value
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(payload, indent=2), encoding="utf-8")


class CurrencyStore:
    def __init__(
        self,
        storage: PreferenceStorage | None = None,
        default_currency: str = BASE_CURRENCY,
    ) -> None:
        self._storage = storage or InMemoryPreferenceStorage()
        self._listeners: list[Listener] = []
        self._rates: RateTable | None = None
        self._issued_token = 0
        self._applied_token = 0
        self._preferred_currency = self._load_preference(default_currency)

    def _load_preference(self, default_currency: str) -> str:
        saved = self._storage.get(PREFERRED_CURRENCY_KEY)
        if saved:
            try:
                normalized = normalize_currency(saved)
            except ValueError:
                normalized = None
            if normalized in SUPPORTED_CURRENCIES:
                return normalized
            logger.info("Ignoring unsupported saved currency %r", saved)
        return normalize_currency(default_currency)

    @property
    def preferred_currency(self) -> str:
        return self._preferred_currency

    @property
    def rates(self) -> RateTable | None:
        return self._rates

    @property
    def is_loading(self) -> bool:
        return self._rates is None

    def set_preferred_currency(self, currency: str) -> None:
        normalized = normalize_currency(currency)
        if normalized not in SUPPORTED_CURRENCIES:
            raise ValueError(f"Unsupported display currency: {normalized}")
        if normalized == self._preferred_currency:
            return
        self._preferred_currency = normalized
        self._storage.set(PREFERRED_CURRENCY_KEY, normalized)
        self._notify()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self)

    def begin_rate_fetch(self) -> int:
        self._issued_token += 1
        return self._issued_token

    def apply_rates(self, rates: RateTable, token: int | None = None) -> bool:
        """Install a fetched table unless a newer fetch has already landed."""
        if token is None:
            token = self.begin_rate_fetch()
        if token < self._applied_token:
            logger.debug("Discarding stale rate table from fetch %d", token)
            return False
        self._applied_token = token
        self._rates = rates
        self._notify()
        return True

    def convert_amount(self, amount: Decimal, from_currency: str) -> Decimal | ConversionFailure:
        if normalize_currency(from_currency) == self._preferred_currency:
            return amount
        if self._rates is None:
            return RatesUnavailable()
        return convert(amount, from_currency, self._preferred_currency, self._rates)

    def format_amount(self, amount: Decimal, currency: str | None = None) -> str:
        return format_currency(amount, currency or self._preferred_currency)

    def convert_and_format(self, amount: Decimal, from_currency: str) -> str:
        converted = self.convert_amount(amount, from_currency)
        if isinstance(converted, ConversionFailure):
            return format_currency(amount, from_currency)
        return format_currency(converted, self._preferred_currency)

    def currency_symbol(self, currency: str | None = None) -> str:
        return currency_symbol(currency or self._preferred_currency)

    def currency_name(self, currency: str | None = None) -> str:
        return currency_name(currency or self._preferred_currency)


def refresh_rates(store: CurrencyStore, source: RateSource, base_currency: str = BASE_CURRENCY) -> bool:
    token = store.begin_rate_fetch()
    try:
        rates = source.get_rates(base_currency)
    except RateProviderUnavailable as exc:
        logger.warning("Rate refresh failed, keeping previous table: %s", exc)
        return False
    return store.apply_rates(rates, token)
