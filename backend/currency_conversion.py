from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
import json
import logging
import time
from urllib.error import HTTPError, URLError
from urllib.request import urlopen

logger = logging.getLogger("ledgerly.currency")

BASE_CURRENCY = "USD"

DEFAULT_RATES: dict[str, Decimal] = {
    "USD": Decimal("1"),
    "EUR": Decimal("0.92"),
    "GBP": Decimal("0.79"),
    "MXN": Decimal("17.10"),
    "CAD": Decimal("1.34"),
    "AUD": Decimal("1.52"),
    "JPY": Decimal("147.50"),
    "CHF": Decimal("0.88"),
    "BRL": Decimal("4.95"),
    "COP": Decimal("3950"),
    "CNY": Decimal("7.18"),
    "ARS": Decimal("350"),
    "CLP": Decimal("880"),
    "PEN": Decimal("3.72"),
}


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def parse_amount(value: Decimal | int | float | str) -> Decimal:
    """Parse a raw amount into the canonical ``Decimal`` used by conversions."""
    if isinstance(value, bool):
        raise ValueError("Amount must be numeric.")
    if isinstance(value, Decimal):
        parsed = value
    else:
        try:
            parsed = Decimal(str(value).strip())
        except InvalidOperation as exc:
            raise ValueError(f"Invalid amount: {value!r}") from exc
    if not parsed.is_finite():
        raise ValueError("Amount must be finite.")
    return parsed


class RateTable(Mapping[str, Decimal]):
    """Immutable snapshot of exchange rates.

    Each rate is the amount of that currency worth one unit of ``base``.
    """

    __slots__ = ("_rates", "base", "fetched_at")

    def __init__(
        self,
        rates: Mapping[str, Decimal | int | float | str],
        base: str = BASE_CURRENCY,
        fetched_at: datetime | None = None,
    ) -> None:
        parsed: dict[str, Decimal] = {}
        for code, value in rates.items():
            normalized = normalize_currency(code)
            rate = parse_amount(value)
            if rate <= 0:
                raise ValueError(f"Rate for {normalized} must be greater than zero.")
            parsed[normalized] = rate
        self._rates = parsed
        self.base = normalize_currency(base)
        self.fetched_at = fetched_at or datetime.now(timezone.utc)

    def __getitem__(self, code: str) -> Decimal:
        return self._rates[code]

    def __iter__(self) -> Iterator[str]:
        return iter(self._rates)

    def __len__(self) -> int:
        return len(self._rates)

    def __repr__(self) -> str:
        return f"RateTable(base={self.base!r}, rates={self._rates!r})"

    def rate(self, from_currency: str, to_currency: str) -> Decimal | None:
        source = normalize_currency(from_currency)
        target = normalize_currency(to_currency)
        if source == target:
            return Decimal("1")
        if source not in self._rates or target not in self._rates:
            return None
        return self._rates[target] / self._rates[source]

    def rebase(self, base: str) -> RateTable:
        normalized = normalize_currency(base)
        if normalized == self.base:
            return self
        try:
            factor = self._rates[normalized]
        except KeyError as exc:
            raise ValueError(f"Unsupported currency: {normalized}") from exc
        return RateTable(
            {code: value / factor for code, value in self._rates.items()},
            base=normalized,
            fetched_at=self.fetched_at,
        )


@dataclass(frozen=True)
class ConversionFailure:
    """A currency pair that cannot be converted with the rates at hand."""

    reason: str = "conversion_failed"
    currency: str | None = None

    def __bool__(self) -> bool:
        return False

    @property
    def message(self) -> str:
        if self.currency:
            return f"{self.reason}: {self.currency}"
        return self.reason


@dataclass(frozen=True)
class MissingRate(ConversionFailure):
    reason: str = "missing_rate"


@dataclass(frozen=True)
class RatesUnavailable(ConversionFailure):
    reason: str = "rates_unavailable"


def convert(
    amount: Decimal | int,
    from_currency: str,
    to_currency: str,
    rates: Mapping[str, Decimal] | None,
) -> Decimal | ConversionFailure:
    """Convert ``amount`` between two currencies using a rate snapshot.

    Rates may share any base; only their ratio matters. A missing code or
    missing table is reported as a ``ConversionFailure`` value, never raised.
    """
    if isinstance(amount, bool) or not isinstance(amount, (Decimal, int)):
        raise TypeError("Amount must be a Decimal; parse raw input with parse_amount().")
    if isinstance(amount, Decimal) and not amount.is_finite():
        raise ValueError("Amount must be finite.")
    source = normalize_currency(from_currency)
    target = normalize_currency(to_currency)

    if source == target:
        return amount
    if rates is None:
        return RatesUnavailable()

    # Only the two requested entries are read; others may be malformed.
    source_rate = _usable_rate(rates, source)
    if source_rate is None:
        return MissingRate(currency=source)
    target_rate = _usable_rate(rates, target)
    if target_rate is None:
        return MissingRate(currency=target)
    return amount * target_rate / source_rate


def _usable_rate(rates: Mapping[str, Decimal], code: str) -> Decimal | None:
    value = rates.get(code)
    if value is None:
        return None
    try:
        rate = parse_amount(value)
    except ValueError:
        return None
    return rate if rate > 0 else None


@dataclass(frozen=True)
class MonetaryAmount:
    amount: Decimal
    currency: str

    @classmethod
    def parse(cls, amount: Decimal | int | float | str, currency: str) -> MonetaryAmount:
        return cls(amount=parse_amount(amount), currency=normalize_currency(currency))

    def convert_to(
        self, currency: str, rates: Mapping[str, Decimal] | None
    ) -> MonetaryAmount | ConversionFailure:
        result = convert(self.amount, self.currency, currency, rates)
        if isinstance(result, ConversionFailure):
            return result
        return MonetaryAmount(amount=result, currency=normalize_currency(currency))


class RateProviderUnavailable(RuntimeError):
    """Raised when a rate provider cannot fetch live rates."""


@dataclass(frozen=True)
class StaticRateProvider:
    """Deterministic, in-memory FX rates.

    Rates are expressed as target currency per 1 USD.
    """

    rates: Mapping[str, Decimal] = None
    source: str = "static"

    def __post_init__(self) -> None:
        object.__setattr__(self, "rates", RateTable(self.rates or DEFAULT_RATES))

    def get_rates(self, base_currency: str = BASE_CURRENCY, date: date | str | None = None) -> RateTable:
        rebased = self.rates.rebase(base_currency)
        return RateTable(rebased, base=rebased.base)


@dataclass(frozen=True)
class CachedRates:
    rates: RateTable
    expires_at: float | None


@dataclass
class FrankfurterRateProvider:
    base_currency: str = BASE_CURRENCY
    base_url: str = "https://api.frankfurter.app"
    cache_ttl_seconds: int = 60 * 60
    timeout_seconds: float = 10
    source: str = "frankfurter"
    _cache: dict[tuple[str, str], CachedRates] = field(default_factory=dict)

    def get_rates(self, base_currency: str | None = None, date: date | str | None = None) -> RateTable:
        base = normalize_currency(base_currency or self.base_currency)
        date_key = _normalize_rate_date(date)
        cache_key = (base, date_key or "latest")
        cached = self._cache.get(cache_key)
        now = time.monotonic()
        if cached and (cached.expires_at is None or cached.expires_at > now):
            return cached.rates

        rates = self._fetch_rates(base, date_key)
        # Historical rates never change, so only "latest" expires.
        expires_at = None
        if date_key is None:
            expires_at = now + self.cache_ttl_seconds
        self._cache[cache_key] = CachedRates(rates=rates, expires_at=expires_at)
        return rates

    def _fetch_rates(self, base_currency: str, date_key: str | None) -> RateTable:
        endpoint = date_key or "latest"
        url = f"{self.base_url}/{endpoint}?from={base_currency}"
        try:
            with urlopen(url, timeout=self.timeout_seconds) as response:
                payload = json.load(response)
        except (HTTPError, URLError, TimeoutError, json.JSONDecodeError) as exc:
            logger.warning("Frankfurter request failed for %s: %s", url, exc)
            raise RateProviderUnavailable("Frankfurter API unavailable") from exc

        rates = payload.get("rates")
        if not isinstance(rates, dict):
            raise RateProviderUnavailable("Frankfurter response missing rates")

        parsed = {normalize_currency(code): Decimal(str(value)) for code, value in rates.items()}
        parsed[base_currency] = Decimal("1")
        logger.debug("Fetched %d %s rates from Frankfurter", len(parsed), base_currency)
        return RateTable(parsed, base=base_currency)


def _normalize_rate_date(value: date | str | None) -> str | None:
    if value is None:
        return None
    if isinstance(value, date):
        return value.isoformat()
    try:
        parsed = datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError as exc:
        raise ValueError("Date must be in YYYY-MM-DD format.") from exc
    return parsed.isoformat()
