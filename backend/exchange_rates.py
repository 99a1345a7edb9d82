"""Persisted exchange-rate snapshots.

Rates are fetched from a provider, stored with their fetch time and served
from the database while they are fresh. When a live fetch fails the newest
known rate is used instead, however old.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
import logging
from typing import Callable, Iterable, Protocol

from sqlalchemy import insert, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from backend.currency_conversion import (
    RateProviderUnavailable,
    RateTable,
    normalize_currency,
)
from backend.currency_formatting import KNOWN_CURRENCIES
from backend.database import exchange_rates

logger = logging.getLogger("ledgerly.exchange_rates")

REFRESH_BASES = ("USD", "EUR")
RATE_QUANTUM = Decimal("0.00000001")
MAX_HISTORY_DAYS = 365


class RateProvider(Protocol):
    source: str

    def get_rates(self, base_currency: str = "USD") -> RateTable: ...


@dataclass(frozen=True)
class StoredRate:
    base_currency: str
    target_currency: str
    rate: Decimal
    source: str
    fetched_at: datetime


@dataclass(frozen=True)
class RatePoint:
    date: datetime
    rate: Decimal


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _coerce_rate(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def _stored_from_row(row) -> StoredRate:
    return StoredRate(
        base_currency=row["base_currency"],
        target_currency=row["target_currency"],
        rate=_coerce_rate(row["rate"]),
        source=row["source"],
        fetched_at=row["fetched_at"],
    )


class ExchangeRateService:
    def __init__(
        self,
        engine: Engine,
        provider: RateProvider,
        cache_hours: int = 1,
        retention_days: int = 30,
        currencies: Iterable[str] = KNOWN_CURRENCIES,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.engine = engine
        self.provider = provider
        self.cache_window = timedelta(hours=cache_hours)
        self.retention = timedelta(days=retention_days)
        self.currencies = tuple(currencies)
        self.clock = clock

    def get_supported_currencies(self) -> list[str]:
        return list(self.currencies)

    def get_rate(self, base_currency: str, target_currency: str) -> Decimal | None:
        stored = self.get_stored_rate(base_currency, target_currency)
        return stored.rate if stored is not None else None

    def get_stored_rate(self, base_currency: str, target_currency: str) -> StoredRate | None:
        """Newest usable rate for a pair, along with when and where it was fetched."""
        base = normalize_currency(base_currency)
        target = normalize_currency(target_currency)
        if base == target:
            return StoredRate(base, target, Decimal("1"), "identity", self.clock())

        pair = (
            exchange_rates.c.base_currency == base,
            exchange_rates.c.target_currency == target,
        )
        newest_first = exchange_rates.c.fetched_at.desc()
        cutoff = self.clock() - self.cache_window
        with self.engine.begin() as conn:
            cached = conn.execute(
                select(exchange_rates)
                .where(*pair, exchange_rates.c.fetched_at >= cutoff)
                .order_by(newest_first)
                .limit(1)
            ).mappings().first()
        if cached is not None:
            return _stored_from_row(cached)

        fresh = self._fetch_pair(base, target)
        if fresh is not None:
            self._save_rates([fresh])
            return replace(fresh, rate=fresh.rate.quantize(RATE_QUANTUM))

        with self.engine.begin() as conn:
            last_known = conn.execute(
                select(exchange_rates).where(*pair).order_by(newest_first).limit(1)
            ).mappings().first()
        if last_known is None:
            return None
        logger.info("Serving expired %s->%s rate", base, target)
        return _stored_from_row(last_known)

    def get_all_rates_for_base(self, base_currency: str) -> list[StoredRate]:
        base = normalize_currency(base_currency)
        cutoff = self.clock() - self.cache_window
        with self.engine.begin() as conn:
            rows = conn.execute(
                select(exchange_rates)
                .where(
                    exchange_rates.c.base_currency == base,
                    exchange_rates.c.fetched_at >= cutoff,
                )
                .order_by(
                    exchange_rates.c.target_currency.asc(),
                    exchange_rates.c.fetched_at.desc(),
                )
            ).mappings().all()

        latest: dict[str, StoredRate] = {}
        for row in rows:
            if row["target_currency"] in latest:
                continue
            latest[row["target_currency"]] = _stored_from_row(row)
        return list(latest.values())

    def rate_table(self, base_currency: str = "USD") -> RateTable | None:
        base = normalize_currency(base_currency)
        stored = self.get_all_rates_for_base(base)
        if not stored:
            return None
        rates = {item.target_currency: item.rate for item in stored}
        rates[base] = Decimal("1")
        newest = max(item.fetched_at for item in stored)
        return RateTable(rates, base=base, fetched_at=newest.replace(tzinfo=timezone.utc))

    def get_rate_history(
        self, base_currency: str, target_currency: str, days: int = 30
    ) -> list[RatePoint]:
        if days < 1 or days > MAX_HISTORY_DAYS:
            raise ValueError(f"Days must be between 1 and {MAX_HISTORY_DAYS}.")
        base = normalize_currency(base_currency)
        target = normalize_currency(target_currency)
        start = self.clock() - timedelta(days=days)
        with self.engine.begin() as conn:
            rows = conn.execute(
                select(exchange_rates.c.fetched_at, exchange_rates.c.rate)
                .where(
                    exchange_rates.c.base_currency == base,
                    exchange_rates.c.target_currency == target,
                    exchange_rates.c.fetched_at >= start,
                )
                .order_by(exchange_rates.c.fetched_at.asc())
            ).mappings().all()
        return [RatePoint(date=row["fetched_at"], rate=_coerce_rate(row["rate"])) for row in rows]

    def refresh_all_rates(self) -> int:
        logger.info("Refreshing exchange rates for %s", ", ".join(REFRESH_BASES))
        stored = 0
        for base in REFRESH_BASES:
            table = self._fetch_table(base)
            if table is None:
                continue
            fetched_at = self.clock()
            rows = [
                StoredRate(
                    base_currency=base,
                    target_currency=target,
                    rate=table[target],
                    source=getattr(self.provider, "source", "unknown"),
                    fetched_at=fetched_at,
                )
                for target in self.currencies
                if target != base and target in table
            ]
            stored += self._save_rates(rows)
        logger.info("Refreshed %d exchange rates", stored)
        return stored

    def cleanup_old_rates(self) -> int:
        cutoff = self.clock() - self.retention
        with self.engine.begin() as conn:
            result = conn.execute(
                exchange_rates.delete().where(exchange_rates.c.fetched_at < cutoff)
            )
        logger.info("Cleaned up %d old exchange rates", result.rowcount)
        return result.rowcount

    def _fetch_table(self, base: str) -> RateTable | None:
        try:
            return self.provider.get_rates(base)
        except (RateProviderUnavailable, ValueError) as exc:
            logger.warning("Failed to fetch rates for %s: %s", base, exc)
            return None

    def _fetch_pair(self, base: str, target: str) -> StoredRate | None:
        table = self._fetch_table(base)
        if table is None:
            return None
        if target not in table:
            logger.warning("No rate found for %s -> %s", base, target)
            return None
        return StoredRate(
            base_currency=base,
            target_currency=target,
            rate=table[target],
            source=getattr(self.provider, "source", "unknown"),
            fetched_at=self.clock(),
        )

    def _save_rates(self, rates: Iterable[StoredRate]) -> int:
        saved = 0
        for item in rates:
            try:
                with self.engine.begin() as conn:
                    conn.execute(
                        insert(exchange_rates).values(
                            base_currency=item.base_currency,
                            target_currency=item.target_currency,
                            rate=item.rate.quantize(RATE_QUANTUM),
                            source=item.source,
                            fetched_at=item.fetched_at,
                        )
                    )
            except IntegrityError:
                # Same pair already stored for this fetch.
                continue
            saved += 1
        return saved
