"""HTTP client and cached data-fetch helpers for the Ledgerly API.

Queries are cached under tuple keys such as ``("categories", "list", None)``;
mutations invalidate every key sharing the entity prefix.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
import logging
import time
from typing import Any, Callable, Optional

import httpx

from backend.currency_conversion import RateProviderUnavailable, RateTable, normalize_currency

logger = logging.getLogger("ledgerly.api_client")

QueryKey = tuple[Any, ...]

HOUR = 60 * 60
DAY = 24 * HOUR


class ApiError(RuntimeError):
    def __init__(self, status_code: int, detail: str) -> None:
        super().__init__(f"{status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail


class ApiClient:
    def __init__(
        self,
        base_url: str,
        user_id: int | None = None,
        transport: httpx.BaseTransport | None = None,
        timeout: float = 10.0,
    ) -> None:
        self.user_id = user_id
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            transport=transport,
            timeout=timeout,
            headers={"Content-Type": "application/json"},
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "ApiClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _headers(self) -> dict[str, str]:
        if self.user_id is None:
            return {}
        return {"x-user-id": str(self.user_id)}

    def request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> Any:
        if params:
            params = {key: value for key, value in params.items() if value is not None}
        response = self._client.request(
            method, path, params=params or None, json=json, headers=self._headers()
        )
        if response.is_error:
            try:
                detail = response.json().get("detail", response.text)
            except (ValueError, AttributeError):
                detail = response.text
            logger.debug("%s %s failed with %s", method, path, response.status_code)
            raise ApiError(response.status_code, str(detail))
        if not response.content:
            return None
        return response.json()

    def get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        return self.request("GET", path, params=params)

    def post(self, path: str, data: Any = None, params: dict[str, Any] | None = None) -> Any:
        return self.request("POST", path, params=params, json=data)

    def put(self, path: str, data: Any = None) -> Any:
        return self.request("PUT", path, json=data)

    def delete(self, path: str) -> Any:
        return self.request("DELETE", path)


@dataclass
class _CacheEntry:
    value: Any
    stored_at: float


class QueryCache:
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._entries: dict[QueryKey, _CacheEntry] = {}
        self._clock = clock

    def __contains__(self, key: QueryKey) -> bool:
        return key in self._entries

    def get(self, key: QueryKey) -> Any:
        entry = self._entries.get(key)
        return entry.value if entry else None

    def set(self, key: QueryKey, value: Any) -> None:
        self._entries[key] = _CacheEntry(value=value, stored_at=self._clock())

    def fetch(self, key: QueryKey, fetcher: Callable[[], Any], stale_time: float = 0) -> Any:
        entry = self._entries.get(key)
        if entry is not None and self._clock() - entry.stored_at < stale_time:
            return entry.value
        value = fetcher()
        self.set(key, value)
        return value

    def invalidate(self, prefix: QueryKey) -> int:
        stale = [key for key in self._entries if key[: len(prefix)] == prefix]
        for key in stale:
            del self._entries[key]
        return len(stale)


class EntityKeys:
    def __init__(self, entity: str) -> None:
        self.all: QueryKey = (entity,)

    def lists(self) -> QueryKey:
        return self.all + ("list",)

    def list(self, *filters: Any) -> QueryKey:
        return self.lists() + filters

    def detail(self, entity_id: int) -> QueryKey:
        return self.all + ("detail", entity_id)


category_keys = EntityKeys("categories")
account_keys = EntityKeys("accounts")
transaction_keys = EntityKeys("transactions")


class ExchangeRateKeys:
    all: QueryKey = ("exchange-rates",)

    def currencies(self) -> QueryKey:
        return self.all + ("currencies",)

    def rate(self, from_currency: str, to_currency: str) -> QueryKey:
        return self.all + ("rate", from_currency, to_currency)

    def all_rates(self, base_currency: str) -> QueryKey:
        return self.all + ("all", base_currency)

    def history(self, from_currency: str, to_currency: str, days: int) -> QueryKey:
        return self.all + ("history", from_currency, to_currency, days)


exchange_rate_keys = ExchangeRateKeys()


class EntityHooks:
    """List/detail queries and invalidating mutations for one REST resource."""

    path: str = ""
    keys: EntityKeys

    def __init__(self, client: ApiClient, cache: QueryCache | None = None) -> None:
        self.client = client
        self.cache = cache or QueryCache()

    def get(self, entity_id: int) -> dict:
        return self.cache.fetch(
            self.keys.detail(entity_id),
            lambda: self.client.get(f"{self.path}/{entity_id}"),
        )

    def create(self, data: dict) -> dict:
        created = self.client.post(self.path, data)
        self.cache.invalidate(self.keys.all)
        return created

    def update(self, entity_id: int, data: dict) -> dict:
        updated = self.client.put(f"{self.path}/{entity_id}", data)
        self.cache.invalidate(self.keys.all)
        self.cache.invalidate(self.keys.detail(entity_id))
        return updated

    def delete(self, entity_id: int) -> None:
        self.client.delete(f"{self.path}/{entity_id}")
        self.cache.invalidate(self.keys.all)


class CategoryHooks(EntityHooks):
    path = "/categories"
    keys = category_keys

    def list(self, group: Optional[str] = None) -> list[dict]:
        return self.cache.fetch(
            self.keys.list(group),
            lambda: [
                item
                for item in self.client.get(self.path)
                if group is None or item.get("group") == group
            ],
        )


class AccountHooks(EntityHooks):
    path = "/accounts"
    keys = account_keys

    def list(self) -> list[dict]:
        return self.cache.fetch(self.keys.list(), lambda: self.client.get(self.path))


class TransactionHooks(EntityHooks):
    path = "/transactions"
    keys = transaction_keys

    def list(self, account_id: Optional[int] = None) -> list[dict]:
        return self.cache.fetch(
            self.keys.list(account_id),
            lambda: self.client.get(self.path, params={"account_id": account_id}),
        )


class ExchangeRateHooks:
    path = "/exchange-rates"

    def __init__(self, client: ApiClient, cache: QueryCache | None = None) -> None:
        self.client = client
        self.cache = cache or QueryCache()

    def supported_currencies(self) -> list[str]:
        payload = self.cache.fetch(
            exchange_rate_keys.currencies(),
            lambda: self.client.get(f"{self.path}/currencies"),
            stale_time=DAY,
        )
        return list(payload.get("currencies", []))

    def rate(self, from_currency: str, to_currency: str) -> Decimal:
        source = normalize_currency(from_currency)
        target = normalize_currency(to_currency)
        if source == target:
            return Decimal("1")
        payload = self.cache.fetch(
            exchange_rate_keys.rate(source, target),
            lambda: self.client.get(f"{self.path}/rate", params={"from": source, "to": target}),
            stale_time=HOUR,
        )
        return Decimal(str(payload["rate"]))

    def all_rates(self, base_currency: str = "USD") -> dict:
        base = normalize_currency(base_currency)
        return self.cache.fetch(
            exchange_rate_keys.all_rates(base),
            lambda: self.client.get(f"{self.path}/all", params={"base": base}),
            stale_time=HOUR,
        )

    def history(self, from_currency: str, to_currency: str, days: int = 30) -> list[dict]:
        source = normalize_currency(from_currency)
        target = normalize_currency(to_currency)
        payload = self.cache.fetch(
            exchange_rate_keys.history(source, target, days),
            lambda: self.client.get(
                f"{self.path}/history", params={"from": source, "to": target, "days": days}
            ),
            stale_time=HOUR,
        )
        return list(payload.get("history", []))

    def convert(self, amount: Decimal, from_currency: str, to_currency: str) -> dict:
        return self.client.get(
            f"{self.path}/convert",
            params={"amount": str(amount), "from": from_currency, "to": to_currency},
        )

    def refresh(self) -> dict:
        result = self.client.post(f"{self.path}/refresh")
        self.cache.invalidate(exchange_rate_keys.all)
        return result

    def get_rates(self, base_currency: str = "USD") -> RateTable:
        """Rate table for ``base_currency``, usable as a ``CurrencyStore`` rate source."""
        try:
            payload = self.all_rates(base_currency)
        except (ApiError, httpx.HTTPError) as exc:
            raise RateProviderUnavailable(f"Exchange rates unavailable: {exc}") from exc
        base = normalize_currency(payload.get("base_currency", base_currency))
        rates = {item["currency"]: Decimal(str(item["rate"])) for item in payload.get("rates", [])}
        rates[base] = Decimal("1")
        return RateTable(rates, base=base)
