import json
import unittest
from decimal import Decimal

import httpx

from backend.api_client import (
    HOUR,
    AccountHooks,
    ApiClient,
    ApiError,
    CategoryHooks,
    ExchangeRateHooks,
    QueryCache,
    TransactionHooks,
    category_keys,
    exchange_rate_keys,
)
from backend.currency_conversion import RateProviderUnavailable, convert
from backend.currency_store import CurrencyStore, refresh_rates


class FakeApi:
    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.categories = [
            {"id": 1, "user_id": 7, "name": "Rent", "group": "needs"},
            {"id": 2, "user_id": 7, "name": "Dining", "group": "wants"},
        ]
        self.fail_rates = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/categories" and request.method == "GET":
            return httpx.Response(200, json=self.categories)
        if path == "/categories" and request.method == "POST":
            body = json.loads(request.content)
            created = {"id": len(self.categories) + 1, "user_id": 7, **body}
            self.categories.append(created)
            return httpx.Response(200, json=created)
        if path == "/categories/1" and request.method == "GET":
            return httpx.Response(200, json=self.categories[0])
        if path == "/categories/1" and request.method == "PUT":
            body = json.loads(request.content)
            self.categories[0] = {**self.categories[0], **body}
            return httpx.Response(200, json=self.categories[0])
        if path == "/categories/99":
            return httpx.Response(404, json={"detail": "Category not found."})
        if path == "/accounts":
            return httpx.Response(200, json=[{"id": 3, "name": "Checking"}])
        if path == "/transactions":
            return httpx.Response(200, json=[dict(request.url.params)])
        if path == "/exchange-rates/currencies":
            return httpx.Response(200, json={"currencies": ["USD", "EUR"]})
        if path == "/exchange-rates/rate":
            return httpx.Response(
                200,
                json={
                    "from_currency": request.url.params["from"],
                    "to_currency": request.url.params["to"],
                    "rate": "0.92",
                },
            )
        if path == "/exchange-rates/all":
            if self.fail_rates:
                return httpx.Response(503, text="unavailable")
            return httpx.Response(
                200,
                json={
                    "base_currency": request.url.params["base"],
                    "rates": [
                        {"currency": "EUR", "rate": "0.9"},
                        {"currency": "GBP", "rate": "0.8"},
                    ],
                },
            )
        if path == "/exchange-rates/refresh":
            return httpx.Response(200, json={"refreshed": 26, "removed": 0})
        return httpx.Response(404, json={"detail": "Not Found"})

    def count(self, path: str, method: str = "GET") -> int:
        return sum(
            1 for item in self.requests if item.url.path == path and item.method == method
        )


class ApiClientTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.api = FakeApi()
        self.client = ApiClient(
            "http://testserver",
            user_id=7,
            transport=httpx.MockTransport(self.api.handler),
        )
        self.now = [0.0]
        self.cache = QueryCache(clock=lambda: self.now[0])

    def tearDown(self) -> None:
        self.client.close()


class ApiClientTests(ApiClientTestCase):
    def test_sends_user_header_and_drops_empty_params(self) -> None:
        self.client.get("/transactions", params={"account_id": None})

        request = self.api.requests[-1]
        self.assertEqual(request.headers["x-user-id"], "7")
        self.assertEqual(str(request.url), "http://testserver/transactions")

    def test_error_status_raises_with_detail(self) -> None:
        with self.assertRaises(ApiError) as ctx:
            self.client.get("/categories/99")

        self.assertEqual(ctx.exception.status_code, 404)
        self.assertEqual(ctx.exception.detail, "Category not found.")

    def test_non_json_error_uses_body_text(self) -> None:
        self.api.fail_rates = True

        with self.assertRaises(ApiError) as ctx:
            self.client.get("/exchange-rates/all", params={"base": "USD"})

        self.assertEqual(ctx.exception.detail, "unavailable")


class EntityHooksTests(ApiClientTestCase):
    def test_create_invalidates_category_lists(self) -> None:
        hooks = CategoryHooks(self.client, self.cache)

        hooks.list()
        hooks.list()
        self.assertEqual(self.api.count("/categories"), 2)

        hooks.create({"name": "Books", "group": "wants"})
        self.assertNotIn(category_keys.list(None), self.cache)

        names = [item["name"] for item in hooks.list()]
        self.assertIn("Books", names)

    def test_list_filters_by_group(self) -> None:
        hooks = CategoryHooks(self.client, self.cache)

        wants = hooks.list(group="wants")

        self.assertEqual([item["name"] for item in wants], ["Dining"])
        self.assertIn(category_keys.list("wants"), self.cache)

    def test_update_invalidates_detail(self) -> None:
        hooks = CategoryHooks(self.client, self.cache)
        hooks.get(1)
        self.assertIn(category_keys.detail(1), self.cache)

        updated = hooks.update(1, {"name": "Housing", "group": "needs"})

        self.assertEqual(updated["name"], "Housing")
        self.assertNotIn(category_keys.detail(1), self.cache)

    def test_account_and_transaction_lists(self) -> None:
        accounts = AccountHooks(self.client, self.cache).list()
        transactions = TransactionHooks(self.client, self.cache).list(account_id=3)

        self.assertEqual(accounts[0]["name"], "Checking")
        self.assertEqual(transactions, [{"account_id": "3"}])


class ExchangeRateHooksTests(ApiClientTestCase):
    def test_same_currency_rate_skips_request(self) -> None:
        hooks = ExchangeRateHooks(self.client, self.cache)

        self.assertEqual(hooks.rate("eur", "EUR"), Decimal("1"))
        self.assertEqual(self.api.requests, [])

    def test_rate_is_cached_for_an_hour(self) -> None:
        hooks = ExchangeRateHooks(self.client, self.cache)

        self.assertEqual(hooks.rate("USD", "EUR"), Decimal("0.92"))
        self.now[0] = HOUR - 1
        hooks.rate("usd", "eur")
        self.assertEqual(self.api.count("/exchange-rates/rate"), 1)

        self.now[0] = HOUR + 1
        hooks.rate("USD", "EUR")
        self.assertEqual(self.api.count("/exchange-rates/rate"), 2)

    def test_supported_currencies(self) -> None:
        hooks = ExchangeRateHooks(self.client, self.cache)

        self.assertEqual(hooks.supported_currencies(), ["USD", "EUR"])

    def test_refresh_invalidates_rate_queries(self) -> None:
        hooks = ExchangeRateHooks(self.client, self.cache)
        hooks.rate("USD", "EUR")

        result = hooks.refresh()

        self.assertEqual(result["refreshed"], 26)
        self.assertNotIn(exchange_rate_keys.rate("USD", "EUR"), self.cache)

    def test_get_rates_builds_table_for_store(self) -> None:
        hooks = ExchangeRateHooks(self.client, self.cache)
        store = CurrencyStore()

        self.assertTrue(refresh_rates(store, hooks))

        self.assertEqual(store.rates.base, "USD")
        self.assertEqual(store.rates["USD"], Decimal("1"))
        self.assertEqual(convert(Decimal("100"), "USD", "EUR", store.rates), Decimal("90"))

    def test_get_rates_failure_is_unavailable(self) -> None:
        self.api.fail_rates = True
        hooks = ExchangeRateHooks(self.client, self.cache)

        with self.assertRaises(RateProviderUnavailable):
            hooks.get_rates("USD")


if __name__ == "__main__":
    unittest.main()
