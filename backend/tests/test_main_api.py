import importlib
import os
import shutil
import sys
import tempfile
import unittest
from dataclasses import replace
from datetime import date, datetime
from decimal import Decimal

from fastapi.testclient import TestClient

from backend.currency_conversion import FrankfurterRateProvider

ENV_KEYS = ("DATABASE_URL", "EXCHANGE_RATE_SOURCE", "DEFAULT_CURRENCY")


class MainApiTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        cls._saved_env = {key: os.environ.get(key) for key in ENV_KEYS}
        cls._tmp = tempfile.mkdtemp()
        os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(cls._tmp, 'api.db')}"
        os.environ["EXCHANGE_RATE_SOURCE"] = "static"
        os.environ["DEFAULT_CURRENCY"] = "USD"

        if "backend.main" in sys.modules:
            cls.main = importlib.reload(sys.modules["backend.main"])
        else:
            cls.main = importlib.import_module("backend.main")
        cls._client_cm = TestClient(cls.main.app)
        cls.client = cls._client_cm.__enter__()

    @classmethod
    def tearDownClass(cls) -> None:
        cls._client_cm.__exit__(None, None, None)
        cls.main.engine.dispose()
        shutil.rmtree(cls._tmp, ignore_errors=True)
        for key, value in cls._saved_env.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value

    def signup(self, email: str) -> dict[str, str]:
        response = self.client.post("/auth/signup", json={"email": email, "password": "secret"})
        self.assertEqual(response.status_code, 200, response.text)
        return {"x-user-id": str(response.json()["id"])}

    def create_account(self, headers: dict[str, str]) -> int:
        response = self.client.post(
            "/accounts", json={"name": "Checking", "type": "checking"}, headers=headers
        )
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()["id"]

    def test_health(self) -> None:
        self.assertEqual(self.client.get("/health").json(), {"status": "ok"})

    def test_signup_and_login(self) -> None:
        self.signup("login@example.com")

        duplicate = self.client.post(
            "/auth/signup", json={"email": "LOGIN@example.com", "password": "x"}
        )
        self.assertEqual(duplicate.status_code, 409)

        ok = self.client.post(
            "/auth/login", json={"email": "login@example.com", "password": "secret"}
        )
        self.assertEqual(ok.status_code, 200)
        bad = self.client.post(
            "/auth/login", json={"email": "login@example.com", "password": "wrong"}
        )
        self.assertEqual(bad.status_code, 401)

    def test_requires_user_identity(self) -> None:
        self.assertEqual(self.client.get("/users/me/settings").status_code, 401)
        self.assertEqual(
            self.client.get("/users/me/settings", headers={"x-user-id": "abc"}).status_code, 400
        )
        self.assertEqual(
            self.client.get("/users/me/settings", headers={"x-user-id": "99999"}).status_code,
            404,
        )

    def test_preferred_currency_round_trip(self) -> None:
        headers = self.signup("settings@example.com")

        initial = self.client.get("/users/me/settings", headers=headers).json()
        self.assertEqual(initial["preferred_currency"], "USD")
        self.assertEqual(len(initial["supported_currencies"]), 10)

        updated = self.client.put(
            "/users/me/settings", json={"preferred_currency": "gbp"}, headers=headers
        )
        self.assertEqual(updated.status_code, 200, updated.text)
        self.assertEqual(updated.json()["preferred_currency"], "GBP")

        reread = self.client.get("/users/me/settings", headers=headers).json()
        self.assertEqual(reread["preferred_currency"], "GBP")

        rejected = self.client.put(
            "/users/me/settings", json={"preferred_currency": "CNY"}, headers=headers
        )
        self.assertEqual(rejected.status_code, 400)

    def test_default_categories_and_lookup(self) -> None:
        headers = self.signup("categories@example.com")

        listed = self.client.get("/categories", headers=headers).json()
        self.assertEqual(len(listed), 7)

        rent = next(item for item in listed if item["name"] == "Rent")
        fetched = self.client.get(f"/categories/{rent['id']}", headers=headers)
        self.assertEqual(fetched.json()["name"], "Rent")

        missing = self.client.get("/categories/99999", headers=headers)
        self.assertEqual(missing.status_code, 404)

    def test_category_in_use_cannot_be_deleted(self) -> None:
        headers = self.signup("inuse@example.com")
        account_id = self.create_account(headers)
        created = self.client.post(
            "/categories", json={"name": "Books", "group": "Wants"}, headers=headers
        ).json()
        self.assertEqual(created["group"], "wants")
        self.client.post(
            "/transactions",
            json={
                "account_id": account_id,
                "amount": "12.00",
                "type": "expense",
                "category": "Books",
                "date": date.today().isoformat(),
            },
            headers=headers,
        )

        response = self.client.delete(f"/categories/{created['id']}", headers=headers)

        self.assertEqual(response.status_code, 409)

    def test_transaction_currency_defaults_to_preference(self) -> None:
        headers = self.signup("txn@example.com")
        self.client.put("/users/me/settings", json={"preferred_currency": "MXN"}, headers=headers)
        account_id = self.create_account(headers)
        base = {
            "account_id": account_id,
            "amount": "50",
            "type": "expense",
            "date": "2024-05-01",
        }

        implicit = self.client.post("/transactions", json=base, headers=headers)
        explicit = self.client.post(
            "/transactions", json={**base, "currency": "eur"}, headers=headers
        )
        invalid = self.client.post(
            "/transactions", json={**base, "currency": "euro"}, headers=headers
        )

        self.assertEqual(implicit.json()["currency"], "MXN")
        self.assertEqual(explicit.json()["currency"], "EUR")
        self.assertEqual(invalid.status_code, 400)

        listed = self.client.get(
            "/transactions", params={"account_id": account_id}, headers=headers
        ).json()
        self.assertEqual(len(listed), 2)

    def test_budget_evaluation_converts_currencies(self) -> None:
        headers = self.signup("budget@example.com")
        account_id = self.create_account(headers)
        today = date.today().isoformat()
        for amount, currency in (("92", "EUR"), ("10", "USD")):
            self.client.post(
                "/transactions",
                json={
                    "account_id": account_id,
                    "amount": amount,
                    "currency": currency,
                    "type": "expense",
                    "category": "Dining",
                    "date": today,
                },
                headers=headers,
            )
        self.client.post(
            "/budget/rules",
            json={"rule_type": "category_cap", "amount": "100", "category": "Dining"},
            headers=headers,
        )

        response = self.client.get(
            "/budget/evaluate", params={"period": "monthly"}, headers=headers
        )

        self.assertEqual(response.status_code, 200, response.text)
        evaluation = response.json()[0]
        self.assertEqual(Decimal(evaluation["current_value"]), Decimal("110"))
        self.assertEqual(evaluation["status"], "over")
        self.assertEqual(evaluation["currency"], "USD")
        self.assertEqual(evaluation["source_currencies"], ["EUR", "USD"])
        self.assertEqual(evaluation["unconverted_currencies"], [])

    def test_account_of_another_user_cannot_be_deleted(self) -> None:
        owner = self.signup("owner@example.com")
        other = self.signup("intruder@example.com")
        account_id = self.create_account(owner)
        self.client.post(
            "/transactions",
            json={
                "account_id": account_id,
                "amount": "5.00",
                "type": "expense",
                "date": date.today().isoformat(),
            },
            headers=owner,
        )

        response = self.client.delete(f"/accounts/{account_id}", headers=other)

        self.assertEqual(response.status_code, 404)
        in_use = self.client.delete(f"/accounts/{account_id}", headers=owner)
        self.assertEqual(in_use.status_code, 409)

    def test_exchange_rate_endpoints(self) -> None:
        headers = self.signup("rates@example.com")

        currencies = self.client.get("/exchange-rates/currencies", headers=headers).json()
        self.assertEqual(len(currencies["currencies"]), 14)

        rate = self.client.get(
            "/exchange-rates/rate", params={"from": "USD", "to": "EUR"}, headers=headers
        )
        self.assertEqual(rate.status_code, 200, rate.text)
        self.assertEqual(Decimal(rate.json()["rate"]), Decimal("0.92"))

        converted = self.client.get(
            "/exchange-rates/convert",
            params={"amount": "10", "from": "USD", "to": "JPY"},
            headers=headers,
        ).json()
        self.assertEqual(Decimal(converted["converted_amount"]), Decimal("1475"))

        all_rates = self.client.get(
            "/exchange-rates/all", params={"base": "EUR"}, headers=headers
        ).json()
        self.assertEqual(all_rates["base_currency"], "EUR")
        self.assertEqual(len(all_rates["rates"]), 13)

        history = self.client.get(
            "/exchange-rates/history",
            params={"from": "USD", "to": "EUR", "days": 7},
            headers=headers,
        )
        self.assertEqual(history.status_code, 200)
        self.assertGreaterEqual(len(history.json()["history"]), 1)

    def test_rate_reports_when_it_was_fetched(self) -> None:
        headers = self.signup("rate-age@example.com")

        rate = self.client.get(
            "/exchange-rates/rate", params={"from": "USD", "to": "GBP"}, headers=headers
        ).json()

        stored = self.main.RATE_SERVICE.get_stored_rate("USD", "GBP")
        self.assertEqual(datetime.fromisoformat(rate["fetched_at"]), stored.fetched_at)
        self.assertEqual(Decimal(rate["rate"]), stored.rate)

    def test_live_rate_source_uses_frankfurter_directly(self) -> None:
        settings = replace(self.main.SETTINGS, exchange_rate_source="frankfurter")

        provider = self.main.build_rate_provider(settings)

        self.assertIsInstance(provider, FrankfurterRateProvider)
        self.assertEqual(provider.source, "frankfurter")
        self.assertEqual(provider.cache_ttl_seconds, settings.exchange_rate_cache_hours * 60 * 60)

    def test_exchange_rate_errors(self) -> None:
        headers = self.signup("rate-errors@example.com")

        unknown = self.client.get(
            "/exchange-rates/rate", params={"from": "ZZZ", "to": "USD"}, headers=headers
        )
        self.assertEqual(unknown.status_code, 404)

        malformed = self.client.get(
            "/exchange-rates/convert",
            params={"amount": "ten", "from": "USD", "to": "EUR"},
            headers=headers,
        )
        self.assertEqual(malformed.status_code, 400)

        bad_days = self.client.get(
            "/exchange-rates/history",
            params={"from": "USD", "to": "EUR", "days": 0},
            headers=headers,
        )
        self.assertEqual(bad_days.status_code, 400)

    def test_refresh_reports_counts(self) -> None:
        headers = self.signup("refresh@example.com")

        response = self.client.post("/exchange-rates/refresh", headers=headers)

        self.assertEqual(response.status_code, 200)
        self.assertIn("refreshed", response.json())
        self.assertEqual(response.json()["removed"], 0)

    def test_display_amount_converts_into_preference(self) -> None:
        headers = self.signup("display@example.com")
        self.client.put("/users/me/settings", json={"preferred_currency": "EUR"}, headers=headers)

        converted = self.client.get(
            "/display/amount", params={"amount": "100", "currency": "USD"}, headers=headers
        ).json()
        self.assertEqual(converted["text"], "€92.00")
        self.assertTrue(converted["was_converted"])
        self.assertEqual(converted["title"], "Original: $100.00")
        self.assertIn('class="converted-amount"', converted["html"])

        native = self.client.get(
            "/display/amount", params={"amount": "100", "currency": "EUR"}, headers=headers
        ).json()
        self.assertEqual(native["text"], "€100.00")
        self.assertFalse(native["was_converted"])
        self.assertEqual(native["html"], "<span>€100.00</span>")


if __name__ == "__main__":
    unittest.main()
