import itertools
import os
import tempfile
import unittest
from decimal import Decimal
from unittest import mock

_DB_DIR = tempfile.mkdtemp(prefix="subtrack-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ["DEFAULT_CURRENCY"] = "USD"

from fastapi.testclient import TestClient  # noqa: E402

from subtrack import main  # noqa: E402
from subtrack.currency_conversion import ExchangeRateFetcher, InMemoryRateCache  # noqa: E402

_emails = itertools.count(1)


class StaticRates:
    def __init__(self, tables: dict) -> None:
        self.tables = tables

    def __call__(self, url: str, timeout: float) -> object:
        base = url.rsplit("/", 1)[-1].split(".")[0]
        if base not in self.tables:
            raise ValueError("unknown base")
        return {base: self.tables[base]}


def static_fetcher(tables: dict) -> ExchangeRateFetcher:
    return ExchangeRateFetcher(
        cache=InMemoryRateCache(),
        sources=("https://rates.test/{base}.json",),
        fetch_json=StaticRates(tables),
    )


class ApiTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        cls.client_context = TestClient(main.app)
        cls.client = cls.client_context.__enter__()

    @classmethod
    def tearDownClass(cls) -> None:
        cls.client_context.__exit__(None, None, None)

    def setUp(self) -> None:
        patcher = mock.patch.object(main, "RATE_FETCHER", static_fetcher({"eur": {"usd": 2}}))
        patcher.start()
        self.addCleanup(patcher.stop)
        self.user = self.signup()
        self.headers = {"x-user-id": str(self.user["id"])}

    def signup(self, password: str = "correct-horse") -> dict:
        email = f"user{next(_emails)}@example.com"
        response = self.client.post(
            "/auth/signup",
            json={"name": "Test User", "email": email, "password": password},
        )
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()

    def create_subscription(self, **overrides) -> dict:
        payload = {
            "name": "Music",
            "cost": "10",
            "currency": "USD",
            "billing_frequency": "monthly",
            "start_date": "2024-01-01",
        }
        payload.update(overrides)
        response = self.client.post("/subscriptions", json=payload, headers=self.headers)
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()


class AuthTests(ApiTestCase):
    def test_login_with_valid_and_invalid_password(self) -> None:
        ok = self.client.post(
            "/auth/login", json={"email": self.user["email"], "password": "correct-horse"}
        )
        bad = self.client.post(
            "/auth/login", json={"email": self.user["email"], "password": "wrong-password"}
        )

        self.assertEqual(ok.status_code, 200)
        self.assertEqual(ok.json()["currency"], "USD")
        self.assertEqual(bad.status_code, 401)

    def test_duplicate_email_is_conflict(self) -> None:
        response = self.client.post(
            "/auth/signup",
            json={"name": "Again", "email": self.user["email"], "password": "another-pass"},
        )

        self.assertEqual(response.status_code, 409)

    def test_short_password_is_rejected(self) -> None:
        response = self.client.post(
            "/auth/signup",
            json={"name": "Short", "email": "short@example.com", "password": "1234567"},
        )

        self.assertEqual(response.status_code, 400)

    def test_missing_identity_header(self) -> None:
        self.assertEqual(self.client.get("/subscriptions").status_code, 401)
        self.assertEqual(
            self.client.get("/subscriptions", headers={"x-user-id": "999999"}).status_code, 404
        )

    def test_change_password_requires_current_password(self) -> None:
        wrong = self.client.put(
            "/users/me/password",
            json={
                "current_password": "not-the-password",
                "new_password": "brand-new-pass",
                "repeat_password": "brand-new-pass",
            },
            headers=self.headers,
        )
        ok = self.client.put(
            "/users/me/password",
            json={
                "current_password": "correct-horse",
                "new_password": "brand-new-pass",
                "repeat_password": "brand-new-pass",
            },
            headers=self.headers,
        )

        self.assertEqual(wrong.status_code, 400)
        self.assertEqual(ok.status_code, 200)
        login = self.client.post(
            "/auth/login", json={"email": self.user["email"], "password": "brand-new-pass"}
        )
        self.assertEqual(login.status_code, 200)


class UserSettingsTests(ApiTestCase):
    def test_currency_preference_round_trip(self) -> None:
        updated = self.client.put(
            "/users/me/currency", json={"currency": "eur"}, headers=self.headers
        )
        fetched = self.client.get("/users/me/currency", headers=self.headers)

        self.assertEqual(updated.json(), {"currency": "EUR"})
        self.assertEqual(fetched.json(), {"currency": "EUR"})

    def test_invalid_currency_is_rejected(self) -> None:
        response = self.client.put(
            "/users/me/currency", json={"currency": "EURO"}, headers=self.headers
        )

        self.assertEqual(response.status_code, 400)

    def test_delete_account_removes_owned_rows(self) -> None:
        self.create_subscription(category="Streaming")

        response = self.client.delete("/users/me", headers=self.headers)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.client.get("/users/me", headers=self.headers).status_code, 404)


class SubscriptionTests(ApiTestCase):
    def test_create_resolves_category_and_payment_method_by_name(self) -> None:
        created = self.create_subscription(category="Streaming", payment_method="Visa")

        self.assertEqual(created["category"]["name"], "Streaming")
        self.assertEqual(created["category"]["color"], "#0000FF")
        self.assertEqual(created["payment_method"], "Visa")
        self.assertEqual(Decimal(created["cost"]), Decimal("10"))

        categories = self.client.get("/categories", headers=self.headers).json()
        self.assertEqual([item["name"] for item in categories], ["Streaming"])

        self.create_subscription(name="Video", category="Streaming")
        categories = self.client.get("/categories", headers=self.headers).json()
        self.assertEqual(len(categories), 1)

    def test_validation_errors(self) -> None:
        cases = [
            {"billing_frequency": "fortnightly"},
            {"cost": "0"},
            {"currency": "DOLLARS"},
            {"start_date": "2024-05-01", "end_date": "2024-04-01"},
        ]
        for overrides in cases:
            payload = {
                "name": "Broken",
                "cost": "10",
                "currency": "USD",
                "billing_frequency": "monthly",
                "start_date": "2024-01-01",
            }
            payload.update(overrides)
            with self.subTest(overrides=overrides):
                response = self.client.post("/subscriptions", json=payload, headers=self.headers)
                self.assertEqual(response.status_code, 400)

    def test_update_and_delete(self) -> None:
        created = self.create_subscription()

        updated = self.client.put(
            f"/subscriptions/{created['id']}",
            json={"cost": "12.50", "end_date": "2024-12-31", "category": "Music"},
            headers=self.headers,
        )
        self.assertEqual(updated.status_code, 200, updated.text)
        self.assertEqual(Decimal(updated.json()["cost"]), Decimal("12.50"))
        self.assertEqual(updated.json()["end_date"], "2024-12-31")
        self.assertEqual(updated.json()["category"]["name"], "Music")

        invalid = self.client.put(
            f"/subscriptions/{created['id']}",
            json={"end_date": "2023-01-01"},
            headers=self.headers,
        )
        self.assertEqual(invalid.status_code, 400)

        deleted = self.client.delete(f"/subscriptions/{created['id']}", headers=self.headers)
        self.assertEqual(deleted.status_code, 200)
        missing = self.client.get(f"/subscriptions/{created['id']}", headers=self.headers)
        self.assertEqual(missing.status_code, 404)

    def test_other_users_cannot_read_subscription(self) -> None:
        created = self.create_subscription()
        other = self.signup()

        response = self.client.get(
            f"/subscriptions/{created['id']}", headers={"x-user-id": str(other["id"])}
        )

        self.assertEqual(response.status_code, 404)

    def test_deleting_category_detaches_subscriptions(self) -> None:
        created = self.create_subscription(category="Streaming")

        response = self.client.delete(
            f"/categories/{created['category']['id']}", headers=self.headers
        )

        self.assertEqual(response.status_code, 200)
        fetched = self.client.get(f"/subscriptions/{created['id']}", headers=self.headers).json()
        self.assertIsNone(fetched["category"])

    def test_subscription_dates_overview(self) -> None:
        self.create_subscription(start_date="2024-01-31", category="Streaming")

        missing_year = self.client.get("/subscriptions/dates", headers=self.headers)
        response = self.client.get(
            "/subscriptions/dates", params={"year": 2024, "month": 2}, headers=self.headers
        )

        self.assertEqual(missing_year.status_code, 400)
        overview = response.json()["overview"]
        self.assertEqual(len(overview), 1)
        self.assertEqual(overview[0]["billingFrequency"], "monthly")
        self.assertEqual(overview[0]["category"], "Streaming")
        self.assertEqual(overview[0]["sub_dates"], ["2024-02-29"])

    def test_subscription_dates_rejects_out_of_range_year(self) -> None:
        self.create_subscription(billing_frequency="weekly")

        for year in (0, 10000):
            with self.subTest(year=year):
                response = self.client.get(
                    "/subscriptions/dates", params={"year": year}, headers=self.headers
                )
                self.assertEqual(response.status_code, 400)
                self.assertEqual(response.json()["detail"], "Invalid year parameter.")

    def test_dashboard_details(self) -> None:
        self.create_subscription(name="Music", cost="10")
        self.create_subscription(name="Storage", cost="60", currency="EUR", billing_frequency="yearly")

        response = self.client.get("/subscriptions/details", headers=self.headers)

        self.assertEqual(response.status_code, 200, response.text)
        body = response.json()
        self.assertEqual(body["totals"]["currency"], "USD")
        self.assertEqual(Decimal(body["totals"]["total_monthly"]), Decimal("20"))
        self.assertEqual(body["totals"]["active_subscriptions"], 2)
        self.assertNotIn("warnings", body)

    def test_dashboard_reports_conversion_failures(self) -> None:
        self.create_subscription(name="News", cost="5", currency="GBP")

        response = self.client.get("/subscriptions/details", headers=self.headers)

        body = response.json()
        self.assertEqual(response.status_code, 200)
        self.assertEqual(body["recent_subscriptions"][0]["currency"], "GBP")
        self.assertTrue(body["recent_subscriptions"][0]["conversion_failed"])
        self.assertEqual(len(body["warnings"]["conversion_errors"]), 1)


class PaymentMethodTests(ApiTestCase):
    def test_patch_updates_only_given_fields(self) -> None:
        created = self.client.post(
            "/payment-methods",
            json={"name": "Visa", "type": "credit_card", "last_four": "4242"},
            headers=self.headers,
        ).json()

        patched = self.client.patch(
            f"/payment-methods/{created['id']}",
            json={"expiry_date": "2027-08-01"},
            headers=self.headers,
        ).json()

        self.assertEqual(created["type"], "CREDIT_CARD")
        self.assertEqual(patched["last_four"], "4242")
        self.assertEqual(patched["expiry_date"], "2027-08-01")

    def test_invalid_last_four(self) -> None:
        response = self.client.post(
            "/payment-methods",
            json={"name": "Visa", "type": "CREDIT_CARD", "last_four": "42a2"},
            headers=self.headers,
        )

        self.assertEqual(response.status_code, 400)


class ReminderTests(ApiTestCase):
    def create_provider(self) -> dict:
        response = self.client.post(
            "/notification-providers",
            json={"name": "Alerts", "type": "push", "webhook_url": "https://hooks.test/abc"},
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()

    def test_provider_rejects_mixed_configuration(self) -> None:
        response = self.client.post(
            "/notification-providers",
            json={
                "name": "Mixed",
                "type": "EMAIL",
                "smtp_server": "smtp.test",
                "webhook_url": "https://hooks.test/abc",
            },
            headers=self.headers,
        )

        self.assertEqual(response.status_code, 400)

    def test_reminder_lifecycle(self) -> None:
        subscription = self.create_subscription()
        provider = self.create_provider()

        created = self.client.post(
            "/reminders",
            json={
                "subscription_id": subscription["id"],
                "reminder_date": "2024-02-25",
                "notification_provider_ids": [provider["id"]],
            },
            headers=self.headers,
        )
        self.assertEqual(created.status_code, 200, created.text)
        reminder = created.json()
        self.assertEqual(reminder["subscription_name"], "Music")
        self.assertFalse(reminder["is_read"])
        self.assertEqual(reminder["notification_provider_ids"], [provider["id"]])

        detail = self.client.get(f"/subscriptions/{subscription['id']}", headers=self.headers)
        self.assertEqual(detail.json()["reminders"][0]["providers"], ["Alerts"])

        updated = self.client.put(
            f"/reminders/{reminder['id']}", json={"is_read": True}, headers=self.headers
        )
        self.assertTrue(updated.json()["is_read"])

        self.client.delete(f"/subscriptions/{subscription['id']}", headers=self.headers)
        self.assertEqual(self.client.get("/reminders", headers=self.headers).json(), [])

    def test_reminder_requires_owned_provider(self) -> None:
        subscription = self.create_subscription()

        response = self.client.post(
            "/reminders",
            json={
                "subscription_id": subscription["id"],
                "reminder_date": "2024-02-25",
                "notification_provider_ids": [987654],
            },
            headers=self.headers,
        )

        self.assertEqual(response.status_code, 404)


class AnalyticsTests(ApiTestCase):
    def test_monthly_analytics_uses_camel_case_keys(self) -> None:
        created = self.create_subscription(category="Streaming")

        response = self.client.get(
            "/analytics/monthly", params={"year": "2024"}, headers=self.headers
        )

        self.assertEqual(response.status_code, 200, response.text)
        body = response.json()
        key = str(created["category"]["id"])
        self.assertEqual(body["years"], [2024])
        self.assertEqual(body["monthlyData"][0], {"name": "Jan", "total": 10, key: 10})
        self.assertEqual(body["categories"], [{"id": key, "name": "Streaming", "color": "#0000FF"}])

    def test_monthly_analytics_rejects_bad_year(self) -> None:
        response = self.client.get(
            "/analytics/monthly", params={"year": "twenty"}, headers=self.headers
        )

        self.assertEqual(response.status_code, 400)

    def test_monthly_analytics_rejects_out_of_range_year(self) -> None:
        self.create_subscription()

        for year in ("0", "10000"):
            with self.subTest(year=year):
                response = self.client.get(
                    "/analytics/monthly", params={"year": year}, headers=self.headers
                )
                self.assertEqual(response.status_code, 400)
                self.assertEqual(response.json()["detail"], "Invalid year parameter.")

    def test_yearly_analytics_converts_to_user_currency(self) -> None:
        self.create_subscription(
            name="Storage",
            cost="60",
            currency="EUR",
            billing_frequency="yearly",
            start_date="2024-07-01",
            end_date="2024-12-31",
        )

        response = self.client.get("/analytics/yearly", headers=self.headers)

        self.assertEqual(response.status_code, 200, response.text)
        body = response.json()
        self.assertEqual(body["currency"], "USD")
        self.assertEqual(body["yearlyData"], [{"year": 2024, "total": 60, "uncategorized": 60}])

    def test_rate_failure_returns_server_error(self) -> None:
        self.create_subscription(currency="GBP")

        response = self.client.get("/analytics/yearly", headers=self.headers)

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()["detail"], main.ANALYTICS_ERROR)

    def test_summary_and_details(self) -> None:
        self.create_subscription(name="Music", cost="10", category="Streaming")
        self.create_subscription(name="Storage", cost="30", currency="EUR", billing_frequency="yearly")

        summary = self.client.get("/analytics/summary", headers=self.headers).json()
        details = self.client.get("/analytics/details", headers=self.headers).json()

        self.assertEqual(Decimal(summary["yearly_total"]), Decimal("180"))
        self.assertEqual(
            [item["name"] for item in summary["category_spending"]["breakdown"]],
            ["Streaming", "Uncategorized"],
        )
        self.assertEqual(Decimal(details["average_monthly"]["value"]), Decimal("15"))
        self.assertEqual(details["largest_expense"]["name"], "Music")


if __name__ == "__main__":
    unittest.main()
