import http.client
import unittest
from decimal import Decimal
from urllib.error import URLError

from subtrack.currency_conversion import (
    ExchangeRateFetcher,
    InMemoryRateCache,
    RateFetchFailed,
    RateNotFound,
    convert_amount,
    convert_amount_safe,
    convert_with_rates,
    convert_with_rates_safe,
    normalize_currency,
    prefetch_exchange_rates,
)

PRIMARY = "https://primary.test/{base}.json"
MIRROR = "https://mirror.test/{base}.json"


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeRateSource:
    def __init__(self, documents: dict, failing: set | None = None) -> None:
        self.documents = documents
        self.failing = failing or set()
        self.calls = []

    def __call__(self, url: str, timeout: float) -> object:
        self.calls.append((url, timeout))
        if url in self.failing:
            raise URLError("connection refused")
        if url not in self.documents:
            raise ValueError("not found")
        return self.documents[url]


def build_fetcher(source: FakeRateSource, clock: FakeClock | None = None) -> ExchangeRateFetcher:
    cache = InMemoryRateCache(ttl_seconds=60, clock=clock or FakeClock())
    return ExchangeRateFetcher(cache=cache, sources=(PRIMARY, MIRROR), timeout=5, fetch_json=source)


class ExchangeRateFetcherTests(unittest.TestCase):
    def test_fetches_and_normalizes_rate_table(self) -> None:
        source = FakeRateSource(
            {
                "https://primary.test/usd.json": {
                    "date": "2024-01-01",
                    "usd": {"EUR": 0.9, "gbp": 0.8, "bad": "x", "flag": True},
                }
            }
        )
        fetcher = build_fetcher(source)

        rates = fetcher.fetch_rates("USD")

        self.assertEqual(rates, {"eur": Decimal("0.9"), "gbp": Decimal("0.8")})
        self.assertEqual(source.calls, [("https://primary.test/usd.json", 5)])

    def test_falls_back_to_mirror_when_primary_fails(self) -> None:
        source = FakeRateSource(
            {"https://mirror.test/eur.json": {"eur": {"usd": 1.1}}},
            failing={"https://primary.test/eur.json"},
        )
        fetcher = build_fetcher(source)

        with self.assertLogs("subtrack.currency_conversion", level="WARNING"):
            rates = fetcher.fetch_rates("eur")

        self.assertEqual(rates, {"usd": Decimal("1.1")})
        self.assertEqual(len(source.calls), 2)

    def test_raises_when_every_source_fails(self) -> None:
        source = FakeRateSource({}, failing={"https://primary.test/usd.json"})
        fetcher = build_fetcher(source)

        with self.assertLogs("subtrack.currency_conversion", level="WARNING"):
            with self.assertRaises(RateFetchFailed) as ctx:
                fetcher.fetch_rates("USD")

        self.assertIn("Failed to fetch exchange rates for USD", str(ctx.exception))

    def test_rejects_payload_without_base_table(self) -> None:
        source = FakeRateSource(
            {
                "https://primary.test/usd.json": {"eur": {"usd": 1.1}},
                "https://mirror.test/usd.json": ["unexpected"],
            }
        )
        fetcher = build_fetcher(source)

        with self.assertLogs("subtrack.currency_conversion", level="WARNING"):
            with self.assertRaises(RateFetchFailed) as ctx:
                fetcher.fetch_rates("usd")

        self.assertIn("Invalid API response format", str(ctx.exception))

    def test_serves_cached_rates_until_ttl_expires(self) -> None:
        clock = FakeClock()
        source = FakeRateSource({"https://primary.test/usd.json": {"usd": {"eur": 0.9}}})
        fetcher = build_fetcher(source, clock)

        fetcher.fetch_rates("USD")
        clock.now += 59
        fetcher.fetch_rates("usd")
        self.assertEqual(len(source.calls), 1)

        clock.now += 1
        fetcher.fetch_rates("usd")
        self.assertEqual(len(source.calls), 2)

    def test_truncated_response_falls_back_to_mirror(self) -> None:
        mirror = FakeRateSource({"https://mirror.test/eur.json": {"eur": {"usd": 1.1}}})

        def truncated_primary(url: str, timeout: float) -> object:
            if url.startswith("https://primary.test/"):
                raise http.client.IncompleteRead(b"{\"eur\":")
            return mirror(url, timeout)

        fetcher = build_fetcher(truncated_primary)

        with self.assertLogs("subtrack.currency_conversion", level="WARNING"):
            rates = fetcher.fetch_rates("EUR")

        self.assertEqual(rates, {"usd": Decimal("1.1")})


class ConvertAmountTests(unittest.TestCase):
    def setUp(self) -> None:
        self.source = FakeRateSource(
            {
                "https://primary.test/eur.json": {"eur": {"usd": 1.08, "gbp": 0.86}},
                "https://primary.test/usd.json": {"usd": {"eur": 0.92}},
            }
        )
        self.fetcher = build_fetcher(self.source)

    def test_same_currency_skips_fetch(self) -> None:
        amount = convert_amount(Decimal("12.50"), "XYZ", "xyz", self.fetcher)

        self.assertEqual(amount, Decimal("12.50"))
        self.assertEqual(self.source.calls, [])

    def test_multiplies_by_source_based_rate(self) -> None:
        amount = convert_amount(Decimal("10"), "EUR", "USD", self.fetcher)

        self.assertEqual(amount, Decimal("10.80"))

    def test_missing_target_rate_raises(self) -> None:
        with self.assertRaises(RateNotFound) as ctx:
            convert_amount(Decimal("10"), "EUR", "JPY", self.fetcher)

        self.assertEqual(str(ctx.exception), "Exchange rate not found for EUR to JPY")

    def test_safe_variant_returns_original_amount_on_failure(self) -> None:
        result = convert_amount_safe("10", "EUR", "JPY", self.fetcher)

        self.assertFalse(result.success)
        self.assertEqual(result.amount, Decimal("10"))
        self.assertIn("EUR to JPY", result.error)

    def test_safe_variant_reports_success(self) -> None:
        result = convert_amount_safe(Decimal("5"), "USD", "EUR", self.fetcher)

        self.assertTrue(result.success)
        self.assertEqual(result.amount, Decimal("4.60"))
        self.assertIsNone(result.error)

    def test_round_trip_with_reciprocal_tables_returns_original(self) -> None:
        source = FakeRateSource(
            {
                "https://primary.test/eur.json": {"eur": {"usd": 1.08}},
                "https://primary.test/usd.json": {"usd": {"eur": 0.925926}},
            }
        )
        fetcher = build_fetcher(source)
        amount = Decimal("100")

        there = convert_amount(amount, "EUR", "USD", fetcher)
        back = convert_amount(there, "USD", "EUR", fetcher)

        self.assertLess(abs(back - amount), Decimal("0.001"))

    def test_round_trip_with_inconsistent_tables_drifts(self) -> None:
        source = FakeRateSource(
            {
                "https://primary.test/eur.json": {"eur": {"usd": 1.08}},
                "https://primary.test/usd.json": {"usd": {"eur": 0.9}},
            }
        )
        fetcher = build_fetcher(source)
        amount = Decimal("100")

        back = convert_amount(convert_amount(amount, "EUR", "USD", fetcher), "USD", "EUR", fetcher)

        self.assertEqual(back, Decimal("97.2"))
        self.assertGreater(abs(back - amount), Decimal("0.001"))


class PrefetchTests(unittest.TestCase):
    def test_fetches_each_currency_once_and_skips_failures(self) -> None:
        source = FakeRateSource(
            {
                "https://primary.test/eur.json": {"eur": {"usd": 1.1}},
                "https://primary.test/gbp.json": {"gbp": {"usd": 1.3}},
            }
        )
        fetcher = build_fetcher(source)

        with self.assertLogs("subtrack.currency_conversion", level="WARNING"):
            rates = prefetch_exchange_rates(["EUR", "eur", "GBP", "CHF", ""], fetcher)

        self.assertEqual(sorted(rates), ["eur", "gbp"])
        fetched_urls = [url for url, _ in source.calls]
        self.assertEqual(fetched_urls.count("https://primary.test/eur.json"), 1)

    def test_http_protocol_errors_are_skipped(self) -> None:
        def broken_source(url: str, timeout: float) -> object:
            raise http.client.IncompleteRead(b"")

        with self.assertLogs("subtrack.currency_conversion", level="WARNING"):
            rates = prefetch_exchange_rates(["EUR"], build_fetcher(broken_source))

        self.assertEqual(rates, {})

    def test_empty_input_fetches_nothing(self) -> None:
        source = FakeRateSource({})

        self.assertEqual(prefetch_exchange_rates([], build_fetcher(source)), {})
        self.assertEqual(source.calls, [])


class ConvertWithRatesTests(unittest.TestCase):
    def test_uses_prefetched_tables(self) -> None:
        rates = {"eur": {"usd": Decimal("1.1")}}

        self.assertEqual(convert_with_rates("10", "EUR", "USD", rates), Decimal("11.0"))
        self.assertEqual(convert_with_rates("10", "usd", "USD", {}), Decimal("10"))

    def test_missing_table_raises(self) -> None:
        with self.assertRaises(RateNotFound) as ctx:
            convert_with_rates("10", "GBP", "USD", {})

        self.assertEqual(str(ctx.exception), "Exchange rates not loaded for GBP")

    def test_safe_variant_keeps_original_amount(self) -> None:
        result = convert_with_rates_safe(Decimal("7"), "GBP", "USD", {})

        self.assertFalse(result.success)
        self.assertEqual(result.amount, Decimal("7"))


class NormalizeCurrencyTests(unittest.TestCase):
    def test_uppercases_valid_codes(self) -> None:
        self.assertEqual(normalize_currency(" eur "), "EUR")

    def test_rejects_invalid_codes(self) -> None:
        for value in ("", "EURO", "U5D"):
            with self.assertRaises(ValueError):
                normalize_currency(value)


if __name__ == "__main__":
    unittest.main()
