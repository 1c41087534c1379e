from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from decimal import Decimal
import http.client
import json
import logging
import time
from typing import Callable, Iterable, Mapping, Protocol
from urllib.error import HTTPError, URLError
from urllib.request import urlopen

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 24 * 60 * 60
DEFAULT_FETCH_TIMEOUT_SECONDS = 10.0
DEFAULT_RATE_SOURCES: tuple[str, ...] = (
    "https://cdn.jsdelivr.net/npm/@fawazahmed0/currency-api@latest/v1/currencies/{base}.json",
    "https://latest.currency-api.pages.dev/v1/currencies/{base}.json",
)


class CurrencyConversionError(Exception):
    """Base class for conversion failures."""


class RateFetchFailed(CurrencyConversionError, RuntimeError):
    """Raised when every exchange rate source failed for a base currency."""


class RateNotFound(CurrencyConversionError, LookupError):
    """Raised when a fetched rate table has no entry for the target currency."""


@dataclass(frozen=True)
class CachedRates:
    base_currency: str
    rates: Mapping[str, Decimal]
    fetched_at: float


class RateCache(Protocol):
    def get(self, base_currency: str) -> CachedRates | None: ...

    def set(self, base_currency: str, rates: Mapping[str, Decimal]) -> CachedRates: ...

    def has_valid(self, base_currency: str) -> bool: ...

    def clear(self) -> None: ...


@dataclass
class InMemoryRateCache:
    """Process-local rate tables keyed by lower-case base currency.

    Entries are valid for ``ttl_seconds`` after they were stored.
    """

    ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS
    clock: Callable[[], float] = time.time
    _entries: dict[str, CachedRates] = field(default_factory=dict)

    def get(self, base_currency: str) -> CachedRates | None:
        return self._entries.get(base_currency.lower())

    def set(self, base_currency: str, rates: Mapping[str, Decimal]) -> CachedRates:
        key = base_currency.lower()
        entry = CachedRates(base_currency=key, rates=dict(rates), fetched_at=self.clock())
        self._entries[key] = entry
        return entry

    def has_valid(self, base_currency: str) -> bool:
        entry = self.get(base_currency)
        if entry is None:
            return False
        return self.clock() - entry.fetched_at < self.ttl_seconds

    def clear(self) -> None:
        self._entries.clear()


def fetch_json_document(url: str, timeout: float) -> object:
    with urlopen(url, timeout=timeout) as response:
        return json.load(response)


@dataclass
class ExchangeRateFetcher:
    cache: RateCache = field(default_factory=InMemoryRateCache)
    sources: tuple[str, ...] = DEFAULT_RATE_SOURCES
    timeout: float = DEFAULT_FETCH_TIMEOUT_SECONDS
    fetch_json: Callable[[str, float], object] = fetch_json_document

    def fetch_rates(self, base_currency: str) -> Mapping[str, Decimal]:
        base = base_currency.strip().lower()
        if self.cache.has_valid(base):
            cached = self.cache.get(base)
            if cached is not None:
                return cached.rates

        last_error: Exception | None = None
        for template in self.sources:
            url = template.format(base=base)
            try:
                rates = self._fetch_from_source(url, base)
            except (
                HTTPError,
                URLError,
                http.client.HTTPException,
                TimeoutError,
                OSError,
                ValueError,
            ) as exc:
                logger.warning("Exchange rate source %s failed: %s", url, exc)
                last_error = exc
                continue
            return self.cache.set(base, rates).rates

        message = str(last_error) if last_error else "no sources configured"
        raise RateFetchFailed(
            f"Failed to fetch exchange rates for {base_currency}: {message}"
        )

    def _fetch_from_source(self, url: str, base: str) -> dict[str, Decimal]:
        payload = self.fetch_json(url, self.timeout)
        if not isinstance(payload, dict):
            raise ValueError("Invalid API response format")
        rates = payload.get(base)
        if not isinstance(rates, dict):
            raise ValueError("Invalid API response format")
        return {
            code.lower(): Decimal(str(value))
            for code, value in rates.items()
            if isinstance(value, (int, float)) and not isinstance(value, bool)
        }


@dataclass(frozen=True)
class ConversionResult:
    success: bool
    amount: Decimal
    error: str | None = None


def convert_amount(
    amount: Decimal | int | float | str,
    source_currency: str,
    target_currency: str,
    rate_fetcher: ExchangeRateFetcher,
) -> Decimal:
    """Convert ``amount`` using rates with ``source_currency`` as base.

    Matching codes short-circuit without touching the fetcher, so unknown
    currencies still convert to themselves.
    """
    coerced_amount = coerce_amount(amount)
    if _same_currency(source_currency, target_currency):
        return coerced_amount

    rates = rate_fetcher.fetch_rates(source_currency)
    return coerced_amount * _lookup_rate(rates, source_currency, target_currency)


def convert_amount_safe(
    amount: Decimal | int | float | str,
    source_currency: str,
    target_currency: str,
    rate_fetcher: ExchangeRateFetcher,
) -> ConversionResult:
    coerced_amount = coerce_amount(amount)
    try:
        converted = convert_amount(coerced_amount, source_currency, target_currency, rate_fetcher)
    except CurrencyConversionError as exc:
        return ConversionResult(success=False, amount=coerced_amount, error=str(exc))
    return ConversionResult(success=True, amount=converted)


def prefetch_exchange_rates(
    currencies: Iterable[str],
    rate_fetcher: ExchangeRateFetcher,
) -> dict[str, Mapping[str, Decimal]]:
    """Fetch one rate table per distinct currency, concurrently.

    Currencies whose tables cannot be fetched are left out of the result;
    conversions from them fail later with ``RateNotFound``.
    """
    distinct = sorted({code.strip().lower() for code in currencies if code and code.strip()})
    if not distinct:
        return {}

    def fetch(base: str) -> tuple[str, Mapping[str, Decimal] | None]:
        try:
            return base, rate_fetcher.fetch_rates(base)
        except RateFetchFailed as exc:
            logger.warning("Skipping rates for %s: %s", base.upper(), exc)
            return base, None

    with ThreadPoolExecutor(max_workers=len(distinct)) as executor:
        results = list(executor.map(fetch, distinct))
    return {base: rates for base, rates in results if rates is not None}


def convert_with_rates(
    amount: Decimal | int | float | str,
    source_currency: str,
    target_currency: str,
    rates_by_base: Mapping[str, Mapping[str, Decimal]],
) -> Decimal:
    coerced_amount = coerce_amount(amount)
    if _same_currency(source_currency, target_currency):
        return coerced_amount

    rates = rates_by_base.get(source_currency.strip().lower())
    if rates is None:
        raise RateNotFound(f"Exchange rates not loaded for {source_currency}")
    return coerced_amount * _lookup_rate(rates, source_currency, target_currency)


def convert_with_rates_safe(
    amount: Decimal | int | float | str,
    source_currency: str,
    target_currency: str,
    rates_by_base: Mapping[str, Mapping[str, Decimal]],
) -> ConversionResult:
    coerced_amount = coerce_amount(amount)
    try:
        converted = convert_with_rates(coerced_amount, source_currency, target_currency, rates_by_base)
    except CurrencyConversionError as exc:
        return ConversionResult(success=False, amount=coerced_amount, error=str(exc))
    return ConversionResult(success=True, amount=converted)


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))


def _same_currency(source_currency: str, target_currency: str) -> bool:
    return source_currency.strip().lower() == target_currency.strip().lower()


def _lookup_rate(
    rates: Mapping[str, Decimal], source_currency: str, target_currency: str
) -> Decimal:
    rate = rates.get(target_currency.strip().lower())
    if rate is None:
        raise RateNotFound(
            f"Exchange rate not found for {source_currency.upper()} to {target_currency.upper()}"
        )
    return rate
