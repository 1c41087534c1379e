from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Iterable, Mapping

from subtrack.currency_conversion import (
    ConversionResult,
    ExchangeRateFetcher,
    coerce_amount,
    convert_amount,
    convert_with_rates_safe,
)
from subtrack.records import Subscription


class BillingFrequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"
    ONE_TIME = "one-time"
    # Anything unrecognised lands here and is billed as if monthly.
    CUSTOM = "custom"


_ALIASES = {
    "daily": BillingFrequency.DAILY,
    "weekly": BillingFrequency.WEEKLY,
    "monthly": BillingFrequency.MONTHLY,
    "quarterly": BillingFrequency.QUARTERLY,
    "yearly": BillingFrequency.YEARLY,
    "annual": BillingFrequency.YEARLY,
    "annually": BillingFrequency.YEARLY,
    "onetime": BillingFrequency.ONE_TIME,
    "once": BillingFrequency.ONE_TIME,
    "custom": BillingFrequency.CUSTOM,
}


def parse_frequency(value: str | BillingFrequency | None) -> BillingFrequency:
    if isinstance(value, BillingFrequency):
        return value
    if not value:
        return BillingFrequency.CUSTOM
    normalized = "".join(ch for ch in value.strip().lower() if ch.isalnum())
    return _ALIASES.get(normalized, BillingFrequency.CUSTOM)


def monthly_equivalent(amount: Decimal, frequency: str | BillingFrequency) -> Decimal:
    """Average monthly cost of one charge of ``amount`` every billing cycle."""
    parsed = parse_frequency(frequency)
    if parsed is BillingFrequency.MONTHLY:
        return amount
    if parsed is BillingFrequency.YEARLY:
        return amount / 12
    if parsed is BillingFrequency.WEEKLY:
        return amount * 52 / 12
    if parsed is BillingFrequency.DAILY:
        return amount * 365 / 12
    if parsed is BillingFrequency.QUARTERLY:
        return amount / 3
    return amount


def normalize_to_monthly_cost(
    cost: Decimal | int | float | str,
    currency: str,
    frequency: str | BillingFrequency,
    target_currency: str,
    rate_fetcher: ExchangeRateFetcher,
) -> Decimal:
    converted = convert_amount(cost, currency, target_currency, rate_fetcher)
    return monthly_equivalent(converted, frequency)


def normalize_to_monthly_with_rates_safe(
    cost: Decimal | int | float | str,
    currency: str,
    frequency: str | BillingFrequency,
    target_currency: str,
    rates_by_base: Mapping[str, Mapping[str, Decimal]],
) -> ConversionResult:
    """Like ``normalize_to_monthly_cost`` against prefetched rates.

    A failed conversion still returns the frequency-adjusted amount in the
    original currency, flagged with ``success=False``.
    """
    result = convert_with_rates_safe(cost, currency, target_currency, rates_by_base)
    return ConversionResult(
        success=result.success,
        amount=monthly_equivalent(result.amount, frequency),
        error=result.error,
    )


def total_in_currency(
    subscriptions: Iterable[Subscription],
    target_currency: str,
    rate_fetcher: ExchangeRateFetcher,
    frequency: str | BillingFrequency | None = None,
) -> Decimal:
    wanted = parse_frequency(frequency) if frequency is not None else None
    total = Decimal("0")
    for subscription in subscriptions:
        if wanted is not None and parse_frequency(subscription.billing_frequency) is not wanted:
            continue
        total += convert_amount(
            coerce_amount(subscription.cost),
            subscription.currency,
            target_currency,
            rate_fetcher,
        )
    return total
