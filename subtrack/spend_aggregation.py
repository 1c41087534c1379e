from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

from subtrack.billing_frequency import BillingFrequency, parse_frequency
from subtrack.currency_conversion import ExchangeRateFetcher, convert_amount, normalize_currency
from subtrack.records import Category, Subscription, category_key

ZERO = Decimal("0")
MONTH_NAMES = (
    "Jan", "Feb", "Mar", "Apr", "May", "Jun",
    "Jul", "Aug", "Sep", "Oct", "Nov", "Dec",
)
# Monthly buckets count a weekly charge four times a month. The normalizer
# uses 52/12 and yearly proration uses 4.33; the figures are kept apart.
WEEKS_PER_MONTH_BUCKET = Decimal("4")
WEEKS_PER_MONTH_PRORATION = Decimal("4.33")


@dataclass(frozen=True)
class MonthlySpend:
    years: list[int]
    monthly_data: list[dict[str, str | int]]
    categories: list[Category]


@dataclass(frozen=True)
class YearlySpend:
    yearly_data: list[dict[str, int]]
    categories: list[Category]
    currency: str


def aggregate_monthly(
    subscriptions: Iterable[Subscription],
    year: int,
    target_currency: str,
    rate_fetcher: ExchangeRateFetcher,
) -> MonthlySpend:
    """Spread each subscription's monthly charge over the months of ``year``.

    Every month from the first to the last active month of the year receives
    the same contribution, broken down by category key. Values are rounded
    to whole units once everything is accumulated.
    """
    subscriptions = list(subscriptions)
    year_start = date(year, 1, 1)
    year_end = date(year, 12, 31)
    buckets: list[dict[str, str | Decimal]] = [
        {"name": name, "total": ZERO} for name in MONTH_NAMES
    ]
    categories: dict[str, Category] = {}

    for subscription in subscriptions:
        effective_start = max(subscription.start_date, year_start)
        effective_end = min(subscription.end_date or year_end, year_end)
        if effective_start > effective_end:
            continue

        category = subscription.category_or_default
        key = category_key(category)
        categories.setdefault(key, category)

        converted = convert_amount(
            subscription.cost, subscription.currency, target_currency, rate_fetcher
        )
        contribution = monthly_bucket_contribution(converted, subscription.billing_frequency)
        for month_index in range(effective_start.month - 1, effective_end.month):
            _add_to_bucket(buckets[month_index], key, contribution)

    return MonthlySpend(
        years=subscription_years(subscriptions),
        monthly_data=[_round_bucket(bucket, label_key="name") for bucket in buckets],
        categories=list(categories.values()),
    )


def aggregate_yearly(
    subscriptions: Iterable[Subscription],
    target_currency: str,
    rate_fetcher: ExchangeRateFetcher,
    today: date | None = None,
) -> YearlySpend:
    """Total spend per calendar year, up to and including the current year.

    Recurring subscriptions are prorated by active months in their first and
    last year; one-time charges land in their start year only.
    """
    subscriptions = list(subscriptions)
    current_year = (today or date.today()).year
    years: set[int] = set()
    for subscription in subscriptions:
        first_year, last_year = active_year_span(subscription, current_year)
        years.update(range(first_year, last_year + 1))
    buckets: dict[int, dict[str, int | Decimal]] = {
        year: {"year": year, "total": ZERO} for year in sorted(years)
    }
    categories: dict[str, Category] = {}

    for subscription in subscriptions:
        category = subscription.category_or_default
        key = category_key(category)
        categories.setdefault(key, category)

        first_year, last_year = active_year_span(subscription, current_year)
        if first_year > last_year:
            continue

        frequency = parse_frequency(subscription.billing_frequency)
        cost = convert_amount(
            subscription.cost, subscription.currency, target_currency, rate_fetcher
        )
        nominal = nominal_yearly_cost(cost, frequency)

        if frequency is BillingFrequency.ONE_TIME:
            _add_to_bucket(buckets[first_year], key, nominal)
            continue

        for year in range(first_year, last_year + 1):
            amount = nominal
            if _is_boundary_year(subscription, year):
                amount = prorated_yearly_cost(
                    cost, frequency, active_months_in_year(subscription, year), nominal
                )
            _add_to_bucket(buckets[year], key, amount)

    return YearlySpend(
        yearly_data=[_round_bucket(bucket, label_key="year") for bucket in buckets.values()],
        categories=list(categories.values()),
        currency=normalize_currency(target_currency),
    )


def monthly_bucket_contribution(cost: Decimal, frequency: str | BillingFrequency) -> Decimal:
    if parse_frequency(frequency) is BillingFrequency.WEEKLY:
        return cost * WEEKS_PER_MONTH_BUCKET
    return cost


def nominal_yearly_cost(cost: Decimal, frequency: str | BillingFrequency) -> Decimal:
    parsed = parse_frequency(frequency)
    if parsed is BillingFrequency.WEEKLY:
        return cost * 52
    if parsed is BillingFrequency.MONTHLY:
        return cost * 12
    return cost


def prorated_yearly_cost(
    cost: Decimal,
    frequency: str | BillingFrequency,
    months_active: int,
    nominal: Decimal,
) -> Decimal:
    parsed = parse_frequency(frequency)
    if parsed is BillingFrequency.MONTHLY:
        return cost * months_active
    if parsed is BillingFrequency.WEEKLY:
        return cost * months_active * WEEKS_PER_MONTH_PRORATION
    if parsed is BillingFrequency.YEARLY:
        return cost * months_active / 12
    return nominal


def active_year_span(subscription: Subscription, current_year: int) -> tuple[int, int]:
    first_year = subscription.start_date.year
    if subscription.end_date is None:
        last_year = current_year
    else:
        last_year = min(subscription.end_date.year, current_year)
    return first_year, last_year


def active_months_in_year(subscription: Subscription, year: int) -> int:
    """Months billed in a boundary year of ``subscription``.

    The end-year rule is applied after the start-year rule and replaces it,
    so a subscription that starts and ends in the same year is billed from
    January through its end month regardless of when it started.
    """
    months = 12
    if year == subscription.start_date.year:
        months = 12 - subscription.start_date.month + 1
    if subscription.end_date is not None and year == subscription.end_date.year:
        months = subscription.end_date.month
    return months


def subscription_years(subscriptions: Iterable[Subscription]) -> list[int]:
    years: set[int] = set()
    for subscription in subscriptions:
        years.add(subscription.start_date.year)
        if subscription.end_date is not None:
            years.add(subscription.end_date.year)
    return sorted(years)


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _is_boundary_year(subscription: Subscription, year: int) -> bool:
    if year == subscription.start_date.year:
        return True
    return subscription.end_date is not None and year == subscription.end_date.year


def _add_to_bucket(bucket: dict, key: str, amount: Decimal) -> None:
    bucket[key] = bucket.get(key, ZERO) + amount
    bucket["total"] += amount


def _round_bucket(bucket: dict, label_key: str) -> dict:
    return {
        key: value if key == label_key else round_half_up(value)
        for key, value in bucket.items()
    }
