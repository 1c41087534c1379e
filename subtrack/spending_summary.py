from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List, Mapping

from subtrack.billing_frequency import (
    BillingFrequency,
    normalize_to_monthly_with_rates_safe,
    parse_frequency,
)
from subtrack.currency_conversion import (
    ExchangeRateFetcher,
    convert_amount,
    convert_with_rates_safe,
    normalize_currency,
    prefetch_exchange_rates,
)
from subtrack.records import Category, Subscription
from subtrack.renewal_projection import upcoming_renewals
from subtrack.spend_aggregation import nominal_yearly_cost

ZERO = Decimal("0")
CENT = Decimal("0.01")
TENTH = Decimal("0.1")
RECENT_LIMIT = 5
CONVERSION_WARNING = "Some currency conversions failed. Amounts shown in original currency."


@dataclass(frozen=True)
class DashboardTotals:
    total_monthly: Decimal
    total_yearly: Decimal
    currency: str
    active_subscriptions: int
    upcoming_renewals: int


@dataclass(frozen=True)
class DashboardEntry:
    id: int
    name: str
    cost: Decimal
    currency: str
    original_cost: Decimal
    original_currency: str
    billing_frequency: str
    start_date: date
    category: Category | None
    conversion_failed: bool
    next_renewal: date | None = None


@dataclass(frozen=True)
class DashboardSummary:
    totals: DashboardTotals
    recent_subscriptions: List[DashboardEntry]
    upcoming_renewals: List[DashboardEntry]
    conversion_errors: List[str] = field(default_factory=list)

    @property
    def warning(self) -> str | None:
        return CONVERSION_WARNING if self.conversion_errors else None


@dataclass(frozen=True)
class CategoryShare:
    name: str
    color: str
    amount: Decimal
    percentage: Decimal


@dataclass(frozen=True)
class CategoryBreakdown:
    monthly_total: Decimal
    yearly_total: Decimal
    breakdown: List[CategoryShare]


@dataclass(frozen=True)
class LargestExpense:
    id: int
    name: str
    cost: Decimal
    currency: str
    billing_frequency: str
    normalized_monthly_cost: Decimal
    category: Category | None


@dataclass(frozen=True)
class ActiveSpendSummary:
    average_monthly: Decimal
    average_yearly: Decimal
    currency: str
    largest_expense: LargestExpense | None


def summarize_dashboard(
    subscriptions: Iterable[Subscription],
    target_currency: str,
    rate_fetcher: ExchangeRateFetcher,
    today: date | None = None,
) -> DashboardSummary:
    """Totals, recent subscriptions and renewals due within a week.

    Rates are fetched once per source currency up front. A subscription
    whose currency cannot be converted keeps its original amount and is
    reported in ``conversion_errors``.
    """
    reference = today or date.today()
    target = normalize_currency(target_currency)
    ordered = sorted(subscriptions, key=lambda item: item.start_date, reverse=True)
    rates_by_base = prefetch_exchange_rates(
        {item.currency for item in ordered if item.currency.strip().upper() != target},
        rate_fetcher,
    )
    errors: List[str] = []

    total_monthly = ZERO
    active_count = 0
    for subscription in ordered:
        if not subscription.is_active_on(reference):
            continue
        active_count += 1
        result = normalize_to_monthly_with_rates_safe(
            subscription.cost,
            subscription.currency,
            subscription.billing_frequency,
            target,
            rates_by_base,
        )
        if not result.success and result.error:
            errors.append(f"{subscription.name}: {result.error}")
        total_monthly += result.amount

    recent = [
        _dashboard_entry(subscription, target, rates_by_base, errors)
        for subscription in ordered[:RECENT_LIMIT]
    ]
    renewals = upcoming_renewals(ordered, reference)
    upcoming = [
        _dashboard_entry(entry.subscription, target, rates_by_base, errors, entry.next_renewal)
        for entry in renewals
    ]

    return DashboardSummary(
        totals=DashboardTotals(
            total_monthly=_to_cents(total_monthly),
            total_yearly=_to_cents(total_monthly * 12),
            currency=target,
            active_subscriptions=active_count,
            upcoming_renewals=len(renewals),
        ),
        recent_subscriptions=recent,
        upcoming_renewals=upcoming,
        conversion_errors=list(dict.fromkeys(errors)),
    )


def category_breakdown(
    subscriptions: Iterable[Subscription],
    target_currency: str,
    rate_fetcher: ExchangeRateFetcher,
) -> CategoryBreakdown:
    """Yearly spend per category name with its share of the yearly total.

    The yearly total counts monthly and yearly subscriptions only, so shares
    may add up to more than 100 when other frequencies are present. A zero
    yearly total yields 0% for every category.
    """
    monthly_total = ZERO
    yearly_only_total = ZERO
    amounts: dict[str, Decimal] = {}
    colors: dict[str, str] = {}

    for subscription in subscriptions:
        cost = convert_amount(
            subscription.cost, subscription.currency, target_currency, rate_fetcher
        )
        frequency = parse_frequency(subscription.billing_frequency)
        if frequency is BillingFrequency.MONTHLY:
            monthly_total += cost
        elif frequency is BillingFrequency.YEARLY:
            yearly_only_total += cost

        category = subscription.category_or_default
        amounts[category.name] = amounts.get(category.name, ZERO) + nominal_yearly_cost(
            cost, frequency
        )
        colors.setdefault(category.name, category.color)

    yearly_total = monthly_total * 12 + yearly_only_total
    shares = [
        CategoryShare(
            name=name,
            color=colors[name],
            amount=amount,
            percentage=_share_of(amount, yearly_total),
        )
        for name, amount in amounts.items()
    ]
    shares.sort(key=lambda share: share.amount, reverse=True)
    return CategoryBreakdown(
        monthly_total=monthly_total,
        yearly_total=yearly_total,
        breakdown=shares,
    )


def summarize_active_spend(
    subscriptions: Iterable[Subscription],
    target_currency: str,
    rate_fetcher: ExchangeRateFetcher,
    today: date | None = None,
) -> ActiveSpendSummary:
    reference = today or date.today()
    target = normalize_currency(target_currency)
    active = [item for item in subscriptions if item.is_active_on(reference)]

    total_monthly = ZERO
    total_yearly = ZERO
    largest: LargestExpense | None = None
    highest = ZERO
    for subscription in active:
        cost = convert_amount(subscription.cost, subscription.currency, target, rate_fetcher)
        frequency = parse_frequency(subscription.billing_frequency)
        total_monthly += _recurring_monthly(cost, frequency)
        total_yearly += _recurring_yearly(cost, frequency)

        normalized = _recurring_monthly(cost, frequency)
        if frequency is BillingFrequency.ONE_TIME:
            normalized = cost
        if normalized > highest:
            highest = normalized
            largest = LargestExpense(
                id=subscription.id,
                name=subscription.name,
                cost=subscription.cost,
                currency=subscription.currency,
                billing_frequency=subscription.billing_frequency,
                normalized_monthly_cost=_to_cents(normalized),
                category=subscription.category,
            )

    return ActiveSpendSummary(
        average_monthly=_to_cents(total_monthly),
        average_yearly=_to_cents(total_yearly),
        currency=target,
        largest_expense=largest,
    )


def _dashboard_entry(
    subscription: Subscription,
    target_currency: str,
    rates_by_base: Mapping[str, Mapping[str, Decimal]],
    errors: List[str],
    next_renewal: date | None = None,
) -> DashboardEntry:
    result = convert_with_rates_safe(
        subscription.cost, subscription.currency, target_currency, rates_by_base
    )
    if not result.success and result.error:
        errors.append(f"{subscription.name}: {result.error}")
    return DashboardEntry(
        id=subscription.id,
        name=subscription.name,
        cost=_to_cents(result.amount),
        currency=target_currency if result.success else subscription.currency,
        original_cost=subscription.cost,
        original_currency=subscription.currency,
        billing_frequency=subscription.billing_frequency,
        start_date=subscription.start_date,
        category=subscription.category,
        conversion_failed=not result.success,
        next_renewal=next_renewal,
    )


def _recurring_monthly(cost: Decimal, frequency: BillingFrequency) -> Decimal:
    if frequency is BillingFrequency.WEEKLY:
        return cost * 4
    if frequency is BillingFrequency.MONTHLY:
        return cost
    if frequency is BillingFrequency.YEARLY:
        return cost / 12
    return ZERO


def _recurring_yearly(cost: Decimal, frequency: BillingFrequency) -> Decimal:
    if frequency is BillingFrequency.WEEKLY:
        return cost * 52
    if frequency is BillingFrequency.MONTHLY:
        return cost * 12
    if frequency is BillingFrequency.YEARLY:
        return cost
    return ZERO


def _share_of(amount: Decimal, total: Decimal) -> Decimal:
    if total == 0:
        return ZERO
    return (amount / total * 100).quantize(TENTH, rounding=ROUND_HALF_UP)


def _to_cents(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)
