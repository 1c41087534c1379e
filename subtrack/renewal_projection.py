from __future__ import annotations

from calendar import monthrange
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Iterable, List

from subtrack.billing_frequency import BillingFrequency, parse_frequency
from subtrack.records import Subscription

WEEKLY_DAYS = 7
UPCOMING_WINDOW_DAYS = 7


@dataclass(frozen=True)
class UpcomingRenewal:
    subscription: Subscription
    next_renewal: date


def renewal_dates(
    subscription: Subscription,
    year: int,
    month: int | None = None,
) -> List[str]:
    """Billing dates of ``subscription`` inside ``year`` (and ``month``).

    Only weekly, monthly and yearly subscriptions produce dates, and monthly
    ones only when a month is given. Dates after the subscription's end
    date are dropped.
    """
    if month is not None and not 1 <= month <= 12:
        raise ValueError("month must be between 1 and 12.")

    frequency = parse_frequency(subscription.billing_frequency)
    start_date = subscription.start_date
    if frequency is BillingFrequency.MONTHLY:
        occurrence = _monthly_occurrence(start_date, year, month) if month is not None else None
        dates = [occurrence] if occurrence is not None else []
    elif frequency is BillingFrequency.WEEKLY:
        dates = _weekly_occurrences(start_date, year, month)
    elif frequency is BillingFrequency.YEARLY:
        occurrence = _yearly_occurrence(start_date, year)
        dates = [occurrence] if occurrence and (month is None or occurrence.month == month) else []
    else:
        dates = []

    if subscription.end_date is not None:
        dates = [value for value in dates if value <= subscription.end_date]
    return [value.isoformat() for value in dates]


def next_renewal_date(subscription: Subscription, today: date | None = None) -> date:
    """First billing date on or after ``today``.

    Frequencies without a fixed step return the start date unchanged, which
    may lie in the past.
    """
    reference = today or date.today()
    start_date = subscription.start_date
    frequency = parse_frequency(subscription.billing_frequency)
    if frequency is BillingFrequency.MONTHLY:
        return _first_monthly_on_or_after(start_date, reference)[0]
    if frequency is BillingFrequency.YEARLY:
        return _first_yearly_on_or_after(start_date, reference)[0]
    if frequency is BillingFrequency.WEEKLY:
        return _first_occurrence_on_or_after(start_date, reference, WEEKLY_DAYS)
    return start_date


def upcoming_renewals(
    subscriptions: Iterable[Subscription],
    today: date | None = None,
    days: int = UPCOMING_WINDOW_DAYS,
) -> List[UpcomingRenewal]:
    reference = today or date.today()
    window_end = reference + timedelta(days=days)
    upcoming: List[UpcomingRenewal] = []
    for subscription in subscriptions:
        next_renewal = next_renewal_date(subscription, reference)
        if not reference <= next_renewal <= window_end:
            continue
        if subscription.end_date is not None and next_renewal > subscription.end_date:
            continue
        upcoming.append(UpcomingRenewal(subscription=subscription, next_renewal=next_renewal))
    upcoming.sort(key=lambda entry: (entry.next_renewal, entry.subscription.id))
    return upcoming


def _monthly_occurrence(start_date: date, year: int, month: int) -> date | None:
    months_between = (year - start_date.year) * 12 + (month - start_date.month)
    if months_between < 0:
        return None
    return _add_months(start_date, months_between, start_date.day)


def _yearly_occurrence(start_date: date, year: int) -> date | None:
    years_between = year - start_date.year
    if years_between < 0:
        return None
    return _add_months(start_date, years_between * 12, start_date.day)


def _weekly_occurrences(start_date: date, year: int, month: int | None) -> List[date]:
    if month is None:
        window_start = date(year, 1, 1)
        window_end = date(year, 12, 31)
    else:
        window_start = date(year, month, 1)
        window_end = date(year, month, monthrange(year, month)[1])

    occurrences: List[date] = []
    current_date = _first_occurrence_on_or_after(start_date, window_start, WEEKLY_DAYS)
    while current_date <= window_end:
        occurrences.append(current_date)
        current_date += timedelta(days=WEEKLY_DAYS)
    return occurrences


def _first_occurrence_on_or_after(
    start_date: date, minimum_date: date, interval_days: int
) -> date:
    if start_date >= minimum_date:
        return start_date
    days_between = (minimum_date - start_date).days
    intervals = (days_between + interval_days - 1) // interval_days
    return start_date + timedelta(days=interval_days * intervals)


def _first_monthly_on_or_after(start_date: date, minimum_date: date) -> tuple[date, int]:
    if start_date >= minimum_date:
        return start_date, 0
    months_between = (minimum_date.year - start_date.year) * 12 + (
        minimum_date.month - start_date.month
    )
    candidate = _add_months(start_date, months_between, start_date.day)
    if candidate < minimum_date:
        months_between += 1
        candidate = _add_months(start_date, months_between, start_date.day)
    return candidate, months_between


def _first_yearly_on_or_after(start_date: date, minimum_date: date) -> tuple[date, int]:
    if start_date >= minimum_date:
        return start_date, 0
    months_between = (minimum_date.year - start_date.year) * 12
    candidate = _add_months(start_date, months_between, start_date.day)
    if candidate < minimum_date:
        months_between += 12
        candidate = _add_months(start_date, months_between, start_date.day)
    return candidate, months_between


def _add_months(start_date: date, months: int, anchor_day: int) -> date:
    # Always offset from the anchor day, so Jan 31 steps to Feb 29 and then
    # back to Mar 31 instead of drifting to Mar 29 as repeated stepping would.
    total_month = start_date.month - 1 + months
    year = start_date.year + total_month // 12
    month = total_month % 12 + 1
    last_day = monthrange(year, month)[1]
    day = min(anchor_day, last_day)
    return date(year, month, day)
