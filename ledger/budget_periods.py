from __future__ import annotations

from calendar import monthrange
from datetime import date, timedelta

from ledger.errors import InvalidPeriod, InvalidPeriodForRenewal

ONE_DAY = timedelta(days=1)
WEEKLY_DAYS = 7


class BudgetPeriod:
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"
    CUSTOM = "CUSTOM"

    values = (DAILY, WEEKLY, MONTHLY, YEARLY, CUSTOM)
    renewable = {DAILY, WEEKLY, MONTHLY, YEARLY}


def valid_periods() -> list[str]:
    return [format_period_for_api(value) for value in BudgetPeriod.values]


def validate_period(value: str) -> str:
    normalized = normalize_period(value)
    if normalized not in BudgetPeriod.values:
        raise InvalidPeriod(value, valid_periods())
    return normalized


def normalize_period(value: str) -> str:
    return value.strip().upper()


def format_period_for_api(value: str) -> str:
    return value.strip().lower()


def validate_renewal(period: str, repeat: bool) -> None:
    """Custom periods have no defined length, so they cannot repeat."""
    if repeat and normalize_period(period) not in BudgetPeriod.renewable:
        raise InvalidPeriodForRenewal(period)


def encode_end_date(inclusive_end: date) -> date:
    return inclusive_end + ONE_DAY


def decode_end_date(exclusive_end: date) -> date:
    return exclusive_end - ONE_DAY


def next_period(exclusive_end: date, period: str) -> tuple[date, date]:
    normalized = normalize_period(period)
    if normalized == BudgetPeriod.DAILY:
        return exclusive_end, exclusive_end + ONE_DAY
    if normalized == BudgetPeriod.WEEKLY:
        return exclusive_end, exclusive_end + timedelta(days=WEEKLY_DAYS)
    if normalized == BudgetPeriod.MONTHLY:
        return exclusive_end, _add_months(exclusive_end, 1)
    if normalized == BudgetPeriod.YEARLY:
        return exclusive_end, _add_months(exclusive_end, 12)
    raise InvalidPeriodForRenewal(period)


def _add_months(start_date: date, months: int) -> date:
    total_month = start_date.month - 1 + months
    year = start_date.year + total_month // 12
    month = total_month % 12 + 1
    last_day = monthrange(year, month)[1]
    day = min(start_date.day, last_day)
    return date(year, month, day)
