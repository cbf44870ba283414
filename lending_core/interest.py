"""
Interest & Late-Fee Calculators

Pure functions. Interest is simple daily interest on the outstanding
principal; late fees are a flat charge for every full month past the grace
period. Nothing here rounds: callers round once, at the point of use.
"""

from datetime import date
from decimal import Decimal
from typing import Optional

from .money import ZERO, to_decimal
from .config import get_config


def days_between(start: date, end: date) -> int:
    """Whole calendar days from start to end (negative when end is earlier)"""
    return (end - start).days


def days_late(due_date: date, payment_date: date) -> int:
    """Days a payment is late against its due date (never negative)"""
    return max(0, days_between(due_date, payment_date))


def accrued_interest(
    outstanding_principal: Decimal,
    annual_rate_percent: Decimal,
    days: int,
    days_per_year: Optional[int] = None
) -> Decimal:
    """
    Calculate simple interest accrued over a number of days.

    interest = outstanding * (rate / 100 / days_per_year) * days

    Args:
        outstanding_principal: Principal the interest accrues on
        annual_rate_percent: Annual rate in percent, e.g. 12 for 12%
        days: Days elapsed since the last accrual event
        days_per_year: Day-count basis (configured default is 365)

    Returns:
        Unrounded interest amount, zero when days or principal are not positive
    """
    outstanding_principal = to_decimal(outstanding_principal)
    if days <= 0 or outstanding_principal <= ZERO:
        return ZERO

    if days_per_year is None:
        days_per_year = get_config().days_per_year

    daily_rate = to_decimal(annual_rate_percent) / Decimal('100') / Decimal(days_per_year)
    return outstanding_principal * daily_rate * Decimal(days)


def late_fee(
    days_overdue: int,
    grace_period_days: Optional[int] = None,
    flat_fee: Optional[Decimal] = None,
    days_per_month: Optional[int] = None
) -> Decimal:
    """
    Late fee for a payment made ``days_overdue`` days after its due date.

    One flat fee is charged per full month past the grace period:
    ``floor((days_overdue - grace) / days_per_month) * flat_fee``.
    Within the grace period the fee is zero.
    """
    config = get_config()
    if grace_period_days is None:
        grace_period_days = config.grace_period_days
    if flat_fee is None:
        flat_fee = to_decimal(config.flat_late_fee)
    if days_per_month is None:
        days_per_month = config.days_per_month

    if days_overdue <= grace_period_days:
        return ZERO

    months_late = (days_overdue - grace_period_days) // days_per_month
    return Decimal(months_late) * to_decimal(flat_fee)
