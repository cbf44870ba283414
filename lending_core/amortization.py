"""
Amortization Builder

Fixed-payment (annuity) repayment schedules, computed once at disbursement.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import List
import calendar

from .errors import ValidationError
from .money import ZERO, to_decimal, quantize_money


@dataclass
class ScheduleRow:
    """One installment of a repayment schedule"""
    installment_number: int
    due_date: date
    principal_amount: Decimal
    interest_amount: Decimal
    remaining_balance: Decimal

    @property
    def payment_amount(self) -> Decimal:
        return self.principal_amount + self.interest_amount


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def monthly_rate(annual_rate_percent: Decimal) -> Decimal:
    return to_decimal(annual_rate_percent) / Decimal('100') / Decimal('12')


def monthly_payment(principal: Decimal, annual_rate_percent: Decimal, tenor_months: int) -> Decimal:
    """
    Fixed monthly installment via the annuity formula
    M = P * r * (1 + r)^n / ((1 + r)^n - 1), with r the monthly rate.

    Returned unrounded; a zero rate gives P / n.
    """
    principal = to_decimal(principal)
    r = monthly_rate(annual_rate_percent)
    n = tenor_months

    if r == ZERO:
        return principal / Decimal(n)

    growth = (Decimal('1') + r) ** n
    return principal * r * growth / (growth - Decimal('1'))


def build_schedule(
    principal: Decimal,
    annual_rate_percent: Decimal,
    tenor_months: int,
    disbursement_date: date
) -> List[ScheduleRow]:
    """
    Build the repayment schedule for a loan.

    Installment ``i`` falls due ``i`` months after disbursement. Principal and
    interest are rounded to cents per row and the final row takes exactly the
    remaining principal, so principal portions sum to ``principal`` and the
    last remaining balance is zero.

    Raises:
        ValidationError: principal or tenor not positive, or negative rate
    """
    principal = to_decimal(principal)
    rate = to_decimal(annual_rate_percent)

    if principal <= ZERO:
        raise ValidationError("Principal must be positive")
    if tenor_months <= 0:
        raise ValidationError("Tenor must be at least one month")
    if rate < ZERO:
        raise ValidationError("Interest rate cannot be negative")

    r = monthly_rate(rate)
    payment = monthly_payment(principal, rate, tenor_months)

    schedule = []
    remaining = principal

    for number in range(1, tenor_months + 1):
        interest_amount = quantize_money(remaining * r)

        if number == tenor_months:
            # Pay exactly what's left
            principal_amount = remaining
        else:
            principal_amount = quantize_money(payment) - interest_amount
            principal_amount = min(max(principal_amount, ZERO), remaining)

        remaining = remaining - principal_amount

        schedule.append(ScheduleRow(
            installment_number=number,
            due_date=add_months(disbursement_date, number),
            principal_amount=principal_amount,
            interest_amount=interest_amount,
            remaining_balance=remaining
        ))

    return schedule
