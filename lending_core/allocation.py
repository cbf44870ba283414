"""
Allocation Engine

Splits a payment across outstanding obligations. The waterfall order is
fixed: accrued interest first, late fees second, principal last.

Allocation happens in two steps. ``allocate`` splits the amount into the
three global pools; ``distribute_payment`` then spreads each pool over the
due installments in installment order:

* interest is shared in proportion to each installment's remaining principal
  against the loan's outstanding principal; what is left goes to the next
  not-yet-due installment as an interest-only payment (or stays on the last
  due installment when there is no next one, or when it is below the
  minimum accrued interest)
* late fees are settled per installment, earliest first
* principal fills the earliest installment before moving to the next
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import List, Optional

from .errors import ValidationError
from .money import ZERO, to_decimal, quantize_money
from .config import get_config


@dataclass
class Allocation:
    """Global waterfall split of a payment amount"""
    interest: Decimal
    late_fee: Decimal
    principal: Decimal
    unallocated: Decimal = ZERO

    @property
    def total(self) -> Decimal:
        return self.interest + self.late_fee + self.principal


@dataclass
class DueInstallment:
    """An installment eligible to receive part of a payment"""
    schedule_id: str
    installment_number: int
    due_date: date
    principal_remaining: Decimal
    late_fee: Decimal = ZERO
    days_late: int = 0


@dataclass
class InstallmentAllocation:
    """The share of a payment applied to one installment"""
    schedule_id: str
    installment_number: int
    interest: Decimal = ZERO
    late_fee: Decimal = ZERO
    principal: Decimal = ZERO
    days_late: int = 0
    principal_remaining_after: Decimal = ZERO
    interest_only: bool = False

    @property
    def total(self) -> Decimal:
        return self.interest + self.late_fee + self.principal

    @property
    def fully_paid(self) -> bool:
        return not self.interest_only and self.principal_remaining_after <= ZERO


@dataclass
class PaymentDistribution:
    """Result of spreading one payment across installments"""
    allocation: Allocation
    installments: List[InstallmentAllocation] = field(default_factory=list)

    @property
    def total(self) -> Decimal:
        return sum((i.total for i in self.installments), ZERO)


def allocate(
    amount: Decimal,
    interest_due: Decimal,
    late_fee_due: Decimal,
    principal_due: Decimal
) -> Allocation:
    """
    Waterfall-allocate ``amount``: interest, then late fee, then principal.

    Each bucket takes ``min(remaining, due)``; whatever is left after all
    three is reported as ``unallocated``.
    """
    remaining = to_decimal(amount)
    if remaining <= ZERO:
        raise ValidationError("Payment amount must be positive")

    interest = min(remaining, max(to_decimal(interest_due), ZERO))
    remaining -= interest

    fee = min(remaining, max(to_decimal(late_fee_due), ZERO))
    remaining -= fee

    principal = min(remaining, max(to_decimal(principal_due), ZERO))
    remaining -= principal

    return Allocation(interest=interest, late_fee=fee, principal=principal, unallocated=remaining)


def _interest_shares(
    accrued_interest: Decimal,
    due: List[DueInstallment],
    outstanding_principal: Decimal
) -> List[Decimal]:
    if outstanding_principal <= ZERO:
        return [ZERO for _ in due]
    return [
        quantize_money(accrued_interest * inst.principal_remaining / outstanding_principal)
        for inst in due
    ]


def distribute_payment(
    amount: Decimal,
    accrued_interest: Decimal,
    due: List[DueInstallment],
    outstanding_principal: Decimal,
    next_pending: Optional[DueInstallment] = None,
    min_accrued_interest: Optional[Decimal] = None
) -> PaymentDistribution:
    """
    Allocate a payment and spread it across due installments.

    Args:
        amount: Amount being paid; must be positive and not exceed the total due
        accrued_interest: Interest accrued since the last event, already rounded
        due: Due installments in installment order
        outstanding_principal: Loan outstanding principal the interest accrued on
        next_pending: First installment not yet due, for leftover interest
        min_accrued_interest: Leftover interest at or below this stays on the
            last due installment

    Returns:
        PaymentDistribution with one entry per installment that received money
    """
    if not due:
        raise ValidationError("Nothing due yet")

    amount = to_decimal(amount)
    accrued_interest = to_decimal(accrued_interest)
    outstanding_principal = to_decimal(outstanding_principal)
    if min_accrued_interest is None:
        min_accrued_interest = to_decimal(get_config().min_accrued_interest)

    total_fee = sum((inst.late_fee for inst in due), ZERO)
    total_principal = sum((inst.principal_remaining for inst in due), ZERO)
    total_due = accrued_interest + total_fee + total_principal

    if amount <= ZERO:
        raise ValidationError("Payment amount must be positive")
    if amount > total_due:
        raise ValidationError(
            f"Payment amount {amount} exceeds total due {total_due}"
        )

    allocation = allocate(amount, accrued_interest, total_fee, total_principal)

    results = [
        InstallmentAllocation(
            schedule_id=inst.schedule_id,
            installment_number=inst.installment_number,
            days_late=inst.days_late,
            principal_remaining_after=inst.principal_remaining
        )
        for inst in due
    ]

    # Interest, proportional to remaining principal
    interest_pool = allocation.interest
    for result, share in zip(results, _interest_shares(accrued_interest, due, outstanding_principal)):
        take = min(interest_pool, share)
        result.interest += take
        interest_pool -= take

    interest_only = None
    if interest_pool > ZERO:
        if next_pending is not None and interest_pool > min_accrued_interest:
            interest_only = InstallmentAllocation(
                schedule_id=next_pending.schedule_id,
                installment_number=next_pending.installment_number,
                interest=interest_pool,
                principal_remaining_after=next_pending.principal_remaining,
                interest_only=True
            )
        else:
            results[-1].interest += interest_pool

    # Late fees, per installment
    fee_pool = allocation.late_fee
    for result, inst in zip(results, due):
        take = min(fee_pool, inst.late_fee)
        result.late_fee += take
        fee_pool -= take

    # Principal, earliest installment first
    principal_pool = allocation.principal
    for result in results:
        take = min(principal_pool, result.principal_remaining_after)
        result.principal += take
        result.principal_remaining_after -= take
        principal_pool -= take

    installments = [r for r in results if r.total > ZERO]
    if interest_only is not None:
        installments.append(interest_only)

    return PaymentDistribution(allocation=allocation, installments=installments)
