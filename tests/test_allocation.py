"""
Test suite for the allocation engine

Tests the interest -> late fee -> principal waterfall and its distribution
across due installments.
"""

import pytest
from decimal import Decimal
from datetime import date

from lending_core.allocation import allocate, distribute_payment, DueInstallment
from lending_core.errors import ValidationError


def _installment(number, principal, fee="0", days_late=0):
    return DueInstallment(
        schedule_id=f"S{number}",
        installment_number=number,
        due_date=date(2024, number, 15),
        principal_remaining=Decimal(principal),
        late_fee=Decimal(fee),
        days_late=days_late
    )


class TestWaterfall:
    """Test the global waterfall order"""

    def test_interest_and_fee_before_principal(self):
        """Test that interest and the late fee are paid before any principal"""
        result = allocate(Decimal('40'), Decimal('30'), Decimal('25'), Decimal('1000'))
        assert result.interest == Decimal('30')
        assert result.late_fee == Decimal('10')
        assert result.principal == Decimal('0')
        assert result.unallocated == Decimal('0')

    def test_full_amount(self):
        """Test an amount that exactly covers every component"""
        result = allocate(Decimal('1055'), Decimal('30'), Decimal('25'), Decimal('1000'))
        assert (result.interest, result.late_fee, result.principal) == (
            Decimal('30'), Decimal('25'), Decimal('1000')
        )
        assert result.total == Decimal('1055')

    def test_excess_reported_unallocated(self):
        """Money beyond what is owed is reported, not allocated"""
        result = allocate(Decimal('1100'), Decimal('30'), Decimal('25'), Decimal('1000'))
        assert result.unallocated == Decimal('45')

    def test_rejects_non_positive_amount(self):
        """Test that allocate rejects a zero amount"""
        with pytest.raises(ValidationError):
            allocate(Decimal('0'), Decimal('30'), Decimal('25'), Decimal('1000'))


class TestDistribution:
    """Test spreading a payment across installments"""

    def test_single_due_installment_leftover_interest_goes_to_next(self):
        """Test leftover interest moving to the next pending installment"""
        due = [_installment(1, "946.19")]
        next_pending = _installment(2, "955.65")

        result = distribute_payment(
            Decimal('1068.49'), Decimal('122.30'), due, Decimal('12000'), next_pending
        )

        first, second = result.installments
        assert first.schedule_id == "S1"
        assert first.interest == Decimal('9.64')
        assert first.principal == Decimal('946.19')
        assert first.fully_paid

        assert second.schedule_id == "S2"
        assert second.interest_only
        assert second.interest == Decimal('112.66')
        assert second.principal == Decimal('0')
        assert not second.fully_paid

        assert result.total == Decimal('1068.49')

    def test_leftover_interest_stays_on_last_due_without_next(self):
        """Without a next installment the leftover interest stays on the last due one"""
        due = [_installment(1, "500"), _installment(2, "500")]
        result = distribute_payment(Decimal('1010'), Decimal('10'), due, Decimal('2000'), None)

        assert [i.interest for i in result.installments] == [Decimal('2.50'), Decimal('7.50')]
        assert result.total == Decimal('1010')

    def test_tiny_leftover_stays_on_last_due(self):
        """Test that a one-cent leftover is not split off"""
        due = [_installment(1, "500")]
        next_pending = _installment(2, "500")
        result = distribute_payment(
            Decimal('500.02'), Decimal('0.02'), due, Decimal('1000'), next_pending
        )
        assert len(result.installments) == 1
        assert result.installments[0].interest == Decimal('0.02')

    def test_principal_fills_earliest_first(self):
        """Test principal filling the earliest installment first"""
        due = [_installment(1, "100"), _installment(2, "100")]
        result = distribute_payment(Decimal('150'), Decimal('0'), due, Decimal('200'))

        first, second = result.installments
        assert first.principal == Decimal('100')
        assert first.fully_paid
        assert second.principal == Decimal('50')
        assert second.principal_remaining_after == Decimal('50')
        assert not second.fully_paid

    def test_fees_settled_in_order(self):
        """Late fees are settled installment by installment"""
        due = [_installment(1, "100", fee="25", days_late=40), _installment(2, "100", fee="25", days_late=35)]
        result = distribute_payment(Decimal('30'), Decimal('0'), due, Decimal('200'))

        first, second = result.installments
        assert first.late_fee == Decimal('25')
        assert second.late_fee == Decimal('5')
        assert first.principal == second.principal == Decimal('0')
        assert first.days_late == 40

    def test_partial_interest_only_payment(self):
        """Test an amount too small to clear the accrued interest"""
        due = [_installment(1, "946.19")]
        next_pending = _installment(2, "955.65")
        result = distribute_payment(Decimal('100'), Decimal('122.30'), due, Decimal('12000'), next_pending)

        first, second = result.installments
        assert first.interest == Decimal('9.64')
        assert first.principal == Decimal('0')
        assert second.interest == Decimal('90.36')
        assert result.allocation.principal == Decimal('0')

    def test_zero_allocations_are_skipped(self):
        """Installments that receive nothing are left out"""
        due = [_installment(1, "100"), _installment(2, "100")]
        result = distribute_payment(Decimal('60'), Decimal('0'), due, Decimal('200'))
        assert [i.schedule_id for i in result.installments] == ["S1"]

    def test_overpayment_rejected(self):
        """Test rejection of an amount above the total due"""
        due = [_installment(1, "100")]
        with pytest.raises(ValidationError, match="exceeds total due"):
            distribute_payment(Decimal('100.01'), Decimal('0'), due, Decimal('100'))

    def test_nothing_due(self):
        """Test distributing with no installments due"""
        with pytest.raises(ValidationError, match="Nothing due"):
            distribute_payment(Decimal('10'), Decimal('0'), [], Decimal('100'))

    def test_negative_amount_rejected(self):
        """Test that distribute_payment rejects a negative amount"""
        with pytest.raises(ValidationError):
            distribute_payment(Decimal('-1'), Decimal('0'), [_installment(1, "100")], Decimal('100'))
