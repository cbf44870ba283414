"""
Test suite for the payment orchestrator

Scenario: 12000 at 12% over 12 months, disbursed 2024-01-15, first
installment due 2024-02-15 (principal 946.19, scheduled payment 1066.19).
"""

import pytest
import threading
from decimal import Decimal
from datetime import date

from lending_core.storage import InMemoryStorage
from lending_core.system import LendingSystem
from lending_core.audit import AuditEventType
from lending_core.loans import LoanStatus, ScheduleStatus, PaymentStatus
from lending_core.transactions import TransactionType
from lending_core.rollback import OriginalOperation
from lending_core.payments import UNIT_FAULT
from lending_core.errors import (
    ValidationError, NotFoundError, InsufficientFundsError, InjectedFault
)


DISBURSED_ON = date(2024, 1, 15)


class PaymentTestBase:

    def setup_method(self):
        self.system = LendingSystem(storage=InMemoryStorage())
        self.system.ledger.fund_platform(Decimal('100000'))
        self.borrower = self.system.ledger.open_account("borrower-1")
        self.loan = self.system.loan_manager.originate_loan(
            self.borrower.id, Decimal('12000'), Decimal('12'), 12
        )
        self.system.loan_manager.approve_loan(self.loan.id)
        self.system.disburse(self.loan.id, Decimal('12000'), DISBURSED_ON)

    def schedule(self):
        return self.system.loan_manager.get_schedule(self.loan.id)

    def balances(self):
        return (
            self.system.ledger.get_platform_account().balance,
            self.system.ledger.get_account(self.borrower.id).balance
        )


class TestOnTimePayment(PaymentTestBase):
    """Full payment on the first due date"""

    def test_full_payment(self):
        """Test paying the first installment on its due date"""
        result = self.system.process_payment(self.loan.id, date(2024, 2, 15), actor="borrower-1")

        assert result.total_amount_charged == Decimal('1068.49')
        assert result.total_principal_paid == Decimal('946.19')
        assert result.total_interest_paid == Decimal('122.30')
        assert result.total_late_fee_paid == Decimal('0')
        assert result.new_outstanding_principal == Decimal('11053.81')
        assert result.loan_status == LoanStatus.ACTIVE
        assert result.schedules_covered == 1

    def test_interest_split_across_installments(self):
        """Leftover interest is recorded against the next installment"""
        result = self.system.process_payment(self.loan.id, date(2024, 2, 15))
        first, second = result.payments

        assert first.interest_paid == Decimal('9.64')
        assert first.principal_paid == Decimal('946.19')
        assert first.amount == Decimal('955.83')
        assert first.days_late == 0

        # Leftover interest lands on the next installment as interest only
        assert second.interest_paid == Decimal('112.66')
        assert second.principal_paid == Decimal('0')

    def test_schedule_updates(self):
        """Test schedule statuses after the payment"""
        self.system.process_payment(self.loan.id, date(2024, 2, 15))
        rows = self.schedule()

        assert rows[0].status == ScheduleStatus.PAID
        assert rows[0].paid_date == date(2024, 2, 15)
        assert rows[1].status == ScheduleStatus.PARTIALLY_PAID
        assert rows[1].paid_date is None
        assert all(r.status == ScheduleStatus.PENDING for r in rows[2:])

    def test_money_moves_and_journal_balances(self):
        """Test money movement and journal reconciliation"""
        result = self.system.process_payment(self.loan.id, date(2024, 2, 15))

        assert self.balances() == (Decimal('89068.49'), Decimal('10931.51'))
        assert self.system.journal.reconcile(self.system.ledger)['balanced']

        for payment in result.payments:
            entry = self.system.journal.get_transaction(payment.transaction_id)
            assert entry.type == TransactionType.REPAYMENT
            assert entry.amount == payment.amount
            assert entry.ref_id == payment.id

    def test_audit_event(self):
        """Test the payment audit event"""
        self.system.process_payment(self.loan.id, date(2024, 2, 15), actor="borrower-1")
        events = self.system.audit_trail.get_events_by_type(AuditEventType.PAYMENT_PROCESSED)
        assert len(events) == 1
        assert events[0].actor == "borrower-1"
        assert events[0].metadata['total_amount_charged'] == "1068.49"

    def test_quote_matches_payment(self):
        """The quote shows exactly what the payment charges"""
        quote = self.system.payments.quote_payment(self.loan.id, date(2024, 2, 15))

        assert quote.days_since_last_event == 31
        assert quote.accrued_interest == Decimal('122.30')
        assert quote.total_principal_due == Decimal('946.19')
        assert quote.total_due == Decimal('1068.49')
        assert [d.installment_number for d in quote.due] == [1]
        assert quote.next_pending.installment_number == 2

        # Quoting writes nothing
        assert self.system.loan_manager.get_loan_payments(self.loan.id) == []

    def test_next_payment_accrues_from_last_payment(self):
        """Test that interest accrues from the last payment date"""
        self.system.process_payment(self.loan.id, date(2024, 2, 15))
        quote = self.system.payments.quote_payment(self.loan.id, date(2024, 3, 15))

        assert quote.last_event_date == date(2024, 2, 15)
        assert quote.days_since_last_event == 29
        assert [d.installment_number for d in quote.due] == [2]
        assert quote.total_principal_due == Decimal('955.65')


class TestLatePayment(PaymentTestBase):
    """Paying on 2024-03-21: installment 1 is 35 days late, installment 2 is 6"""

    def test_late_fee_and_totals(self):
        """Test totals for a payment covering two late installments"""
        result = self.system.process_payment(self.loan.id, date(2024, 3, 21))

        assert result.total_amount_charged == Decimal('2187.22')
        assert result.total_interest_paid == Decimal('260.38')
        assert result.total_late_fee_paid == Decimal('25')
        assert result.total_principal_paid == Decimal('1901.84')
        assert result.new_outstanding_principal == Decimal('10098.16')
        # Installment 3 only receives interest, so it is not counted
        assert result.schedules_covered == 2

    def test_per_installment_breakdown(self):
        """Test the split across both late installments and the next one"""
        result = self.system.process_payment(self.loan.id, date(2024, 3, 21))
        first, second, third = result.payments

        assert (first.interest_paid, first.late_fee_paid, first.principal_paid) == (
            Decimal('20.53'), Decimal('25'), Decimal('946.19')
        )
        assert first.days_late == 35
        assert (second.interest_paid, second.late_fee_paid, second.principal_paid) == (
            Decimal('20.74'), Decimal('0'), Decimal('955.65')
        )
        assert second.days_late == 6
        assert third.interest_paid == Decimal('219.11')
        assert third.principal_paid == Decimal('0')

        rows = self.schedule()
        assert [r.status for r in rows[:3]] == [
            ScheduleStatus.PAID, ScheduleStatus.PAID, ScheduleStatus.PARTIALLY_PAID
        ]

    def test_fees_are_charged_once(self):
        """A partial payment that settles the fee does not owe it again"""
        self.system.process_payment(self.loan.id, date(2024, 3, 21), amount=Decimal('300'))
        quote = self.system.payments.quote_payment(self.loan.id, date(2024, 3, 21))

        assert quote.total_late_fee == Decimal('0')
        assert quote.accrued_interest == Decimal('0')


class TestPartialPayment(PaymentTestBase):
    """Amounts below the total due"""

    def test_partial_amount_goes_to_interest_first(self):
        """Test that a partial amount pays interest before principal"""
        result = self.system.process_payment(self.loan.id, date(2024, 2, 15), amount=Decimal('100'))

        assert result.total_amount_charged == Decimal('100')
        assert result.total_principal_paid == Decimal('0')
        assert [p.interest_paid for p in result.payments] == [Decimal('9.64'), Decimal('90.36')]
        assert result.new_outstanding_principal == Decimal('12000')

        rows = self.schedule()
        assert rows[0].status == ScheduleStatus.PARTIALLY_PAID
        assert rows[1].status == ScheduleStatus.PARTIALLY_PAID

    def test_remaining_principal_paid_same_day(self):
        """Test settling the rest of an installment on the same day"""
        self.system.process_payment(self.loan.id, date(2024, 2, 15), amount=Decimal('100'))
        result = self.system.process_payment(self.loan.id, date(2024, 2, 15))

        assert result.total_amount_charged == Decimal('946.19')
        assert result.total_interest_paid == Decimal('0')
        assert result.new_outstanding_principal == Decimal('11053.81')
        assert self.schedule()[0].status == ScheduleStatus.PAID

    def test_overpayment_rejected(self):
        """Test rejection of an amount above the total due"""
        with pytest.raises(ValidationError, match="exceeds total due"):
            self.system.process_payment(self.loan.id, date(2024, 2, 15), amount=Decimal('1068.50'))

    @pytest.mark.parametrize("amount", [Decimal('0'), Decimal('-5')])
    def test_non_positive_amount(self, amount):
        """Test rejection of zero and negative amounts"""
        with pytest.raises(ValidationError):
            self.system.process_payment(self.loan.id, date(2024, 2, 15), amount=amount)

    @pytest.mark.parametrize("amount", [Decimal('500.005'), Decimal('0.001')])
    def test_fraction_of_a_cent_rejected(self, amount):
        """Sub-cent amounts are rejected before any money moves"""
        with pytest.raises(ValidationError, match="whole number of cents"):
            self.system.process_payment(self.loan.id, date(2024, 2, 15), amount=amount)

        assert self.balances() == (Decimal('88000'), Decimal('12000'))
        assert self.system.loan_manager.get_loan_payments(self.loan.id) == []


class TestPaymentRejections(PaymentTestBase):
    """Payments that must not change anything"""

    def assert_untouched(self):
        loan = self.system.loan_manager.get_loan(self.loan.id)
        assert loan.outstanding_principal == Decimal('12000')
        assert loan.status == LoanStatus.ACTIVE
        assert self.system.loan_manager.get_loan_payments(self.loan.id) == []
        assert all(r.status == ScheduleStatus.PENDING for r in self.schedule())
        assert self.system.journal.reconcile(self.system.ledger)['balanced']

    def test_nothing_due_yet(self):
        """Test paying before the first due date"""
        with pytest.raises(ValidationError, match="Nothing due yet"):
            self.system.process_payment(self.loan.id, date(2024, 2, 1))
        self.assert_untouched()

    def test_date_before_disbursement(self):
        """Test a payment dated before the disbursement"""
        with pytest.raises(ValidationError, match="before the last event"):
            self.system.process_payment(self.loan.id, date(2024, 1, 10))

    def test_date_before_last_payment(self):
        """Payments cannot be backdated before an earlier payment"""
        self.system.process_payment(self.loan.id, date(2024, 3, 15))
        with pytest.raises(ValidationError, match="before the last event"):
            self.system.process_payment(self.loan.id, date(2024, 3, 1))

    def test_unknown_loan(self):
        """Test paying an unknown loan"""
        with pytest.raises(NotFoundError):
            self.system.process_payment("missing", date(2024, 2, 15))

    def test_loan_not_active(self):
        """Test paying a loan that was never disbursed"""
        other = self.system.loan_manager.originate_loan(
            self.borrower.id, Decimal('500'), Decimal('12'), 6
        )
        with pytest.raises(ValidationError, match="not active"):
            self.system.process_payment(other.id, date(2024, 2, 15))

    def test_borrower_cannot_cover_payment(self):
        """Test a borrower without enough funds for the payment"""
        elsewhere = self.system.ledger.open_account("borrower-2")
        self.system.ledger.transfer(self.borrower.id, elsewhere.id, Decimal('11500'))
        platform_before, borrower_before = self.balances()

        with pytest.raises(InsufficientFundsError):
            self.system.process_payment(self.loan.id, date(2024, 2, 15))

        self.assert_untouched()
        assert self.balances() == (platform_before, borrower_before)

        records = self.system.rollback_service.get_rollback_records(
            transaction_id=self.loan.id, operation=OriginalOperation.REPAYMENT
        )
        assert len(records) == 1
        assert records[0].compensating_actions == {'automatic_rollback': True}
        assert self.system.audit_trail.get_events_by_type(AuditEventType.PAYMENT_FAILED)

    def test_fault_inside_unit(self):
        """A fault inside the unit leaves no payment behind"""
        self.system.payments.fault_injection = UNIT_FAULT

        with pytest.raises(InjectedFault):
            self.system.process_payment(self.loan.id, date(2024, 2, 15))

        self.assert_untouched()
        assert self.balances() == (Decimal('88000'), Decimal('12000'))


class TestPayoff:
    """Paying the last installment closes the loan"""

    def setup_method(self):
        self.system = LendingSystem(storage=InMemoryStorage())
        self.system.ledger.fund_platform(Decimal('5000'))
        self.borrower = self.system.ledger.open_account("borrower-1")
        self.loan = self.system.loan_manager.originate_loan(
            self.borrower.id, Decimal('1000'), Decimal('0'), 1
        )
        self.system.loan_manager.approve_loan(self.loan.id)
        self.system.disburse(self.loan.id, Decimal('1000'), date(2024, 1, 1))

    def test_loan_closes(self):
        """Test that paying the final installment closes the loan"""
        result = self.system.process_payment(self.loan.id, date(2024, 2, 1))

        assert result.total_amount_charged == Decimal('1000')
        assert result.loan_status == LoanStatus.CLOSED
        assert result.new_outstanding_principal == Decimal('0')
        assert self.system.loan_manager.get_loan(self.loan.id).status == LoanStatus.CLOSED

        payments = self.system.loan_manager.get_loan_payments(self.loan.id, PaymentStatus.COMPLETED)
        assert len(payments) == 1

    def test_closed_loan_takes_no_payment(self):
        """Test that a closed loan rejects further payments"""
        self.system.process_payment(self.loan.id, date(2024, 2, 1))
        with pytest.raises(ValidationError, match="not active"):
            self.system.process_payment(self.loan.id, date(2024, 3, 1))


class TestConcurrentPayment(PaymentTestBase):
    """Two simultaneous full payments for the same due date"""

    def test_outstanding_principal_drops_once(self):
        """Only one of two racing payments takes the installment"""
        barrier = threading.Barrier(2)
        outcomes = []
        errors = []

        def attempt():
            barrier.wait()
            try:
                self.system.process_payment(self.loan.id, date(2024, 2, 15))
                outcomes.append("ok")
            except ValidationError as e:
                outcomes.append("rejected")
                errors.append(str(e))

        threads = [threading.Thread(target=attempt) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(outcomes) == ["ok", "rejected"]
        assert errors == ["Nothing due yet"]

        loan = self.system.loan_manager.get_loan(self.loan.id)
        assert loan.outstanding_principal == Decimal('11053.81')

        completed = self.system.loan_manager.get_loan_payments(self.loan.id, PaymentStatus.COMPLETED)
        assert sum((p.principal_paid for p in completed), Decimal('0')) == Decimal('946.19')
        assert self.balances() == (Decimal('89068.49'), Decimal('10931.51'))
        assert self.system.journal.reconcile(self.system.ledger)['balanced']
