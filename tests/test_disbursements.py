"""
Test suite for the disbursement orchestrator

CRITICAL: A disbursement either completes fully or leaves no money moved.
Post-commit failures must be compensated before the error reaches the caller.
"""

import pytest
import threading
from decimal import Decimal
from datetime import date

from lending_core.storage import InMemoryStorage
from lending_core.system import LendingSystem
from lending_core.audit import AuditEventType, AuditLevel
from lending_core.loans import LoanStatus, DisbursementStatus
from lending_core.rollback import OriginalOperation
from lending_core.disbursements import UNIT_FAULT, POST_COMMIT_FAULT
from lending_core.errors import (
    ValidationError, NotFoundError, ConflictError, InsufficientFundsError,
    InjectedFault, PostCommitFailure, CompensationFailure, ErrorKind
)


class TestDisbursement:
    """Test the APPROVED -> ACTIVE path"""

    def setup_method(self):
        self.system = LendingSystem(storage=InMemoryStorage())
        self.system.ledger.fund_platform(Decimal('100000'))
        self.borrower = self.system.ledger.open_account("borrower-1")
        self.loan = self.system.loan_manager.originate_loan(
            self.borrower.id, Decimal('12000'), Decimal('12'), 12
        )
        self.system.loan_manager.approve_loan(self.loan.id)

    def _balances(self):
        platform = self.system.ledger.get_platform_account().balance
        borrower = self.system.ledger.get_account(self.borrower.id).balance
        return platform, borrower

    def test_successful_disbursement(self):
        """Test a disbursement moving money and activating the loan"""
        result = self.system.disburse(self.loan.id, Decimal('12000'), date(2024, 1, 15), actor="officer")

        assert result.disbursement.status == DisbursementStatus.COMPLETED
        assert result.disbursement.transaction_id is not None
        assert result.loan.status == LoanStatus.ACTIVE
        assert result.loan.outstanding_principal == Decimal('12000')
        assert result.schedule_count == 12

        assert self._balances() == (Decimal('88000'), Decimal('12000'))
        assert self.system.journal.available_funds() == Decimal('88000')
        assert self.system.journal.reconcile(self.system.ledger)['balanced']

        schedule = self.system.loan_manager.get_schedule(self.loan.id)
        assert len(schedule) == 12
        assert schedule[0].due_date == date(2024, 2, 15)

        events = self.system.audit_trail.get_events_by_type(AuditEventType.DISBURSEMENT_COMPLETED)
        assert len(events) == 1
        assert events[0].actor == "officer"

    def test_journal_entry_is_negative(self):
        """The journal records a disbursement as money leaving the platform"""
        result = self.system.disburse(self.loan.id, Decimal('12000'), date(2024, 1, 15))
        entry = self.system.journal.get_transaction(result.disbursement.transaction_id)
        assert entry.amount == Decimal('-12000')
        assert entry.ref_id == result.disbursement.id

    def test_second_disbursement_conflicts(self):
        """Test that a loan is only disbursed once"""
        self.system.disburse(self.loan.id, Decimal('12000'), date(2024, 1, 15))

        with pytest.raises(ConflictError, match="already disbursed successfully"):
            self.system.disburse(self.loan.id, Decimal('12000'), date(2024, 1, 15))
        assert self._balances() == (Decimal('88000'), Decimal('12000'))

    def test_unknown_loan(self):
        """Test disbursing an unknown loan"""
        with pytest.raises(NotFoundError):
            self.system.disburse("missing", Decimal('12000'))

    def test_loan_must_be_approved(self):
        """Test that only approved loans are disbursed"""
        pending = self.system.loan_manager.originate_loan(
            self.borrower.id, Decimal('500'), Decimal('12'), 6
        )
        with pytest.raises(ValidationError, match="APPROVED"):
            self.system.disburse(pending.id, Decimal('500'))
        assert self.system.loan_manager.get_disbursement_for_loan(pending.id) is None

    @pytest.mark.parametrize("amount", [Decimal('11999.99'), Decimal('12000.01'), Decimal('0')])
    def test_amount_must_equal_principal(self, amount):
        """Test rejection of amounts other than the principal"""
        with pytest.raises(ValidationError):
            self.system.disburse(self.loan.id, amount)
        assert self.system.loan_manager.get_disbursement_for_loan(self.loan.id) is None

    def test_insufficient_platform_funds(self):
        """Test a disbursement larger than the platform balance"""
        big = self.system.loan_manager.originate_loan(
            self.borrower.id, Decimal('200000'), Decimal('12'), 12
        )
        self.system.loan_manager.approve_loan(big.id)

        with pytest.raises(InsufficientFundsError, match="Insufficient platform funds"):
            self.system.disburse(big.id, Decimal('200000'), date(2024, 1, 15))

        disbursement = self.system.loan_manager.get_disbursement_for_loan(big.id)
        assert disbursement.status == DisbursementStatus.FAILED
        assert self.system.loan_manager.get_loan(big.id).status == LoanStatus.APPROVED
        assert self.system.loan_manager.get_schedule(big.id) == []
        assert self._balances() == (Decimal('100000'), Decimal('0'))

        records = self.system.rollback_service.get_rollback_records(transaction_id=disbursement.id)
        assert len(records) == 1
        assert records[0].original_operation == OriginalOperation.DISBURSEMENT
        assert records[0].rolled_back_by == "SYSTEM"
        assert records[0].compensating_actions == {'automatic_rollback': True}
        assert records[0].error_details['error_type'] == "InsufficientFundsError"

        assert self.system.audit_trail.get_events_by_type(AuditEventType.DISBURSEMENT_FAILED)

    def test_failed_disbursement_cannot_retry(self):
        """A failed disbursement blocks later attempts"""
        self.system.disbursements.fault_injection = UNIT_FAULT
        with pytest.raises(InjectedFault):
            self.system.disburse(self.loan.id, Decimal('12000'), date(2024, 1, 15))

        self.system.disbursements.fault_injection = ""
        with pytest.raises(ConflictError, match="Previous disbursement failed"):
            self.system.disburse(self.loan.id, Decimal('12000'), date(2024, 1, 15))

    def test_fault_inside_unit_leaves_no_trace(self):
        """Test that a fault inside the unit rolls back every write"""
        self.system.disbursements.fault_injection = UNIT_FAULT

        with pytest.raises(InjectedFault) as exc_info:
            self.system.disburse(self.loan.id, Decimal('12000'), date(2024, 1, 15))
        assert exc_info.value.kind == ErrorKind.INJECTED_FAULT

        loan = self.system.loan_manager.get_loan(self.loan.id)
        assert loan.status == LoanStatus.APPROVED
        assert loan.outstanding_principal == Decimal('0')
        assert self.system.loan_manager.get_schedule(self.loan.id) == []
        assert self._balances() == (Decimal('100000'), Decimal('0'))
        assert self.system.journal.available_funds() == Decimal('100000')

        disbursement = self.system.loan_manager.get_disbursement_for_loan(self.loan.id)
        assert disbursement.status == DisbursementStatus.FAILED


class TestPostCommitCompensation:
    """Test automatic reversal when a step after commit fails"""

    def setup_method(self):
        self.system = LendingSystem(storage=InMemoryStorage())
        self.system.ledger.fund_platform(Decimal('100000'))
        self.borrower = self.system.ledger.open_account("borrower-1")
        self.loan = self.system.loan_manager.originate_loan(
            self.borrower.id, Decimal('12000'), Decimal('12'), 12
        )
        self.system.loan_manager.approve_loan(self.loan.id)
        self.system.disbursements.fault_injection = POST_COMMIT_FAULT

    def test_post_commit_failure_is_compensated(self):
        """Test compensation after a failure past the commit"""
        with pytest.raises(PostCommitFailure) as exc_info:
            self.system.disburse(self.loan.id, Decimal('12000'), date(2024, 1, 15))

        error = exc_info.value
        assert error.compensated
        assert isinstance(error.original_error, InjectedFault)
        assert "rolled back" in error.message

        disbursement = self.system.loan_manager.get_disbursement_for_loan(self.loan.id)
        assert disbursement.status == DisbursementStatus.ROLLED_BACK
        assert disbursement.rolled_back_at is not None

        loan = self.system.loan_manager.get_loan(self.loan.id)
        assert loan.status == LoanStatus.APPROVED
        assert loan.outstanding_principal == Decimal('0')
        assert self.system.loan_manager.get_schedule(self.loan.id) == []

        assert self.system.ledger.get_platform_account().balance == Decimal('100000')
        assert self.system.ledger.get_account(self.borrower.id).balance == Decimal('0')
        assert self.system.journal.reconcile(self.system.ledger)['balanced']

    def test_compensation_record(self):
        """Test the rollback record written by compensation"""
        with pytest.raises(PostCommitFailure):
            self.system.disburse(self.loan.id, Decimal('12000'), date(2024, 1, 15))

        disbursement = self.system.loan_manager.get_disbursement_for_loan(self.loan.id)
        records = self.system.rollback_service.get_rollback_records(transaction_id=disbursement.id)
        assert len(records) == 1

        record = records[0]
        assert record.rolled_back_by == "SYSTEM_AUTO"
        assert record.error_details['phase'] == "post_commit"
        assert record.error_details['error_type'] == "InjectedFault"
        assert record.compensating_actions['schedules_deleted'] == 12

        events = self.system.audit_trail.get_events_by_type(AuditEventType.DISBURSEMENT_ROLLED_BACK)
        assert len(events) == 1
        assert events[0].level == AuditLevel.WARNING
        assert events[0].metadata['automatic'] is True

    def test_no_disbursement_after_compensation(self):
        """A compensated loan cannot be disbursed again"""
        with pytest.raises(PostCommitFailure):
            self.system.disburse(self.loan.id, Decimal('12000'), date(2024, 1, 15))

        self.system.disbursements.fault_injection = ""
        with pytest.raises(ConflictError, match="rolled back"):
            self.system.disburse(self.loan.id, Decimal('12000'), date(2024, 1, 15))

    def test_compensation_failure_escalates(self, monkeypatch):
        """Test that a failing compensation is reported and not hidden"""
        def broken_compensation(disbursement_id, reason, error=None):
            raise RuntimeError("compensation store unavailable")

        monkeypatch.setattr(self.system.rollback_service, "compensate_disbursement", broken_compensation)

        with pytest.raises(CompensationFailure) as exc_info:
            self.system.disburse(self.loan.id, Decimal('12000'), date(2024, 1, 15))

        error = exc_info.value
        assert not error.compensated
        assert isinstance(error.original_error, InjectedFault)
        assert isinstance(error.compensation_error, RuntimeError)
        assert "manual intervention" in error.message

        events = self.system.audit_trail.get_events_by_type(AuditEventType.COMPENSATION_FAILED)
        assert len(events) == 1
        assert events[0].level == AuditLevel.ERROR
        assert events[0].metadata['requires_manual_review'] is True

        # The committed disbursement is left in place for manual review
        disbursement = self.system.loan_manager.get_disbursement_for_loan(self.loan.id)
        assert disbursement.status == DisbursementStatus.COMPLETED
        assert self.system.loan_manager.get_loan(self.loan.id).status == LoanStatus.ACTIVE


class TestConcurrentDisbursement:
    """Two simultaneous requests for one loan"""

    def test_exactly_one_succeeds(self):
        """Test that concurrent disbursements of one loan pay out once"""
        system = LendingSystem(storage=InMemoryStorage())
        system.ledger.fund_platform(Decimal('100000'))
        borrower = system.ledger.open_account("borrower-1")
        loan = system.loan_manager.originate_loan(borrower.id, Decimal('12000'), Decimal('12'), 12)
        system.loan_manager.approve_loan(loan.id)

        barrier = threading.Barrier(2)
        outcomes = []

        def attempt():
            barrier.wait()
            try:
                system.disburse(loan.id, Decimal('12000'), date(2024, 1, 15))
                outcomes.append("ok")
            except ConflictError:
                outcomes.append("conflict")

        threads = [threading.Thread(target=attempt) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(outcomes) == ["conflict", "ok"]
        assert system.ledger.get_account(borrower.id).balance == Decimal('12000')
        assert system.journal.available_funds() == Decimal('88000')
        assert len(system.loan_manager.get_schedule(loan.id)) == 12
