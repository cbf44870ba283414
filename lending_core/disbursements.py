"""
Disbursement Orchestrator

Moves an APPROVED loan to ACTIVE by paying its principal out of the platform
account. The protocol has two explicit phases:

1. the unit of work: funds check, journal entry, transfer, loan activation
   and schedule generation, committed together or not at all
2. post-commit: the disbursement record is marked COMPLETED

A failure inside the unit leaves no trace except the disbursement marked
FAILED. A failure after commit is compensated by reversing the whole
disbursement before the error reaches the caller.

Fault injection points (``LENDING_FAULT_INJECTION``):
``disbursement.unit`` fails just before the unit commits,
``disbursement.post_commit`` fails right after the COMPLETED write.
"""

import time
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Optional

from .storage import StorageInterface
from .audit import AuditTrail, AuditEventType, AuditLevel
from .ledger import AccountLedger
from .transactions import TransactionJournal, TransactionType
from .loans import LoanManager, Loan, Disbursement, LoanStatus, DisbursementStatus, DISBURSEMENT_CONFLICTS
from .amortization import build_schedule
from .rollback import RollbackService, OriginalOperation
from .errors import (
    ValidationError, ConflictError, InsufficientFundsError,
    InjectedFault, PostCommitFailure, CompensationFailure
)
from .money import ZERO, to_decimal
from .config import LendingConfig, get_config
from .logging_config import get_logger, log_action


UNIT_FAULT = "disbursement.unit"
POST_COMMIT_FAULT = "disbursement.post_commit"


@dataclass
class DisbursementResult:
    disbursement: Disbursement
    loan: Loan
    schedule_count: int


class DisbursementOrchestrator:
    """
    APPROVED -> ACTIVE state machine with post-commit compensation
    """

    def __init__(
        self,
        storage: StorageInterface,
        ledger: AccountLedger,
        journal: TransactionJournal,
        loan_manager: LoanManager,
        rollback_service: RollbackService,
        audit_trail: AuditTrail,
        config: Optional[LendingConfig] = None
    ):
        self.storage = storage
        self.ledger = ledger
        self.journal = journal
        self.loans = loan_manager
        self.rollback = rollback_service
        self.audit = audit_trail
        self.config = config or get_config()
        self.fault_injection = self.config.fault_injection
        self.logger = get_logger("lending.disbursements")

    def disburse(
        self,
        loan_id: str,
        amount: Decimal,
        disbursement_date: Optional[date] = None,
        actor: Optional[str] = None
    ) -> DisbursementResult:
        """
        Disburse the full principal of an approved loan

        Args:
            loan_id: Loan to disburse
            amount: Must equal the loan principal exactly
            disbursement_date: Date the schedule is built from (today by default)
            actor: Who requested the disbursement, for logs and audit

        Returns:
            DisbursementResult with the COMPLETED disbursement, the ACTIVE loan
            and the number of installments generated

        Raises:
            NotFoundError: unknown loan
            ConflictError: the loan already has a disbursement
            ValidationError: loan not APPROVED or amount differs from principal
            InsufficientFundsError: platform funds below amount (disbursement FAILED)
            PostCommitFailure: a post-commit step failed and was compensated
            CompensationFailure: compensation failed too; manual action required
        """
        start = time.time()
        amount = to_decimal(amount)
        disbursement_date = disbursement_date or date.today()

        log_action(
            self.logger, "info", "Disbursement started",
            actor=actor, action="disburse", resource=f"loan:{loan_id}",
            extra={"amount": str(amount), "disbursement_date": disbursement_date.isoformat()}
        )

        loan = self._check_preconditions(loan_id, amount)
        disbursement = self.loans.create_pending_disbursement(loan_id, amount, disbursement_date)

        # Phase 1: unit of work
        try:
            entry_id, schedule_count = self.rollback.run_logged_unit(
                OriginalOperation.DISBURSEMENT, disbursement.id,
                "Disbursement unit aborted",
                lambda: self._disburse_unit(loan_id, disbursement, disbursement_date)
            )
        except Exception as e:
            self._mark_failed(disbursement, e, actor)
            raise

        # Phase 2: post-commit
        try:
            disbursement.status = DisbursementStatus.COMPLETED
            disbursement.transaction_id = entry_id
            self.loans.save_disbursement(disbursement)
            self._check_fault(POST_COMMIT_FAULT)
        except Exception as e:
            self._compensate(disbursement, e, actor)

        loan = self.loans.require_loan(loan_id)

        log_action(
            self.logger, "info", "Disbursement completed",
            actor=actor, action="disburse", resource=f"disbursement:{disbursement.id}",
            extra={
                "loan_id": loan_id,
                "amount": str(amount),
                "schedule_count": schedule_count,
                "duration_ms": int((time.time() - start) * 1000)
            }
        )
        self.audit.log_event(
            AuditEventType.DISBURSEMENT_COMPLETED, "disbursement", disbursement.id,
            metadata={
                'loan_id': loan_id,
                'amount': amount,
                'transaction_id': entry_id,
                'schedule_count': schedule_count
            },
            actor=actor
        )

        return DisbursementResult(disbursement=disbursement, loan=loan, schedule_count=schedule_count)

    def _check_preconditions(self, loan_id: str, amount: Decimal) -> Loan:
        # One unit so the loan and its disbursement are read consistently
        with self.storage.atomic():
            loan = self.loans.require_loan(loan_id)
            existing = self.loans.get_disbursement_for_loan(loan_id)

        if existing:
            raise ConflictError(DISBURSEMENT_CONFLICTS[existing.status])

        if loan.status != LoanStatus.APPROVED:
            raise ValidationError(
                f"Loan must be APPROVED to disburse (current status {loan.status.value})"
            )
        if amount <= ZERO:
            raise ValidationError("Disbursement amount must be positive")
        if amount != loan.principal:
            raise ValidationError(
                f"Disbursement amount {amount} must equal loan principal {loan.principal}"
            )
        return loan

    def _disburse_unit(self, loan_id: str, disbursement: Disbursement, disbursement_date: date):
        self.storage.lock_record(self.loans.loans_table, loan_id)
        loan = self.loans.require_loan(loan_id)

        # Re-check under the lock
        if loan.status != LoanStatus.APPROVED:
            raise ValidationError(
                f"Loan must be APPROVED to disburse (current status {loan.status.value})"
            )

        amount = disbursement.amount
        available = self.journal.available_funds()
        if available < amount:
            raise InsufficientFundsError(
                f"Insufficient platform funds: available {available}, requested {amount}"
            )

        entry = self.journal.record(
            TransactionType.DISBURSEMENT, disbursement.id, -amount,
            description=f"Disbursement for loan {loan.id}"
        )

        platform = self.ledger.get_platform_account()
        self.ledger.transfer(
            platform.id, loan.account_id, amount,
            allow_negative_source=True,
            description=f"Disbursement for loan {loan.id}"
        )

        loan.status = LoanStatus.ACTIVE
        loan.outstanding_principal = amount
        self.loans.save_loan(loan)

        rows = build_schedule(loan.principal, loan.annual_rate_percent, loan.tenor_months, disbursement_date)
        self.loans.save_schedule(loan.id, rows)

        self._check_fault(UNIT_FAULT)
        return entry.id, len(rows)

    def _mark_failed(self, disbursement: Disbursement, error: Exception, actor: Optional[str]) -> None:
        """Separate write after the unit aborted; the PENDING row was created outside it"""
        try:
            disbursement.status = DisbursementStatus.FAILED
            self.loans.save_disbursement(disbursement)
        except Exception as e:
            log_action(
                self.logger, "error", f"Could not mark disbursement FAILED: {e}",
                actor=actor, action="disburse", resource=f"disbursement:{disbursement.id}"
            )

        log_action(
            self.logger, "warning", f"Disbursement failed: {error}",
            actor=actor, action="disburse", resource=f"disbursement:{disbursement.id}",
            extra={"loan_id": disbursement.loan_id, "error_type": type(error).__name__}
        )
        self.audit.log_event(
            AuditEventType.DISBURSEMENT_FAILED, "disbursement", disbursement.id,
            metadata={'loan_id': disbursement.loan_id, 'error': str(error), 'error_type': type(error).__name__},
            actor=actor,
            level=AuditLevel.WARNING
        )

    def _compensate(self, disbursement: Disbursement, error: Exception, actor: Optional[str]) -> None:
        """Reverse a committed disbursement, then raise the matching failure"""
        reason = f"Disbursement failed after transaction commit and was rolled back: {error}"

        log_action(
            self.logger, "error", f"Post-commit failure, compensating: {error}",
            actor=actor, action="disburse", resource=f"disbursement:{disbursement.id}",
            extra={"loan_id": disbursement.loan_id, "error_type": type(error).__name__}
        )

        try:
            self.rollback.compensate_disbursement(disbursement.id, reason, error)
        except Exception as compensation_error:
            message = (
                f"Disbursement {disbursement.id} failed after commit ({error}) and automatic "
                f"rollback also failed ({compensation_error}); manual intervention required"
            )
            log_action(
                self.logger, "critical", message,
                actor=actor, action="compensate_disbursement",
                resource=f"disbursement:{disbursement.id}"
            )
            self.audit.log_event(
                AuditEventType.COMPENSATION_FAILED, "disbursement", disbursement.id,
                metadata={
                    'loan_id': disbursement.loan_id,
                    'original_error': str(error),
                    'compensation_error': str(compensation_error),
                    'requires_manual_review': True
                },
                actor=self.config.auto_rollback_actor,
                level=AuditLevel.ERROR
            )
            raise CompensationFailure(message, error, compensation_error) from compensation_error

        raise PostCommitFailure(reason, error) from error

    def _check_fault(self, point: str) -> None:
        if self.fault_injection and self.fault_injection == point:
            raise InjectedFault(point)
