"""
Rollback / Compensation Service

Reverses committed disbursements and payments. Every reversal is its own
atomic unit and leaves an append-only RollbackRecord. The same disbursement
reversal backs the automatic compensation the disbursement orchestrator runs
when a step after its commit fails.

Also wraps orchestrator units: when a unit aborts, a RollbackRecord marked
as an automatic rollback is written after the abort.
"""

import time
import traceback
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, TypeVar
import uuid

from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType, AuditLevel
from .ledger import AccountLedger
from .transactions import TransactionJournal, TransactionType, TransactionStatus
from .loans import (
    LoanManager, Disbursement, DisbursementStatus, LoanStatus,
    PaymentStatus, ScheduleStatus
)
from .errors import ValidationError, NotFoundError, ConflictError, LendingError
from .money import ZERO
from .config import LendingConfig, get_config
from .logging_config import get_logger, log_action


T = TypeVar('T')


class OriginalOperation(Enum):
    DISBURSEMENT = "DISBURSEMENT"
    REPAYMENT = "REPAYMENT"


@dataclass
class RollbackRecord(StorageRecord):
    """Append-only record of a compensation or an aborted unit"""
    transaction_id: str
    original_operation: OriginalOperation
    rollback_reason: str
    rolled_back_by: str
    compensating_actions: Dict[str, Any] = field(default_factory=dict)
    error_details: Optional[Dict[str, Any]] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RollbackRecord':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            transaction_id=data['transaction_id'],
            original_operation=OriginalOperation(data['original_operation']),
            rollback_reason=data['rollback_reason'],
            rolled_back_by=data['rolled_back_by'],
            compensating_actions=data.get('compensating_actions') or {},
            error_details=data.get('error_details')
        )


def error_details(error: BaseException, **extra) -> Dict[str, Any]:
    """Structured description of an exception for rollback records"""
    details = {
        'error_type': type(error).__name__,
        'message': str(error),
        'stack': ''.join(traceback.format_exception(type(error), error, error.__traceback__))
    }
    if isinstance(error, LendingError):
        details['kind'] = error.kind.value
    details.update(extra)
    return details


class RollbackService:
    """
    Manual and automatic reversal of disbursements and payments
    """

    def __init__(
        self,
        storage: StorageInterface,
        ledger: AccountLedger,
        journal: TransactionJournal,
        loan_manager: LoanManager,
        audit_trail: AuditTrail,
        config: Optional[LendingConfig] = None
    ):
        self.storage = storage
        self.ledger = ledger
        self.journal = journal
        self.loans = loan_manager
        self.audit = audit_trail
        self.config = config or get_config()
        self.table_name = "rollback_records"
        self.logger = get_logger("lending.rollback")

    # Disbursements

    def rollback_disbursement(self, disbursement_id: str, actor: str, reason: str) -> RollbackRecord:
        """
        Reverse a completed disbursement.

        Moves the principal back from the borrower (balance-checked), appends
        the compensating journal entry, returns the loan to APPROVED with zero
        outstanding principal and deletes its schedule.

        Raises:
            NotFoundError: unknown disbursement
            ConflictError: already rolled back
            ValidationError: not COMPLETED, or the loan already has completed payments
            InsufficientFundsError: borrower no longer holds the principal
        """
        if not actor:
            raise ValidationError("Rollback requires an actor")
        return self._reverse_disbursement(
            disbursement_id, actor, reason,
            allowed=(DisbursementStatus.COMPLETED,)
        )

    def compensate_disbursement(self, disbursement_id: str, reason: str,
                                error: Optional[BaseException] = None) -> RollbackRecord:
        """
        Automatic compensation after a post-commit failure.

        Accepts a disbursement still PENDING (the COMPLETED write itself may be
        what failed) as well as a COMPLETED one.
        """
        details = error_details(error, phase="post_commit") if error else None
        return self._reverse_disbursement(
            disbursement_id, self.config.auto_rollback_actor, reason,
            allowed=(DisbursementStatus.PENDING, DisbursementStatus.COMPLETED),
            details=details
        )

    def _reverse_disbursement(
        self,
        disbursement_id: str,
        actor: str,
        reason: str,
        allowed: Iterable[DisbursementStatus],
        details: Optional[Dict[str, Any]] = None
    ) -> RollbackRecord:
        start = time.time()

        with self.storage.atomic():
            disbursement = self.loans.get_disbursement(disbursement_id)
            if not disbursement:
                raise NotFoundError(f"Disbursement {disbursement_id} not found")
            if disbursement.status == DisbursementStatus.ROLLED_BACK:
                raise ConflictError(f"Disbursement {disbursement_id} is already rolled back")
            if disbursement.status not in allowed:
                raise ValidationError(
                    f"Cannot roll back a disbursement in status {disbursement.status.value}"
                )

            self.storage.lock_record(self.loans.loans_table, disbursement.loan_id)
            loan = self.loans.require_loan(disbursement.loan_id)

            if self.loans.get_loan_payments(loan.id, PaymentStatus.COMPLETED):
                raise ValidationError("Cannot roll back a disbursement that has completed payments")

            platform = self.ledger.get_platform_account()
            self.ledger.transfer(
                loan.account_id, platform.id, disbursement.amount,
                description=f"Disbursement rollback for loan {loan.id}"
            )

            entry_id = self._disbursement_entry_id(disbursement)
            compensation = self.journal.reverse(
                entry_id, description=f"Rollback of disbursement {disbursement.id}"
            )

            now = datetime.now(timezone.utc)
            previous_status = disbursement.status
            disbursement.status = DisbursementStatus.ROLLED_BACK
            disbursement.rolled_back_at = now
            disbursement.transaction_id = entry_id
            self.loans.save_disbursement(disbursement)

            loan.status = LoanStatus.APPROVED
            loan.outstanding_principal = ZERO
            self.loans.save_loan(loan)

            deleted = self.loans.delete_schedule(loan.id)

            record = self._write_record(
                transaction_id=disbursement.id,
                operation=OriginalOperation.DISBURSEMENT,
                reason=reason,
                actor=actor,
                actions={
                    'reversed_transfer': {
                        'from_account': loan.account_id,
                        'to_account': platform.id,
                        'amount': str(disbursement.amount)
                    },
                    'compensating_transaction_id': compensation.id,
                    'disbursement_status': {
                        'from': previous_status.value,
                        'to': DisbursementStatus.ROLLED_BACK.value
                    },
                    'loan_status': LoanStatus.APPROVED.value,
                    'schedules_deleted': deleted
                },
                details=details
            )

        log_action(
            self.logger, "info", "Disbursement rolled back",
            actor=actor, action="rollback_disbursement",
            resource=f"disbursement:{disbursement_id}",
            extra={"loan_id": loan.id, "amount": str(disbursement.amount),
                   "duration_ms": int((time.time() - start) * 1000)}
        )
        self.audit.log_event(
            AuditEventType.DISBURSEMENT_ROLLED_BACK, "disbursement", disbursement_id,
            metadata={
                'loan_id': loan.id,
                'amount': disbursement.amount,
                'reason': reason,
                'rollback_record_id': record.id,
                'automatic': details is not None
            },
            actor=actor,
            level=AuditLevel.WARNING if details else AuditLevel.INFO
        )
        return record

    def _disbursement_entry_id(self, disbursement: Disbursement) -> str:
        if disbursement.transaction_id:
            return disbursement.transaction_id
        for entry in self.journal.entries_for(disbursement.id):
            if (entry.type == TransactionType.DISBURSEMENT
                    and not entry.is_compensation
                    and entry.status == TransactionStatus.COMPLETED):
                return entry.id
        raise NotFoundError(f"No journal entry found for disbursement {disbursement.id}")

    # Payments

    def rollback_payment(self, payment_id: str, actor: str, reason: str) -> RollbackRecord:
        """
        Reverse the principal portion of a completed payment.

        Interest and late fees stay collected. The principal goes back to the
        borrower from the platform (which may go negative), the loan's
        outstanding principal grows by the same amount, a CLOSED loan becomes
        ACTIVE again, and the payment's installment is marked ROLLED_BACK.
        A ROLLED_BACK installment is billed again once due, for whatever
        principal its remaining completed payments leave unpaid.

        Raises:
            NotFoundError: unknown payment
            ConflictError: payment already rolled back
        """
        if not actor:
            raise ValidationError("Rollback requires an actor")

        start = time.time()

        with self.storage.atomic():
            payment = self.loans.get_payment(payment_id)
            if not payment:
                raise NotFoundError(f"Payment {payment_id} not found")
            if payment.status == PaymentStatus.ROLLED_BACK:
                raise ConflictError(f"Payment {payment_id} is already rolled back")

            self.storage.lock_record(self.loans.loans_table, payment.loan_id)
            loan = self.loans.require_loan(payment.loan_id)

            actions: Dict[str, Any] = {'principal_reversed': str(payment.principal_paid)}

            if payment.principal_paid > ZERO:
                platform = self.ledger.get_platform_account()
                self.ledger.transfer(
                    platform.id, loan.account_id, payment.principal_paid,
                    allow_negative_source=True,
                    description=f"Payment rollback for loan {loan.id}"
                )
                compensation = self.journal.reverse(
                    payment.transaction_id, amount=payment.principal_paid,
                    description=f"Principal rollback of payment {payment.id}"
                )
                actions['reversed_transfer'] = {
                    'from_account': platform.id,
                    'to_account': loan.account_id,
                    'amount': str(payment.principal_paid)
                }
                actions['compensating_transaction_id'] = compensation.id

            payment.status = PaymentStatus.ROLLED_BACK
            self.loans.save_payment(payment)

            previous_loan_status = loan.status
            loan.outstanding_principal += payment.principal_paid
            if loan.status == LoanStatus.CLOSED:
                loan.status = LoanStatus.ACTIVE
            self.loans.save_loan(loan)
            actions['loan_status'] = {'from': previous_loan_status.value, 'to': loan.status.value}
            actions['outstanding_principal'] = str(loan.outstanding_principal)

            if payment.repayment_schedule_id:
                schedule = self.loans.get_schedule_row(payment.repayment_schedule_id)
                # Reversing interest alone does not unpay an installment settled by later payments
                interest_only_on_paid = (
                    schedule is not None
                    and payment.principal_paid == ZERO
                    and schedule.status == ScheduleStatus.PAID
                )
                if schedule and not interest_only_on_paid:
                    schedule.status = ScheduleStatus.ROLLED_BACK
                    schedule.paid_date = None
                    self.loans.save_schedule_row(schedule)
                    actions['schedule_id'] = schedule.id

            record = self._write_record(
                transaction_id=payment.id,
                operation=OriginalOperation.REPAYMENT,
                reason=reason,
                actor=actor,
                actions=actions
            )

        log_action(
            self.logger, "info", "Payment rolled back",
            actor=actor, action="rollback_payment", resource=f"payment:{payment_id}",
            extra={"loan_id": loan.id, "principal": str(payment.principal_paid),
                   "duration_ms": int((time.time() - start) * 1000)}
        )
        self.audit.log_event(
            AuditEventType.PAYMENT_ROLLED_BACK, "payment", payment_id,
            metadata={
                'loan_id': loan.id,
                'principal_reversed': payment.principal_paid,
                'reason': reason,
                'rollback_record_id': record.id
            },
            actor=actor
        )
        return record

    # Aborted units

    def run_logged_unit(
        self,
        operation: OriginalOperation,
        transaction_id: str,
        reason: str,
        fn: Callable[[], T]
    ) -> T:
        """
        Run ``fn`` inside one atomic unit; if the unit aborts, record the
        automatic rollback and re-raise the original error.
        """
        try:
            with self.storage.atomic():
                return fn()
        except Exception as e:
            self.log_aborted_unit(operation, transaction_id, reason, e)
            raise

    def log_aborted_unit(
        self,
        operation: OriginalOperation,
        transaction_id: str,
        reason: str,
        error: BaseException
    ) -> Optional[RollbackRecord]:
        """
        Record that a unit aborted and all its writes were undone.

        Bookkeeping only: a failure here is logged and never replaces the
        error that aborted the unit.
        """
        try:
            record = self._write_record(
                transaction_id=transaction_id,
                operation=operation,
                reason=f"{reason}: {error}",
                actor=self.config.system_actor,
                actions={'automatic_rollback': True},
                details=error_details(error)
            )
        except Exception as e:
            log_action(
                self.logger, "error", f"Could not record aborted unit: {e}",
                action="log_aborted_unit", resource=f"{operation.value.lower()}:{transaction_id}"
            )
            return None

        log_action(
            self.logger, "warning", f"{reason}: {error}",
            actor=self.config.system_actor, action="unit_aborted",
            resource=f"{operation.value.lower()}:{transaction_id}",
            extra={"error_type": type(error).__name__, "rollback_record_id": record.id}
        )
        self.audit.log_event(
            AuditEventType.UNIT_ABORTED, operation.value.lower(), transaction_id,
            metadata={'reason': reason, 'error': str(error), 'error_type': type(error).__name__},
            actor=self.config.system_actor,
            level=AuditLevel.WARNING
        )
        return record

    # Queries

    def get_rollback_records(
        self,
        transaction_id: Optional[str] = None,
        operation: Optional[OriginalOperation] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None
    ) -> List[RollbackRecord]:
        """Rollback records matching the filters, newest first"""
        filters: Dict[str, Any] = {}
        if transaction_id:
            filters['transaction_id'] = transaction_id
        if operation:
            filters['original_operation'] = operation.value

        records = [RollbackRecord.from_dict(d) for d in self.storage.find(self.table_name, filters)]
        if date_from:
            records = [r for r in records if r.created_at.date() >= date_from]
        if date_to:
            records = [r for r in records if r.created_at.date() <= date_to]

        records.reverse()
        return records

    def can_rollback(self, transaction_id: str) -> bool:
        """Whether a disbursement or payment with this ID is currently reversible"""
        disbursement = self.loans.get_disbursement(transaction_id)
        if disbursement:
            if disbursement.status != DisbursementStatus.COMPLETED:
                return False
            return not self.loans.get_loan_payments(disbursement.loan_id, PaymentStatus.COMPLETED)

        payment = self.loans.get_payment(transaction_id)
        if payment:
            return payment.status == PaymentStatus.COMPLETED

        return False

    def _write_record(
        self,
        transaction_id: str,
        operation: OriginalOperation,
        reason: str,
        actor: str,
        actions: Dict[str, Any],
        details: Optional[Dict[str, Any]] = None
    ) -> RollbackRecord:
        now = datetime.now(timezone.utc)
        record = RollbackRecord(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            transaction_id=transaction_id,
            original_operation=operation,
            rollback_reason=reason,
            rolled_back_by=actor,
            compensating_actions=actions,
            error_details=details
        )
        self.storage.save(self.table_name, record.id, record.to_dict())
        return record
