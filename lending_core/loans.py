"""
Loan Module

Loan, disbursement, repayment schedule and payment records, plus loan
origination and the manual approval step. State changes driven by money
movement (disbursement, payment, rollback) are made by the orchestrators
inside their atomic units; this module only provides the records and
their persistence.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .ledger import AccountLedger
from .amortization import ScheduleRow
from .errors import ValidationError, NotFoundError, ConflictError
from .money import ZERO, to_decimal, require_whole_cents
from .logging_config import get_logger, log_action


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "PENDING"      # Created, awaiting approval
    APPROVED = "APPROVED"    # Approved, ready to disburse
    ACTIVE = "ACTIVE"        # Disbursed and being repaid
    CLOSED = "CLOSED"        # Outstanding principal reached zero


class DisbursementStatus(Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    ROLLED_BACK = "ROLLED_BACK"


class ScheduleStatus(Enum):
    PENDING = "PENDING"
    PARTIALLY_PAID = "PARTIALLY_PAID"
    PAID = "PAID"
    ROLLED_BACK = "ROLLED_BACK"


class PaymentStatus(Enum):
    COMPLETED = "COMPLETED"
    ROLLED_BACK = "ROLLED_BACK"


# Manual status changes allowed through update_loan_status
MANUAL_TRANSITIONS = {
    LoanStatus.PENDING: {LoanStatus.APPROVED},
    LoanStatus.APPROVED: {LoanStatus.PENDING},
}

# Conflict messages for a second disbursement attempt, by existing status
DISBURSEMENT_CONFLICTS = {
    DisbursementStatus.COMPLETED: "Loan already disbursed successfully",
    DisbursementStatus.FAILED: "Previous disbursement failed. Cannot retry.",
    DisbursementStatus.PENDING: "Disbursement is already pending",
    DisbursementStatus.ROLLED_BACK: "Loan disbursement was rolled back. Cannot disburse again.",
}


def _parse_date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


def _timestamps(data: Dict[str, Any]) -> Dict[str, datetime]:
    return {
        'created_at': datetime.fromisoformat(data['created_at']),
        'updated_at': datetime.fromisoformat(data['updated_at']),
    }


@dataclass
class Loan(StorageRecord):
    """Loan record"""
    account_id: str
    principal: Decimal
    annual_rate_percent: Decimal
    tenor_months: int
    status: LoanStatus = LoanStatus.PENDING
    outstanding_principal: Decimal = ZERO

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        return cls(
            id=data['id'],
            **_timestamps(data),
            account_id=data['account_id'],
            principal=Decimal(data['principal']),
            annual_rate_percent=Decimal(data['annual_rate_percent']),
            tenor_months=int(data['tenor_months']),
            status=LoanStatus(data['status']),
            outstanding_principal=Decimal(data['outstanding_principal'])
        )


@dataclass
class Disbursement(StorageRecord):
    """One-time transfer of the loan principal to the borrower"""
    loan_id: str
    amount: Decimal
    disbursement_date: date
    status: DisbursementStatus = DisbursementStatus.PENDING
    transaction_id: Optional[str] = None
    rolled_back_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Disbursement':
        rolled_back_at = data.get('rolled_back_at')
        return cls(
            id=data['id'],
            **_timestamps(data),
            loan_id=data['loan_id'],
            amount=Decimal(data['amount']),
            disbursement_date=date.fromisoformat(data['disbursement_date']),
            status=DisbursementStatus(data['status']),
            transaction_id=data.get('transaction_id'),
            rolled_back_at=datetime.fromisoformat(rolled_back_at) if rolled_back_at else None
        )


@dataclass
class RepaymentSchedule(StorageRecord):
    """A single installment"""
    loan_id: str
    installment_number: int
    due_date: date
    principal_amount: Decimal
    interest_amount: Decimal
    status: ScheduleStatus = ScheduleStatus.PENDING
    paid_date: Optional[date] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RepaymentSchedule':
        return cls(
            id=data['id'],
            **_timestamps(data),
            loan_id=data['loan_id'],
            installment_number=int(data['installment_number']),
            due_date=date.fromisoformat(data['due_date']),
            principal_amount=Decimal(data['principal_amount']),
            interest_amount=Decimal(data['interest_amount']),
            status=ScheduleStatus(data['status']),
            paid_date=_parse_date(data.get('paid_date'))
        )


@dataclass
class Payment(StorageRecord):
    """Money applied to one installment by one payment operation"""
    loan_id: str
    amount: Decimal
    payment_date: date
    principal_paid: Decimal
    interest_paid: Decimal
    late_fee_paid: Decimal
    days_late: int
    repayment_schedule_id: Optional[str] = None
    status: PaymentStatus = PaymentStatus.COMPLETED
    transaction_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Payment':
        return cls(
            id=data['id'],
            **_timestamps(data),
            loan_id=data['loan_id'],
            amount=Decimal(data['amount']),
            payment_date=date.fromisoformat(data['payment_date']),
            principal_paid=Decimal(data['principal_paid']),
            interest_paid=Decimal(data['interest_paid']),
            late_fee_paid=Decimal(data['late_fee_paid']),
            days_late=int(data['days_late']),
            repayment_schedule_id=data.get('repayment_schedule_id'),
            status=PaymentStatus(data['status']),
            transaction_id=data.get('transaction_id')
        )


class LoanManager:
    """
    Loan origination and loan-related record access
    """

    def __init__(self, storage: StorageInterface, ledger: AccountLedger, audit_trail: AuditTrail):
        self.storage = storage
        self.ledger = ledger
        self.audit = audit_trail
        self.logger = get_logger("lending.loans")

        self.loans_table = "loans"
        self.disbursements_table = "disbursements"
        self.schedules_table = "repayment_schedules"
        self.payments_table = "payments"

    def originate_loan(
        self,
        account_id: str,
        principal: Decimal,
        annual_rate_percent: Decimal,
        tenor_months: int
    ) -> Loan:
        """
        Create a new loan in PENDING status

        Args:
            account_id: Borrower account the principal will be disbursed to
            principal: Loan principal (positive)
            annual_rate_percent: Annual simple interest rate in percent
            tenor_months: Number of monthly installments

        Returns:
            Created Loan
        """
        principal = to_decimal(principal)
        annual_rate_percent = to_decimal(annual_rate_percent)

        if principal <= ZERO:
            raise ValidationError("Principal must be positive")
        require_whole_cents(principal, "Principal")
        if annual_rate_percent < ZERO:
            raise ValidationError("Interest rate cannot be negative")
        if tenor_months <= 0:
            raise ValidationError("Tenor must be at least one month")

        account = self.ledger.get_account(account_id)
        if not account:
            raise NotFoundError(f"Account {account_id} not found")
        if account.is_platform:
            raise ValidationError("Loans must belong to a borrower account")

        now = datetime.now(timezone.utc)
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            account_id=account_id,
            principal=principal,
            annual_rate_percent=annual_rate_percent,
            tenor_months=tenor_months
        )
        self.save_loan(loan)

        log_action(
            self.logger, "info", "Loan created",
            action="originate_loan", resource=f"loan:{loan.id}",
            extra={"principal": str(principal), "rate": str(annual_rate_percent), "tenor": tenor_months}
        )
        self.audit.log_event(
            AuditEventType.LOAN_CREATED, "loan", loan.id,
            metadata={
                'account_id': account_id,
                'principal': principal,
                'annual_rate_percent': annual_rate_percent,
                'tenor_months': tenor_months
            }
        )
        return loan

    def update_loan_status(self, loan_id: str, new_status: LoanStatus, actor: Optional[str] = None) -> Loan:
        """
        Manually move a loan between PENDING and APPROVED.

        ACTIVE and CLOSED are reached only through disbursement and payment.
        """
        with self.storage.atomic():
            loan = self.require_loan(loan_id)
            if new_status not in MANUAL_TRANSITIONS.get(loan.status, set()):
                raise ValidationError(
                    f"Cannot change loan status from {loan.status.value} to {new_status.value}"
                )
            old_status = loan.status
            loan.status = new_status
            self.save_loan(loan)

        self.audit.log_event(
            AuditEventType.LOAN_STATUS_CHANGED, "loan", loan_id,
            metadata={'old_status': old_status, 'new_status': new_status},
            actor=actor
        )
        return loan

    def approve_loan(self, loan_id: str, actor: Optional[str] = None) -> Loan:
        return self.update_loan_status(loan_id, LoanStatus.APPROVED, actor)

    # Loans

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        data = self.storage.load(self.loans_table, loan_id)
        return Loan.from_dict(data) if data else None

    def require_loan(self, loan_id: str) -> Loan:
        loan = self.get_loan(loan_id)
        if not loan:
            raise NotFoundError(f"Loan {loan_id} not found")
        return loan

    def get_account_loans(self, account_id: str) -> List[Loan]:
        return [Loan.from_dict(d) for d in self.storage.find(self.loans_table, {'account_id': account_id})]

    def save_loan(self, loan: Loan) -> None:
        loan.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.loans_table, loan.id, loan.to_dict())

    # Disbursements

    def create_pending_disbursement(self, loan_id: str, amount: Decimal, disbursement_date: date) -> Disbursement:
        """
        Atomic check-and-insert of the single disbursement a loan may have.

        Raises:
            ConflictError: a disbursement already exists; the message depends on its status
        """
        with self.storage.atomic():
            existing = self.get_disbursement_for_loan(loan_id)
            if existing:
                raise ConflictError(DISBURSEMENT_CONFLICTS[existing.status])

            now = datetime.now(timezone.utc)
            disbursement = Disbursement(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan_id,
                amount=to_decimal(amount),
                disbursement_date=disbursement_date
            )
            self.save_disbursement(disbursement)
        return disbursement

    def get_disbursement(self, disbursement_id: str) -> Optional[Disbursement]:
        data = self.storage.load(self.disbursements_table, disbursement_id)
        return Disbursement.from_dict(data) if data else None

    def get_disbursement_for_loan(self, loan_id: str) -> Optional[Disbursement]:
        found = self.storage.find(self.disbursements_table, {'loan_id': loan_id})
        return Disbursement.from_dict(found[0]) if found else None

    def save_disbursement(self, disbursement: Disbursement) -> None:
        disbursement.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.disbursements_table, disbursement.id, disbursement.to_dict())

    # Repayment schedules

    def save_schedule(self, loan_id: str, rows: List[ScheduleRow]) -> List[RepaymentSchedule]:
        """Persist a freshly built amortization schedule"""
        now = datetime.now(timezone.utc)
        schedules = []
        for row in rows:
            schedule = RepaymentSchedule(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan_id,
                installment_number=row.installment_number,
                due_date=row.due_date,
                principal_amount=row.principal_amount,
                interest_amount=row.interest_amount
            )
            self.save_schedule_row(schedule)
            schedules.append(schedule)
        return schedules

    def get_schedule(self, loan_id: str) -> List[RepaymentSchedule]:
        """Installments of a loan ordered by installment number"""
        rows = [RepaymentSchedule.from_dict(d) for d in self.storage.find(self.schedules_table, {'loan_id': loan_id})]
        rows.sort(key=lambda r: r.installment_number)
        return rows

    def get_schedule_row(self, schedule_id: str) -> Optional[RepaymentSchedule]:
        data = self.storage.load(self.schedules_table, schedule_id)
        return RepaymentSchedule.from_dict(data) if data else None

    def save_schedule_row(self, schedule: RepaymentSchedule) -> None:
        schedule.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.schedules_table, schedule.id, schedule.to_dict())

    def delete_schedule(self, loan_id: str) -> int:
        return self.storage.delete_where(self.schedules_table, {'loan_id': loan_id})

    # Payments

    def save_payment(self, payment: Payment) -> None:
        payment.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.payments_table, payment.id, payment.to_dict())

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        data = self.storage.load(self.payments_table, payment_id)
        return Payment.from_dict(data) if data else None

    def get_loan_payments(self, loan_id: str, status: Optional[PaymentStatus] = None) -> List[Payment]:
        """Payments of a loan in the order they were recorded"""
        filters = {'loan_id': loan_id}
        if status:
            filters['status'] = status.value
        return [Payment.from_dict(d) for d in self.storage.find(self.payments_table, filters)]
