"""
Payment Orchestrator

Applies a borrower payment to the installments that are due, in one atomic
unit: interest accrued since the last event, late fees per installment,
then principal. Either everything is written (payment rows, journal
entries, the single borrower-to-platform transfer, installment and loan
updates) or nothing is.

Fault injection point ``payment.unit`` fails just before the unit commits.
"""

import time
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional

from .storage import StorageInterface
from .audit import AuditTrail, AuditEventType, AuditLevel
from .ledger import AccountLedger
from .transactions import TransactionJournal, TransactionType
from .loans import (
    LoanManager, Loan, Disbursement, Payment, RepaymentSchedule,
    LoanStatus, DisbursementStatus, PaymentStatus, ScheduleStatus
)
from .allocation import DueInstallment, distribute_payment
from .interest import accrued_interest, late_fee, days_between, days_late
from .rollback import RollbackService, OriginalOperation
from .errors import ValidationError, InjectedFault
from .money import ZERO, to_decimal, quantize_money, require_whole_cents
from .config import LendingConfig, get_config
from .logging_config import get_logger, log_action


UNIT_FAULT = "payment.unit"

# ROLLED_BACK rows still owe the principal their reversed payments had covered
PAYABLE_STATUSES = (ScheduleStatus.PENDING, ScheduleStatus.PARTIALLY_PAID, ScheduleStatus.ROLLED_BACK)


@dataclass
class PaymentQuote:
    """Amounts due on a loan as of a payment date"""
    loan: Loan
    disbursement: Disbursement
    payment_date: date
    last_event_date: date
    days_since_last_event: int
    accrued_interest: Decimal
    due: List[DueInstallment]
    next_pending: Optional[DueInstallment]
    total_late_fee: Decimal
    total_principal_due: Decimal

    @property
    def total_due(self) -> Decimal:
        return self.total_principal_due + self.accrued_interest + self.total_late_fee


@dataclass
class PaymentResult:
    payments: List[Payment] = field(default_factory=list)
    total_amount_charged: Decimal = ZERO
    total_principal_paid: Decimal = ZERO
    total_interest_paid: Decimal = ZERO
    total_late_fee_paid: Decimal = ZERO
    new_outstanding_principal: Decimal = ZERO
    schedules_covered: int = 0
    loan_status: LoanStatus = LoanStatus.ACTIVE


class PaymentOrchestrator:
    """
    Applies borrower payments to due installments
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
        self.logger = get_logger("lending.payments")

    def process_payment(
        self,
        loan_id: str,
        payment_date: Optional[date] = None,
        amount: Optional[Decimal] = None,
        actor: Optional[str] = None
    ) -> PaymentResult:
        """
        Collect a payment for the installments due on ``payment_date``.

        Args:
            loan_id: Loan being repaid
            payment_date: Date of the payment (today by default)
            amount: Amount to collect; the full amount due when omitted.
                Partial payments are allowed, overpayments are not.
            actor: Who submitted the payment, for logs and audit

        Returns:
            PaymentResult with one Payment per installment that received money

        Raises:
            NotFoundError: unknown loan
            ValidationError: loan not ACTIVE, no completed disbursement, nothing
                outstanding, date before the last payment, nothing due yet,
                or amount not positive or above the total due
            InsufficientFundsError: borrower balance below the amount collected
        """
        start = time.time()
        payment_date = payment_date or date.today()
        if amount is not None:
            amount = to_decimal(amount)
            if amount <= ZERO:
                raise ValidationError("Payment amount must be positive")
            require_whole_cents(amount, "Payment amount")

        log_action(
            self.logger, "info", "Payment started",
            actor=actor, action="process_payment", resource=f"loan:{loan_id}",
            extra={"payment_date": payment_date.isoformat(), "amount": str(amount) if amount is not None else None}
        )

        try:
            result = self.rollback.run_logged_unit(
                OriginalOperation.REPAYMENT, loan_id,
                "Payment unit aborted",
                lambda: self._payment_unit(loan_id, payment_date, amount)
            )
        except Exception as e:
            log_action(
                self.logger, "warning", f"Payment failed: {e}",
                actor=actor, action="process_payment", resource=f"loan:{loan_id}",
                extra={"error_type": type(e).__name__}
            )
            self.audit.log_event(
                AuditEventType.PAYMENT_FAILED, "loan", loan_id,
                metadata={'error': str(e), 'error_type': type(e).__name__, 'payment_date': payment_date},
                actor=actor,
                level=AuditLevel.WARNING
            )
            raise

        log_action(
            self.logger, "info", "Payment processed",
            actor=actor, action="process_payment", resource=f"loan:{loan_id}",
            extra={
                "total": str(result.total_amount_charged),
                "principal": str(result.total_principal_paid),
                "interest": str(result.total_interest_paid),
                "late_fee": str(result.total_late_fee_paid),
                "outstanding": str(result.new_outstanding_principal),
                "duration_ms": int((time.time() - start) * 1000)
            }
        )
        self.audit.log_event(
            AuditEventType.PAYMENT_PROCESSED, "loan", loan_id,
            metadata={
                'payment_ids': [p.id for p in result.payments],
                'total_amount_charged': result.total_amount_charged,
                'total_principal_paid': result.total_principal_paid,
                'new_outstanding_principal': result.new_outstanding_principal,
                'loan_status': result.loan_status
            },
            actor=actor
        )
        return result

    def quote_payment(self, loan_id: str, payment_date: Optional[date] = None) -> PaymentQuote:
        """Amounts due as of ``payment_date`` without writing anything"""
        return self._assess(loan_id, payment_date or date.today())

    def _assess(self, loan_id: str, payment_date: date) -> PaymentQuote:
        loan = self.loans.require_loan(loan_id)
        if loan.status != LoanStatus.ACTIVE:
            raise ValidationError(f"Loan is not active (status {loan.status.value})")

        disbursement = self.loans.get_disbursement_for_loan(loan_id)
        if not disbursement or disbursement.status != DisbursementStatus.COMPLETED:
            raise ValidationError("Loan has no completed disbursement")

        if loan.outstanding_principal <= ZERO:
            raise ValidationError("Loan has no outstanding principal")

        completed = self.loans.get_loan_payments(loan_id, PaymentStatus.COMPLETED)
        if completed:
            last_event_date = max(p.payment_date for p in completed)
        else:
            last_event_date = disbursement.disbursement_date

        if payment_date < last_event_date:
            raise ValidationError(
                f"Payment date {payment_date.isoformat()} is before the last event {last_event_date.isoformat()}"
            )

        days = days_between(last_event_date, payment_date)
        # Rounded once, here; installment shares are derived from this total
        interest = quantize_money(accrued_interest(
            loan.outstanding_principal, loan.annual_rate_percent, days,
            days_per_year=self.config.days_per_year
        ))

        schedule = self.loans.get_schedule(loan_id)
        payable = [s for s in schedule if s.status in PAYABLE_STATUSES]
        due_rows = [s for s in payable if s.due_date <= payment_date]
        if not due_rows:
            raise ValidationError("Nothing due yet")

        paid_by_schedule = self._paid_by_schedule(self.loans.get_loan_payments(loan_id))

        due = [self._due_installment(row, payment_date, paid_by_schedule) for row in due_rows]

        upcoming = [s for s in payable if s.due_date > payment_date]
        next_pending = None
        if upcoming:
            next_pending = self._due_installment(upcoming[0], payment_date, paid_by_schedule, charge_fee=False)

        return PaymentQuote(
            loan=loan,
            disbursement=disbursement,
            payment_date=payment_date,
            last_event_date=last_event_date,
            days_since_last_event=days,
            accrued_interest=interest,
            due=due,
            next_pending=next_pending,
            total_late_fee=sum((d.late_fee for d in due), ZERO),
            total_principal_due=sum((d.principal_remaining for d in due), ZERO)
        )

    def _paid_by_schedule(self, payments: List[Payment]) -> Dict[str, Dict[str, Decimal]]:
        """
        Principal and late fee already paid per installment.

        Principal counts completed payments only. Late fees count rolled back
        payments too, since a payment rollback never refunds the fee.
        """
        totals: Dict[str, Dict[str, Decimal]] = {}
        for p in payments:
            if not p.repayment_schedule_id:
                continue
            entry = totals.setdefault(p.repayment_schedule_id, {'principal': ZERO, 'late_fee': ZERO})
            if p.status == PaymentStatus.COMPLETED:
                entry['principal'] += p.principal_paid
            entry['late_fee'] += p.late_fee_paid
        return totals

    def _due_installment(
        self,
        row: RepaymentSchedule,
        payment_date: date,
        paid_by_schedule: Dict[str, Dict[str, Decimal]],
        charge_fee: bool = True
    ) -> DueInstallment:
        paid = paid_by_schedule.get(row.id, {'principal': ZERO, 'late_fee': ZERO})
        overdue = days_late(row.due_date, payment_date) if charge_fee else 0

        fee = ZERO
        if charge_fee:
            fee = late_fee(
                overdue,
                grace_period_days=self.config.grace_period_days,
                flat_fee=to_decimal(self.config.flat_late_fee),
                days_per_month=self.config.days_per_month
            )
            fee = max(fee - paid['late_fee'], ZERO)

        return DueInstallment(
            schedule_id=row.id,
            installment_number=row.installment_number,
            due_date=row.due_date,
            principal_remaining=max(row.principal_amount - paid['principal'], ZERO),
            late_fee=fee,
            days_late=overdue
        )

    def _payment_unit(self, loan_id: str, payment_date: date, amount: Optional[Decimal]) -> PaymentResult:
        self.storage.lock_record(self.loans.loans_table, loan_id)

        quote = self._assess(loan_id, payment_date)
        loan = quote.loan
        pay_amount = amount if amount is not None else quote.total_due

        distribution = distribute_payment(
            pay_amount,
            quote.accrued_interest,
            quote.due,
            loan.outstanding_principal,
            next_pending=quote.next_pending,
            min_accrued_interest=to_decimal(self.config.min_accrued_interest)
        )

        schedules = {s.id: s for s in self.loans.get_schedule(loan_id)}
        now = datetime.now(timezone.utc)
        result = PaymentResult()

        for inst in distribution.installments:
            payment = Payment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan_id,
                amount=inst.total,
                payment_date=payment_date,
                principal_paid=inst.principal,
                interest_paid=inst.interest,
                late_fee_paid=inst.late_fee,
                days_late=inst.days_late,
                repayment_schedule_id=inst.schedule_id
            )
            entry = self.journal.record(
                TransactionType.REPAYMENT, payment.id, inst.total,
                description=f"Repayment of installment {inst.installment_number} for loan {loan_id}"
            )
            payment.transaction_id = entry.id
            self.loans.save_payment(payment)

            schedule = schedules[inst.schedule_id]
            if inst.fully_paid:
                schedule.status = ScheduleStatus.PAID
                schedule.paid_date = payment_date
            else:
                schedule.status = ScheduleStatus.PARTIALLY_PAID
            self.loans.save_schedule_row(schedule)

            result.payments.append(payment)
            result.total_principal_paid += inst.principal
            result.total_interest_paid += inst.interest
            result.total_late_fee_paid += inst.late_fee

        result.total_amount_charged = distribution.total
        # Interest-only money on the next installment does not count as covering it
        due_ids = {d.schedule_id for d in quote.due}
        result.schedules_covered = sum(1 for inst in distribution.installments if inst.schedule_id in due_ids)

        platform = self.ledger.get_platform_account()
        self.ledger.transfer(
            loan.account_id, platform.id, result.total_amount_charged,
            description=f"Repayment for loan {loan_id}"
        )

        loan.outstanding_principal -= result.total_principal_paid
        if loan.outstanding_principal == ZERO:
            loan.status = LoanStatus.CLOSED
        self.loans.save_loan(loan)

        result.new_outstanding_principal = loan.outstanding_principal
        result.loan_status = loan.status

        if self.fault_injection == UNIT_FAULT:
            raise InjectedFault(UNIT_FAULT)
        return result
