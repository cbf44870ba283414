"""
Lending system wiring

Builds every component over one storage backend and exposes the core
operations.
"""

from datetime import date
from decimal import Decimal
from typing import Optional

from .storage import StorageInterface, create_storage
from .audit import AuditTrail
from .transactions import TransactionJournal
from .ledger import AccountLedger
from .loans import LoanManager
from .rollback import RollbackService, RollbackRecord
from .disbursements import DisbursementOrchestrator, DisbursementResult
from .payments import PaymentOrchestrator, PaymentResult
from .config import LendingConfig, get_config


class LendingSystem:
    """Lending core with all components initialized"""

    def __init__(
        self,
        storage: Optional[StorageInterface] = None,
        config: Optional[LendingConfig] = None,
        bootstrap_platform: bool = True
    ):
        self.config = config or get_config()

        if storage is None:
            storage = create_storage(self.config.storage_backend, self.config.database_path)
        self.storage = storage

        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.journal = TransactionJournal(self.storage)
        self.ledger = AccountLedger(self.storage, self.audit_trail, self.journal)
        self.loan_manager = LoanManager(self.storage, self.ledger, self.audit_trail)
        self.rollback_service = RollbackService(
            self.storage, self.ledger, self.journal, self.loan_manager,
            self.audit_trail, self.config
        )
        self.disbursements = DisbursementOrchestrator(
            self.storage, self.ledger, self.journal, self.loan_manager,
            self.rollback_service, self.audit_trail, self.config
        )
        self.payments = PaymentOrchestrator(
            self.storage, self.ledger, self.journal, self.loan_manager,
            self.rollback_service, self.audit_trail, self.config
        )

        if bootstrap_platform:
            self.ledger.create_platform_account()

    def disburse(self, loan_id: str, amount: Decimal, disbursement_date: Optional[date] = None,
                 actor: Optional[str] = None) -> DisbursementResult:
        return self.disbursements.disburse(loan_id, amount, disbursement_date, actor)

    def process_payment(self, loan_id: str, payment_date: Optional[date] = None,
                        amount: Optional[Decimal] = None, actor: Optional[str] = None) -> PaymentResult:
        return self.payments.process_payment(loan_id, payment_date, amount, actor)

    def rollback_disbursement(self, disbursement_id: str, actor: str, reason: str) -> RollbackRecord:
        return self.rollback_service.rollback_disbursement(disbursement_id, actor, reason)

    def rollback_payment(self, payment_id: str, actor: str, reason: str) -> RollbackRecord:
        return self.rollback_service.rollback_payment(payment_id, actor, reason)

    def close(self) -> None:
        self.storage.close()
