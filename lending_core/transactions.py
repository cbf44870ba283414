"""
Transaction Journal Module

Signed record of platform cash movement. Disbursements are negative (money
leaving the platform), funding and repayments are positive. Compensations
never edit an entry: they append an opposite-signed entry of the same type
that points back at the original through ``reverses_id``.

Available platform funds are the signed sum over every entry, which must
always equal the platform account balance.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .storage import StorageInterface, StorageRecord
from .errors import ValidationError, NotFoundError, ConflictError
from .money import ZERO, to_decimal
from .logging_config import get_logger, log_action


class TransactionType(Enum):
    """Kinds of platform cash movement"""
    FUNDING = "FUNDING"
    DISBURSEMENT = "DISBURSEMENT"
    REPAYMENT = "REPAYMENT"


class TransactionStatus(Enum):
    COMPLETED = "COMPLETED"
    REVERSED = "REVERSED"


@dataclass
class Transaction(StorageRecord):
    """A journal entry; amount is signed from the platform's point of view"""
    type: TransactionType
    ref_id: str
    amount: Decimal
    status: TransactionStatus = TransactionStatus.COMPLETED
    reverses_id: Optional[str] = None
    description: str = ""

    @property
    def is_compensation(self) -> bool:
        return self.reverses_id is not None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transaction':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            type=TransactionType(data['type']),
            ref_id=data['ref_id'],
            amount=Decimal(data['amount']),
            status=TransactionStatus(data['status']),
            reverses_id=data.get('reverses_id'),
            description=data.get('description', "")
        )


class TransactionJournal:
    """
    Append-only journal of platform cash entries
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "transactions"
        self.logger = get_logger("lending.transactions")

    def record(
        self,
        transaction_type: TransactionType,
        ref_id: str,
        amount: Decimal,
        description: str = ""
    ) -> Transaction:
        """
        Append a journal entry.

        Args:
            transaction_type: FUNDING, DISBURSEMENT or REPAYMENT
            ref_id: ID of the business record the entry belongs to
            amount: Signed amount (negative for platform outflow)
            description: Free text

        Returns:
            The stored Transaction
        """
        amount = to_decimal(amount)
        if amount == ZERO:
            raise ValidationError("Journal entries must have a non-zero amount")

        now = datetime.now(timezone.utc)
        transaction = Transaction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            type=transaction_type,
            ref_id=ref_id,
            amount=amount,
            description=description
        )
        self.storage.save(self.table_name, transaction.id, transaction.to_dict())

        log_action(
            self.logger, "debug", f"Journal entry recorded: {transaction_type.value}",
            action="record_transaction", resource=f"transaction:{transaction.id}",
            extra={"ref_id": ref_id, "amount": str(amount)}
        )
        return transaction

    def reverse(
        self,
        transaction_id: str,
        amount: Optional[Decimal] = None,
        description: str = ""
    ) -> Transaction:
        """
        Append the compensating entry for an existing one.

        Args:
            transaction_id: Entry to compensate
            amount: Unsigned part of the entry to reverse; the whole entry when omitted
            description: Free text

        Returns:
            The compensating Transaction (opposite sign, same type)
        """
        original = self.get_transaction(transaction_id)
        if not original:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        if original.status == TransactionStatus.REVERSED:
            raise ConflictError(f"Transaction {transaction_id} is already reversed")

        full = abs(original.amount)
        portion = full if amount is None else to_decimal(amount)
        if portion <= ZERO or portion > full:
            raise ValidationError(f"Cannot reverse {portion} of a {full} entry")

        sign = Decimal('-1') if original.amount > ZERO else Decimal('1')
        now = datetime.now(timezone.utc)
        compensation = Transaction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            type=original.type,
            ref_id=original.ref_id,
            amount=sign * portion,
            reverses_id=original.id,
            description=description or f"Reversal of {original.id}"
        )
        self.storage.save(self.table_name, compensation.id, compensation.to_dict())

        if portion == full:
            original.status = TransactionStatus.REVERSED
            original.updated_at = now
            self.storage.save(self.table_name, original.id, original.to_dict())

        return compensation

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        data = self.storage.load(self.table_name, transaction_id)
        return Transaction.from_dict(data) if data else None

    def entries_for(self, ref_id: str) -> List[Transaction]:
        """All entries recorded against a business record, oldest first"""
        return [Transaction.from_dict(d) for d in self.storage.find(self.table_name, {'ref_id': ref_id})]

    def available_funds(self) -> Decimal:
        """Signed sum of every journal entry"""
        return sum((Decimal(d['amount']) for d in self.storage.load_all(self.table_name)), ZERO)

    def reconcile(self, ledger) -> Dict[str, Any]:
        """
        Compare the platform balance against the journal total.

        Returns:
            Dictionary with both figures and whether they agree
        """
        platform = ledger.get_platform_account()
        journal_total = self.available_funds()
        balanced = platform.balance == journal_total

        if not balanced:
            log_action(
                self.logger, "error", "Platform balance does not match journal",
                action="reconcile", resource=f"account:{platform.id}",
                extra={"platform_balance": str(platform.balance), "journal_total": str(journal_total)}
            )

        return {
            'platform_balance': platform.balance,
            'journal_total': journal_total,
            'difference': platform.balance - journal_total,
            'balanced': balanced
        }
