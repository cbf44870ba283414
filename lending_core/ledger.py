"""
Account Ledger Module

Exclusive owner of account balances. Every balance change goes through
``transfer`` (money moving between two accounts) or ``deposit`` (money
entering from outside the platform). A transfer always runs inside the
caller's atomic unit when one is open, never as an independent commit.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .errors import ValidationError, NotFoundError, InsufficientFundsError
from .money import ZERO, to_decimal, require_whole_cents
from .transactions import TransactionJournal, TransactionType
from .logging_config import get_logger, log_action


class OwnerType(Enum):
    """Who an account belongs to"""
    PLATFORM = "PLATFORM"
    USER = "USER"


@dataclass
class Account(StorageRecord):
    """A balance-holding account; exactly one PLATFORM account exists"""
    owner_type: OwnerType
    balance: Decimal
    owner_ref: Optional[str] = None

    @property
    def is_platform(self) -> bool:
        return self.owner_type == OwnerType.PLATFORM

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            owner_type=OwnerType(data['owner_type']),
            balance=Decimal(data['balance']),
            owner_ref=data.get('owner_ref')
        )


class AccountLedger:
    """
    Account balances and fund movement
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail, journal: TransactionJournal):
        self.storage = storage
        self.audit = audit_trail
        self.journal = journal
        self.table_name = "accounts"
        self.logger = get_logger("lending.ledger")

    def create_platform_account(self, initial_balance: Decimal = ZERO) -> Account:
        """
        Create the platform account, or return it if it already exists.

        The initial balance is recorded as a FUNDING journal entry so the
        platform balance always equals the journal total.
        """
        initial_balance = to_decimal(initial_balance)
        if initial_balance < ZERO:
            raise ValidationError("Initial platform balance cannot be negative")
        require_whole_cents(initial_balance, "Initial platform balance")

        with self.storage.atomic():
            existing = self.storage.find(self.table_name, {'owner_type': OwnerType.PLATFORM.value})
            if existing:
                return Account.from_dict(existing[0])

            account = self._new_account(OwnerType.PLATFORM, None)
            self._save_account(account)

            if initial_balance > ZERO:
                self._credit(account, initial_balance)
                self.journal.record(
                    TransactionType.FUNDING, account.id, initial_balance,
                    description="Initial platform funding"
                )

        self.audit.log_event(
            AuditEventType.PLATFORM_ACCOUNT_CREATED, "account", account.id,
            metadata={'initial_balance': initial_balance}
        )
        return self.get_account(account.id)

    def open_account(self, owner_ref: str, initial_balance: Decimal = ZERO) -> Account:
        """Open a borrower (USER) account"""
        if not owner_ref:
            raise ValidationError("Borrower account requires an owner reference")
        initial_balance = to_decimal(initial_balance)
        if initial_balance < ZERO:
            raise ValidationError("Initial balance cannot be negative")
        require_whole_cents(initial_balance, "Initial balance")

        account = self._new_account(OwnerType.USER, owner_ref)
        account.balance = initial_balance
        self._save_account(account)

        log_action(
            self.logger, "info", "Borrower account opened",
            action="open_account", resource=f"account:{account.id}",
            extra={"owner_ref": owner_ref}
        )
        self.audit.log_event(
            AuditEventType.ACCOUNT_OPENED, "account", account.id,
            metadata={'owner_ref': owner_ref, 'initial_balance': initial_balance}
        )
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        """Get account by ID"""
        data = self.storage.load(self.table_name, account_id)
        return Account.from_dict(data) if data else None

    def get_platform_account(self) -> Account:
        """
        Locate the platform account by its owner type.

        Raises:
            NotFoundError: the platform account has not been bootstrapped
        """
        found = self.storage.find(self.table_name, {'owner_type': OwnerType.PLATFORM.value})
        if not found:
            raise NotFoundError("Platform account not found")
        return Account.from_dict(found[0])

    def get_accounts_for_owner(self, owner_ref: str) -> List[Account]:
        return [Account.from_dict(d) for d in self.storage.find(self.table_name, {'owner_ref': owner_ref})]

    def transfer(
        self,
        from_account_id: str,
        to_account_id: str,
        amount: Decimal,
        allow_negative_source: bool = False,
        description: Optional[str] = None
    ) -> None:
        """
        Move ``amount`` from one account to another.

        Args:
            from_account_id: Account to debit
            to_account_id: Account to credit
            amount: Positive amount to move
            allow_negative_source: Skip the sufficiency check; platform source only
            description: Free text for the log line

        Raises:
            ValidationError: amount not positive, same account on both sides, or
                a negative-source transfer from a non-platform account
            NotFoundError: either account is missing
            InsufficientFundsError: source balance below amount
        """
        amount = to_decimal(amount)
        if amount <= ZERO:
            raise ValidationError("Transfer amount must be positive")
        require_whole_cents(amount, "Transfer amount")
        if from_account_id == to_account_id:
            raise ValidationError("Cannot transfer to the same account")

        with self.storage.atomic():
            source = self._require_account(from_account_id)
            destination = self._require_account(to_account_id)

            if allow_negative_source and not source.is_platform:
                raise ValidationError("Only the platform account may go negative")

            if not allow_negative_source and source.balance < amount:
                raise InsufficientFundsError(
                    f"Insufficient funds in account {source.id}: "
                    f"balance {source.balance}, requested {amount}"
                )

            now = datetime.now(timezone.utc)
            source.balance -= amount
            source.updated_at = now
            destination.balance += amount
            destination.updated_at = now

            self._save_account(source)
            self._save_account(destination)

        log_action(
            self.logger, "debug", description or "Funds transferred",
            action="transfer", resource=f"account:{from_account_id}",
            extra={
                "from_account": from_account_id,
                "to_account": to_account_id,
                "amount": str(amount),
                "allow_negative_source": allow_negative_source
            }
        )

    def deposit(self, account_id: str, amount: Decimal, description: Optional[str] = None) -> Account:
        """Credit money arriving from outside the platform to a borrower account"""
        amount = to_decimal(amount)
        if amount <= ZERO:
            raise ValidationError("Deposit amount must be positive")
        require_whole_cents(amount, "Deposit amount")

        with self.storage.atomic():
            account = self._require_account(account_id)
            if account.is_platform:
                raise ValidationError("Use fund_platform to add money to the platform account")
            self._credit(account, amount)

        self.audit.log_event(
            AuditEventType.ACCOUNT_DEPOSIT, "account", account_id,
            metadata={'amount': amount, 'description': description}
        )
        return self.get_account(account_id)

    def fund_platform(self, amount: Decimal, reference: Optional[str] = None) -> Account:
        """Credit the platform account and record the FUNDING journal entry together"""
        amount = to_decimal(amount)
        if amount <= ZERO:
            raise ValidationError("Funding amount must be positive")
        require_whole_cents(amount, "Funding amount")

        with self.storage.atomic():
            platform = self.get_platform_account()
            self._credit(platform, amount)
            entry = self.journal.record(
                TransactionType.FUNDING, reference or platform.id, amount,
                description="Platform funding"
            )

        self.audit.log_event(
            AuditEventType.PLATFORM_FUNDED, "account", platform.id,
            metadata={'amount': amount, 'transaction_id': entry.id, 'reference': reference}
        )
        return self.get_platform_account()

    def total_balance(self) -> Decimal:
        """Sum of all account balances"""
        return sum((Decimal(d['balance']) for d in self.storage.load_all(self.table_name)), ZERO)

    def _credit(self, account: Account, amount: Decimal) -> None:
        account.balance += amount
        account.updated_at = datetime.now(timezone.utc)
        self._save_account(account)

    def _require_account(self, account_id: str) -> Account:
        account = self.get_account(account_id)
        if not account:
            raise NotFoundError(f"Account {account_id} not found")
        return account

    def _new_account(self, owner_type: OwnerType, owner_ref: Optional[str]) -> Account:
        now = datetime.now(timezone.utc)
        return Account(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            owner_type=owner_type,
            balance=ZERO,
            owner_ref=owner_ref
        )

    def _save_account(self, account: Account) -> None:
        self.storage.save(self.table_name, account.id, account.to_dict())
