"""
Lending Core

Loan ledger and repayment engine: disbursement, interest-bearing repayment
and compensating rollback over a platform account and borrower accounts.
All financial calculations use Decimal precision and every money movement
runs inside an atomic storage unit.
"""

__version__ = "1.0.0"
