"""
Pydantic schemas for API requests and responses
"""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from ..disbursements import DisbursementResult
from ..payments import PaymentResult, PaymentQuote
from ..money import money_str


# Account schemas
class OpenAccountRequest(BaseModel):
    owner_ref: str = Field(..., description="Borrower reference owning the account")
    initial_balance: str = Field("0", description="Decimal amount as string")


class AmountRequest(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    description: Optional[str] = None


class FundPlatformRequest(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    reference: Optional[str] = None


# Loan schemas
class CreateLoanRequest(BaseModel):
    account_id: str
    principal: str = Field(..., description="Decimal amount as string")
    annual_rate_percent: str = Field(..., description="Annual rate in percent, e.g. \"12\"")
    tenor_months: int = Field(..., gt=0)


class UpdateLoanStatusRequest(BaseModel):
    status: str = Field(..., description="PENDING or APPROVED")


class DisburseRequest(BaseModel):
    amount: str = Field(..., description="Must equal the loan principal")
    disbursement_date: Optional[str] = None  # ISO date string


# Payment schemas
class PaymentRequest(BaseModel):
    loan_id: str
    payment_date: Optional[str] = None  # ISO date string
    amount: Optional[str] = Field(None, description="Omit to pay the full amount due")


# Rollback schemas
class RollbackRequest(BaseModel):
    reason: str = Field(..., min_length=1)


def disbursement_response(result: DisbursementResult) -> Dict[str, Any]:
    return {
        "disbursement": result.disbursement.to_dict(),
        "loan": result.loan.to_dict(),
        "schedule_count": result.schedule_count,
        "message": "Loan disbursed successfully"
    }


def payment_response(result: PaymentResult) -> Dict[str, Any]:
    return {
        "payments": [p.to_dict() for p in result.payments],
        "total_amount_charged": money_str(result.total_amount_charged),
        "total_principal_paid": money_str(result.total_principal_paid),
        "total_interest_paid": money_str(result.total_interest_paid),
        "total_late_fee_paid": money_str(result.total_late_fee_paid),
        "new_outstanding_principal": money_str(result.new_outstanding_principal),
        "schedules_covered": result.schedules_covered,
        "loan_status": result.loan_status.value
    }


def quote_response(quote: PaymentQuote) -> Dict[str, Any]:
    installments: List[Dict[str, Any]] = [
        {
            "schedule_id": d.schedule_id,
            "installment_number": d.installment_number,
            "due_date": d.due_date.isoformat(),
            "principal_remaining": money_str(d.principal_remaining),
            "late_fee": money_str(d.late_fee),
            "days_late": d.days_late
        }
        for d in quote.due
    ]
    return {
        "loan_id": quote.loan.id,
        "payment_date": quote.payment_date.isoformat(),
        "last_event_date": quote.last_event_date.isoformat(),
        "days_since_last_event": quote.days_since_last_event,
        "accrued_interest": money_str(quote.accrued_interest),
        "total_late_fee": money_str(quote.total_late_fee),
        "total_principal_due": money_str(quote.total_principal_due),
        "total_due": money_str(quote.total_due),
        "due_installments": installments
    }
