"""
Loan endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, status

from .dependencies import get_lending_system, get_optional_actor, parse_amount, parse_date
from .schemas import CreateLoanRequest, UpdateLoanStatusRequest, DisburseRequest, disbursement_response
from ..system import LendingSystem
from ..loans import LoanStatus
from ..errors import ValidationError


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_loan(
    request: CreateLoanRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Create a loan in PENDING status"""
    loan = system.loan_manager.originate_loan(
        account_id=request.account_id,
        principal=parse_amount(request.principal, "principal"),
        annual_rate_percent=parse_amount(request.annual_rate_percent, "annual_rate_percent"),
        tenor_months=request.tenor_months
    )
    return {
        "loan_id": loan.id,
        "loan": loan.to_dict(),
        "message": "Loan created successfully"
    }


@router.get("/{loan_id}")
async def get_loan(loan_id: str, system: LendingSystem = Depends(get_lending_system)):
    """Get loan details including its disbursement"""
    loan = system.loan_manager.require_loan(loan_id)
    disbursement = system.loan_manager.get_disbursement_for_loan(loan_id)
    return {
        "loan": loan.to_dict(),
        "disbursement": disbursement.to_dict() if disbursement else None
    }


@router.patch("/{loan_id}/status")
async def update_loan_status(
    loan_id: str,
    request: UpdateLoanStatusRequest,
    actor: Optional[str] = Depends(get_optional_actor),
    system: LendingSystem = Depends(get_lending_system)
):
    """Move a loan between PENDING and APPROVED"""
    try:
        new_status = LoanStatus(request.status.upper())
    except ValueError:
        raise ValidationError(f"Unknown loan status: {request.status}")

    loan = system.loan_manager.update_loan_status(loan_id, new_status, actor)
    return {
        "loan": loan.to_dict(),
        "message": f"Loan status changed to {loan.status.value}"
    }


@router.get("/{loan_id}/schedule")
async def get_schedule(loan_id: str, system: LendingSystem = Depends(get_lending_system)):
    """Get the repayment schedule"""
    system.loan_manager.require_loan(loan_id)
    return {
        "loan_id": loan_id,
        "schedule": [row.to_dict() for row in system.loan_manager.get_schedule(loan_id)]
    }


@router.get("/{loan_id}/payments")
async def get_payments(loan_id: str, system: LendingSystem = Depends(get_lending_system)):
    """Get every payment recorded against a loan"""
    system.loan_manager.require_loan(loan_id)
    return {
        "loan_id": loan_id,
        "payments": [p.to_dict() for p in system.loan_manager.get_loan_payments(loan_id)]
    }


@router.post("/{loan_id}/disburse")
async def disburse_loan(
    loan_id: str,
    request: DisburseRequest,
    actor: Optional[str] = Depends(get_optional_actor),
    system: LendingSystem = Depends(get_lending_system)
):
    """Disburse the loan principal to the borrower account"""
    result = system.disburse(
        loan_id,
        parse_amount(request.amount),
        parse_date(request.disbursement_date, "disbursement_date"),
        actor=actor
    )
    return disbursement_response(result)
