"""
Rollback endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends

from .dependencies import get_lending_system, get_actor, parse_date
from .schemas import RollbackRequest
from ..system import LendingSystem
from ..rollback import OriginalOperation
from ..errors import ValidationError


router = APIRouter()


@router.post("/disbursements/{disbursement_id}")
async def rollback_disbursement(
    disbursement_id: str,
    request: RollbackRequest,
    actor: str = Depends(get_actor),
    system: LendingSystem = Depends(get_lending_system)
):
    """Reverse a completed disbursement"""
    record = system.rollback_disbursement(disbursement_id, actor, request.reason)
    return {
        "rollback_record": record.to_dict(),
        "message": "Disbursement rolled back successfully"
    }


@router.post("/payments/{payment_id}")
async def rollback_payment(
    payment_id: str,
    request: RollbackRequest,
    actor: str = Depends(get_actor),
    system: LendingSystem = Depends(get_lending_system)
):
    """Reverse the principal of a completed payment"""
    record = system.rollback_payment(payment_id, actor, request.reason)
    return {
        "rollback_record": record.to_dict(),
        "message": "Payment rolled back successfully"
    }


@router.get("/records")
async def get_rollback_records(
    transaction_id: Optional[str] = None,
    operation: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    """List rollback records, newest first"""
    original_operation = None
    if operation:
        try:
            original_operation = OriginalOperation(operation.upper())
        except ValueError:
            raise ValidationError(f"Unknown operation: {operation}")

    records = system.rollback_service.get_rollback_records(
        transaction_id=transaction_id,
        operation=original_operation,
        date_from=parse_date(date_from, "date_from"),
        date_to=parse_date(date_to, "date_to")
    )
    return {"records": [r.to_dict() for r in records], "count": len(records)}


@router.get("/check/{transaction_id}")
async def can_rollback(transaction_id: str, system: LendingSystem = Depends(get_lending_system)):
    """Whether a disbursement or payment can currently be rolled back"""
    return {
        "transaction_id": transaction_id,
        "can_rollback": system.rollback_service.can_rollback(transaction_id)
    }
