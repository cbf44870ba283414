"""
Payment endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends

from .dependencies import get_lending_system, get_optional_actor, parse_amount, parse_date
from .schemas import PaymentRequest, payment_response, quote_response
from ..system import LendingSystem


router = APIRouter()


@router.post("")
async def make_payment(
    request: PaymentRequest,
    actor: Optional[str] = Depends(get_optional_actor),
    system: LendingSystem = Depends(get_lending_system)
):
    """Apply a payment to the installments due"""
    amount = parse_amount(request.amount) if request.amount is not None else None
    result = system.process_payment(
        request.loan_id,
        parse_date(request.payment_date, "payment_date"),
        amount,
        actor=actor
    )
    return payment_response(result)


@router.get("/quote")
async def quote_payment(
    loan_id: str,
    payment_date: Optional[str] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    """Amounts due on a loan as of a date, without collecting anything"""
    quote = system.payments.quote_payment(loan_id, parse_date(payment_date, "payment_date"))
    return quote_response(quote)
