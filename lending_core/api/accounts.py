"""
Account endpoints
"""

from fastapi import APIRouter, Depends, status

from .dependencies import get_lending_system, parse_amount
from .schemas import OpenAccountRequest, AmountRequest, FundPlatformRequest
from ..system import LendingSystem
from ..errors import NotFoundError


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def open_account(
    request: OpenAccountRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Open a borrower account"""
    account = system.ledger.open_account(
        owner_ref=request.owner_ref,
        initial_balance=parse_amount(request.initial_balance, "initial_balance")
    )
    return {
        "account_id": account.id,
        "account": account.to_dict(),
        "message": "Account opened successfully"
    }


@router.get("/platform")
async def get_platform_account(system: LendingSystem = Depends(get_lending_system)):
    """Get the platform account with its available funds"""
    account = system.ledger.get_platform_account()
    return {
        "account": account.to_dict(),
        "available_funds": str(system.journal.available_funds())
    }


@router.post("/platform/fund")
async def fund_platform(
    request: FundPlatformRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Add external funding to the platform account"""
    account = system.ledger.fund_platform(parse_amount(request.amount), request.reference)
    return {
        "account": account.to_dict(),
        "message": "Platform funded successfully"
    }


@router.get("/{account_id}")
async def get_account(account_id: str, system: LendingSystem = Depends(get_lending_system)):
    """Get account details"""
    account = system.ledger.get_account(account_id)
    if not account:
        raise NotFoundError(f"Account {account_id} not found")
    return account.to_dict()


@router.post("/{account_id}/deposit")
async def deposit(
    account_id: str,
    request: AmountRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Credit external money to a borrower account"""
    account = system.ledger.deposit(account_id, parse_amount(request.amount), request.description)
    return {
        "account": account.to_dict(),
        "message": "Deposit recorded successfully"
    }
