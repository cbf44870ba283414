"""
Request dependencies
"""

from datetime import date
from decimal import Decimal
from typing import Optional

from fastapi import Header, Request

from ..system import LendingSystem
from ..errors import ValidationError
from ..money import to_decimal


def get_lending_system(request: Request) -> LendingSystem:
    return request.app.state.system


def get_actor(x_actor: Optional[str] = Header(None)) -> str:
    """Authenticated actor identity, supplied by the gateway in X-Actor"""
    if not x_actor:
        raise ValidationError("X-Actor header is required")
    return x_actor


def get_optional_actor(x_actor: Optional[str] = Header(None)) -> Optional[str]:
    return x_actor


def parse_date(value: Optional[str], field: str) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise ValidationError(f"Invalid {field}: {value!r} (expected YYYY-MM-DD)")


def parse_amount(value: str, field: str = "amount") -> Decimal:
    try:
        return to_decimal(value)
    except ValueError:
        raise ValidationError(f"Invalid {field}: {value!r}")
