"""
Administrative endpoints: audit integrity and ledger reconciliation
"""

from fastapi import APIRouter, Depends

from .dependencies import get_lending_system
from ..system import LendingSystem
from ..audit import AuditEventType


router = APIRouter()


@router.get("/audit/verify")
async def verify_audit_integrity(system: LendingSystem = Depends(get_lending_system)):
    """Verify the audit hash chain"""
    result = system.audit_trail.verify_integrity()
    system.audit_trail.log_event(
        AuditEventType.AUDIT_INTEGRITY_CHECK, "system", "audit_trail",
        metadata={'valid': result['valid'], 'total_events': result['total_events']}
    )
    return result


@router.get("/audit/{entity_type}/{entity_id}")
async def get_entity_audit(entity_type: str, entity_id: str,
                           system: LendingSystem = Depends(get_lending_system)):
    """Audit events recorded for one entity"""
    events = system.audit_trail.get_events_for_entity(entity_type, entity_id)
    return {"events": [e.to_dict() for e in events], "count": len(events)}


@router.get("/ledger/reconcile")
async def reconcile_ledger(system: LendingSystem = Depends(get_lending_system)):
    """Compare the platform balance with the journal total"""
    result = system.journal.reconcile(system.ledger)
    return {
        "platform_balance": str(result['platform_balance']),
        "journal_total": str(result['journal_total']),
        "difference": str(result['difference']),
        "balanced": result['balanced'],
        "total_account_balance": str(system.ledger.total_balance())
    }
