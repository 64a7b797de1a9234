"""
Admin endpoints (daily cycle, audit integrity)
"""

from typing import Dict, Any
from fastapi import APIRouter, Depends

from .schemas import AsOfModel
from ..audit import AuditEventType
from ..system import LeaseLedgerSystem, get_ledger_system


router = APIRouter()


@router.post("/daily-cycle")
def run_daily_cycle(
    request: AsOfModel,
    system: LeaseLedgerSystem = Depends(get_ledger_system)
) -> Dict[str, Any]:
    """Expiry notifications, overdue refresh and collections sync for every company"""
    return system.run_daily_cycle(request.as_of)


@router.get("/audit/verify")
def verify_audit_integrity(
    system: LeaseLedgerSystem = Depends(get_ledger_system)
) -> Dict[str, Any]:
    """Walk the audit hash chain and report any breaks"""
    result = system.audit_trail.verify_integrity()
    system.audit_trail.log_event(
        event_type=AuditEventType.AUDIT_INTEGRITY_CHECK,
        entity_type="system",
        entity_id="audit_trail",
        metadata={"valid": result['valid'], "total_events": result['total_events']}
    )
    return result
