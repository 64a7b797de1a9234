"""
Collections endpoints
"""

from datetime import date
from typing import Optional
from fastapi import APIRouter, Depends, status

from .deps import get_company_id, http_error, parse_enum
from .schemas import (
    FollowUpModel, RecordPaymentModel, CollectionStateModel, AsOfModel, ReasonModel,
    ProjectionModel, ProjectionCollectedModel
)
from ..aging import AgingBucket
from ..collections_ledger import CollectionState
from ..exceptions import LeaseLedgerError
from ..system import LeaseLedgerSystem, get_ledger_system


router = APIRouter()


@router.post("/sync")
def sync_collections(
    request: AsOfModel,
    company_id: str = Depends(get_company_id),
    system: LeaseLedgerSystem = Depends(get_ledger_system)
):
    """Open, refresh and close delinquency records from the aging view"""
    try:
        result = system.collections.sync_from_aging(company_id, request.as_of)
        return {
            "opened": result.opened,
            "updated": result.updated,
            "closed": result.closed,
            "deactivated": result.deactivated,
            "unchanged": result.unchanged,
        }
    except LeaseLedgerError as e:
        raise http_error(e)


@router.get("/aging")
def get_aging(
    as_of: Optional[date] = None,
    contract_id: Optional[str] = None,
    company_id: str = Depends(get_company_id),
    system: LeaseLedgerSystem = Depends(get_ledger_system)
):
    """Aging entry for every unpaid charge"""
    entries = system.aging.classify(as_of, company_id, contract_id)
    return {"entries": [e.to_dict() for e in entries]}


@router.get("/records")
def list_records(
    state: Optional[str] = None,
    bucket: Optional[str] = None,
    contract_id: Optional[str] = None,
    tenant_id: Optional[str] = None,
    property_id: Optional[str] = None,
    open_only: bool = True,
    company_id: str = Depends(get_company_id),
    system: LeaseLedgerSystem = Depends(get_ledger_system)
):
    """Delinquency records, filterable by state, bucket, contract, tenant or property"""
    records = system.collections.find_records(
        company_id,
        state=parse_enum(CollectionState, state),
        bucket=parse_enum(AgingBucket, bucket),
        contract_id=contract_id,
        open_only=open_only,
        tenant_id=tenant_id,
        property_id=property_id
    )
    return {"records": [r.to_dict() for r in records]}


@router.get("/records/{record_id}")
def get_record(
    record_id: str,
    company_id: str = Depends(get_company_id),
    system: LeaseLedgerSystem = Depends(get_ledger_system)
):
    try:
        record = system.collections.get_record(company_id, record_id)
        result = record.to_dict()
        result["follow_ups"] = [f.to_dict() for f in system.collections.get_follow_ups(company_id, record_id)]
        return result
    except LeaseLedgerError as e:
        raise http_error(e)


@router.post("/records/{record_id}/penalty")
def accrue_penalty(
    record_id: str,
    request: AsOfModel,
    company_id: str = Depends(get_company_id),
    system: LeaseLedgerSystem = Depends(get_ledger_system)
):
    try:
        return system.collections.accrue_penalty(company_id, record_id, request.as_of).to_dict()
    except LeaseLedgerError as e:
        raise http_error(e)


@router.post("/records/{record_id}/follow-ups", status_code=status.HTTP_201_CREATED)
def register_follow_up(
    record_id: str,
    request: FollowUpModel,
    company_id: str = Depends(get_company_id),
    system: LeaseLedgerSystem = Depends(get_ledger_system)
):
    """Log a collection contact"""
    try:
        follow_up = system.collections.register_follow_up(company_id, record_id, request.to_request())
        return follow_up.to_dict()
    except LeaseLedgerError as e:
        raise http_error(e)


@router.get("/records/{record_id}/follow-ups")
def get_follow_ups(
    record_id: str,
    company_id: str = Depends(get_company_id),
    system: LeaseLedgerSystem = Depends(get_ledger_system)
):
    try:
        return {"follow_ups": [f.to_dict() for f in system.collections.get_follow_ups(company_id, record_id)]}
    except LeaseLedgerError as e:
        raise http_error(e)


@router.post("/records/{record_id}/payments")
def record_payment(
    record_id: str,
    request: RecordPaymentModel,
    company_id: str = Depends(get_company_id),
    system: LeaseLedgerSystem = Depends(get_ledger_system)
):
    try:
        return system.collections.record_payment(company_id, record_id, request.amount.to_money()).to_dict()
    except LeaseLedgerError as e:
        raise http_error(e)


@router.post("/records/{record_id}/state")
def update_collection_state(
    record_id: str,
    request: CollectionStateModel,
    company_id: str = Depends(get_company_id),
    system: LeaseLedgerSystem = Depends(get_ledger_system)
):
    try:
        record = system.collections.update_collection_state(
            company_id, record_id, parse_enum(CollectionState, request.state), request.notes
        )
        return record.to_dict()
    except LeaseLedgerError as e:
        raise http_error(e)


@router.post("/records/{record_id}/deactivate")
def deactivate_record(
    record_id: str,
    request: ReasonModel,
    company_id: str = Depends(get_company_id),
    system: LeaseLedgerSystem = Depends(get_ledger_system)
):
    """Withdraw a record from collections; it is kept for the audit history"""
    try:
        return system.collections.deactivate_record(company_id, record_id, request.reason).to_dict()
    except LeaseLedgerError as e:
        raise http_error(e)


@router.get("/pending-actions")
def get_pending_actions(
    as_of: Optional[date] = None,
    company_id: str = Depends(get_company_id),
    system: LeaseLedgerSystem = Depends(get_ledger_system)
):
    """Next actions due on open records"""
    follow_ups = system.collections.get_pending_actions(company_id, as_of)
    return {"actions": [f.to_dict() for f in follow_ups]}


@router.get("/summary")
def get_collections_summary(
    company_id: str = Depends(get_company_id),
    system: LeaseLedgerSystem = Depends(get_ledger_system)
):
    return system.collections.get_summary(company_id).to_dict()


@router.get("/projections")
def get_projections(
    start: Optional[date] = None,
    end: Optional[date] = None,
    company_id: str = Depends(get_company_id),
    system: LeaseLedgerSystem = Depends(get_ledger_system)
):
    """Monthly projections whose month starts between start and end"""
    projections = system.collections.get_projections(company_id, start, end)
    return {"projections": [p.to_dict() for p in projections]}


@router.put("/projections/{year}/{month}")
def save_projection(
    year: int,
    month: int,
    request: ProjectionModel,
    company_id: str = Depends(get_company_id),
    system: LeaseLedgerSystem = Depends(get_ledger_system)
):
    """Create or update the rent expected for a month"""
    try:
        projection = system.collections.create_or_update_projection(
            company_id, month, year,
            projected_amount=request.to_projected_amount(),
            contract_count=request.contract_count,
            expected_payments=request.expected_payments,
            notes=request.notes
        )
        return projection.to_dict()
    except LeaseLedgerError as e:
        raise http_error(e)


@router.post("/projections/{year}/{month}/collected")
def refresh_projection_collected(
    year: int,
    month: int,
    request: ProjectionCollectedModel,
    company_id: str = Depends(get_company_id),
    system: LeaseLedgerSystem = Depends(get_ledger_system)
):
    """Update what has been collected against a month's projection"""
    try:
        projection = system.collections.refresh_projection_collected(
            company_id, month, year,
            collected_amount=request.to_collected_amount(),
            received_payments=request.received_payments
        )
        return projection.to_dict()
    except LeaseLedgerError as e:
        raise http_error(e)
