"""
Contract lifecycle endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, status

from .deps import get_company_id, http_error, parse_enum
from .schemas import (
    CreateContractModel, UpdateContractModel, RenewContractModel, ReasonModel, NoteModel
)
from ..contracts import Contract, ContractStatus
from ..exceptions import LeaseLedgerError
from ..system import LeaseLedgerSystem, get_ledger_system


router = APIRouter()


def contract_response(contract: Contract, system: LeaseLedgerSystem) -> dict:
    today = system.clock.today()
    result = contract.to_dict()
    result["display_status"] = contract.display_status(today, system.contracts.expiring_soon_days).value
    result["days_remaining"] = contract.days_remaining(today)
    return result


@router.post("", status_code=status.HTTP_201_CREATED)
def create_contract(
    request: CreateContractModel,
    company_id: str = Depends(get_company_id),
    system: LeaseLedgerSystem = Depends(get_ledger_system)
):
    """Create a contract in DRAFT"""
    try:
        contract = system.contracts.create_contract(company_id, request.to_request())
        return contract_response(contract, system)
    except LeaseLedgerError as e:
        raise http_error(e)


@router.get("")
def list_contracts(
    status: Optional[str] = None,
    property_id: Optional[str] = None,
    tenant_id: Optional[str] = None,
    company_id: str = Depends(get_company_id),
    system: LeaseLedgerSystem = Depends(get_ledger_system)
):
    """List contracts, filtered by display status"""
    contracts = system.contracts.find_contracts(
        company_id,
        status=parse_enum(ContractStatus, status),
        property_id=property_id,
        tenant_id=tenant_id
    )
    return {"contracts": [contract_response(c, system) for c in contracts]}


@router.get("/statistics")
def get_contract_statistics(
    company_id: str = Depends(get_company_id),
    system: LeaseLedgerSystem = Depends(get_ledger_system)
):
    return system.contracts.contract_statistics(company_id)


@router.get("/expiring")
def get_expiring_contracts(
    within_days: Optional[int] = None,
    company_id: str = Depends(get_company_id),
    system: LeaseLedgerSystem = Depends(get_ledger_system)
):
    """Current contracts ending soon"""
    contracts = system.contracts.get_expiring_contracts(company_id, within_days)
    return {"contracts": [contract_response(c, system) for c in contracts]}


@router.get("/{contract_id}")
def get_contract(
    contract_id: str,
    company_id: str = Depends(get_company_id),
    system: LeaseLedgerSystem = Depends(get_ledger_system)
):
    try:
        return contract_response(system.contracts.get_contract(company_id, contract_id), system)
    except LeaseLedgerError as e:
        raise http_error(e)


@router.patch("/{contract_id}")
def update_contract(
    contract_id: str,
    request: UpdateContractModel,
    company_id: str = Depends(get_company_id),
    system: LeaseLedgerSystem = Depends(get_ledger_system)
):
    """Edit the terms of a non-terminal contract"""
    try:
        contract = system.contracts.update_contract(company_id, contract_id, request.to_request())
        return contract_response(contract, system)
    except LeaseLedgerError as e:
        raise http_error(e)


@router.delete("/{contract_id}")
def delete_contract(
    contract_id: str,
    company_id: str = Depends(get_company_id),
    system: LeaseLedgerSystem = Depends(get_ledger_system)
):
    """Delete a contract, or deactivate it when it has ledger history"""
    try:
        deleted = system.contracts.delete_contract(company_id, contract_id)
        return {"contract_id": contract_id, "deleted": deleted, "deactivated": not deleted}
    except LeaseLedgerError as e:
        raise http_error(e)


@router.post("/{contract_id}/activate")
def activate_contract(
    contract_id: str,
    company_id: str = Depends(get_company_id),
    system: LeaseLedgerSystem = Depends(get_ledger_system)
):
    try:
        return contract_response(system.contracts.activate(company_id, contract_id), system)
    except LeaseLedgerError as e:
        raise http_error(e)


@router.post("/{contract_id}/terminate")
def terminate_contract(
    contract_id: str,
    request: ReasonModel,
    company_id: str = Depends(get_company_id),
    system: LeaseLedgerSystem = Depends(get_ledger_system)
):
    try:
        contract = system.contracts.terminate(company_id, contract_id, request.reason)
        return contract_response(contract, system)
    except LeaseLedgerError as e:
        raise http_error(e)


@router.post("/{contract_id}/cancel")
def cancel_contract(
    contract_id: str,
    request: ReasonModel,
    company_id: str = Depends(get_company_id),
    system: LeaseLedgerSystem = Depends(get_ledger_system)
):
    try:
        contract = system.contracts.cancel(company_id, contract_id, request.reason)
        return contract_response(contract, system)
    except LeaseLedgerError as e:
        raise http_error(e)


@router.post("/{contract_id}/renew", status_code=status.HTTP_201_CREATED)
def renew_contract(
    contract_id: str,
    request: RenewContractModel,
    company_id: str = Depends(get_company_id),
    system: LeaseLedgerSystem = Depends(get_ledger_system)
):
    """Renew into a new ACTIVE contract; returns the successor"""
    try:
        successor = system.contracts.renew(company_id, contract_id, request.to_request())
        return contract_response(successor, system)
    except LeaseLedgerError as e:
        raise http_error(e)


@router.post("/{contract_id}/notes")
def add_contract_note(
    contract_id: str,
    request: NoteModel,
    company_id: str = Depends(get_company_id),
    system: LeaseLedgerSystem = Depends(get_ledger_system)
):
    try:
        contract = system.contracts.add_note(company_id, contract_id, request.note)
        return contract_response(contract, system)
    except LeaseLedgerError as e:
        raise http_error(e)


@router.get("/{contract_id}/balance")
def get_contract_balance(
    contract_id: str,
    company_id: str = Depends(get_company_id),
    system: LeaseLedgerSystem = Depends(get_ledger_system)
):
    """Total pending amount across the contract's charges"""
    try:
        balance = system.charges.get_contract_balance(company_id, contract_id)
        return {"contract_id": contract_id, "balance": balance.to_dict()}
    except LeaseLedgerError as e:
        raise http_error(e)


@router.get("/{contract_id}/audit")
def get_contract_audit(
    contract_id: str,
    company_id: str = Depends(get_company_id),
    system: LeaseLedgerSystem = Depends(get_ledger_system)
):
    try:
        system.contracts.get_contract(company_id, contract_id)
    except LeaseLedgerError as e:
        raise http_error(e)
    events = system.audit_trail.get_events_for_entity("contract", contract_id)
    return {"events": [
        {
            "event_type": e.event_type.value,
            "sequence": e.sequence,
            "created_at": e.created_at.isoformat(),
            "metadata": e.metadata,
        }
        for e in events
    ]}
