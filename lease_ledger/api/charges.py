"""
Charge endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, status

from .deps import get_company_id, http_error, parse_enum
from .schemas import GenerateChargesModel, CreateChargeModel, OptionalReasonModel
from ..charges import Charge, ChargeStatus, ChargeType
from ..exceptions import LeaseLedgerError
from ..system import LeaseLedgerSystem, get_ledger_system


router = APIRouter()


def charge_response(charge: Charge, system: LeaseLedgerSystem) -> dict:
    result = charge.to_dict()
    result["pending_amount"] = charge.pending_amount.to_dict()
    result["display_status"] = charge.display_status(system.clock.today()).value
    return result


@router.post("/generate", status_code=status.HTTP_201_CREATED)
def generate_fixed_charges(
    request: GenerateChargesModel,
    company_id: str = Depends(get_company_id),
    system: LeaseLedgerSystem = Depends(get_ledger_system)
):
    """Generate monthly rent charges for a period; re-running a period creates nothing"""
    try:
        created = system.charges.generate_fixed_charges(
            company_id, request.month, request.year, contract_id=request.contract_id
        )
        return {
            "created": len(created),
            "charges": [charge_response(c, system) for c in created]
        }
    except LeaseLedgerError as e:
        raise http_error(e)


@router.post("", status_code=status.HTTP_201_CREATED)
def create_charge(
    request: CreateChargeModel,
    company_id: str = Depends(get_company_id),
    system: LeaseLedgerSystem = Depends(get_ledger_system)
):
    """Create a one-off charge"""
    try:
        charge = system.charges.create_ad_hoc_charge(
            company_id=company_id,
            contract_id=request.contract_id,
            charge_type=parse_enum(ChargeType, request.charge_type),
            concept=request.concept,
            amount=request.amount.to_money(),
            charge_date=request.charge_date,
            due_date=request.due_date,
            notes=request.notes
        )
        return charge_response(charge, system)
    except LeaseLedgerError as e:
        raise http_error(e)


@router.get("")
def list_charges(
    contract_id: Optional[str] = None,
    status: Optional[str] = None,
    charge_type: Optional[str] = None,
    company_id: str = Depends(get_company_id),
    system: LeaseLedgerSystem = Depends(get_ledger_system)
):
    charges = system.charges.find_charges(
        company_id,
        contract_id=contract_id,
        status=parse_enum(ChargeStatus, status),
        charge_type=parse_enum(ChargeType, charge_type)
    )
    return {"charges": [charge_response(c, system) for c in charges]}


@router.get("/{charge_id}")
def get_charge(
    charge_id: str,
    company_id: str = Depends(get_company_id),
    system: LeaseLedgerSystem = Depends(get_ledger_system)
):
    try:
        charge = system.charges.get_charge(company_id, charge_id)
    except LeaseLedgerError as e:
        raise http_error(e)
    result = charge_response(charge, system)
    result["applications"] = [
        a.to_dict() for a in system.payments.get_charge_applications(company_id, charge_id)
    ]
    return result


@router.post("/{charge_id}/cancel")
def cancel_charge(
    charge_id: str,
    request: OptionalReasonModel,
    company_id: str = Depends(get_company_id),
    system: LeaseLedgerSystem = Depends(get_ledger_system)
):
    """Cancel a charge with no payments applied"""
    try:
        charge = system.charges.cancel_charge(company_id, charge_id, request.reason)
        return charge_response(charge, system)
    except LeaseLedgerError as e:
        raise http_error(e)
