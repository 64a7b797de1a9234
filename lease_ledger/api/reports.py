"""
Reporting endpoints
"""

from datetime import date
from typing import Optional
from fastapi import APIRouter, Depends

from .deps import get_company_id, http_error
from ..exceptions import LeaseLedgerError
from ..system import LeaseLedgerSystem, get_ledger_system


router = APIRouter()


@router.get("/aging")
def aging_report(
    as_of: Optional[date] = None,
    company_id: str = Depends(get_company_id),
    system: LeaseLedgerSystem = Depends(get_ledger_system)
):
    return system.reporting.aging_report(company_id, as_of).to_dict()


@router.get("/statement/{contract_id}")
def account_statement(
    contract_id: str,
    as_of: Optional[date] = None,
    company_id: str = Depends(get_company_id),
    system: LeaseLedgerSystem = Depends(get_ledger_system)
):
    try:
        return system.reporting.account_statement(company_id, contract_id, as_of).to_dict()
    except LeaseLedgerError as e:
        raise http_error(e)


@router.get("/settlement/{contract_id}")
def termination_settlement(
    contract_id: str,
    as_of: Optional[date] = None,
    company_id: str = Depends(get_company_id),
    system: LeaseLedgerSystem = Depends(get_ledger_system)
):
    try:
        return system.reporting.termination_settlement(company_id, contract_id, as_of).to_dict()
    except LeaseLedgerError as e:
        raise http_error(e)


@router.get("/payment-statistics")
def payment_statistics(
    month: int,
    year: int,
    company_id: str = Depends(get_company_id),
    system: LeaseLedgerSystem = Depends(get_ledger_system)
):
    try:
        return system.reporting.payment_statistics(company_id, month, year).to_dict()
    except LeaseLedgerError as e:
        raise http_error(e)
