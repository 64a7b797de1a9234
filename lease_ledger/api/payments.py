"""
Payment endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, status

from .deps import get_company_id, http_error, parse_enum
from .schemas import CreatePaymentModel, ApplyManualModel, ReasonModel, OptionalReasonModel
from ..payments import Payment, PaymentStatus, AllocationResult
from ..exceptions import LeaseLedgerError, retry_on_conflict
from ..system import LeaseLedgerSystem, get_ledger_system


router = APIRouter()


def payment_response(payment: Payment) -> dict:
    result = payment.to_dict()
    result["amount_available"] = payment.amount_available.to_dict()
    return result


def allocation_response(result: AllocationResult) -> dict:
    return {
        "payment": payment_response(result.payment),
        "applications": [a.to_dict() for a in result.applications],
        "total_applied": result.total_applied.to_dict(),
    }


@router.post("", status_code=status.HTTP_201_CREATED)
def create_payment(
    request: CreatePaymentModel,
    company_id: str = Depends(get_company_id),
    system: LeaseLedgerSystem = Depends(get_ledger_system)
):
    """Record a payment, optionally applying it to outstanding charges"""
    try:
        payment = retry_on_conflict(
            lambda: system.payments.create_payment(company_id, request.to_request(),
                                                   auto_apply=request.auto_apply),
            system.config.max_conflict_retries
        )
        result = payment_response(payment)
        result["applications"] = [
            a.to_dict() for a in system.payments.get_payment_applications(company_id, payment.id)
        ]
        return result
    except LeaseLedgerError as e:
        raise http_error(e)


@router.get("")
def list_payments(
    contract_id: Optional[str] = None,
    status: Optional[str] = None,
    company_id: str = Depends(get_company_id),
    system: LeaseLedgerSystem = Depends(get_ledger_system)
):
    payments = system.payments.find_payments(
        company_id, contract_id=contract_id, status=parse_enum(PaymentStatus, status)
    )
    return {"payments": [payment_response(p) for p in payments]}


@router.get("/{payment_id}")
def get_payment(
    payment_id: str,
    company_id: str = Depends(get_company_id),
    system: LeaseLedgerSystem = Depends(get_ledger_system)
):
    try:
        payment = system.payments.get_payment(company_id, payment_id)
    except LeaseLedgerError as e:
        raise http_error(e)
    result = payment_response(payment)
    result["applications"] = [
        a.to_dict() for a in system.payments.get_payment_applications(company_id, payment_id)
    ]
    return result


@router.post("/{payment_id}/apply")
def apply_payment(
    payment_id: str,
    company_id: str = Depends(get_company_id),
    system: LeaseLedgerSystem = Depends(get_ledger_system)
):
    """Apply available money to outstanding charges, oldest due first"""
    try:
        result = retry_on_conflict(
            lambda: system.payments.apply_automatic(company_id, payment_id),
            system.config.max_conflict_retries
        )
        return allocation_response(result)
    except LeaseLedgerError as e:
        raise http_error(e)


@router.post("/{payment_id}/apply-manual")
def apply_payment_manual(
    payment_id: str,
    request: ApplyManualModel,
    company_id: str = Depends(get_company_id),
    system: LeaseLedgerSystem = Depends(get_ledger_system)
):
    """Apply money to the given charges; all-or-nothing"""
    try:
        allocations = request.to_allocations()
        result = retry_on_conflict(
            lambda: system.payments.apply_manual(company_id, payment_id, allocations),
            system.config.max_conflict_retries
        )
        return allocation_response(result)
    except LeaseLedgerError as e:
        raise http_error(e)


@router.post("/{payment_id}/cancel")
def cancel_payment(
    payment_id: str,
    request: OptionalReasonModel,
    company_id: str = Depends(get_company_id),
    system: LeaseLedgerSystem = Depends(get_ledger_system)
):
    """Cancel a payment and reverse its applications"""
    try:
        payment = retry_on_conflict(
            lambda: system.payments.cancel_payment(company_id, payment_id, request.reason),
            system.config.max_conflict_retries
        )
        return payment_response(payment)
    except LeaseLedgerError as e:
        raise http_error(e)


@router.post("/{payment_id}/reject")
def reject_payment(
    payment_id: str,
    request: ReasonModel,
    company_id: str = Depends(get_company_id),
    system: LeaseLedgerSystem = Depends(get_ledger_system)
):
    try:
        return payment_response(system.payments.reject_payment(company_id, payment_id, request.reason))
    except LeaseLedgerError as e:
        raise http_error(e)
