"""
Pydantic schemas for API requests
"""

from decimal import Decimal, InvalidOperation
from datetime import date
from typing import List, Optional
from pydantic import BaseModel, Field

from ..currency import Money, currency_from_code, decimal_from_string
from ..exceptions import ValidationError
from ..contracts import CreateContractRequest, UpdateContractRequest, RenewContractRequest
from ..payments import CreatePaymentRequest, ManualAllocation, PaymentType
from ..collections_ledger import FollowUpRequest, ContactType, ContactOutcome


class MoneyModel(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    currency: str = Field("MXN", description="Currency code (MXN, USD, etc.)")

    def to_money(self) -> Money:
        try:
            return Money(decimal_from_string(self.amount), currency_from_code(self.currency))
        except (InvalidOperation, ValueError) as e:
            raise ValidationError(f"Invalid money value {self.amount} {self.currency}") from e

    @classmethod
    def from_money(cls, money: Money) -> 'MoneyModel':
        return cls(amount=str(money.amount), currency=money.currency.code)


def _money(value: Optional[MoneyModel]) -> Optional[Money]:
    return value.to_money() if value is not None else None


def _decimal(value: Optional[str]) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return decimal_from_string(value)
    except ValueError as e:
        raise ValidationError(f"Invalid decimal value {value}") from e


# Contract schemas
class CreateContractModel(BaseModel):
    property_id: str
    tenant_id: str
    start_date: date
    end_date: date
    monthly_rent: MoneyModel
    payment_day: int = Field(..., description="Day of month rent is charged (1-31)")
    deposit_amount: Optional[MoneyModel] = None
    daily_penalty: Optional[MoneyModel] = None
    grace_days: int = 0
    annual_increase_pct: Optional[str] = None  # Decimal as string
    guarantor_id: Optional[str] = None
    contract_number: Optional[str] = None
    conditions: Optional[str] = None
    notes: Optional[str] = None

    def to_request(self) -> CreateContractRequest:
        return CreateContractRequest(
            property_id=self.property_id,
            tenant_id=self.tenant_id,
            start_date=self.start_date,
            end_date=self.end_date,
            monthly_rent=self.monthly_rent.to_money(),
            payment_day=self.payment_day,
            deposit_amount=_money(self.deposit_amount),
            daily_penalty=_money(self.daily_penalty),
            grace_days=self.grace_days,
            annual_increase_pct=_decimal(self.annual_increase_pct),
            guarantor_id=self.guarantor_id,
            contract_number=self.contract_number,
            conditions=self.conditions,
            notes=self.notes,
        )


class UpdateContractModel(BaseModel):
    end_date: Optional[date] = None
    monthly_rent: Optional[MoneyModel] = None
    deposit_amount: Optional[MoneyModel] = None
    daily_penalty: Optional[MoneyModel] = None
    grace_days: Optional[int] = None
    annual_increase_pct: Optional[str] = None
    payment_day: Optional[int] = None
    guarantor_id: Optional[str] = None
    conditions: Optional[str] = None

    def to_request(self) -> UpdateContractRequest:
        return UpdateContractRequest(
            end_date=self.end_date,
            monthly_rent=_money(self.monthly_rent),
            deposit_amount=_money(self.deposit_amount),
            daily_penalty=_money(self.daily_penalty),
            grace_days=self.grace_days,
            annual_increase_pct=_decimal(self.annual_increase_pct),
            payment_day=self.payment_day,
            guarantor_id=self.guarantor_id,
            conditions=self.conditions,
        )


class RenewContractModel(BaseModel):
    new_end_date: date
    new_rent: Optional[MoneyModel] = None
    new_guarantor_id: Optional[str] = None
    new_conditions: Optional[str] = None
    apply_annual_increase: bool = False
    notes: Optional[str] = None

    def to_request(self) -> RenewContractRequest:
        return RenewContractRequest(
            new_end_date=self.new_end_date,
            new_rent=_money(self.new_rent),
            new_guarantor_id=self.new_guarantor_id,
            new_conditions=self.new_conditions,
            apply_annual_increase=self.apply_annual_increase,
            notes=self.notes,
        )


class ReasonModel(BaseModel):
    reason: str


class OptionalReasonModel(BaseModel):
    reason: Optional[str] = None


class NoteModel(BaseModel):
    note: str


# Charge schemas
class GenerateChargesModel(BaseModel):
    month: int
    year: int
    contract_id: Optional[str] = None


class CreateChargeModel(BaseModel):
    contract_id: str
    charge_type: str = Field(..., description="Charge type (deposit, penalty, maintenance, service, other)")
    concept: str
    amount: MoneyModel
    charge_date: date
    due_date: date
    notes: Optional[str] = None


# Payment schemas
class CreatePaymentModel(BaseModel):
    contract_id: str
    person_id: str
    amount: MoneyModel
    payment_type: str = Field(..., description="Payment type (cash, transfer, check, ...)")
    payment_date: date
    reference: Optional[str] = None
    bank: Optional[str] = None
    check_number: Optional[str] = None
    notes: Optional[str] = None
    auto_apply: bool = False

    def to_request(self) -> CreatePaymentRequest:
        try:
            payment_type = PaymentType(self.payment_type)
        except ValueError as e:
            raise ValidationError(f"Unknown payment type {self.payment_type}") from e
        return CreatePaymentRequest(
            contract_id=self.contract_id,
            person_id=self.person_id,
            amount=self.amount.to_money(),
            payment_type=payment_type,
            payment_date=self.payment_date,
            reference=self.reference,
            bank=self.bank,
            check_number=self.check_number,
            notes=self.notes,
        )


class ManualAllocationModel(BaseModel):
    charge_id: str
    amount: MoneyModel


class ApplyManualModel(BaseModel):
    allocations: List[ManualAllocationModel]

    def to_allocations(self) -> List[ManualAllocation]:
        return [ManualAllocation(charge_id=a.charge_id, amount=a.amount.to_money()) for a in self.allocations]


# Collections schemas
class FollowUpModel(BaseModel):
    contact_type: str
    outcome: str
    contact_date: Optional[date] = None
    notes: Optional[str] = None
    promised_date: Optional[date] = None
    promised_amount: Optional[MoneyModel] = None
    next_action: Optional[str] = None
    next_action_date: Optional[date] = None
    performed_by: Optional[str] = None

    def to_request(self) -> FollowUpRequest:
        try:
            contact_type = ContactType(self.contact_type)
            outcome = ContactOutcome(self.outcome)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        return FollowUpRequest(
            contact_type=contact_type,
            outcome=outcome,
            contact_date=self.contact_date,
            notes=self.notes,
            promised_date=self.promised_date,
            promised_amount=_money(self.promised_amount),
            next_action=self.next_action,
            next_action_date=self.next_action_date,
            performed_by=self.performed_by,
        )


class RecordPaymentModel(BaseModel):
    amount: MoneyModel


class CollectionStateModel(BaseModel):
    state: str
    notes: Optional[str] = None


class AsOfModel(BaseModel):
    as_of: Optional[date] = None


class ProjectionModel(BaseModel):
    projected_amount: Optional[MoneyModel] = None
    contract_count: Optional[int] = None
    expected_payments: Optional[int] = None
    notes: Optional[str] = None

    def to_projected_amount(self) -> Optional[Money]:
        return _money(self.projected_amount)


class ProjectionCollectedModel(BaseModel):
    collected_amount: Optional[MoneyModel] = None
    received_payments: Optional[int] = None

    def to_collected_amount(self) -> Optional[Money]:
        return _money(self.collected_amount)
