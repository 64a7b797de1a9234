"""
Contract Lifecycle Module

State machine for lease contracts: drafting, activation, renewal,
termination, cancellation, and time-driven expiry classification.

Stored status changes only through explicit transitions. EXPIRING_SOON and
EXPIRED are derived at read time from the end date and "today" and are never
written back over the stored status.
"""

from decimal import Decimal
from datetime import datetime, date, timedelta
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .events import DomainEvent, EventDispatcher, EventPublisherMixin
from .clock import Clock
from .registry import PartyRegistry
from .exceptions import (
    ValidationError, InvalidStateError, NotFoundError, DuplicateKeyError
)
from .logging_config import get_logger, log_action


logger = get_logger("lease_ledger.contracts")

EXPIRING_SOON_DAYS = 30


class ContractStatus(Enum):
    """Lease contract status"""
    DRAFT = "draft"
    ACTIVE = "active"
    EXPIRING_SOON = "expiring_soon"
    EXPIRED = "expired"
    RENEWED = "renewed"
    TERMINATED = "terminated"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    ContractStatus.RENEWED, ContractStatus.TERMINATED, ContractStatus.CANCELLED
})

# Stored statuses the time-driven classification applies to
_TIME_DRIVEN_STATUSES = frozenset({
    ContractStatus.ACTIVE, ContractStatus.EXPIRING_SOON, ContractStatus.EXPIRED
})

CURRENT_STATUSES = frozenset({ContractStatus.ACTIVE, ContractStatus.EXPIRING_SOON})


def derive_contract_status(
    stored: ContractStatus,
    end_date: date,
    today: date,
    expiring_soon_days: int = EXPIRING_SOON_DAYS
) -> ContractStatus:
    """
    Display status of a contract as of ``today``.

    Only ACTIVE/EXPIRING_SOON/EXPIRED are reclassified by time; any other
    stored status is returned unchanged.
    """
    if stored not in _TIME_DRIVEN_STATUSES:
        return stored

    days_remaining = (end_date - today).days
    if days_remaining <= 0:
        return ContractStatus.EXPIRED
    if days_remaining <= expiring_soon_days:
        return ContractStatus.EXPIRING_SOON
    return ContractStatus.ACTIVE


def _require_text(value: Optional[str], name: str) -> None:
    if not value or not value.strip():
        raise ValidationError(f"{name} is required")


def _check_money(value: Optional[Money], name: str, currency: Currency,
                 allow_zero: bool = True) -> None:
    if value is None:
        return
    if value.currency != currency:
        raise ValidationError(
            f"{name} currency {value.currency.code} does not match contract currency {currency.code}"
        )
    if value.is_negative() or (not allow_zero and value.is_zero()):
        raise ValidationError(f"{name} must be {'non-negative' if allow_zero else 'positive'}")


def _check_payment_day(payment_day: int) -> None:
    if not 1 <= payment_day <= 31:
        raise ValidationError("Payment day must be between 1 and 31")


@dataclass
class CreateContractRequest:
    """Terms for a new contract; optional terms fall back to zero/None"""
    property_id: str
    tenant_id: str
    start_date: date
    end_date: date
    monthly_rent: Money
    payment_day: int
    deposit_amount: Optional[Money] = None
    daily_penalty: Optional[Money] = None
    grace_days: int = 0
    annual_increase_pct: Optional[Decimal] = None
    guarantor_id: Optional[str] = None
    contract_number: Optional[str] = None
    conditions: Optional[str] = None
    notes: Optional[str] = None

    def __post_init__(self):
        _require_text(self.property_id, "Property")
        _require_text(self.tenant_id, "Tenant")
        if self.start_date >= self.end_date:
            raise ValidationError("End date must be after start date")
        _check_payment_day(self.payment_day)
        if self.grace_days < 0:
            raise ValidationError("Grace days cannot be negative")
        currency = self.monthly_rent.currency
        _check_money(self.monthly_rent, "Monthly rent", currency, allow_zero=False)
        _check_money(self.deposit_amount, "Deposit", currency)
        _check_money(self.daily_penalty, "Daily penalty", currency)
        if self.annual_increase_pct is not None and self.annual_increase_pct < 0:
            raise ValidationError("Annual increase percentage cannot be negative")
        if self.guarantor_id is not None and self.guarantor_id == self.tenant_id:
            raise ValidationError("Guarantor must be a different person than the tenant")


@dataclass
class UpdateContractRequest:
    """Editable terms of a non-terminal contract; None leaves a field as is"""
    end_date: Optional[date] = None
    monthly_rent: Optional[Money] = None
    deposit_amount: Optional[Money] = None
    daily_penalty: Optional[Money] = None
    grace_days: Optional[int] = None
    annual_increase_pct: Optional[Decimal] = None
    payment_day: Optional[int] = None
    guarantor_id: Optional[str] = None
    conditions: Optional[str] = None

    def __post_init__(self):
        if self.payment_day is not None:
            _check_payment_day(self.payment_day)
        if self.grace_days is not None and self.grace_days < 0:
            raise ValidationError("Grace days cannot be negative")
        if self.annual_increase_pct is not None and self.annual_increase_pct < 0:
            raise ValidationError("Annual increase percentage cannot be negative")


@dataclass
class RenewContractRequest:
    """Renewal terms; anything not given is copied from the source contract"""
    new_end_date: date
    new_rent: Optional[Money] = None
    new_guarantor_id: Optional[str] = None
    new_conditions: Optional[str] = None
    apply_annual_increase: bool = False
    notes: Optional[str] = None

    def __post_init__(self):
        if self.new_rent is not None and not self.new_rent.is_positive():
            raise ValidationError("New rent must be positive")


@dataclass
class Contract(StorageRecord):
    """Lease contract between a property and a tenant"""
    company_id: str
    contract_number: str
    property_id: str
    tenant_id: str
    start_date: date
    end_date: date
    monthly_rent: Money
    payment_day: int
    deposit_amount: Money = None
    daily_penalty: Money = None
    grace_days: int = 0
    annual_increase_pct: Optional[Decimal] = None
    guarantor_id: Optional[str] = None
    status: ContractStatus = ContractStatus.DRAFT
    conditions: Optional[str] = None
    notes: Optional[str] = None
    termination_reason: Optional[str] = None
    previous_contract_id: Optional[str] = None
    active: bool = True
    notified_status: Optional[ContractStatus] = None
    version: int = 0

    def __post_init__(self):
        zero = Money.zero(self.monthly_rent.currency)
        if self.deposit_amount is None:
            self.deposit_amount = zero
        if self.daily_penalty is None:
            self.daily_penalty = zero

    @property
    def currency(self) -> Currency:
        return self.monthly_rent.currency

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def days_remaining(self, today: date) -> int:
        """Days until the end date; negative once it has passed"""
        return (self.end_date - today).days

    def display_status(self, today: date, expiring_soon_days: int = EXPIRING_SOON_DAYS) -> ContractStatus:
        return derive_contract_status(self.status, self.end_date, today, expiring_soon_days)

    def is_current(self, today: date, expiring_soon_days: int = EXPIRING_SOON_DAYS) -> bool:
        return self.active and self.display_status(today, expiring_soon_days) in CURRENT_STATUSES

    def append_note(self, note: str) -> None:
        self.notes = f"{self.notes}\n{note}" if self.notes else note

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'company_id': self.company_id,
            'contract_number': self.contract_number,
            'property_id': self.property_id,
            'tenant_id': self.tenant_id,
            'guarantor_id': self.guarantor_id,
            'start_date': self.start_date.isoformat(),
            'end_date': self.end_date.isoformat(),
            'payment_day': self.payment_day,
            'grace_days': self.grace_days,
            'annual_increase_pct': str(self.annual_increase_pct) if self.annual_increase_pct is not None else None,
            'status': self.status.value,
            'conditions': self.conditions,
            'notes': self.notes,
            'termination_reason': self.termination_reason,
            'previous_contract_id': self.previous_contract_id,
            'active': self.active,
            'notified_status': self.notified_status.value if self.notified_status else None,
            'version': self.version,
        }
        for field in ('monthly_rent', 'deposit_amount', 'daily_penalty'):
            result[field] = getattr(self, field).to_dict()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Contract':
        pct = data.get('annual_increase_pct')
        notified = data.get('notified_status')
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            company_id=data['company_id'],
            contract_number=data['contract_number'],
            property_id=data['property_id'],
            tenant_id=data['tenant_id'],
            guarantor_id=data.get('guarantor_id'),
            start_date=date.fromisoformat(data['start_date']),
            end_date=date.fromisoformat(data['end_date']),
            monthly_rent=Money.from_dict(data['monthly_rent']),
            deposit_amount=Money.from_dict(data['deposit_amount']),
            daily_penalty=Money.from_dict(data['daily_penalty']),
            payment_day=data['payment_day'],
            grace_days=data.get('grace_days', 0),
            annual_increase_pct=Decimal(pct) if pct is not None else None,
            status=ContractStatus(data['status']),
            conditions=data.get('conditions'),
            notes=data.get('notes'),
            termination_reason=data.get('termination_reason'),
            previous_contract_id=data.get('previous_contract_id'),
            active=data.get('active', True),
            notified_status=ContractStatus(notified) if notified else None,
            version=data.get('version', 0),
        )


class ContractLifecycle(EventPublisherMixin):
    """
    Creates contracts and drives them through their legal transitions
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        registry: PartyRegistry,
        clock: Clock,
        event_dispatcher: Optional[EventDispatcher] = None,
        expiring_soon_days: int = EXPIRING_SOON_DAYS
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.registry = registry
        self.clock = clock
        self.event_dispatcher = event_dispatcher
        self.expiring_soon_days = expiring_soon_days

        self.table_name = "contracts"
        self.numbers_table = "contract_numbers"
        # Read-only here; used to decide between hard and soft delete
        self.charges_table = "charges"
        self.payments_table = "payments"

    # ------------------------------------------------------------------
    # Creation and edits

    def create_contract(self, company_id: str, request: CreateContractRequest) -> Contract:
        """
        Create a contract in DRAFT after validating its parties

        Raises:
            NotFoundError: property, tenant or guarantor unknown or inactive
            ValidationError: duplicate contract number
        """
        self._require_property(company_id, request.property_id)
        self._require_person(company_id, request.tenant_id, "Tenant")
        if request.guarantor_id:
            self._require_person(company_id, request.guarantor_id, "Guarantor")

        now = self.clock.now()
        events = []
        with self.storage.atomic():
            number = request.contract_number or self._generate_contract_number(company_id)
            self._claim_contract_number(company_id, number)

            contract = Contract(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                company_id=company_id,
                contract_number=number,
                property_id=request.property_id,
                tenant_id=request.tenant_id,
                guarantor_id=request.guarantor_id,
                start_date=request.start_date,
                end_date=request.end_date,
                monthly_rent=request.monthly_rent,
                deposit_amount=request.deposit_amount,
                daily_penalty=request.daily_penalty,
                payment_day=request.payment_day,
                grace_days=request.grace_days,
                annual_increase_pct=request.annual_increase_pct,
                conditions=request.conditions,
                notes=request.notes,
            )
            self.storage.insert(self.table_name, contract.id, contract.to_dict())

            self.audit_trail.log_event(
                event_type=AuditEventType.CONTRACT_CREATED,
                entity_type="contract",
                entity_id=contract.id,
                company_id=company_id,
                metadata={
                    "contract_number": number,
                    "property_id": contract.property_id,
                    "tenant_id": contract.tenant_id,
                    "monthly_rent": contract.monthly_rent.to_string(),
                    "start_date": contract.start_date,
                    "end_date": contract.end_date
                }
            )
            events.append(self._contract_event(DomainEvent.CONTRACT_CREATED, contract))

        log_action(logger, "info", f"Contract {number} created",
                   company_id=company_id, action="create_contract",
                   resource=f"contract:{contract.id}")
        self._publish(events)
        return contract

    def update_contract(self, company_id: str, contract_id: str,
                        request: UpdateContractRequest) -> Contract:
        """Edit the terms of a contract that is not RENEWED/TERMINATED/CANCELLED"""
        with self.storage.atomic():
            contract = self.get_contract(company_id, contract_id)
            self._require_mutable(contract)
            expected = contract.version
            changes = {}

            if request.end_date is not None:
                if request.end_date <= contract.start_date:
                    raise ValidationError("End date must be after start date")
                contract.end_date = request.end_date
                changes['end_date'] = request.end_date
            for field in ('monthly_rent', 'deposit_amount', 'daily_penalty'):
                value = getattr(request, field)
                if value is not None:
                    _check_money(value, field.replace('_', ' ').capitalize(), contract.currency,
                                 allow_zero=(field != 'monthly_rent'))
                    setattr(contract, field, value)
                    changes[field] = value.to_string()
            if request.guarantor_id is not None:
                if request.guarantor_id == contract.tenant_id:
                    raise ValidationError("Guarantor must be a different person than the tenant")
                self._require_person(company_id, request.guarantor_id, "Guarantor")
            for field in ('grace_days', 'annual_increase_pct', 'payment_day', 'guarantor_id', 'conditions'):
                value = getattr(request, field)
                if value is not None:
                    setattr(contract, field, value)
                    changes[field] = value

            if not changes:
                return contract

            self._save(contract, expected)
            self.audit_trail.log_event(
                event_type=AuditEventType.CONTRACT_UPDATED,
                entity_type="contract",
                entity_id=contract.id,
                company_id=company_id,
                metadata={"changes": changes}
            )

        log_action(logger, "info", f"Contract {contract.contract_number} updated",
                   company_id=company_id, action="update_contract",
                   resource=f"contract:{contract.id}", extra={"fields": sorted(changes)})
        return contract

    def add_note(self, company_id: str, contract_id: str, note: str) -> Contract:
        """Append an administrative note; allowed in every state"""
        _require_text(note, "Note")
        with self.storage.atomic():
            contract = self.get_contract(company_id, contract_id)
            expected = contract.version
            contract.append_note(note.strip())
            self._save(contract, expected)
            self.audit_trail.log_event(
                event_type=AuditEventType.CONTRACT_NOTE_ADDED,
                entity_type="contract",
                entity_id=contract.id,
                company_id=company_id,
                metadata={"note": note.strip()}
            )
        return contract

    def delete_contract(self, company_id: str, contract_id: str) -> bool:
        """
        Delete a contract that never received charges or payments.

        Contracts with ledger history are soft-deactivated instead.

        Returns:
            True if physically deleted, False if deactivated
        """
        with self.storage.atomic():
            contract = self.get_contract(company_id, contract_id)
            has_history = (
                bool(self.storage.find(self.charges_table, {'contract_id': contract.id})) or
                bool(self.storage.find(self.payments_table, {'contract_id': contract.id}))
            )

            if has_history:
                expected = contract.version
                contract.active = False
                self._save(contract, expected)
                event_type = AuditEventType.CONTRACT_DEACTIVATED
            else:
                self.storage.delete(self.table_name, contract.id)
                self.storage.delete(self.numbers_table, self._number_key(company_id, contract.contract_number))
                event_type = AuditEventType.CONTRACT_DELETED

            self.audit_trail.log_event(
                event_type=event_type,
                entity_type="contract",
                entity_id=contract.id,
                company_id=company_id,
                metadata={"contract_number": contract.contract_number}
            )

        log_action(logger, "info", f"Contract {contract.contract_number} {event_type.value}",
                   company_id=company_id, action="delete_contract",
                   resource=f"contract:{contract.id}")
        return not has_history

    # ------------------------------------------------------------------
    # Transitions

    def activate(self, company_id: str, contract_id: str) -> Contract:
        """
        DRAFT -> ACTIVE

        Raises:
            InvalidStateError: contract is not DRAFT, or the property already
                has a current contract
        """
        events = []
        with self.storage.atomic():
            contract = self.get_contract(company_id, contract_id)
            if contract.status != ContractStatus.DRAFT:
                raise InvalidStateError(
                    f"Cannot activate contract in status {contract.status.value}",
                    {"contract_id": contract.id, "status": contract.status.value}
                )
            if not contract.active:
                raise InvalidStateError("Cannot activate a deactivated contract")

            today = self.clock.today()
            for other in self._contracts_for_property(company_id, contract.property_id):
                if other.id != contract.id and other.is_current(today, self.expiring_soon_days):
                    raise InvalidStateError(
                        f"Property {contract.property_id} already has current contract {other.contract_number}",
                        {"conflicting_contract_id": other.id}
                    )

            expected = contract.version
            contract.status = ContractStatus.ACTIVE
            self._save(contract, expected)
            self.registry.set_property_available(company_id, contract.property_id, False)

            self.audit_trail.log_event(
                event_type=AuditEventType.CONTRACT_ACTIVATED,
                entity_type="contract",
                entity_id=contract.id,
                company_id=company_id,
                metadata={"contract_number": contract.contract_number}
            )
            events.append(self._contract_event(DomainEvent.CONTRACT_ACTIVATED, contract))

        log_action(logger, "info", f"Contract {contract.contract_number} activated",
                   company_id=company_id, action="activate_contract",
                   resource=f"contract:{contract.id}")
        self._publish(events)
        return contract

    def terminate(self, company_id: str, contract_id: str, reason: str) -> Contract:
        """ACTIVE / EXPIRING_SOON / EXPIRED -> TERMINATED"""
        _require_text(reason, "Termination reason")
        events = []
        with self.storage.atomic():
            contract = self.get_contract(company_id, contract_id)
            self._require_time_driven(contract, "terminate")

            expected = contract.version
            contract.status = ContractStatus.TERMINATED
            contract.termination_reason = reason.strip()
            contract.append_note(f"Terminated: {reason.strip()}")
            self._save(contract, expected)
            self.registry.set_property_available(company_id, contract.property_id, True)

            self.audit_trail.log_event(
                event_type=AuditEventType.CONTRACT_TERMINATED,
                entity_type="contract",
                entity_id=contract.id,
                company_id=company_id,
                metadata={"reason": contract.termination_reason}
            )
            events.append(self._contract_event(DomainEvent.CONTRACT_TERMINATED, contract,
                                               reason=contract.termination_reason))

        log_action(logger, "info", f"Contract {contract.contract_number} terminated",
                   company_id=company_id, action="terminate_contract",
                   resource=f"contract:{contract.id}")
        self._publish(events)
        return contract

    def cancel(self, company_id: str, contract_id: str, reason: str) -> Contract:
        """Any non-terminal status -> CANCELLED"""
        _require_text(reason, "Cancellation reason")
        events = []
        with self.storage.atomic():
            contract = self.get_contract(company_id, contract_id)
            if contract.is_terminal:
                raise InvalidStateError(
                    f"Cannot cancel contract in status {contract.status.value}",
                    {"contract_id": contract.id, "status": contract.status.value}
                )

            was_occupying = contract.status != ContractStatus.DRAFT
            expected = contract.version
            contract.status = ContractStatus.CANCELLED
            contract.append_note(f"Cancelled: {reason.strip()}")
            self._save(contract, expected)
            if was_occupying:
                self.registry.set_property_available(company_id, contract.property_id, True)

            self.audit_trail.log_event(
                event_type=AuditEventType.CONTRACT_CANCELLED,
                entity_type="contract",
                entity_id=contract.id,
                company_id=company_id,
                metadata={"reason": reason.strip()}
            )
            events.append(self._contract_event(DomainEvent.CONTRACT_CANCELLED, contract,
                                               reason=reason.strip()))

        log_action(logger, "info", f"Contract {contract.contract_number} cancelled",
                   company_id=company_id, action="cancel_contract",
                   resource=f"contract:{contract.id}")
        self._publish(events)
        return contract

    def renew(self, company_id: str, contract_id: str, request: RenewContractRequest) -> Contract:
        """
        Renew a contract into a new ACTIVE successor.

        The successor starts the day after the source ends and copies every
        term the request does not override. The source becomes RENEWED.

        Returns:
            The successor contract
        """
        today = self.clock.today()
        if request.new_end_date <= today:
            raise ValidationError("New end date must be in the future")

        events = []
        with self.storage.atomic():
            source = self.get_contract(company_id, contract_id)
            self._require_time_driven(source, "renew")

            start_date = source.end_date + timedelta(days=1)
            if request.new_end_date <= start_date:
                raise ValidationError(
                    f"New end date must be after the renewal start date {start_date.isoformat()}"
                )
            if request.new_rent is not None and request.new_rent.currency != source.currency:
                raise ValidationError("New rent currency must match the contract currency")
            if request.new_guarantor_id:
                if request.new_guarantor_id == source.tenant_id:
                    raise ValidationError("Guarantor must be a different person than the tenant")
                self._require_person(company_id, request.new_guarantor_id, "Guarantor")

            now = self.clock.now()
            number = self._generate_contract_number(company_id)
            self._claim_contract_number(company_id, number)

            successor = Contract(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                company_id=company_id,
                contract_number=number,
                property_id=source.property_id,
                tenant_id=source.tenant_id,
                guarantor_id=request.new_guarantor_id or source.guarantor_id,
                start_date=start_date,
                end_date=request.new_end_date,
                monthly_rent=self._renewal_rent(source, request),
                deposit_amount=source.deposit_amount,
                daily_penalty=source.daily_penalty,
                payment_day=source.payment_day,
                grace_days=source.grace_days,
                annual_increase_pct=source.annual_increase_pct,
                status=ContractStatus.ACTIVE,
                conditions=request.new_conditions or source.conditions,
                notes=request.notes,
                previous_contract_id=source.id,
            )
            self.storage.insert(self.table_name, successor.id, successor.to_dict())

            expected = source.version
            source.status = ContractStatus.RENEWED
            source.append_note(f"Renewed as {number}")
            self._save(source, expected)

            self.audit_trail.log_event(
                event_type=AuditEventType.CONTRACT_RENEWED,
                entity_type="contract",
                entity_id=source.id,
                company_id=company_id,
                metadata={
                    "successor_id": successor.id,
                    "successor_number": number,
                    "previous_rent": source.monthly_rent.to_string(),
                    "new_rent": successor.monthly_rent.to_string(),
                    "new_end_date": successor.end_date
                }
            )
            events.append(self._contract_event(DomainEvent.CONTRACT_RENEWED, source,
                                               successor_id=successor.id))

        log_action(logger, "info", f"Contract {source.contract_number} renewed as {number}",
                   company_id=company_id, action="renew_contract",
                   resource=f"contract:{source.id}")
        self._publish(events)
        return successor

    def refresh_expiry_notifications(self, company_id: Optional[str] = None,
                                     as_of: Optional[date] = None) -> List[Contract]:
        """
        Announce contracts that entered EXPIRING_SOON or EXPIRED.

        Each transition is announced once; ``notified_status`` remembers the
        last one. The stored status is left untouched.

        Returns:
            Contracts announced in this run
        """
        as_of = as_of or self.clock.today()
        filters = {'company_id': company_id} if company_id else {}
        announced = []
        events = []

        with self.storage.atomic():
            for data in self.storage.find(self.table_name, filters):
                contract = Contract.from_dict(data)
                if not contract.active or contract.status not in _TIME_DRIVEN_STATUSES:
                    continue
                display = contract.display_status(as_of, self.expiring_soon_days)
                if display == ContractStatus.ACTIVE or display == contract.notified_status:
                    continue

                expected = contract.version
                contract.notified_status = display
                self._save(contract, expected)
                announced.append(contract)
                event_type = (DomainEvent.CONTRACT_EXPIRED if display == ContractStatus.EXPIRED
                              else DomainEvent.CONTRACT_EXPIRING_SOON)
                events.append(self._contract_event(
                    event_type, contract,
                    days_remaining=contract.days_remaining(as_of)
                ))

        if announced:
            logger.info(f"Announced expiry status for {len(announced)} contracts")
        self._publish(events)
        return announced

    # ------------------------------------------------------------------
    # Queries

    def get_contract(self, company_id: str, contract_id: str) -> Contract:
        """
        Load a contract visible to the company

        Raises:
            NotFoundError: unknown id or owned by another company
        """
        data = self.storage.load(self.table_name, contract_id)
        if data is None or data.get('company_id') != company_id:
            raise NotFoundError(f"Contract {contract_id} not found", {"contract_id": contract_id})
        return Contract.from_dict(data)

    def find_contracts(
        self,
        company_id: str,
        status: Optional[ContractStatus] = None,
        property_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        include_inactive: bool = False
    ) -> List[Contract]:
        """Find contracts; ``status`` is matched against the display status"""
        filters: Dict[str, Any] = {'company_id': company_id}
        if property_id:
            filters['property_id'] = property_id
        if tenant_id:
            filters['tenant_id'] = tenant_id

        today = self.clock.today()
        contracts = [Contract.from_dict(data) for data in self.storage.find(self.table_name, filters)]
        if not include_inactive:
            contracts = [c for c in contracts if c.active]
        if status is not None:
            contracts = [c for c in contracts
                         if c.display_status(today, self.expiring_soon_days) == status]
        contracts.sort(key=lambda c: c.contract_number)
        return contracts

    def get_current_contracts(self, company_id: str) -> List[Contract]:
        today = self.clock.today()
        return [c for c in self.find_contracts(company_id)
                if c.is_current(today, self.expiring_soon_days)]

    def get_expiring_contracts(self, company_id: str, within_days: Optional[int] = None) -> List[Contract]:
        """Current contracts ending within ``within_days`` (default: the expiring-soon window)"""
        within_days = self.expiring_soon_days if within_days is None else within_days
        today = self.clock.today()
        expiring = [
            c for c in self.get_current_contracts(company_id)
            if 0 < c.days_remaining(today) <= within_days
        ]
        expiring.sort(key=lambda c: c.end_date)
        return expiring

    def is_current(self, contract: Contract) -> bool:
        return contract.is_current(self.clock.today(), self.expiring_soon_days)

    def contract_statistics(self, company_id: str) -> Dict[str, int]:
        """Count of active contracts per display status"""
        today = self.clock.today()
        stats = {status.value: 0 for status in ContractStatus}
        contracts = self.find_contracts(company_id)
        for contract in contracts:
            stats[contract.display_status(today, self.expiring_soon_days).value] += 1
        stats['total'] = len(contracts)
        return stats

    # ------------------------------------------------------------------
    # Helpers

    def _renewal_rent(self, source: Contract, request: RenewContractRequest) -> Money:
        if request.new_rent is not None:
            return request.new_rent
        if request.apply_annual_increase and source.annual_increase_pct:
            factor = Decimal("1") + source.annual_increase_pct / Decimal("100")
            return source.monthly_rent * factor
        return source.monthly_rent

    def _require_time_driven(self, contract: Contract, action: str) -> None:
        if contract.status not in _TIME_DRIVEN_STATUSES:
            raise InvalidStateError(
                f"Cannot {action} contract in status {contract.status.value}",
                {"contract_id": contract.id, "status": contract.status.value}
            )

    def _require_mutable(self, contract: Contract) -> None:
        if contract.is_terminal:
            raise InvalidStateError(
                f"Contract in status {contract.status.value} cannot be modified",
                {"contract_id": contract.id, "status": contract.status.value}
            )

    def _require_property(self, company_id: str, property_id: str) -> None:
        if not self.registry.property_is_active(company_id, property_id):
            raise NotFoundError(f"Property {property_id} not found", {"property_id": property_id})

    def _require_person(self, company_id: str, person_id: str, role: str) -> None:
        if not self.registry.person_is_active(company_id, person_id):
            raise NotFoundError(f"{role} {person_id} not found", {"person_id": person_id})

    def _contracts_for_property(self, company_id: str, property_id: str) -> List[Contract]:
        return [
            Contract.from_dict(data)
            for data in self.storage.find(self.table_name, {
                'company_id': company_id, 'property_id': property_id
            })
        ]

    def _number_key(self, company_id: str, number: str) -> str:
        return f"{company_id}:{number}"

    def _generate_contract_number(self, company_id: str) -> str:
        period = self.clock.today().strftime("%Y%m")
        while True:
            sequence = self.storage.next_sequence(f"contract_number:{company_id}:{period}")
            number = f"CTR-{period}-{sequence:04d}"
            if not self.storage.exists(self.numbers_table, self._number_key(company_id, number)):
                return number

    def _claim_contract_number(self, company_id: str, number: str) -> None:
        try:
            self.storage.insert(self.numbers_table, self._number_key(company_id, number),
                                {'company_id': company_id, 'contract_number': number})
        except DuplicateKeyError:
            raise ValidationError(f"Contract number {number} already exists",
                                  {"contract_number": number})

    def _save(self, contract: Contract, expected_version: int) -> None:
        contract.version = expected_version + 1
        contract.updated_at = self.clock.now()
        self.storage.save_if_version(self.table_name, contract.id, contract.to_dict(), expected_version)

    def _contract_event(self, event_type: DomainEvent, contract: Contract, **data):
        payload = {
            "contract_number": contract.contract_number,
            "property_id": contract.property_id,
            "tenant_id": contract.tenant_id,
            "end_date": contract.end_date.isoformat(),
        }
        payload.update(data)
        return self._event(event_type, "contract", contract.id, contract.company_id, payload)
