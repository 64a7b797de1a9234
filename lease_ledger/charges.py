"""
Charge Generation Module

Produces the billable line items owed under a contract: the recurring
monthly rent (one per contract and period, idempotently) and one-off
charges such as deposits, penalties, maintenance and services.

A charge's status is a pure function of what has been paid, its due date
and "today" (see derive_charge_status). Only the payment allocator writes
``amount_paid``.
"""

import calendar
from datetime import datetime, date, timedelta
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum

from .currency import Money
from .storage import StorageInterface, StorageRecord, RecordLockManager
from .audit import AuditTrail, AuditEventType
from .events import DomainEvent, EventDispatcher, EventPublisherMixin
from .clock import Clock
from .contracts import ContractLifecycle, ContractStatus
from .exceptions import (
    ValidationError, InvalidStateError, NotFoundError, DuplicateKeyError
)
from .logging_config import get_logger, log_action


logger = get_logger("lease_ledger.charges")


class ChargeType(Enum):
    """Kinds of billable line items"""
    RENT = "rent"
    DEPOSIT = "deposit"
    PENALTY = "penalty"
    MAINTENANCE = "maintenance"
    SERVICE = "service"
    OTHER = "other"


class ChargeStatus(Enum):
    """Charge payment status"""
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    CANCELLED = "cancelled"
    OVERDUE = "overdue"


OUTSTANDING_STATUSES = frozenset({ChargeStatus.PENDING, ChargeStatus.PARTIAL, ChargeStatus.OVERDUE})


def derive_charge_status(
    amount_original: Money,
    amount_paid: Money,
    due_date: date,
    today: date,
    cancelled: bool = False
) -> ChargeStatus:
    """Status of a charge as of ``today``"""
    if cancelled:
        return ChargeStatus.CANCELLED
    if amount_paid == amount_original:
        return ChargeStatus.PAID
    pending = amount_original - amount_paid
    if amount_paid.is_positive() and today <= due_date:
        return ChargeStatus.PARTIAL
    if pending.is_positive() and today > due_date:
        return ChargeStatus.OVERDUE
    return ChargeStatus.PENDING


@dataclass
class Charge(StorageRecord):
    """A billable line item owed under one contract"""
    company_id: str
    contract_id: str
    charge_type: ChargeType
    concept: str
    amount_original: Money
    charge_date: date
    due_date: date
    amount_paid: Money = None
    status: ChargeStatus = ChargeStatus.PENDING
    is_fixed_recurring: bool = False
    period_month: Optional[int] = None
    period_year: Optional[int] = None
    notes: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    version: int = 0

    def __post_init__(self):
        if self.amount_paid is None:
            self.amount_paid = Money.zero(self.amount_original.currency)

    @property
    def pending_amount(self) -> Money:
        return self.amount_original - self.amount_paid

    @property
    def is_cancelled(self) -> bool:
        return self.status == ChargeStatus.CANCELLED

    def display_status(self, today: date) -> ChargeStatus:
        return derive_charge_status(
            self.amount_original, self.amount_paid, self.due_date, today, self.is_cancelled
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'company_id': self.company_id,
            'contract_id': self.contract_id,
            'charge_type': self.charge_type.value,
            'concept': self.concept,
            'amount_original': self.amount_original.to_dict(),
            'amount_paid': self.amount_paid.to_dict(),
            'charge_date': self.charge_date.isoformat(),
            'due_date': self.due_date.isoformat(),
            'status': self.status.value,
            'is_fixed_recurring': self.is_fixed_recurring,
            'period_month': self.period_month,
            'period_year': self.period_year,
            'notes': self.notes,
            'cancelled_at': self.cancelled_at.isoformat() if self.cancelled_at else None,
            'version': self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Charge':
        cancelled_at = data.get('cancelled_at')
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            company_id=data['company_id'],
            contract_id=data['contract_id'],
            charge_type=ChargeType(data['charge_type']),
            concept=data['concept'],
            amount_original=Money.from_dict(data['amount_original']),
            amount_paid=Money.from_dict(data['amount_paid']),
            charge_date=date.fromisoformat(data['charge_date']),
            due_date=date.fromisoformat(data['due_date']),
            status=ChargeStatus(data['status']),
            is_fixed_recurring=data.get('is_fixed_recurring', False),
            period_month=data.get('period_month'),
            period_year=data.get('period_year'),
            notes=data.get('notes'),
            cancelled_at=datetime.fromisoformat(cancelled_at) if cancelled_at else None,
            version=data.get('version', 0),
        )


def charge_sort_key(charge: Charge):
    """Oldest due date first, then charge id"""
    return (charge.due_date, charge.id)


class ChargeGenerator(EventPublisherMixin):
    """
    Creates rent and ad-hoc charges and keeps stored statuses current
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        contracts: ContractLifecycle,
        clock: Clock,
        event_dispatcher: Optional[EventDispatcher] = None,
        lock_manager: Optional[RecordLockManager] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.contracts = contracts
        self.clock = clock
        self.event_dispatcher = event_dispatcher
        self.lock_manager = lock_manager or RecordLockManager()

        self.table_name = "charges"
        self.period_keys_table = "charge_period_keys"

    def generate_fixed_charges(self, company_id: str, month: int, year: int,
                               contract_id: Optional[str] = None) -> List[Charge]:
        """
        Generate the monthly RENT charge for every current contract

        Contracts that already have a RENT charge for the period are skipped,
        so re-running a period is a no-op.

        Args:
            company_id: Company whose contracts are billed
            month: Period month (1-12)
            year: Period year
            contract_id: Restrict generation to one contract

        Returns:
            Charges created by this call
        """
        if not 1 <= month <= 12:
            raise ValidationError("Month must be between 1 and 12", {"month": month})
        if not 1900 <= year <= 9999:
            raise ValidationError("Year is out of range", {"year": year})

        if contract_id:
            candidates = [self.contracts.get_contract(company_id, contract_id)]
        else:
            candidates = self.contracts.get_current_contracts(company_id)

        created = []
        events = []
        with self.storage.atomic():
            for contract in candidates:
                if not self.contracts.is_current(contract):
                    logger.debug(f"Skipping contract {contract.contract_number}: not current")
                    continue

                key = self._period_key(contract.id, year, month)
                if self.storage.exists(self.period_keys_table, key):
                    continue

                charge_date, due_date = self._rent_dates(contract.payment_day, contract.grace_days, year, month)
                charge = self._new_charge(
                    company_id=company_id,
                    contract_id=contract.id,
                    charge_type=ChargeType.RENT,
                    concept=f"Rent {year:04d}-{month:02d}",
                    amount=contract.monthly_rent,
                    charge_date=charge_date,
                    due_date=due_date,
                    is_fixed_recurring=True,
                    period_month=month,
                    period_year=year,
                )
                try:
                    self.storage.insert(self.period_keys_table, key, {
                        'company_id': company_id,
                        'contract_id': contract.id,
                        'charge_id': charge.id,
                        'period': f"{year:04d}-{month:02d}",
                    })
                except DuplicateKeyError:
                    # Another generator claimed this period first
                    logger.debug(f"Rent for {contract.contract_number} {year}-{month:02d} already generated")
                    continue

                self._insert_charge(charge)
                created.append(charge)
                events.append(self.charge_event(DomainEvent.CHARGE_CREATED, charge))

        if created:
            log_action(logger, "info", f"Generated {len(created)} rent charges for {year}-{month:02d}",
                       company_id=company_id, action="generate_fixed_charges",
                       extra={"charge_ids": [c.id for c in created]})
        self._publish(events)
        return created

    def create_ad_hoc_charge(
        self,
        company_id: str,
        contract_id: str,
        charge_type: ChargeType,
        concept: str,
        amount: Money,
        charge_date: date,
        due_date: date,
        notes: Optional[str] = None
    ) -> Charge:
        """
        Create a one-off charge on a current or DRAFT contract

        Raises:
            ValidationError: non-positive amount, bad dates, or a contract that
                is neither current nor DRAFT
        """
        if not amount.is_positive():
            raise ValidationError("Charge amount must be positive", {"amount": str(amount.amount)})
        if not concept or not concept.strip():
            raise ValidationError("Charge concept is required")
        if due_date < charge_date:
            raise ValidationError("Due date cannot be before charge date")

        events = []
        with self.storage.atomic():
            contract = self.contracts.get_contract(company_id, contract_id)
            if not (contract.status == ContractStatus.DRAFT or self.contracts.is_current(contract)):
                raise ValidationError(
                    f"Contract {contract.contract_number} does not accept charges "
                    f"in status {contract.display_status(self.clock.today()).value}",
                    {"contract_id": contract.id}
                )
            if amount.currency != contract.currency:
                raise ValidationError("Charge currency must match the contract currency")

            charge = self._new_charge(
                company_id=company_id,
                contract_id=contract.id,
                charge_type=charge_type,
                concept=concept.strip(),
                amount=amount,
                charge_date=charge_date,
                due_date=due_date,
                notes=notes,
            )
            self._insert_charge(charge)
            events.append(self.charge_event(DomainEvent.CHARGE_CREATED, charge))

        log_action(logger, "info", f"Charge {charge.id} created for {amount.to_string()}",
                   company_id=company_id, action="create_charge", resource=f"charge:{charge.id}")
        self._publish(events)
        return charge

    def cancel_charge(self, company_id: str, charge_id: str, reason: Optional[str] = None) -> Charge:
        """
        Cancel a charge that has received no payment

        Raises:
            InvalidStateError: already cancelled, or a payment has been applied
        """
        events = []
        with self.lock_manager.hold(f"charge:{charge_id}"), self.storage.atomic():
            charge = self.get_charge(company_id, charge_id)
            if charge.is_cancelled:
                raise InvalidStateError(f"Charge {charge_id} is already cancelled")
            if not charge.amount_paid.is_zero():
                raise InvalidStateError(
                    f"Charge {charge_id} has payments applied and cannot be cancelled",
                    {"amount_paid": str(charge.amount_paid.amount)}
                )

            expected = charge.version
            charge.status = ChargeStatus.CANCELLED
            charge.cancelled_at = self.clock.now()
            if reason:
                charge.notes = f"{charge.notes}\nCancelled: {reason}" if charge.notes else f"Cancelled: {reason}"
            self.save_charge(charge, expected)

            self.audit_trail.log_event(
                event_type=AuditEventType.CHARGE_CANCELLED,
                entity_type="charge",
                entity_id=charge.id,
                company_id=company_id,
                metadata={"contract_id": charge.contract_id, "reason": reason}
            )
            events.append(self.charge_event(DomainEvent.CHARGE_CANCELLED, charge))

        log_action(logger, "info", f"Charge {charge.id} cancelled",
                   company_id=company_id, action="cancel_charge", resource=f"charge:{charge.id}")
        self._publish(events)
        return charge

    def refresh_overdue_charges(self, company_id: Optional[str] = None,
                                as_of: Optional[date] = None) -> List[Charge]:
        """
        Persist PENDING/PARTIAL -> OVERDUE for charges past their due date.

        Never touches ``amount_paid``.

        Returns:
            Charges that became overdue in this run
        """
        as_of = as_of or self.clock.today()
        filters = {'company_id': company_id} if company_id else {}
        candidates = [
            Charge.from_dict(data) for data in self.storage.find(self.table_name, filters)
            if data['status'] in (ChargeStatus.PENDING.value, ChargeStatus.PARTIAL.value)
        ]

        overdue = []
        events = []
        for candidate in sorted(candidates, key=charge_sort_key):
            if candidate.display_status(as_of) != ChargeStatus.OVERDUE:
                continue
            with self.lock_manager.hold(f"charge:{candidate.id}"), self.storage.atomic():
                charge = Charge.from_dict(self.storage.load(self.table_name, candidate.id))
                if charge.status not in (ChargeStatus.PENDING, ChargeStatus.PARTIAL):
                    continue
                if charge.display_status(as_of) != ChargeStatus.OVERDUE:
                    continue
                expected = charge.version
                charge.status = ChargeStatus.OVERDUE
                self.save_charge(charge, expected)
                self.audit_trail.log_event(
                    event_type=AuditEventType.CHARGE_OVERDUE,
                    entity_type="charge",
                    entity_id=charge.id,
                    company_id=charge.company_id,
                    metadata={"due_date": charge.due_date, "pending": str(charge.pending_amount.amount)}
                )
            overdue.append(charge)
            events.append(self.charge_event(
                DomainEvent.CHARGE_OVERDUE, charge,
                days_overdue=(as_of - charge.due_date).days
            ))

        if overdue:
            logger.info(f"Marked {len(overdue)} charges overdue as of {as_of.isoformat()}")
        self._publish(events)
        return overdue

    # ------------------------------------------------------------------
    # Queries

    def get_charge(self, company_id: str, charge_id: str) -> Charge:
        """
        Raises:
            NotFoundError: unknown id or owned by another company
        """
        data = self.storage.load(self.table_name, charge_id)
        if data is None or data.get('company_id') != company_id:
            raise NotFoundError(f"Charge {charge_id} not found", {"charge_id": charge_id})
        return Charge.from_dict(data)

    def find_charges(
        self,
        company_id: Optional[str] = None,
        contract_id: Optional[str] = None,
        status: Optional[ChargeStatus] = None,
        charge_type: Optional[ChargeType] = None
    ) -> List[Charge]:
        """Find charges ordered by due date; ``status`` matches the display status"""
        filters: Dict[str, Any] = {}
        if company_id:
            filters['company_id'] = company_id
        if contract_id:
            filters['contract_id'] = contract_id
        if charge_type:
            filters['charge_type'] = charge_type.value

        charges = [Charge.from_dict(data) for data in self.storage.find(self.table_name, filters)]
        if status is not None:
            today = self.clock.today()
            charges = [c for c in charges if c.display_status(today) == status]
        charges.sort(key=charge_sort_key)
        return charges

    def get_outstanding_charges(self, company_id: str, contract_id: str) -> List[Charge]:
        """Non-PAID, non-CANCELLED charges of a contract, oldest due first"""
        return [
            c for c in self.find_charges(company_id, contract_id=contract_id)
            if not c.is_cancelled and c.pending_amount.is_positive()
        ]

    def get_contract_balance(self, company_id: str, contract_id: str) -> Money:
        """Total pending amount of a contract"""
        contract = self.contracts.get_contract(company_id, contract_id)
        balance = Money.zero(contract.currency)
        for charge in self.get_outstanding_charges(company_id, contract_id):
            balance = balance + charge.pending_amount
        return balance

    # ------------------------------------------------------------------
    # Helpers

    def save_charge(self, charge: Charge, expected_version: int) -> None:
        """Persist a charge with an optimistic version check"""
        charge.version = expected_version + 1
        charge.updated_at = self.clock.now()
        self.storage.save_if_version(self.table_name, charge.id, charge.to_dict(), expected_version)

    def _new_charge(self, company_id: str, contract_id: str, charge_type: ChargeType,
                    concept: str, amount: Money, charge_date: date, due_date: date,
                    **extra) -> Charge:
        now = self.clock.now()
        # Sequential ids keep "ordered by id" equal to creation order
        sequence = self.storage.next_sequence(self.table_name)
        return Charge(
            id=f"CHG-{sequence:010d}",
            created_at=now,
            updated_at=now,
            company_id=company_id,
            contract_id=contract_id,
            charge_type=charge_type,
            concept=concept,
            amount_original=amount,
            charge_date=charge_date,
            due_date=due_date,
            **extra
        )

    def _insert_charge(self, charge: Charge) -> None:
        self.storage.insert(self.table_name, charge.id, charge.to_dict())
        self.audit_trail.log_event(
            event_type=AuditEventType.CHARGE_CREATED,
            entity_type="charge",
            entity_id=charge.id,
            company_id=charge.company_id,
            metadata={
                "contract_id": charge.contract_id,
                "charge_type": charge.charge_type.value,
                "concept": charge.concept,
                "amount": charge.amount_original.to_string(),
                "due_date": charge.due_date
            }
        )

    @staticmethod
    def _period_key(contract_id: str, year: int, month: int) -> str:
        return f"{contract_id}:{ChargeType.RENT.value}:{year:04d}-{month:02d}"

    @staticmethod
    def _rent_dates(payment_day: int, grace_days: int, year: int, month: int):
        """Charge date is the payment day within the period, clamped to the month length"""
        day = min(payment_day, calendar.monthrange(year, month)[1])
        charge_date = date(year, month, day)
        return charge_date, charge_date + timedelta(days=grace_days)

    def charge_event(self, event_type: DomainEvent, charge: Charge, **data):
        payload = {
            "contract_id": charge.contract_id,
            "charge_type": charge.charge_type.value,
            "concept": charge.concept,
            "amount": str(charge.amount_original.amount),
            "pending": str(charge.pending_amount.amount),
            "currency": charge.amount_original.currency.code,
            "due_date": charge.due_date.isoformat(),
        }
        payload.update(data)
        return self._event(event_type, "charge", charge.id, charge.company_id, payload)
