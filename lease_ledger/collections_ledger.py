"""
Collections Ledger Module

Tracks overdue charges as delinquency records, logs the follow-up contacts
made to collect them and accrues late penalties. Monthly projections
compare the rent expected for a month with what was collected.

One open record exists per overdue charge. The record's pending amount
mirrors the charge it tracks; the charge is always the ground truth, so
payments reach this ledger through the ``payment.applied`` and
``payment.reversed`` events rather than being written here directly.
"""

from decimal import Decimal, ROUND_HALF_UP
from datetime import datetime, date
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .currency import Money, Currency, currency_from_code
from .storage import StorageInterface, StorageRecord, RecordLockManager
from .audit import AuditTrail, AuditEventType
from .events import DomainEvent, EventDispatcher, EventPayload, EventPublisherMixin
from .clock import Clock
from .contracts import ContractLifecycle
from .charges import Charge, ChargeGenerator, ChargeType
from .aging import AgingBucket, AgingClassifier, BucketTotal, bucket_for_days, days_overdue
from .exceptions import ValidationError, InvalidStateError, NotFoundError
from .logging_config import get_logger, log_action


logger = get_logger("lease_ledger.collections")


class CollectionState(Enum):
    """Collection workflow state of a delinquency record"""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    PROMISE_TO_PAY = "promise_to_pay"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    UNCOLLECTIBLE = "uncollectible"


class ContactType(Enum):
    PHONE_CALL = "phone_call"
    WHATSAPP = "whatsapp"
    EMAIL = "email"
    HOME_VISIT = "home_visit"
    COLLECTION_LETTER = "collection_letter"
    LEGAL_NOTICE = "legal_notice"


class ContactOutcome(Enum):
    CONTACTED_PROMISE_TO_PAY = "contacted_promise_to_pay"
    CONTACTED_NO_COMMITMENT = "contacted_no_commitment"
    NOT_CONTACTED = "not_contacted"
    WRONG_NUMBER = "wrong_number"
    VOICEMAIL = "voicemail"
    PAYMENT_MADE = "payment_made"


def _optional_date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


def _optional_money(value: Optional[Dict[str, Any]]) -> Optional[Money]:
    return Money.from_dict(value) if value else None


def _period_start(month: int, year: int) -> date:
    if not 1 <= month <= 12:
        raise ValidationError("Month must be between 1 and 12", {"month": month})
    return date(year, month, 1)


def _projection_id(company_id: str, period: date) -> str:
    return f"{company_id}:{period:%Y-%m}"


@dataclass
class DelinquencyRecord(StorageRecord):
    """Collection-tracking row for one overdue charge"""
    company_id: str
    contract_id: str
    charge_id: str
    tenant_id: str
    concept: str
    amount_original: Money
    pending_amount: Money
    penalty_amount: Money
    due_date: date
    days_overdue: int
    bucket: AgingBucket
    collection_state: CollectionState = CollectionState.PENDING
    penalty_percentage: Decimal = Decimal("0")
    promised_date: Optional[date] = None
    promised_amount: Optional[Money] = None
    last_penalty_date: Optional[date] = None
    closed_at: Optional[datetime] = None
    active: bool = True
    notes: Optional[str] = None
    property_id: Optional[str] = None
    version: int = 0

    @property
    def is_open(self) -> bool:
        return self.active and self.collection_state != CollectionState.PAID

    @property
    def total_due(self) -> Money:
        return self.pending_amount + self.penalty_amount

    def append_note(self, note: str) -> None:
        self.notes = f"{self.notes}\n{note}" if self.notes else note

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'company_id': self.company_id,
            'contract_id': self.contract_id,
            'charge_id': self.charge_id,
            'tenant_id': self.tenant_id,
            'concept': self.concept,
            'amount_original': self.amount_original.to_dict(),
            'pending_amount': self.pending_amount.to_dict(),
            'penalty_amount': self.penalty_amount.to_dict(),
            'due_date': self.due_date.isoformat(),
            'days_overdue': self.days_overdue,
            'bucket': self.bucket.value,
            'collection_state': self.collection_state.value,
            'penalty_percentage': str(self.penalty_percentage),
            'promised_date': self.promised_date.isoformat() if self.promised_date else None,
            'promised_amount': self.promised_amount.to_dict() if self.promised_amount else None,
            'last_penalty_date': self.last_penalty_date.isoformat() if self.last_penalty_date else None,
            'closed_at': self.closed_at.isoformat() if self.closed_at else None,
            'active': self.active,
            'notes': self.notes,
            'property_id': self.property_id,
            'version': self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DelinquencyRecord':
        closed_at = data.get('closed_at')
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            company_id=data['company_id'],
            contract_id=data['contract_id'],
            charge_id=data['charge_id'],
            tenant_id=data['tenant_id'],
            concept=data['concept'],
            amount_original=Money.from_dict(data['amount_original']),
            pending_amount=Money.from_dict(data['pending_amount']),
            penalty_amount=Money.from_dict(data['penalty_amount']),
            due_date=date.fromisoformat(data['due_date']),
            days_overdue=data['days_overdue'],
            bucket=AgingBucket(data['bucket']),
            collection_state=CollectionState(data['collection_state']),
            penalty_percentage=Decimal(data.get('penalty_percentage') or "0"),
            promised_date=_optional_date(data.get('promised_date')),
            promised_amount=_optional_money(data.get('promised_amount')),
            last_penalty_date=_optional_date(data.get('last_penalty_date')),
            closed_at=datetime.fromisoformat(closed_at) if closed_at else None,
            active=data.get('active', True),
            notes=data.get('notes'),
            property_id=data.get('property_id'),
            version=data.get('version', 0),
        )


@dataclass
class FollowUpRequest:
    """One collection contact to log against a record"""
    contact_type: ContactType
    outcome: ContactOutcome
    contact_date: Optional[date] = None
    notes: Optional[str] = None
    promised_date: Optional[date] = None
    promised_amount: Optional[Money] = None
    next_action: Optional[str] = None
    next_action_date: Optional[date] = None
    performed_by: Optional[str] = None

    def __post_init__(self):
        if self.outcome == ContactOutcome.CONTACTED_PROMISE_TO_PAY and self.promised_date is None:
            raise ValidationError("A promise to pay requires a promised date")
        if self.promised_amount is not None and not self.promised_amount.is_positive():
            raise ValidationError("Promised amount must be positive")


@dataclass
class FollowUp(StorageRecord):
    """Append-only log entry of a collection contact"""
    company_id: str
    record_id: str
    contact_type: ContactType
    contact_date: date
    outcome: ContactOutcome
    notes: Optional[str] = None
    promised_date: Optional[date] = None
    promised_amount: Optional[Money] = None
    next_action: Optional[str] = None
    next_action_date: Optional[date] = None
    performed_by: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'company_id': self.company_id,
            'record_id': self.record_id,
            'contact_type': self.contact_type.value,
            'contact_date': self.contact_date.isoformat(),
            'outcome': self.outcome.value,
            'notes': self.notes,
            'promised_date': self.promised_date.isoformat() if self.promised_date else None,
            'promised_amount': self.promised_amount.to_dict() if self.promised_amount else None,
            'next_action': self.next_action,
            'next_action_date': self.next_action_date.isoformat() if self.next_action_date else None,
            'performed_by': self.performed_by,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FollowUp':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            company_id=data['company_id'],
            record_id=data['record_id'],
            contact_type=ContactType(data['contact_type']),
            contact_date=date.fromisoformat(data['contact_date']),
            outcome=ContactOutcome(data['outcome']),
            notes=data.get('notes'),
            promised_date=_optional_date(data.get('promised_date')),
            promised_amount=_optional_money(data.get('promised_amount')),
            next_action=data.get('next_action'),
            next_action_date=_optional_date(data.get('next_action_date')),
            performed_by=data.get('performed_by'),
        )


@dataclass
class CollectionProjection(StorageRecord):
    """Expected against collected rent for one company and month"""
    company_id: str
    period: date  # first day of the month
    projected_amount: Money
    collected_amount: Money
    contract_count: int = 0
    expected_payments: int = 0
    received_payments: int = 0
    notes: Optional[str] = None
    active: bool = True
    version: int = 0

    @property
    def pending_amount(self) -> Money:
        return self.projected_amount - self.collected_amount

    @property
    def compliance_percentage(self) -> Decimal:
        if not self.projected_amount.is_positive():
            return Decimal("0.00")
        return (self.collected_amount.amount * Decimal("100") / self.projected_amount.amount).quantize(
            Decimal("0.01"), rounding=ROUND_HALF_UP
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'company_id': self.company_id,
            'period': self.period.isoformat(),
            'projected_amount': self.projected_amount.to_dict(),
            'collected_amount': self.collected_amount.to_dict(),
            'pending_amount': self.pending_amount.to_dict(),
            'compliance_percentage': str(self.compliance_percentage),
            'contract_count': self.contract_count,
            'expected_payments': self.expected_payments,
            'received_payments': self.received_payments,
            'notes': self.notes,
            'active': self.active,
            'version': self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CollectionProjection':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            company_id=data['company_id'],
            period=date.fromisoformat(data['period']),
            projected_amount=Money.from_dict(data['projected_amount']),
            collected_amount=Money.from_dict(data['collected_amount']),
            contract_count=data.get('contract_count', 0),
            expected_payments=data.get('expected_payments', 0),
            received_payments=data.get('received_payments', 0),
            notes=data.get('notes'),
            active=data.get('active', True),
            version=data.get('version', 0),
        )


@dataclass
class SyncResult:
    """Record ids touched by a sync run"""
    opened: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    closed: List[str] = field(default_factory=list)
    deactivated: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'opened': len(self.opened),
            'updated': len(self.updated),
            'closed': len(self.closed),
            'deactivated': len(self.deactivated),
            'unchanged': len(self.unchanged),
        }


@dataclass
class CollectionsSummary:
    """Open-record totals for one company and currency"""
    company_id: str
    currency: Currency
    total_pending: Money
    total_penalty: Money
    open_count: int = 0
    by_bucket: Dict[AgingBucket, BucketTotal] = field(default_factory=dict)
    by_state: Dict[CollectionState, BucketTotal] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        def totals(groups):
            return {key.value: {'amount': total.amount.to_dict(), 'count': total.count}
                    for key, total in groups.items()}

        return {
            'company_id': self.company_id,
            'currency': self.currency.code,
            'total_pending': self.total_pending.to_dict(),
            'total_penalty': self.total_penalty.to_dict(),
            'open_count': self.open_count,
            'by_bucket': totals(self.by_bucket),
            'by_state': totals(self.by_state),
        }


class CollectionsLedger(EventPublisherMixin):
    """
    Delinquency records, follow-ups and penalties for overdue charges
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        contracts: ContractLifecycle,
        charges: ChargeGenerator,
        aging: AgingClassifier,
        clock: Clock,
        event_dispatcher: Optional[EventDispatcher] = None,
        lock_manager: Optional[RecordLockManager] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.contracts = contracts
        self.charges = charges
        self.aging = aging
        self.clock = clock
        self.event_dispatcher = event_dispatcher
        self.lock_manager = lock_manager or charges.lock_manager

        self.table_name = "delinquency_records"
        self.follow_ups_table = "follow_ups"
        self.projections_table = "collection_projections"

        if event_dispatcher is not None:
            event_dispatcher.subscribe(DomainEvent.PAYMENT_APPLIED, self._on_payment_applied)
            event_dispatcher.subscribe(DomainEvent.PAYMENT_REVERSED, self._on_payment_reversed)

    def sync_from_aging(self, company_id: Optional[str] = None,
                        as_of: Optional[date] = None) -> SyncResult:
        """
        Reconcile delinquency records with the current aging classification

        Opens a record for every overdue charge that has none (a charge whose
        record was deactivated by hand stays untracked), closes records
        whose charge is paid, deactivates records whose charge was cancelled
        and refreshes days, bucket and pending on the rest. Collection state
        is never changed by a refresh.
        """
        as_of = as_of or self.clock.today()
        result = SyncResult()
        events: List[EventPayload] = []

        with self.storage.atomic():
            records = self._find({} if company_id is None else {'company_id': company_id})
            open_records = {r.charge_id: r for r in records if r.is_open}
            # Charges whose record was deactivated are not tracked again
            dropped = {r.charge_id for r in records if not r.active}

            for entry in self.aging.classify(as_of, company_id):
                if (entry.bucket == AgingBucket.CURRENT or entry.charge_id in open_records
                        or entry.charge_id in dropped):
                    continue
                charge = self.charges.get_charge(entry.company_id, entry.charge_id)
                record = self._open_record(charge, as_of)
                result.opened.append(record.id)
                events.append(self._record_event(DomainEvent.DELINQUENCY_OPENED, record))

            for record in open_records.values():
                charge = self.charges.get_charge(record.company_id, record.charge_id)
                expected = record.version
                if charge.is_cancelled:
                    record.active = False
                    record.append_note("Charge cancelled")
                    self._save_record(record, expected)
                    self._audit(AuditEventType.DELINQUENCY_CLOSED, record, reason="charge_cancelled")
                    result.deactivated.append(record.id)
                elif charge.pending_amount.is_zero():
                    self._close_paid(record, charge)
                    self._save_record(record, expected)
                    self._audit(AuditEventType.DELINQUENCY_CLOSED, record, reason="paid")
                    result.closed.append(record.id)
                    events.append(self._record_event(DomainEvent.DELINQUENCY_CLOSED, record))
                elif self._refresh_from_charge(record, charge, as_of):
                    self._save_record(record, expected)
                    self._audit(AuditEventType.DELINQUENCY_UPDATED, record,
                                days_overdue=record.days_overdue, bucket=record.bucket.value)
                    result.updated.append(record.id)
                else:
                    result.unchanged.append(record.id)

        log_action(logger, "info", "Collections synced from aging",
                   company_id=company_id, action="sync_from_aging", extra=result.to_dict())
        self._publish(events)
        return result

    def accrue_penalty(self, company_id: str, record_id: str,
                       as_of: Optional[date] = None) -> DelinquencyRecord:
        """
        Bring the record's penalty up to the contract's daily penalty times days overdue

        The stored penalty never decreases.

        Raises:
            InvalidStateError: record is closed
        """
        as_of = as_of or self.clock.today()
        with self.lock_manager.hold(f"delinquency:{record_id}"), self.storage.atomic():
            record = self.get_record(company_id, record_id)
            self._require_open(record)
            contract = self.contracts.get_contract(company_id, record.contract_id)

            days = max(0, (as_of - record.due_date).days)
            computed = contract.daily_penalty * days
            previous = record.penalty_amount
            expected = record.version
            if computed > record.penalty_amount:
                record.penalty_amount = computed
            if record.amount_original.is_positive():
                record.penalty_percentage = (
                    record.penalty_amount.amount / record.amount_original.amount * Decimal("100")
                ).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
            record.last_penalty_date = as_of
            self._save_record(record, expected)
            self._audit(AuditEventType.PENALTY_ACCRUED, record,
                        previous=str(previous.amount), penalty=str(record.penalty_amount.amount),
                        days_overdue=days)

        log_action(logger, "info", f"Penalty on record {record.id} is {record.penalty_amount.to_string()}",
                   company_id=company_id, action="accrue_penalty", resource=f"delinquency:{record.id}")
        return record

    def register_follow_up(self, company_id: str, record_id: str,
                           request: FollowUpRequest) -> FollowUp:
        """
        Log a collection contact and advance the record's state

        A promise to pay moves the record to PROMISE_TO_PAY; any other
        outcome moves a PENDING record to IN_PROGRESS.

        Raises:
            InvalidStateError: record is closed
        """
        events: List[EventPayload] = []
        with self.lock_manager.hold(f"delinquency:{record_id}"), self.storage.atomic():
            record = self.get_record(company_id, record_id)
            self._require_open(record)
            if request.promised_amount is not None and request.promised_amount.currency != record.pending_amount.currency:
                raise ValidationError("Promised amount currency must match the record currency")

            now = self.clock.now()
            follow_up = FollowUp(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                company_id=company_id,
                record_id=record.id,
                contact_type=request.contact_type,
                contact_date=request.contact_date or self.clock.today(),
                outcome=request.outcome,
                notes=request.notes,
                promised_date=request.promised_date,
                promised_amount=request.promised_amount,
                next_action=request.next_action,
                next_action_date=request.next_action_date,
                performed_by=request.performed_by,
            )
            self.storage.insert(self.follow_ups_table, follow_up.id, follow_up.to_dict())

            expected = record.version
            previous_state = record.collection_state
            if request.outcome == ContactOutcome.CONTACTED_PROMISE_TO_PAY:
                record.collection_state = CollectionState.PROMISE_TO_PAY
                record.promised_date = request.promised_date
                record.promised_amount = request.promised_amount
            elif record.collection_state == CollectionState.PENDING:
                record.collection_state = CollectionState.IN_PROGRESS
            self._save_record(record, expected)

            self._audit(AuditEventType.FOLLOW_UP_REGISTERED, record,
                        follow_up_id=follow_up.id,
                        contact_type=follow_up.contact_type.value,
                        outcome=follow_up.outcome.value,
                        previous_state=previous_state.value,
                        new_state=record.collection_state.value)
            events.append(self._record_event(
                DomainEvent.DELINQUENCY_FOLLOW_UP, record,
                follow_up_id=follow_up.id, outcome=follow_up.outcome.value
            ))

        log_action(logger, "info", f"Follow-up {follow_up.outcome.value} logged on record {record.id}",
                   company_id=company_id, action="register_follow_up", resource=f"delinquency:{record.id}")
        self._publish(events)
        return follow_up

    def record_payment(self, company_id: str, record_id: str, amount: Money) -> DelinquencyRecord:
        """
        Reflect a payment already applied to the record's charge

        The new pending amount is read from the charge. A fully paid record
        is closed as PAID; otherwise it becomes PARTIALLY_PAID.

        Raises:
            ValidationError: non-positive amount, another currency, more than
                pending, or the charge does not show the payment
            InvalidStateError: record is closed
        """
        if not amount.is_positive():
            raise ValidationError("Payment amount must be positive")

        events: List[EventPayload] = []
        with self.lock_manager.hold(f"delinquency:{record_id}"), self.storage.atomic():
            record = self.get_record(company_id, record_id)
            self._require_open(record)
            if amount.currency != record.pending_amount.currency:
                raise ValidationError(
                    "Payment currency must match the record currency",
                    {"record_id": record.id, "currency": amount.currency.code,
                     "record_currency": record.pending_amount.currency.code}
                )
            if amount > record.pending_amount:
                raise ValidationError(
                    f"Payment {amount.to_string()} exceeds pending {record.pending_amount.to_string()}",
                    {"record_id": record.id}
                )

            charge = self.charges.get_charge(company_id, record.charge_id)
            if charge.pending_amount > record.pending_amount - amount:
                raise ValidationError(
                    f"Charge {charge.id} does not reflect a payment of {amount.to_string()}",
                    {"record_id": record.id, "charge_pending": str(charge.pending_amount.amount)}
                )

            expected = record.version
            if charge.pending_amount.is_zero():
                self._close_paid(record, charge)
                events.append(self._record_event(DomainEvent.DELINQUENCY_CLOSED, record))
            else:
                record.pending_amount = charge.pending_amount
                record.collection_state = CollectionState.PARTIALLY_PAID
            self._save_record(record, expected)
            self._audit(
                AuditEventType.DELINQUENCY_CLOSED if not record.is_open else AuditEventType.DELINQUENCY_UPDATED,
                record, payment=str(amount.amount), pending=str(record.pending_amount.amount)
            )

        log_action(logger, "info", f"Payment of {amount.to_string()} recorded on record {record.id}",
                   company_id=company_id, action="record_payment", resource=f"delinquency:{record.id}",
                   extra={"state": record.collection_state.value})
        self._publish(events)
        return record

    def update_collection_state(self, company_id: str, record_id: str, state: CollectionState,
                                notes: Optional[str] = None) -> DelinquencyRecord:
        """
        Move a record to another collection state by hand

        Raises:
            ValidationError: PAID requested while money is still pending
            InvalidStateError: record is closed
        """
        events: List[EventPayload] = []
        with self.lock_manager.hold(f"delinquency:{record_id}"), self.storage.atomic():
            record = self.get_record(company_id, record_id)
            self._require_open(record)
            if state == CollectionState.PAID and record.pending_amount.is_positive():
                raise ValidationError("Cannot mark as paid while an amount is pending",
                                      {"pending": str(record.pending_amount.amount)})

            expected = record.version
            previous = record.collection_state
            record.collection_state = state
            if state == CollectionState.PAID:
                record.closed_at = self.clock.now()
                events.append(self._record_event(DomainEvent.DELINQUENCY_CLOSED, record))
            if notes:
                record.append_note(notes)
            self._save_record(record, expected)
            self._audit(AuditEventType.COLLECTION_STATE_CHANGED, record,
                        previous_state=previous.value, new_state=state.value, notes=notes)

        log_action(logger, "info", f"Record {record.id} moved to {state.value}",
                   company_id=company_id, action="update_collection_state",
                   resource=f"delinquency:{record.id}")
        self._publish(events)
        return record

    def deactivate_record(self, company_id: str, record_id: str, reason: str) -> DelinquencyRecord:
        """
        Withdraw a record from collections without deleting it

        The record keeps its follow-ups and penalty for the audit history but
        drops out of open queries, summaries and settlements, and sync does
        not open a new record for its charge.

        Raises:
            ValidationError: empty reason
            InvalidStateError: record already deactivated
        """
        if not reason or not reason.strip():
            raise ValidationError("A reason is required to deactivate a record")

        events: List[EventPayload] = []
        with self.lock_manager.hold(f"delinquency:{record_id}"), self.storage.atomic():
            record = self.get_record(company_id, record_id)
            if not record.active:
                raise InvalidStateError(f"Delinquency record {record.id} is already deactivated",
                                        {"record_id": record.id})

            expected = record.version
            was_open = record.is_open
            record.active = False
            record.append_note(f"Deactivated: {reason.strip()}")
            self._save_record(record, expected)
            self._audit(AuditEventType.DELINQUENCY_DEACTIVATED, record, reason=reason.strip())
            if was_open:
                events.append(self._record_event(DomainEvent.DELINQUENCY_CLOSED, record, reason="deactivated"))

        log_action(logger, "info", f"Record {record.id} deactivated",
                   company_id=company_id, action="deactivate_record", resource=f"delinquency:{record.id}")
        self._publish(events)
        return record

    # ------------------------------------------------------------------
    # Queries

    def get_record(self, company_id: str, record_id: str) -> DelinquencyRecord:
        data = self.storage.load(self.table_name, record_id)
        if data is None or data.get('company_id') != company_id:
            raise NotFoundError(f"Delinquency record {record_id} not found", {"record_id": record_id})
        return DelinquencyRecord.from_dict(data)

    def find_records(
        self,
        company_id: str,
        state: Optional[CollectionState] = None,
        bucket: Optional[AgingBucket] = None,
        contract_id: Optional[str] = None,
        open_only: bool = True,
        tenant_id: Optional[str] = None,
        property_id: Optional[str] = None
    ) -> List[DelinquencyRecord]:
        """
        Records ordered by days overdue, most overdue first

        With ``open_only`` off, closed and deactivated records are included.
        """
        filters: Dict[str, Any] = {'company_id': company_id}
        if state:
            filters['collection_state'] = state.value
        if bucket:
            filters['bucket'] = bucket.value
        if contract_id:
            filters['contract_id'] = contract_id
        if tenant_id:
            filters['tenant_id'] = tenant_id
        if property_id:
            filters['property_id'] = property_id

        records = self._find(filters)
        if open_only:
            records = [r for r in records if r.is_open]
        records.sort(key=lambda r: (-r.days_overdue, r.charge_id))
        return records

    def get_follow_ups(self, company_id: str, record_id: str) -> List[FollowUp]:
        self.get_record(company_id, record_id)
        follow_ups = [
            FollowUp.from_dict(data)
            for data in self.storage.find(self.follow_ups_table, {'company_id': company_id, 'record_id': record_id})
        ]
        follow_ups.sort(key=lambda f: (f.contact_date, f.created_at))
        return follow_ups

    def get_pending_actions(self, company_id: str, as_of: Optional[date] = None) -> List[FollowUp]:
        """
        Next actions that are due: the latest follow-up of each open record,
        when its next action date is on or before ``as_of``
        """
        as_of = as_of or self.clock.today()
        open_ids = {r.id for r in self.find_records(company_id)}

        latest: Dict[str, FollowUp] = {}
        for data in self.storage.find(self.follow_ups_table, {'company_id': company_id}):
            follow_up = FollowUp.from_dict(data)
            if follow_up.record_id not in open_ids:
                continue
            current = latest.get(follow_up.record_id)
            if current is None or (follow_up.contact_date, follow_up.created_at) > (current.contact_date, current.created_at):
                latest[follow_up.record_id] = follow_up

        due = [f for f in latest.values() if f.next_action_date is not None and f.next_action_date <= as_of]
        due.sort(key=lambda f: f.next_action_date)
        return due

    def get_summary(self, company_id: str, currency: Optional[Currency] = None) -> CollectionsSummary:
        """Pending and penalty totals of open records, by bucket and by state"""
        currency = currency or self.aging.default_currency
        zero = Money.zero(currency)
        summary = CollectionsSummary(
            company_id=company_id,
            currency=currency,
            total_pending=zero,
            total_penalty=zero,
            by_bucket={bucket: BucketTotal(amount=zero) for bucket in AgingBucket},
            by_state={state: BucketTotal(amount=zero) for state in CollectionState},
        )
        for record in self.find_records(company_id):
            if record.pending_amount.currency != currency:
                continue
            summary.open_count += 1
            summary.total_pending = summary.total_pending + record.pending_amount
            summary.total_penalty = summary.total_penalty + record.penalty_amount
            for total in (summary.by_bucket[record.bucket], summary.by_state[record.collection_state]):
                total.amount = total.amount + record.pending_amount
                total.count += 1
        return summary

    # ------------------------------------------------------------------
    # Projections

    def create_or_update_projection(
        self,
        company_id: str,
        month: int,
        year: int,
        projected_amount: Optional[Money] = None,
        contract_count: Optional[int] = None,
        expected_payments: Optional[int] = None,
        notes: Optional[str] = None
    ) -> CollectionProjection:
        """
        Save the rent expected for a month

        Figures left out are taken from the month's rent charges: the sum of
        their original amounts, how many there are and how many contracts
        they bill. An existing projection for the month is updated in place
        and keeps its collected figures.

        Raises:
            ValidationError: bad month, negative amount or count, or a
                currency other than the existing projection's
        """
        period = _period_start(month, year)
        if projected_amount is not None and projected_amount.is_negative():
            raise ValidationError("Projected amount cannot be negative")
        for name, value in (("Contract count", contract_count), ("Expected payments", expected_payments)):
            if value is not None and value < 0:
                raise ValidationError(f"{name} cannot be negative", {"value": value})

        currency = projected_amount.currency if projected_amount is not None else self.aging.default_currency
        rent = self._rent_charges(company_id, period, currency)
        if projected_amount is None:
            projected_amount = Money.zero(currency)
            for charge in rent:
                projected_amount = projected_amount + charge.amount_original
        if contract_count is None:
            contract_count = len({charge.contract_id for charge in rent})
        if expected_payments is None:
            expected_payments = len(rent)

        key = _projection_id(company_id, period)
        with self.lock_manager.hold(f"projection:{key}"), self.storage.atomic():
            data = self.storage.load(self.projections_table, key)
            now = self.clock.now()
            if data is None:
                projection = CollectionProjection(
                    id=key,
                    created_at=now,
                    updated_at=now,
                    company_id=company_id,
                    period=period,
                    projected_amount=projected_amount,
                    collected_amount=Money.zero(currency),
                    contract_count=contract_count,
                    expected_payments=expected_payments,
                    notes=notes,
                )
                self.storage.insert(self.projections_table, key, projection.to_dict())
            else:
                projection = CollectionProjection.from_dict(data)
                if projection.collected_amount.currency != currency:
                    raise ValidationError(
                        "Projected amount currency must match the projection currency",
                        {"period": period.isoformat(), "currency": projection.collected_amount.currency.code}
                    )
                expected = projection.version
                projection.projected_amount = projected_amount
                projection.contract_count = contract_count
                projection.expected_payments = expected_payments
                if notes:
                    projection.notes = notes
                self._save_projection(projection, expected)

            self._audit_projection(AuditEventType.PROJECTION_SAVED, projection,
                                   projected=str(projection.projected_amount.amount),
                                   expected_payments=projection.expected_payments)

        log_action(logger, "info",
                   f"Projection for {period:%Y-%m} is {projection.projected_amount.to_string()}",
                   company_id=company_id, action="create_or_update_projection",
                   resource=f"projection:{key}")
        return projection

    def refresh_projection_collected(
        self,
        company_id: str,
        month: int,
        year: int,
        collected_amount: Optional[Money] = None,
        received_payments: Optional[int] = None
    ) -> CollectionProjection:
        """
        Update what has been collected against a month's projection

        Figures left out are read from the month's rent charges: the sum
        paid on them and how many have received a payment.

        Raises:
            NotFoundError: no projection for the month
            ValidationError: negative amount or count, or another currency
        """
        period = _period_start(month, year)
        if received_payments is not None and received_payments < 0:
            raise ValidationError("Received payments cannot be negative", {"value": received_payments})

        key = _projection_id(company_id, period)
        with self.lock_manager.hold(f"projection:{key}"), self.storage.atomic():
            projection = self.get_projection(company_id, month, year)
            currency = projection.projected_amount.currency
            if collected_amount is not None:
                if collected_amount.currency != currency:
                    raise ValidationError("Collected amount currency must match the projection currency",
                                          {"period": period.isoformat(), "currency": currency.code})
                if collected_amount.is_negative():
                    raise ValidationError("Collected amount cannot be negative")

            rent = self._rent_charges(company_id, period, currency)
            if collected_amount is None:
                collected_amount = Money.zero(currency)
                for charge in rent:
                    collected_amount = collected_amount + charge.amount_paid
            if received_payments is None:
                received_payments = len([charge for charge in rent if charge.amount_paid.is_positive()])

            expected = projection.version
            projection.collected_amount = collected_amount
            projection.received_payments = received_payments
            self._save_projection(projection, expected)
            self._audit_projection(AuditEventType.PROJECTION_COLLECTED_UPDATED, projection,
                                   collected=str(collected_amount.amount),
                                   received_payments=received_payments)

        log_action(logger, "info",
                   f"Projection for {period:%Y-%m} collected {collected_amount.to_string()}",
                   company_id=company_id, action="refresh_projection_collected",
                   resource=f"projection:{key}",
                   extra={"compliance": str(projection.compliance_percentage)})
        return projection

    def get_projection(self, company_id: str, month: int, year: int) -> CollectionProjection:
        period = _period_start(month, year)
        data = self.storage.load(self.projections_table, _projection_id(company_id, period))
        if data is None or data.get('company_id') != company_id or not data.get('active', True):
            raise NotFoundError(f"No collection projection for {period:%Y-%m}", {"period": period.isoformat()})
        return CollectionProjection.from_dict(data)

    def get_projections(self, company_id: str, start: Optional[date] = None,
                        end: Optional[date] = None) -> List[CollectionProjection]:
        """Active projections whose month starts within [start, end], oldest first"""
        projections = [
            CollectionProjection.from_dict(data)
            for data in self.storage.find(self.projections_table, {'company_id': company_id, 'active': True})
        ]
        if start is not None:
            projections = [p for p in projections if p.period >= start]
        if end is not None:
            projections = [p for p in projections if p.period <= end]
        projections.sort(key=lambda p: p.period)
        return projections

    # ------------------------------------------------------------------
    # Event handlers

    def _on_payment_applied(self, event: EventPayload) -> None:
        record = self._open_record_for_charge(event.company_id, event.data["charge_id"])
        if record is None:
            return
        charge = self.charges.get_charge(event.company_id, record.charge_id)
        # The charge may already reflect several applications; record the whole difference once
        reflected = record.pending_amount - charge.pending_amount
        if not reflected.is_positive():
            logger.debug(f"Record {record.id} already reflects payment {event.entity_id}")
            return
        self.record_payment(event.company_id, record.id, reflected)

    def _on_payment_reversed(self, event: EventPayload) -> None:
        record = self._open_record_for_charge(event.company_id, event.data["charge_id"])
        if record is None:
            return
        with self.lock_manager.hold(f"delinquency:{record.id}"), self.storage.atomic():
            record = self.get_record(event.company_id, record.id)
            charge = self.charges.get_charge(event.company_id, record.charge_id)
            expected = record.version
            if self._refresh_from_charge(record, charge, self.clock.today()):
                self._save_record(record, expected)
                self._audit(AuditEventType.DELINQUENCY_UPDATED, record,
                            reversed_payment=event.entity_id,
                            amount=Money(Decimal(event.data["applied"]),
                                         currency_from_code(event.data["currency"])).to_string(),
                            pending=str(record.pending_amount.amount))

    # ------------------------------------------------------------------
    # Helpers

    def _open_record(self, charge: Charge, as_of: date) -> DelinquencyRecord:
        contract = self.contracts.get_contract(charge.company_id, charge.contract_id)
        days = days_overdue(charge, as_of)
        now = self.clock.now()
        record = DelinquencyRecord(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            company_id=charge.company_id,
            contract_id=charge.contract_id,
            charge_id=charge.id,
            tenant_id=contract.tenant_id,
            property_id=contract.property_id,
            concept=charge.concept,
            amount_original=charge.amount_original,
            pending_amount=charge.pending_amount,
            penalty_amount=Money.zero(charge.amount_original.currency),
            due_date=charge.due_date,
            days_overdue=days,
            bucket=bucket_for_days(days),
        )
        self.storage.insert(self.table_name, record.id, record.to_dict())
        self._audit(AuditEventType.DELINQUENCY_OPENED, record,
                    pending=str(record.pending_amount.amount), days_overdue=days)
        return record

    def _refresh_from_charge(self, record: DelinquencyRecord, charge: Charge, as_of: date) -> bool:
        """Copy days, bucket and pending from the charge; True when anything changed"""
        days = days_overdue(charge, as_of)
        bucket = bucket_for_days(days)
        changed = (days != record.days_overdue or bucket != record.bucket
                   or charge.pending_amount != record.pending_amount)
        record.days_overdue = days
        record.bucket = bucket
        record.pending_amount = charge.pending_amount
        return changed

    def _close_paid(self, record: DelinquencyRecord, charge: Charge) -> None:
        record.pending_amount = charge.pending_amount
        record.collection_state = CollectionState.PAID
        record.closed_at = self.clock.now()

    def _require_open(self, record: DelinquencyRecord) -> None:
        if not record.is_open:
            raise InvalidStateError(f"Delinquency record {record.id} is closed", {"record_id": record.id})

    def _open_record_for_charge(self, company_id: str, charge_id: str) -> Optional[DelinquencyRecord]:
        for record in self._find({'company_id': company_id, 'charge_id': charge_id}):
            if record.is_open:
                return record
        return None

    def _find(self, filters: Dict[str, Any]) -> List[DelinquencyRecord]:
        return [DelinquencyRecord.from_dict(data) for data in self.storage.find(self.table_name, filters)]

    def _save_record(self, record: DelinquencyRecord, expected_version: int) -> None:
        record.version = expected_version + 1
        record.updated_at = self.clock.now()
        self.storage.save_if_version(self.table_name, record.id, record.to_dict(), expected_version)

    def _audit(self, event_type: AuditEventType, record: DelinquencyRecord, **metadata) -> None:
        metadata.setdefault("charge_id", record.charge_id)
        metadata.setdefault("state", record.collection_state.value)
        self.audit_trail.log_event(
            event_type=event_type,
            entity_type="delinquency_record",
            entity_id=record.id,
            company_id=record.company_id,
            metadata=metadata
        )

    def _rent_charges(self, company_id: str, period: date, currency: Currency) -> List[Charge]:
        return [
            charge for charge in self.charges.find_charges(company_id, charge_type=ChargeType.RENT)
            if charge.period_year == period.year and charge.period_month == period.month
            and not charge.is_cancelled and charge.amount_original.currency == currency
        ]

    def _save_projection(self, projection: CollectionProjection, expected_version: int) -> None:
        projection.version = expected_version + 1
        projection.updated_at = self.clock.now()
        self.storage.save_if_version(self.projections_table, projection.id, projection.to_dict(),
                                     expected_version)

    def _audit_projection(self, event_type: AuditEventType, projection: CollectionProjection,
                          **metadata) -> None:
        metadata.setdefault("period", projection.period.isoformat())
        self.audit_trail.log_event(
            event_type=event_type,
            entity_type="collection_projection",
            entity_id=projection.id,
            company_id=projection.company_id,
            metadata=metadata
        )

    def _record_event(self, event_type: DomainEvent, record: DelinquencyRecord, **data) -> EventPayload:
        payload = {
            "contract_id": record.contract_id,
            "charge_id": record.charge_id,
            "tenant_id": record.tenant_id,
            "pending": str(record.pending_amount.amount),
            "currency": record.pending_amount.currency.code,
            "days_overdue": record.days_overdue,
            "bucket": record.bucket.value,
            "state": record.collection_state.value,
        }
        payload.update(data)
        return self._event(event_type, "delinquency_record", record.id, record.company_id, payload)
