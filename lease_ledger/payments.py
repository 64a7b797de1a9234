"""
Payment Allocation Module

Records payments received from tenants and applies them against a
contract's outstanding charges, either automatically (oldest due first) or
against an explicit caller-selected set of charges.

Money conservation is checked inside every apply and cancel, before the
transaction commits:

    sum(applications of a charge)  == charge.amount_paid
    sum(applications of a payment) == payment.amount_applied <= payment.amount

Any mismatch raises LedgerInvariantError and rolls the transaction back.
"""

from datetime import datetime, date
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Iterable
from enum import Enum
import uuid

from .currency import Money
from .storage import StorageInterface, StorageRecord, RecordLockManager
from .audit import AuditTrail, AuditEventType
from .events import DomainEvent, EventDispatcher, EventPayload, EventPublisherMixin
from .clock import Clock
from .registry import PartyRegistry
from .contracts import ContractLifecycle
from .charges import Charge, ChargeGenerator, ChargeStatus, charge_sort_key
from .exceptions import (
    ValidationError, InvalidStateError, NotFoundError, LedgerInvariantError
)
from .logging_config import get_logger, log_action


logger = get_logger("lease_ledger.payments")


class PaymentType(Enum):
    """How the money was received"""
    CASH = "cash"
    TRANSFER = "transfer"
    CHECK = "check"
    DEBIT_CARD = "debit_card"
    CREDIT_CARD = "credit_card"
    BANK_DEPOSIT = "bank_deposit"


class PaymentStatus(Enum):
    """Payment application status"""
    PENDING = "pending"
    APPLIED = "applied"
    PARTIAL = "partial"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


@dataclass
class CreatePaymentRequest:
    """A payment received against a contract"""
    contract_id: str
    person_id: str
    amount: Money
    payment_type: PaymentType
    payment_date: date
    reference: Optional[str] = None
    bank: Optional[str] = None
    check_number: Optional[str] = None
    notes: Optional[str] = None

    def __post_init__(self):
        if not self.amount.is_positive():
            raise ValidationError("Payment amount must be positive", {"amount": str(self.amount.amount)})
        if not self.contract_id or not self.person_id:
            raise ValidationError("Contract and payer are required")


@dataclass
class ManualAllocation:
    """Amount of a payment the caller wants applied to one charge"""
    charge_id: str
    amount: Money

    def __post_init__(self):
        if not self.amount.is_positive():
            raise ValidationError(
                f"Amount to apply to charge {self.charge_id} must be positive",
                {"charge_id": self.charge_id}
            )


@dataclass
class Payment(StorageRecord):
    """Money received from a tenant under one contract"""
    company_id: str
    contract_id: str
    person_id: str
    receipt_number: str
    amount: Money
    payment_type: PaymentType
    payment_date: date
    amount_applied: Money = None
    status: PaymentStatus = PaymentStatus.PENDING
    reference: Optional[str] = None
    bank: Optional[str] = None
    check_number: Optional[str] = None
    notes: Optional[str] = None
    cancellation_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    version: int = 0

    def __post_init__(self):
        if self.amount_applied is None:
            self.amount_applied = Money.zero(self.amount.currency)

    @property
    def amount_available(self) -> Money:
        return self.amount - self.amount_applied

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'company_id': self.company_id,
            'contract_id': self.contract_id,
            'person_id': self.person_id,
            'receipt_number': self.receipt_number,
            'amount': self.amount.to_dict(),
            'amount_applied': self.amount_applied.to_dict(),
            'payment_type': self.payment_type.value,
            'payment_date': self.payment_date.isoformat(),
            'status': self.status.value,
            'reference': self.reference,
            'bank': self.bank,
            'check_number': self.check_number,
            'notes': self.notes,
            'cancellation_reason': self.cancellation_reason,
            'cancelled_at': self.cancelled_at.isoformat() if self.cancelled_at else None,
            'version': self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Payment':
        cancelled_at = data.get('cancelled_at')
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            company_id=data['company_id'],
            contract_id=data['contract_id'],
            person_id=data['person_id'],
            receipt_number=data['receipt_number'],
            amount=Money.from_dict(data['amount']),
            amount_applied=Money.from_dict(data['amount_applied']),
            payment_type=PaymentType(data['payment_type']),
            payment_date=date.fromisoformat(data['payment_date']),
            status=PaymentStatus(data['status']),
            reference=data.get('reference'),
            bank=data.get('bank'),
            check_number=data.get('check_number'),
            notes=data.get('notes'),
            cancellation_reason=data.get('cancellation_reason'),
            cancelled_at=datetime.fromisoformat(cancelled_at) if cancelled_at else None,
            version=data.get('version', 0),
        )


@dataclass
class PaymentApplication(StorageRecord):
    """Part of a payment applied to one charge"""
    company_id: str
    payment_id: str
    charge_id: str
    contract_id: str
    amount_applied: Money
    applied_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'company_id': self.company_id,
            'payment_id': self.payment_id,
            'charge_id': self.charge_id,
            'contract_id': self.contract_id,
            'amount_applied': self.amount_applied.to_dict(),
            'applied_at': self.applied_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PaymentApplication':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            company_id=data['company_id'],
            payment_id=data['payment_id'],
            charge_id=data['charge_id'],
            contract_id=data['contract_id'],
            amount_applied=Money.from_dict(data['amount_applied']),
            applied_at=datetime.fromisoformat(data['applied_at']),
        )


@dataclass
class AllocationResult:
    """Outcome of an apply call"""
    payment: Payment
    applications: List[PaymentApplication] = field(default_factory=list)

    @property
    def total_applied(self) -> Money:
        total = Money.zero(self.payment.amount.currency)
        for application in self.applications:
            total = total + application.amount_applied
        return total


def _payment_status_after_allocation(payment: Payment) -> PaymentStatus:
    if payment.amount_applied.is_zero():
        return PaymentStatus.PENDING
    if payment.amount_available.is_zero():
        return PaymentStatus.APPLIED
    return PaymentStatus.PARTIAL


class PaymentAllocator(EventPublisherMixin):
    """
    Records payments and reconciles them against charges.

    Charge mutations happen under per-record locks (``charge:<id>``,
    ``payment:<id>``) and are saved with an optimistic version check; a lost
    race surfaces as ConcurrencyConflictError.
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        contracts: ContractLifecycle,
        charges: ChargeGenerator,
        registry: PartyRegistry,
        clock: Clock,
        event_dispatcher: Optional[EventDispatcher] = None,
        lock_manager: Optional[RecordLockManager] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.contracts = contracts
        self.charges = charges
        self.registry = registry
        self.clock = clock
        self.event_dispatcher = event_dispatcher
        self.lock_manager = lock_manager or charges.lock_manager

        self.payments_table = "payments"
        self.applications_table = "payment_applications"

    # ------------------------------------------------------------------
    # Payments

    def create_payment(self, company_id: str, request: CreatePaymentRequest,
                       auto_apply: bool = False) -> Payment:
        """
        Record a payment in PENDING status

        Args:
            company_id: Owning company
            request: Payment details
            auto_apply: Apply it to outstanding charges in the same transaction

        Raises:
            ValidationError: contract not current or currency mismatch
            NotFoundError: unknown contract or payer
        """
        contract = self.contracts.get_contract(company_id, request.contract_id)
        if not self.contracts.is_current(contract):
            raise ValidationError(
                f"Contract {contract.contract_number} is not current and cannot receive payments",
                {"contract_id": contract.id}
            )
        if request.amount.currency != contract.currency:
            raise ValidationError("Payment currency must match the contract currency")
        if not self.registry.person_is_active(company_id, request.person_id):
            raise NotFoundError(f"Person {request.person_id} not found", {"person_id": request.person_id})

        payment_id = str(uuid.uuid4())
        lock_keys = [f"payment:{payment_id}"]
        if auto_apply:
            lock_keys += self._charge_lock_keys(
                c.id for c in self.charges.get_outstanding_charges(company_id, contract.id)
            )

        events: List[EventPayload] = []
        with self.lock_manager.hold(*lock_keys), self.storage.atomic():
            now = self.clock.now()
            payment = Payment(
                id=payment_id,
                created_at=now,
                updated_at=now,
                company_id=company_id,
                contract_id=contract.id,
                person_id=request.person_id,
                receipt_number=self._next_receipt_number(company_id),
                amount=request.amount,
                payment_type=request.payment_type,
                payment_date=request.payment_date,
                reference=request.reference,
                bank=request.bank,
                check_number=request.check_number,
                notes=request.notes,
            )
            self.storage.insert(self.payments_table, payment.id, payment.to_dict())
            self.audit_trail.log_event(
                event_type=AuditEventType.PAYMENT_CREATED,
                entity_type="payment",
                entity_id=payment.id,
                company_id=company_id,
                metadata={
                    "contract_id": contract.id,
                    "receipt_number": payment.receipt_number,
                    "amount": payment.amount.to_string(),
                    "payment_type": payment.payment_type.value
                }
            )
            events.append(self._payment_event(DomainEvent.PAYMENT_CREATED, payment))

            if auto_apply:
                payment = self._allocate_automatic(company_id, payment, events).payment

        log_action(logger, "info", f"Payment {payment.receipt_number} recorded for {payment.amount.to_string()}",
                   company_id=company_id, action="create_payment", resource=f"payment:{payment.id}")
        self._publish(events)
        return payment

    def apply_automatic(self, company_id: str, payment_id: str) -> AllocationResult:
        """
        Apply a payment to the contract's outstanding charges, oldest due first

        Leftover money stays available on the payment; that is not an error.
        """
        payment = self.get_payment(company_id, payment_id)
        outstanding = self.charges.get_outstanding_charges(company_id, payment.contract_id)
        lock_keys = [f"payment:{payment_id}"] + self._charge_lock_keys(c.id for c in outstanding)

        events: List[EventPayload] = []
        with self.lock_manager.hold(*lock_keys), self.storage.atomic():
            payment = self.get_payment(company_id, payment_id)
            result = self._allocate_automatic(company_id, payment, events)

        self._log_allocation("apply_automatic", result)
        self._publish(events)
        return result

    def apply_manual(self, company_id: str, payment_id: str,
                     allocations: List[ManualAllocation]) -> AllocationResult:
        """
        Apply a payment to exactly the given charges, in the given order

        The whole request is validated before anything is written; any
        invalid line rejects the request with no side effects.

        Raises:
            ValidationError: over-allocation, foreign or closed charges
        """
        if not allocations:
            raise ValidationError("At least one allocation is required")

        lock_keys = [f"payment:{payment_id}"] + self._charge_lock_keys(a.charge_id for a in allocations)
        events: List[EventPayload] = []
        with self.lock_manager.hold(*lock_keys), self.storage.atomic():
            payment = self.get_payment(company_id, payment_id)
            self._require_applicable(payment)

            charges: Dict[str, Charge] = {}
            requested: Dict[str, Money] = {}
            total = Money.zero(payment.amount.currency)
            for allocation in allocations:
                if allocation.amount.currency != payment.amount.currency:
                    raise ValidationError("Allocation currency must match the payment currency")
                charge = charges.get(allocation.charge_id)
                if charge is None:
                    try:
                        charge = self.charges.get_charge(company_id, allocation.charge_id)
                    except NotFoundError as e:
                        raise ValidationError(
                            f"Charge {allocation.charge_id} does not exist",
                            {"charge_id": allocation.charge_id}
                        ) from e
                    charges[charge.id] = charge
                if charge.contract_id != payment.contract_id:
                    raise ValidationError(
                        f"Charge {charge.id} does not belong to the payment's contract",
                        {"charge_id": charge.id}
                    )
                if charge.is_cancelled:
                    raise ValidationError(f"Charge {charge.id} is cancelled", {"charge_id": charge.id})

                requested[charge.id] = requested.get(charge.id, Money.zero(payment.amount.currency)) + allocation.amount
                if requested[charge.id] > charge.pending_amount:
                    raise ValidationError(
                        f"Requested {requested[charge.id].to_string()} exceeds pending "
                        f"{charge.pending_amount.to_string()} on charge {charge.id}",
                        {"charge_id": charge.id}
                    )
                total = total + allocation.amount

            if total > payment.amount_available:
                raise ValidationError(
                    f"Requested {total.to_string()} exceeds available {payment.amount_available.to_string()}",
                    {"payment_id": payment.id}
                )

            today = self.clock.today()
            applications = [
                self._allocate(payment, charges[allocation.charge_id], allocation.amount, today, events)
                for allocation in allocations
            ]
            result = self._finish_allocation(company_id, payment, applications, charges.values(), events)

        self._log_allocation("apply_manual", result)
        self._publish(events)
        return result

    def cancel_payment(self, company_id: str, payment_id: str, reason: Optional[str] = None) -> Payment:
        """
        Cancel a payment and reverse every application it made

        All charge rollbacks happen in one transaction. This is the only
        path by which a charge's ``amount_paid`` decreases.

        Raises:
            InvalidStateError: payment already cancelled
        """
        existing = self.get_payment_applications(company_id, payment_id)
        lock_keys = [f"payment:{payment_id}"] + self._charge_lock_keys(a.charge_id for a in existing)

        events: List[EventPayload] = []
        with self.lock_manager.hold(*lock_keys), self.storage.atomic():
            payment = self.get_payment(company_id, payment_id)
            if payment.status == PaymentStatus.CANCELLED:
                raise InvalidStateError(f"Payment {payment.receipt_number} is already cancelled")

            today = self.clock.today()
            touched: Dict[str, Charge] = {}
            applications = self.get_payment_applications(company_id, payment_id)
            for application in applications:
                charge = touched.get(application.charge_id) or self.charges.get_charge(company_id, application.charge_id)
                touched[charge.id] = charge

                remaining = charge.amount_paid - application.amount_applied
                if remaining.is_negative():
                    raise LedgerInvariantError(
                        f"Reversing application {application.id} would make charge {charge.id} negative",
                        {"charge_id": charge.id, "application_id": application.id}
                    )
                expected = charge.version
                charge.amount_paid = remaining
                charge.status = charge.display_status(today)
                self.charges.save_charge(charge, expected)
                self.storage.delete(self.applications_table, application.id)
                payment.amount_applied = payment.amount_applied - application.amount_applied

                events.append(self._payment_event(
                    DomainEvent.PAYMENT_REVERSED, payment,
                    charge_id=charge.id,
                    applied=str(application.amount_applied.amount)
                ))

            expected = payment.version
            payment.status = PaymentStatus.CANCELLED
            payment.cancellation_reason = reason
            payment.cancelled_at = self.clock.now()
            self._save_payment(payment, expected)

            for charge in touched.values():
                self.verify_charge_conservation(company_id, charge.id)
            self.verify_payment_conservation(company_id, payment.id)

            self.audit_trail.log_event(
                event_type=AuditEventType.PAYMENT_CANCELLED,
                entity_type="payment",
                entity_id=payment.id,
                company_id=company_id,
                metadata={
                    "reason": reason,
                    "reversed_applications": [
                        {"charge_id": a.charge_id, "amount": str(a.amount_applied.amount)}
                        for a in applications
                    ]
                }
            )
            events.append(self._payment_event(DomainEvent.PAYMENT_CANCELLED, payment, reason=reason))

        log_action(logger, "info", f"Payment {payment.receipt_number} cancelled",
                   company_id=company_id, action="cancel_payment", resource=f"payment:{payment.id}",
                   extra={"reversed": len(applications)})
        self._publish(events)
        return payment

    def reject_payment(self, company_id: str, payment_id: str, reason: str) -> Payment:
        """
        Mark an unapplied payment as rejected (bounced check, failed transfer)

        Raises:
            InvalidStateError: payment is not PENDING or has applications
        """
        if not reason or not reason.strip():
            raise ValidationError("Rejection reason is required")

        events: List[EventPayload] = []
        with self.lock_manager.hold(f"payment:{payment_id}"), self.storage.atomic():
            payment = self.get_payment(company_id, payment_id)
            if payment.status != PaymentStatus.PENDING or not payment.amount_applied.is_zero():
                raise InvalidStateError(
                    f"Only unapplied pending payments can be rejected; "
                    f"payment {payment.receipt_number} is {payment.status.value}"
                )
            expected = payment.version
            payment.status = PaymentStatus.REJECTED
            payment.cancellation_reason = reason.strip()
            self._save_payment(payment, expected)

            self.audit_trail.log_event(
                event_type=AuditEventType.PAYMENT_REJECTED,
                entity_type="payment",
                entity_id=payment.id,
                company_id=company_id,
                metadata={"reason": reason.strip()}
            )
            events.append(self._payment_event(DomainEvent.PAYMENT_REJECTED, payment, reason=reason.strip()))

        log_action(logger, "info", f"Payment {payment.receipt_number} rejected",
                   company_id=company_id, action="reject_payment", resource=f"payment:{payment.id}")
        self._publish(events)
        return payment

    # ------------------------------------------------------------------
    # Queries

    def get_payment(self, company_id: str, payment_id: str) -> Payment:
        """
        Raises:
            NotFoundError: unknown id or owned by another company
        """
        data = self.storage.load(self.payments_table, payment_id)
        if data is None or data.get('company_id') != company_id:
            raise NotFoundError(f"Payment {payment_id} not found", {"payment_id": payment_id})
        return Payment.from_dict(data)

    def find_payments(self, company_id: Optional[str] = None, contract_id: Optional[str] = None,
                      status: Optional[PaymentStatus] = None) -> List[Payment]:
        """Payments ordered by payment date, then receipt number"""
        filters: Dict[str, Any] = {}
        if company_id:
            filters['company_id'] = company_id
        if contract_id:
            filters['contract_id'] = contract_id
        if status:
            filters['status'] = status.value
        payments = [Payment.from_dict(data) for data in self.storage.find(self.payments_table, filters)]
        payments.sort(key=lambda p: (p.payment_date, p.receipt_number))
        return payments

    def get_payment_applications(self, company_id: str, payment_id: str) -> List[PaymentApplication]:
        return self._applications({'company_id': company_id, 'payment_id': payment_id})

    def get_charge_applications(self, company_id: str, charge_id: str) -> List[PaymentApplication]:
        return self._applications({'company_id': company_id, 'charge_id': charge_id})

    def verify_charge_conservation(self, company_id: str, charge_id: str) -> None:
        """
        Raises:
            LedgerInvariantError: applications do not add up to the charge's amount_paid
        """
        charge = self.charges.get_charge(company_id, charge_id)
        total = Money.zero(charge.amount_original.currency)
        for application in self.get_charge_applications(company_id, charge_id):
            total = total + application.amount_applied
        if total != charge.amount_paid:
            raise LedgerInvariantError(
                f"Charge {charge_id} amount_paid {charge.amount_paid.to_string()} "
                f"!= applications total {total.to_string()}",
                {"charge_id": charge_id}
            )
        if charge.amount_paid > charge.amount_original or charge.amount_paid.is_negative():
            raise LedgerInvariantError(
                f"Charge {charge_id} amount_paid {charge.amount_paid.to_string()} is out of range",
                {"charge_id": charge_id}
            )

    def verify_payment_conservation(self, company_id: str, payment_id: str) -> None:
        """
        Raises:
            LedgerInvariantError: applications do not add up to the payment's amount_applied
        """
        payment = self.get_payment(company_id, payment_id)
        total = Money.zero(payment.amount.currency)
        for application in self.get_payment_applications(company_id, payment_id):
            total = total + application.amount_applied
        if total != payment.amount_applied or payment.amount_applied > payment.amount:
            raise LedgerInvariantError(
                f"Payment {payment_id} amount_applied {payment.amount_applied.to_string()} "
                f"inconsistent with applications total {total.to_string()}",
                {"payment_id": payment_id}
            )

    # ------------------------------------------------------------------
    # Allocation internals

    def _allocate_automatic(self, company_id: str, payment: Payment,
                            events: List[EventPayload]) -> AllocationResult:
        self._require_applicable(payment)

        today = self.clock.today()
        outstanding = sorted(
            self.charges.get_outstanding_charges(company_id, payment.contract_id),
            key=charge_sort_key
        )
        applications = []
        for charge in outstanding:
            if payment.amount_available.is_zero():
                break
            amount = min(payment.amount_available, charge.pending_amount)
            applications.append(self._allocate(payment, charge, amount, today, events))

        return self._finish_allocation(company_id, payment, applications, outstanding, events)

    def _allocate(self, payment: Payment, charge: Charge, amount: Money, today: date,
                  events: List[EventPayload]) -> PaymentApplication:
        """One allocation step: application row, charge amount_paid, charge status"""
        paid = charge.amount_paid + amount
        if paid > charge.amount_original:
            raise LedgerInvariantError(
                f"Applying {amount.to_string()} would overpay charge {charge.id}",
                {"charge_id": charge.id}
            )
        applied = payment.amount_applied + amount
        if applied > payment.amount:
            raise LedgerInvariantError(
                f"Applying {amount.to_string()} would over-apply payment {payment.id}",
                {"payment_id": payment.id}
            )

        previous_status = charge.status
        expected = charge.version
        charge.amount_paid = paid
        charge.status = charge.display_status(today)
        self.charges.save_charge(charge, expected)
        if charge.status == ChargeStatus.OVERDUE and previous_status != ChargeStatus.OVERDUE:
            events.append(self.charges.charge_event(
                DomainEvent.CHARGE_OVERDUE, charge, days_overdue=(today - charge.due_date).days
            ))

        now = self.clock.now()
        application = PaymentApplication(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            company_id=payment.company_id,
            payment_id=payment.id,
            charge_id=charge.id,
            contract_id=charge.contract_id,
            amount_applied=amount,
            applied_at=now,
        )
        self.storage.insert(self.applications_table, application.id, application.to_dict())
        payment.amount_applied = applied

        events.append(self._payment_event(
            DomainEvent.PAYMENT_APPLIED, payment,
            charge_id=charge.id,
            applied=str(amount.amount),
            charge_status=charge.status.value
        ))
        return application

    def _finish_allocation(self, company_id: str, payment: Payment,
                           applications: List[PaymentApplication],
                           charges: Iterable[Charge],
                           events: List[EventPayload]) -> AllocationResult:
        if applications:
            expected = payment.version
            payment.status = _payment_status_after_allocation(payment)
            self._save_payment(payment, expected)

            touched = {a.charge_id for a in applications}
            for charge in charges:
                if charge.id in touched:
                    self.verify_charge_conservation(company_id, charge.id)
            self.verify_payment_conservation(company_id, payment.id)

            self.audit_trail.log_event(
                event_type=AuditEventType.PAYMENT_APPLIED,
                entity_type="payment",
                entity_id=payment.id,
                company_id=company_id,
                metadata={
                    "status": payment.status.value,
                    "applications": [
                        {"charge_id": a.charge_id, "amount": str(a.amount_applied.amount)}
                        for a in applications
                    ],
                    "available": str(payment.amount_available.amount)
                }
            )
        return AllocationResult(payment=payment, applications=applications)

    def _require_applicable(self, payment: Payment) -> None:
        if payment.status in (PaymentStatus.CANCELLED, PaymentStatus.REJECTED):
            raise InvalidStateError(
                f"Payment {payment.receipt_number} is {payment.status.value} and cannot be applied",
                {"payment_id": payment.id}
            )
        if payment.amount_available.is_zero():
            raise InvalidStateError(
                f"Payment {payment.receipt_number} is already fully applied",
                {"payment_id": payment.id}
            )

    def _applications(self, filters: Dict[str, Any]) -> List[PaymentApplication]:
        applications = [
            PaymentApplication.from_dict(data)
            for data in self.storage.find(self.applications_table, filters)
        ]
        applications.sort(key=lambda a: (a.applied_at, a.id))
        return applications

    def _save_payment(self, payment: Payment, expected_version: int) -> None:
        payment.version = expected_version + 1
        payment.updated_at = self.clock.now()
        self.storage.save_if_version(self.payments_table, payment.id, payment.to_dict(), expected_version)

    def _next_receipt_number(self, company_id: str) -> str:
        return f"REC-{self.storage.next_sequence(f'receipt:{company_id}'):06d}"

    @staticmethod
    def _charge_lock_keys(charge_ids: Iterable[str]) -> List[str]:
        return [f"charge:{charge_id}" for charge_id in charge_ids]

    def _log_allocation(self, action: str, result: AllocationResult) -> None:
        payment = result.payment
        log_action(logger, "info",
                   f"Payment {payment.receipt_number} applied {result.total_applied.to_string()} "
                   f"to {len(result.applications)} charges",
                   company_id=payment.company_id, action=action, resource=f"payment:{payment.id}",
                   extra={"status": payment.status.value,
                          "available": str(payment.amount_available.amount)})

    def _payment_event(self, event_type: DomainEvent, payment: Payment, **data) -> EventPayload:
        payload = {
            "contract_id": payment.contract_id,
            "receipt_number": payment.receipt_number,
            "amount": str(payment.amount.amount),
            "currency": payment.amount.currency.code,
            "status": payment.status.value,
        }
        payload.update(data)
        return self._event(event_type, "payment", payment.id, payment.company_id, payload)
