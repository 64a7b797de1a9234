"""
Test suite for collections ledger module

Tests delinquency records synced from aging, follow-up logging, penalty
accrual and the payment events that keep records in step with charges.
"""

import threading

import pytest
from decimal import Decimal
from datetime import date

from lease_ledger.config import LeaseLedgerConfig
from lease_ledger.currency import Money, Currency
from lease_ledger.storage import InMemoryStorage
from lease_ledger.clock import FixedClock
from lease_ledger.events import DomainEvent, RecordingHandler
from lease_ledger.registry import InMemoryPartyRegistry
from lease_ledger.system import LeaseLedgerSystem
from lease_ledger.contracts import CreateContractRequest
from lease_ledger.payments import CreatePaymentRequest, PaymentType
from lease_ledger.aging import AgingBucket
from lease_ledger.collections_ledger import (
    CollectionState, ContactType, ContactOutcome, FollowUpRequest
)
from lease_ledger.exceptions import ValidationError, InvalidStateError, NotFoundError


COMPANY = "acme"


def mxn(amount):
    return Money(Decimal(amount), Currency.MXN)


class TestFollowUpRequest:

    def test_promise_requires_date(self):
        with pytest.raises(ValidationError, match="A promise to pay requires a promised date"):
            FollowUpRequest(contact_type=ContactType.PHONE_CALL,
                            outcome=ContactOutcome.CONTACTED_PROMISE_TO_PAY)

    def test_promised_amount_must_be_positive(self):
        with pytest.raises(ValidationError, match="Promised amount must be positive"):
            FollowUpRequest(contact_type=ContactType.WHATSAPP,
                            outcome=ContactOutcome.CONTACTED_PROMISE_TO_PAY,
                            promised_date=date(2025, 2, 1), promised_amount=mxn("0"))


class TestCollectionsLedger:
    """Test collections ledger operations"""

    def setup_method(self):
        self.clock = FixedClock(date(2025, 1, 10))
        self.registry = InMemoryPartyRegistry()
        self.registry.register_property(COMPANY, "prop-1")
        self.registry.register_person(COMPANY, "tenant-1")
        self.system = LeaseLedgerSystem(
            config=LeaseLedgerConfig(database_url="memory://"),
            storage=InMemoryStorage(),
            clock=self.clock,
            registry=self.registry
        )
        self.recorder = RecordingHandler()
        self.system.event_dispatcher.subscribe_all(self.recorder)
        self.collections = self.system.collections

        contract = self.system.contracts.create_contract(COMPANY, CreateContractRequest(
            property_id="prop-1",
            tenant_id="tenant-1",
            start_date=date(2025, 1, 1),
            end_date=date(2025, 12, 31),
            monthly_rent=mxn("1000.00"),
            payment_day=5,
            grace_days=3,
            daily_penalty=mxn("50.00"),
        ))
        self.contract = self.system.contracts.activate(COMPANY, contract.id)
        # January rent due on the 8th, February rent due on February 8th
        self.january = self.system.charges.generate_fixed_charges(COMPANY, 1, 2025)[0]
        self.february = self.system.charges.generate_fixed_charges(COMPANY, 2, 2025)[0]
        self.clock.set(date(2025, 1, 20))

    def open_record(self):
        self.collections.sync_from_aging(COMPANY)
        return self.collections.find_records(COMPANY)[0]

    def pay(self, amount):
        return self.system.payments.create_payment(COMPANY, CreatePaymentRequest(
            contract_id=self.contract.id, person_id="tenant-1", amount=mxn(amount),
            payment_type=PaymentType.CASH, payment_date=self.clock.today()
        ), auto_apply=True)

    # Sync

    def test_sync_opens_record_for_overdue_charge_only(self):
        result = self.collections.sync_from_aging(COMPANY)

        assert len(result.opened) == 1
        record = self.collections.get_record(COMPANY, result.opened[0])
        assert record.charge_id == self.january.id
        assert record.tenant_id == "tenant-1"
        assert record.collection_state == CollectionState.PENDING
        assert record.pending_amount == mxn("1000.00")
        assert record.penalty_amount.is_zero()
        assert record.days_overdue == 12
        assert record.bucket == AgingBucket.OVERDUE_1_30
        assert len(self.recorder.of_type(DomainEvent.DELINQUENCY_OPENED)) == 1

    def test_sync_is_idempotent(self):
        self.collections.sync_from_aging(COMPANY)
        result = self.collections.sync_from_aging(COMPANY)

        assert result.opened == []
        assert len(result.unchanged) == 1
        assert len(self.collections.find_records(COMPANY, open_only=False)) == 1

    def test_sync_alongside_rolled_back_transaction_keeps_audit_chain_valid(self):
        noted = threading.Event()
        synced = threading.Event()
        errors = []

        def abandoned_note():
            try:
                with self.system.storage.atomic():
                    self.system.contracts.add_note(COMPANY, self.contract.id, "Draft note")
                    noted.set()
                    synced.wait(5)
                    raise RuntimeError("abandoned")
            except RuntimeError as e:
                errors.append(str(e))

        worker = threading.Thread(target=abandoned_note)
        worker.start()
        noted.wait(5)
        result = self.collections.sync_from_aging(COMPANY)
        synced.set()
        worker.join(5)

        assert errors == ["abandoned"]
        assert len(result.opened) == 1
        integrity = self.system.audit_trail.verify_integrity()
        assert integrity["valid"] is True
        assert integrity["chain_breaks"] == []

    def test_sync_refreshes_days_and_bucket(self):
        record = self.open_record()
        result = self.collections.sync_from_aging(COMPANY, as_of=date(2025, 2, 8))

        assert result.updated == [record.id]
        record = self.collections.get_record(COMPANY, record.id)
        assert record.days_overdue == 31
        assert record.bucket == AgingBucket.OVERDUE_31_60
        assert record.collection_state == CollectionState.PENDING

    def test_sync_closes_records_of_paid_charges(self):
        self.system.event_dispatcher.unsubscribe(DomainEvent.PAYMENT_APPLIED,
                                                 self.collections._on_payment_applied)
        record = self.open_record()
        self.pay("1000.00")

        result = self.collections.sync_from_aging(COMPANY)
        assert result.closed == [record.id]
        record = self.collections.get_record(COMPANY, record.id)
        assert record.collection_state == CollectionState.PAID
        assert record.pending_amount.is_zero()
        assert record.closed_at is not None

    def test_sync_deactivates_records_of_cancelled_charges(self):
        record = self.open_record()
        self.system.charges.cancel_charge(COMPANY, self.january.id, "Rent waived")

        result = self.collections.sync_from_aging(COMPANY)
        assert result.deactivated == [record.id]
        assert not self.collections.get_record(COMPANY, record.id).active
        assert self.collections.find_records(COMPANY) == []

    # Payment events

    def test_full_payment_closes_record(self):
        record = self.open_record()
        self.pay("1000.00")

        record = self.collections.get_record(COMPANY, record.id)
        assert record.collection_state == CollectionState.PAID
        assert not record.is_open
        assert self.collections.find_records(COMPANY) == []
        assert len(self.recorder.of_type(DomainEvent.DELINQUENCY_CLOSED)) == 1

    def test_partial_payment_updates_record(self):
        record = self.open_record()
        self.pay("400.00")

        record = self.collections.get_record(COMPANY, record.id)
        assert record.collection_state == CollectionState.PARTIALLY_PAID
        assert record.pending_amount == mxn("600.00")

    def test_payment_reversal_restores_pending(self):
        record = self.open_record()
        payment = self.pay("400.00")
        self.system.payments.cancel_payment(COMPANY, payment.id, "Cash counterfeit")

        record = self.collections.get_record(COMPANY, record.id)
        assert record.pending_amount == mxn("1000.00")
        assert record.is_open

    def test_record_payment_must_be_reflected_by_charge(self):
        record = self.open_record()
        with pytest.raises(ValidationError, match="does not reflect"):
            self.collections.record_payment(COMPANY, record.id, mxn("400.00"))
        with pytest.raises(ValidationError, match="exceeds pending"):
            self.collections.record_payment(COMPANY, record.id, mxn("1000.01"))
        with pytest.raises(ValidationError, match="must be positive"):
            self.collections.record_payment(COMPANY, record.id, mxn("0"))

    def test_record_payment_rejects_other_currency(self):
        record = self.open_record()
        with pytest.raises(ValidationError, match="Payment currency must match the record currency"):
            self.collections.record_payment(COMPANY, record.id, Money(Decimal("10"), Currency.USD))

        record = self.collections.get_record(COMPANY, record.id)
        assert record.pending_amount == mxn("1000.00")
        assert record.collection_state == CollectionState.PENDING

    # Penalties

    def test_accrue_penalty(self):
        record = self.open_record()
        record = self.collections.accrue_penalty(COMPANY, record.id)

        # 12 days overdue at 50.00 a day
        assert record.penalty_amount == mxn("600.00")
        assert record.penalty_percentage == Decimal("60.00")
        assert record.last_penalty_date == date(2025, 1, 20)
        assert record.total_due == mxn("1600.00")

    def test_penalty_never_decreases(self):
        record = self.open_record()
        self.collections.accrue_penalty(COMPANY, record.id)
        record = self.collections.accrue_penalty(COMPANY, record.id, as_of=date(2025, 1, 15))
        assert record.penalty_amount == mxn("600.00")

        record = self.collections.accrue_penalty(COMPANY, record.id, as_of=date(2025, 1, 25))
        assert record.penalty_amount == mxn("850.00")

    def test_closed_record_rejects_changes(self):
        record = self.open_record()
        self.pay("1000.00")

        with pytest.raises(InvalidStateError, match="is closed"):
            self.collections.accrue_penalty(COMPANY, record.id)
        with pytest.raises(InvalidStateError, match="is closed"):
            self.collections.register_follow_up(COMPANY, record.id, FollowUpRequest(
                contact_type=ContactType.EMAIL, outcome=ContactOutcome.NOT_CONTACTED
            ))

    # Follow-ups

    def test_follow_up_moves_pending_to_in_progress(self):
        record = self.open_record()
        follow_up = self.collections.register_follow_up(COMPANY, record.id, FollowUpRequest(
            contact_type=ContactType.PHONE_CALL,
            outcome=ContactOutcome.VOICEMAIL,
            notes="Left a message",
            performed_by="agent-7"
        ))

        assert follow_up.contact_date == date(2025, 1, 20)
        record = self.collections.get_record(COMPANY, record.id)
        assert record.collection_state == CollectionState.IN_PROGRESS
        assert len(self.recorder.of_type(DomainEvent.DELINQUENCY_FOLLOW_UP)) == 1

    def test_promise_to_pay(self):
        record = self.open_record()
        self.collections.register_follow_up(COMPANY, record.id, FollowUpRequest(
            contact_type=ContactType.WHATSAPP,
            outcome=ContactOutcome.CONTACTED_PROMISE_TO_PAY,
            promised_date=date(2025, 1, 31),
            promised_amount=mxn("1000.00")
        ))

        record = self.collections.get_record(COMPANY, record.id)
        assert record.collection_state == CollectionState.PROMISE_TO_PAY
        assert record.promised_date == date(2025, 1, 31)
        assert record.promised_amount == mxn("1000.00")

        # Later contacts keep the promise state
        self.collections.register_follow_up(COMPANY, record.id, FollowUpRequest(
            contact_type=ContactType.PHONE_CALL, outcome=ContactOutcome.NOT_CONTACTED
        ))
        assert self.collections.get_record(COMPANY, record.id).collection_state == CollectionState.PROMISE_TO_PAY

    def test_follow_ups_in_contact_order(self):
        record = self.open_record()
        for contact_date, contact_type in ((date(2025, 1, 19), ContactType.EMAIL),
                                           (date(2025, 1, 15), ContactType.COLLECTION_LETTER)):
            self.collections.register_follow_up(COMPANY, record.id, FollowUpRequest(
                contact_type=contact_type, outcome=ContactOutcome.NOT_CONTACTED, contact_date=contact_date
            ))

        follow_ups = self.collections.get_follow_ups(COMPANY, record.id)
        assert [f.contact_type for f in follow_ups] == [ContactType.COLLECTION_LETTER, ContactType.EMAIL]

    def test_pending_actions_use_latest_follow_up(self):
        record = self.open_record()
        self.collections.register_follow_up(COMPANY, record.id, FollowUpRequest(
            contact_type=ContactType.PHONE_CALL, outcome=ContactOutcome.NOT_CONTACTED,
            contact_date=date(2025, 1, 15), next_action="Call again", next_action_date=date(2025, 1, 17)
        ))
        assert [f.next_action for f in self.collections.get_pending_actions(COMPANY)] == ["Call again"]

        self.collections.register_follow_up(COMPANY, record.id, FollowUpRequest(
            contact_type=ContactType.HOME_VISIT, outcome=ContactOutcome.CONTACTED_NO_COMMITMENT,
            contact_date=date(2025, 1, 18), next_action="Send legal notice",
            next_action_date=date(2025, 1, 25)
        ))
        assert self.collections.get_pending_actions(COMPANY) == []
        due = self.collections.get_pending_actions(COMPANY, as_of=date(2025, 1, 25))
        assert [f.next_action for f in due] == ["Send legal notice"]

    # Manual state changes and queries

    def test_update_collection_state(self):
        record = self.open_record()
        record = self.collections.update_collection_state(
            COMPANY, record.id, CollectionState.UNCOLLECTIBLE, notes="Tenant unreachable"
        )
        assert record.collection_state == CollectionState.UNCOLLECTIBLE
        assert "Tenant unreachable" in record.notes
        assert record.is_open

    def test_cannot_mark_paid_while_pending(self):
        record = self.open_record()
        with pytest.raises(ValidationError, match="Cannot mark as paid while an amount is pending"):
            self.collections.update_collection_state(COMPANY, record.id, CollectionState.PAID)

    def test_find_records_by_state_and_bucket(self):
        record = self.open_record()
        assert self.collections.find_records(COMPANY, bucket=AgingBucket.OVERDUE_1_30)[0].id == record.id
        assert self.collections.find_records(COMPANY, bucket=AgingBucket.OVERDUE_31_60) == []
        assert self.collections.find_records(COMPANY, state=CollectionState.PENDING)[0].id == record.id

    def second_tenant_record(self):
        self.registry.register_property(COMPANY, "prop-2")
        self.registry.register_person(COMPANY, "tenant-2")
        contract = self.system.contracts.create_contract(COMPANY, CreateContractRequest(
            property_id="prop-2",
            tenant_id="tenant-2",
            start_date=date(2025, 1, 1),
            end_date=date(2025, 12, 31),
            monthly_rent=mxn("800.00"),
            payment_day=1,
        ))
        contract = self.system.contracts.activate(COMPANY, contract.id)
        self.system.charges.generate_fixed_charges(COMPANY, 1, 2025, contract_id=contract.id)
        self.collections.sync_from_aging(COMPANY)
        return contract

    def test_find_records_by_tenant_and_property(self):
        record = self.open_record()
        other = self.second_tenant_record()

        assert len(self.collections.find_records(COMPANY)) == 2
        assert [r.id for r in self.collections.find_records(COMPANY, tenant_id="tenant-1")] == [record.id]
        assert record.property_id == "prop-1"
        by_property = self.collections.find_records(COMPANY, property_id="prop-2")
        assert [r.contract_id for r in by_property] == [other.id]
        assert by_property[0].tenant_id == "tenant-2"
        assert self.collections.find_records(COMPANY, property_id="prop-9") == []

    # Deactivation

    def test_deactivate_record(self):
        record = self.open_record()
        record = self.collections.deactivate_record(COMPANY, record.id, "Agreed with owner")

        assert not record.active
        assert "Deactivated: Agreed with owner" in record.notes
        assert self.collections.find_records(COMPANY) == []
        assert self.collections.get_summary(COMPANY).open_count == 0
        assert [r.id for r in self.collections.find_records(COMPANY, open_only=False)] == [record.id]
        assert self.recorder.of_type(DomainEvent.DELINQUENCY_CLOSED)[0].data["reason"] == "deactivated"
        events = self.system.audit_trail.get_events_for_entity("delinquency_record", record.id)
        assert events[-1].metadata["reason"] == "Agreed with owner"

    def test_sync_does_not_reopen_deactivated_charge(self):
        record = self.open_record()
        self.collections.deactivate_record(COMPANY, record.id, "Handled by lawyer")

        result = self.collections.sync_from_aging(COMPANY, as_of=date(2025, 1, 25))
        assert result.opened == []
        assert self.collections.find_records(COMPANY) == []

    def test_deactivate_record_rules(self):
        record = self.open_record()
        with pytest.raises(ValidationError, match="A reason is required"):
            self.collections.deactivate_record(COMPANY, record.id, "  ")

        self.collections.deactivate_record(COMPANY, record.id, "Duplicate")
        with pytest.raises(InvalidStateError, match="already deactivated"):
            self.collections.deactivate_record(COMPANY, record.id, "Again")
        with pytest.raises(InvalidStateError, match="is closed"):
            self.collections.accrue_penalty(COMPANY, record.id)

    def test_summary(self):
        record = self.open_record()
        self.collections.accrue_penalty(COMPANY, record.id)

        summary = self.collections.get_summary(COMPANY)
        assert summary.open_count == 1
        assert summary.total_pending == mxn("1000.00")
        assert summary.total_penalty == mxn("600.00")
        assert summary.by_bucket[AgingBucket.OVERDUE_1_30].count == 1
        assert summary.by_state[CollectionState.PENDING].amount == mxn("1000.00")
        assert summary.to_dict()["open_count"] == 1

    def test_records_invisible_to_other_company(self):
        record = self.open_record()
        with pytest.raises(NotFoundError):
            self.collections.get_record("globex", record.id)


class TestCollectionProjections:
    """Test monthly expected against collected rent"""

    def setup_method(self):
        self.clock = FixedClock(date(2025, 1, 10))
        registry = InMemoryPartyRegistry()
        registry.register_property(COMPANY, "prop-1")
        registry.register_property(COMPANY, "prop-2")
        registry.register_person(COMPANY, "tenant-1")
        registry.register_person(COMPANY, "tenant-2")
        self.system = LeaseLedgerSystem(
            config=LeaseLedgerConfig(database_url="memory://"),
            storage=InMemoryStorage(),
            clock=self.clock,
            registry=registry
        )
        self.collections = self.system.collections

        self.contracts = []
        for property_id, tenant_id, rent in (("prop-1", "tenant-1", "1000.00"), ("prop-2", "tenant-2", "1500.00")):
            contract = self.system.contracts.create_contract(COMPANY, CreateContractRequest(
                property_id=property_id,
                tenant_id=tenant_id,
                start_date=date(2025, 1, 1),
                end_date=date(2025, 12, 31),
                monthly_rent=mxn(rent),
                payment_day=5,
            ))
            self.contracts.append(self.system.contracts.activate(COMPANY, contract.id))
        self.system.charges.generate_fixed_charges(COMPANY, 1, 2025)

    def pay(self, contract, amount):
        return self.system.payments.create_payment(COMPANY, CreatePaymentRequest(
            contract_id=contract.id, person_id=contract.tenant_id, amount=mxn(amount),
            payment_type=PaymentType.TRANSFER, payment_date=self.clock.today()
        ), auto_apply=True)

    def test_projection_from_rent_charges(self):
        projection = self.collections.create_or_update_projection(COMPANY, 1, 2025)

        assert projection.period == date(2025, 1, 1)
        assert projection.projected_amount == mxn("2500.00")
        assert projection.collected_amount == mxn("0.00")
        assert projection.contract_count == 2
        assert projection.expected_payments == 2
        assert projection.compliance_percentage == Decimal("0.00")

    def test_explicit_projection_figures(self):
        projection = self.collections.create_or_update_projection(
            COMPANY, 3, 2025, projected_amount=mxn("3000.00"), contract_count=3, expected_payments=3,
            notes="Third unit expected from March"
        )
        assert projection.projected_amount == mxn("3000.00")
        assert projection.contract_count == 3
        assert projection.notes == "Third unit expected from March"

    def test_refresh_collected_from_charges(self):
        self.collections.create_or_update_projection(COMPANY, 1, 2025)
        self.pay(self.contracts[0], "1000.00")
        self.pay(self.contracts[1], "500.00")

        projection = self.collections.refresh_projection_collected(COMPANY, 1, 2025)
        assert projection.collected_amount == mxn("1500.00")
        assert projection.received_payments == 2
        assert projection.pending_amount == mxn("1000.00")
        assert projection.compliance_percentage == Decimal("60.00")
        assert projection.to_dict()["compliance_percentage"] == "60.00"

    def test_refresh_collected_with_given_figures(self):
        self.collections.create_or_update_projection(COMPANY, 1, 2025)
        projection = self.collections.refresh_projection_collected(
            COMPANY, 1, 2025, collected_amount=mxn("2000.00"), received_payments=1
        )
        assert projection.collected_amount == mxn("2000.00")
        assert projection.compliance_percentage == Decimal("80.00")

    def test_update_keeps_collected_figures(self):
        self.collections.create_or_update_projection(COMPANY, 1, 2025)
        self.pay(self.contracts[0], "1000.00")
        self.collections.refresh_projection_collected(COMPANY, 1, 2025)

        projection = self.collections.create_or_update_projection(
            COMPANY, 1, 2025, projected_amount=mxn("2000.00")
        )
        assert projection.projected_amount == mxn("2000.00")
        assert projection.collected_amount == mxn("1000.00")
        assert projection.version == 2
        assert len(self.collections.get_projections(COMPANY)) == 1

    def test_get_projections_in_range(self):
        for month in (3, 1, 2):
            self.collections.create_or_update_projection(COMPANY, month, 2025)

        projections = self.collections.get_projections(COMPANY, date(2025, 1, 15), date(2025, 3, 1))
        assert [p.period for p in projections] == [date(2025, 2, 1), date(2025, 3, 1)]
        assert self.collections.get_projections("globex") == []

    def test_projection_rules(self):
        with pytest.raises(ValidationError, match="Month must be between 1 and 12"):
            self.collections.create_or_update_projection(COMPANY, 13, 2025)
        with pytest.raises(ValidationError, match="Projected amount cannot be negative"):
            self.collections.create_or_update_projection(COMPANY, 1, 2025, projected_amount=mxn("-1.00"))
        with pytest.raises(NotFoundError, match="No collection projection for 2025-02"):
            self.collections.refresh_projection_collected(COMPANY, 2, 2025)

        self.collections.create_or_update_projection(COMPANY, 1, 2025)
        with pytest.raises(ValidationError, match="Collected amount currency must match"):
            self.collections.refresh_projection_collected(
                COMPANY, 1, 2025, collected_amount=Money(Decimal("10"), Currency.USD)
            )
        with pytest.raises(ValidationError, match="Projected amount currency must match"):
            self.collections.create_or_update_projection(
                COMPANY, 1, 2025, projected_amount=Money(Decimal("10"), Currency.USD)
            )
