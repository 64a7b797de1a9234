"""
Test suite for contract lifecycle module

Tests contract creation, the legal state transitions, renewal linkage and
time-driven expiry classification.
"""

import pytest
from decimal import Decimal
from datetime import date

from lease_ledger.currency import Money, Currency
from lease_ledger.storage import InMemoryStorage
from lease_ledger.audit import AuditTrail, AuditEventType
from lease_ledger.clock import FixedClock
from lease_ledger.events import DomainEvent, EventDispatcher, RecordingHandler
from lease_ledger.registry import InMemoryPartyRegistry
from lease_ledger.charges import ChargeGenerator, ChargeType
from lease_ledger.contracts import (
    ContractLifecycle, ContractStatus, CreateContractRequest, UpdateContractRequest,
    RenewContractRequest, derive_contract_status
)
from lease_ledger.exceptions import ValidationError, InvalidStateError, NotFoundError


COMPANY = "acme"


def mxn(amount):
    return Money(Decimal(amount), Currency.MXN)


def contract_request(**overrides):
    terms = dict(
        property_id="prop-1",
        tenant_id="tenant-1",
        start_date=date(2025, 1, 1),
        end_date=date(2025, 12, 31),
        monthly_rent=mxn("10000.00"),
        payment_day=5,
        deposit_amount=mxn("10000.00"),
        daily_penalty=mxn("50.00"),
        grace_days=3,
        annual_increase_pct=Decimal("5"),
    )
    terms.update(overrides)
    return CreateContractRequest(**terms)


class TestCreateContractRequest:
    """Test request validation"""

    def test_end_date_must_follow_start(self):
        with pytest.raises(ValidationError, match="End date must be after start date"):
            contract_request(end_date=date(2025, 1, 1))

    def test_payment_day_range(self):
        with pytest.raises(ValidationError, match="Payment day must be between 1 and 31"):
            contract_request(payment_day=32)
        with pytest.raises(ValidationError):
            contract_request(payment_day=0)

    def test_rent_must_be_positive(self):
        with pytest.raises(ValidationError, match="Monthly rent must be positive"):
            contract_request(monthly_rent=mxn("0"))

    def test_negative_grace_days(self):
        with pytest.raises(ValidationError, match="Grace days cannot be negative"):
            contract_request(grace_days=-1)

    def test_guarantor_cannot_be_tenant(self):
        with pytest.raises(ValidationError, match="Guarantor must be a different person"):
            contract_request(guarantor_id="tenant-1")

    def test_mixed_currencies_rejected(self):
        with pytest.raises(ValidationError, match="does not match contract currency"):
            contract_request(deposit_amount=Money(Decimal("100"), Currency.USD))


class TestDisplayStatus:
    """Test time-driven classification boundaries"""

    def test_active_outside_window(self):
        assert derive_contract_status(ContractStatus.ACTIVE, date(2025, 6, 30), date(2025, 2, 1)) \
            == ContractStatus.ACTIVE

    def test_expiring_soon_at_thirty_days(self):
        end = date(2025, 3, 31)
        assert derive_contract_status(ContractStatus.ACTIVE, end, date(2025, 2, 28)) == ContractStatus.ACTIVE
        assert derive_contract_status(ContractStatus.ACTIVE, end, date(2025, 3, 1)) == ContractStatus.EXPIRING_SOON

    def test_expired_on_end_date(self):
        end = date(2025, 3, 31)
        assert derive_contract_status(ContractStatus.ACTIVE, end, date(2025, 3, 30)) == ContractStatus.EXPIRING_SOON
        assert derive_contract_status(ContractStatus.ACTIVE, end, end) == ContractStatus.EXPIRED

    def test_terminal_and_draft_statuses_are_never_reclassified(self):
        end = date(2025, 3, 31)
        for status in (ContractStatus.DRAFT, ContractStatus.RENEWED,
                       ContractStatus.TERMINATED, ContractStatus.CANCELLED):
            assert derive_contract_status(status, end, date(2026, 1, 1)) == status


class TestContractLifecycle:
    """Test contract lifecycle operations"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)
        self.clock = FixedClock(date(2025, 1, 10))
        self.registry = InMemoryPartyRegistry()
        for property_id in ("prop-1", "prop-2"):
            self.registry.register_property(COMPANY, property_id)
        for person_id in ("tenant-1", "tenant-2", "guarantor-1"):
            self.registry.register_person(COMPANY, person_id)

        self.dispatcher = EventDispatcher()
        self.recorder = RecordingHandler()
        self.dispatcher.subscribe_all(self.recorder)
        self.contracts = ContractLifecycle(self.storage, self.audit, self.registry, self.clock,
                                           event_dispatcher=self.dispatcher)

    def active_contract(self, **overrides):
        contract = self.contracts.create_contract(COMPANY, contract_request(**overrides))
        return self.contracts.activate(COMPANY, contract.id)

    # Creation

    def test_create_contract_in_draft(self):
        contract = self.contracts.create_contract(COMPANY, contract_request())

        assert contract.status == ContractStatus.DRAFT
        assert contract.contract_number == "CTR-202501-0001"
        assert contract.monthly_rent == mxn("10000.00")
        assert contract.active
        assert self.recorder.of_type(DomainEvent.CONTRACT_CREATED)[0].entity_id == contract.id

        events = self.audit.get_events_for_entity("contract", contract.id)
        assert events[0].event_type == AuditEventType.CONTRACT_CREATED

    def test_optional_terms_default_to_zero(self):
        contract = self.contracts.create_contract(
            COMPANY, contract_request(deposit_amount=None, daily_penalty=None)
        )
        assert contract.deposit_amount.is_zero()
        assert contract.daily_penalty.is_zero()

    def test_contract_numbers_are_sequential(self):
        first = self.contracts.create_contract(COMPANY, contract_request())
        second = self.contracts.create_contract(COMPANY, contract_request(property_id="prop-2"))
        assert first.contract_number == "CTR-202501-0001"
        assert second.contract_number == "CTR-202501-0002"

    def test_duplicate_contract_number(self):
        self.contracts.create_contract(COMPANY, contract_request(contract_number="L-100"))
        with pytest.raises(ValidationError, match="Contract number L-100 already exists"):
            self.contracts.create_contract(COMPANY, contract_request(contract_number="L-100"))

    def test_unknown_property_or_tenant(self):
        with pytest.raises(NotFoundError, match="Property prop-9 not found"):
            self.contracts.create_contract(COMPANY, contract_request(property_id="prop-9"))
        with pytest.raises(NotFoundError, match="Tenant tenant-9 not found"):
            self.contracts.create_contract(COMPANY, contract_request(tenant_id="tenant-9"))

    def test_inactive_guarantor_rejected(self):
        self.registry.deactivate_person(COMPANY, "guarantor-1")
        with pytest.raises(NotFoundError, match="Guarantor"):
            self.contracts.create_contract(COMPANY, contract_request(guarantor_id="guarantor-1"))

    def test_contract_invisible_to_other_company(self):
        contract = self.contracts.create_contract(COMPANY, contract_request())
        with pytest.raises(NotFoundError):
            self.contracts.get_contract("globex", contract.id)

    # Activation

    def test_activate_draft(self):
        contract = self.active_contract()

        assert contract.status == ContractStatus.ACTIVE
        assert not self.registry.is_property_available(COMPANY, "prop-1")
        assert len(self.recorder.of_type(DomainEvent.CONTRACT_ACTIVATED)) == 1

    def test_activate_twice_rejected(self):
        contract = self.active_contract()
        with pytest.raises(InvalidStateError, match="Cannot activate contract in status active"):
            self.contracts.activate(COMPANY, contract.id)

    def test_one_current_contract_per_property(self):
        self.active_contract()
        second = self.contracts.create_contract(COMPANY, contract_request(tenant_id="tenant-2"))
        with pytest.raises(InvalidStateError, match="already has current contract"):
            self.contracts.activate(COMPANY, second.id)

        assert self.contracts.get_contract(COMPANY, second.id).status == ContractStatus.DRAFT

    # Termination and cancellation

    def test_terminate_active_contract(self):
        contract = self.active_contract()
        terminated = self.contracts.terminate(COMPANY, contract.id, "Tenant moved out")

        assert terminated.status == ContractStatus.TERMINATED
        assert terminated.termination_reason == "Tenant moved out"
        assert "Terminated: Tenant moved out" in terminated.notes
        assert self.registry.is_property_available(COMPANY, "prop-1")

    def test_terminate_requires_reason(self):
        contract = self.active_contract()
        with pytest.raises(ValidationError, match="Termination reason is required"):
            self.contracts.terminate(COMPANY, contract.id, "  ")

    def test_terminate_draft_rejected(self):
        contract = self.contracts.create_contract(COMPANY, contract_request())
        with pytest.raises(InvalidStateError, match="Cannot terminate contract in status draft"):
            self.contracts.terminate(COMPANY, contract.id, "No longer needed")

    def test_terminate_expired_contract(self):
        contract = self.active_contract()
        self.clock.set(date(2026, 2, 1))
        assert self.contracts.get_contract(COMPANY, contract.id).display_status(self.clock.today()) \
            == ContractStatus.EXPIRED

        terminated = self.contracts.terminate(COMPANY, contract.id, "Not renewed")
        assert terminated.status == ContractStatus.TERMINATED

    def test_cancel_draft(self):
        contract = self.contracts.create_contract(COMPANY, contract_request())
        cancelled = self.contracts.cancel(COMPANY, contract.id, "Signed by mistake")

        assert cancelled.status == ContractStatus.CANCELLED
        assert len(self.recorder.of_type(DomainEvent.CONTRACT_CANCELLED)) == 1

    def test_terminal_contracts_cannot_be_cancelled(self):
        contract = self.active_contract()
        self.contracts.terminate(COMPANY, contract.id, "Breach")
        with pytest.raises(InvalidStateError, match="Cannot cancel contract in status terminated"):
            self.contracts.cancel(COMPANY, contract.id, "Too late")

    # Renewal

    def test_renew_links_successor(self):
        source = self.active_contract()
        successor = self.contracts.renew(
            COMPANY, source.id, RenewContractRequest(new_end_date=date(2026, 12, 31))
        )

        assert successor.status == ContractStatus.ACTIVE
        assert successor.previous_contract_id == source.id
        assert successor.start_date == date(2026, 1, 1)
        assert successor.end_date == date(2026, 12, 31)
        assert successor.monthly_rent == source.monthly_rent
        assert successor.property_id == source.property_id

        source = self.contracts.get_contract(COMPANY, source.id)
        assert source.status == ContractStatus.RENEWED
        assert f"Renewed as {successor.contract_number}" in source.notes
        event = self.recorder.of_type(DomainEvent.CONTRACT_RENEWED)[0]
        assert event.data["successor_id"] == successor.id

    def test_renew_with_annual_increase(self):
        source = self.active_contract()
        successor = self.contracts.renew(
            COMPANY, source.id,
            RenewContractRequest(new_end_date=date(2026, 12, 31), apply_annual_increase=True)
        )
        assert successor.monthly_rent == mxn("10500.00")

    def test_renew_with_explicit_rent_and_guarantor(self):
        source = self.active_contract()
        successor = self.contracts.renew(
            COMPANY, source.id,
            RenewContractRequest(new_end_date=date(2026, 12, 31), new_rent=mxn("11000.00"),
                                 new_guarantor_id="guarantor-1")
        )
        assert successor.monthly_rent == mxn("11000.00")
        assert successor.guarantor_id == "guarantor-1"

    def test_renew_requires_future_end_date(self):
        source = self.active_contract()
        with pytest.raises(ValidationError, match="New end date must be in the future"):
            self.contracts.renew(COMPANY, source.id, RenewContractRequest(new_end_date=date(2025, 1, 10)))

    def test_renew_draft_rejected(self):
        contract = self.contracts.create_contract(COMPANY, contract_request())
        with pytest.raises(InvalidStateError, match="Cannot renew contract in status draft"):
            self.contracts.renew(COMPANY, contract.id, RenewContractRequest(new_end_date=date(2026, 12, 31)))

    def test_renewed_contract_cannot_be_renewed_again(self):
        source = self.active_contract()
        self.contracts.renew(COMPANY, source.id, RenewContractRequest(new_end_date=date(2026, 12, 31)))
        with pytest.raises(InvalidStateError):
            self.contracts.renew(COMPANY, source.id, RenewContractRequest(new_end_date=date(2027, 12, 31)))

    # Edits and deletion

    def test_update_contract_terms(self):
        contract = self.active_contract()
        updated = self.contracts.update_contract(
            COMPANY, contract.id,
            UpdateContractRequest(monthly_rent=mxn("10800.00"), grace_days=5)
        )
        assert updated.monthly_rent == mxn("10800.00")
        assert updated.grace_days == 5
        assert updated.version == contract.version + 1

    def test_update_terminal_contract_rejected(self):
        contract = self.active_contract()
        self.contracts.terminate(COMPANY, contract.id, "Breach")
        with pytest.raises(InvalidStateError, match="cannot be modified"):
            self.contracts.update_contract(COMPANY, contract.id, UpdateContractRequest(grace_days=1))

    def test_add_note_in_any_state(self):
        contract = self.active_contract()
        self.contracts.terminate(COMPANY, contract.id, "Breach")
        noted = self.contracts.add_note(COMPANY, contract.id, "Keys returned")
        assert noted.notes.endswith("Keys returned")

    def test_delete_contract_without_history(self):
        contract = self.contracts.create_contract(COMPANY, contract_request(contract_number="L-1"))
        assert self.contracts.delete_contract(COMPANY, contract.id) is True

        with pytest.raises(NotFoundError):
            self.contracts.get_contract(COMPANY, contract.id)
        # The number is free again
        self.contracts.create_contract(COMPANY, contract_request(contract_number="L-1"))

    def test_delete_contract_with_charges_deactivates(self):
        contract = self.contracts.create_contract(COMPANY, contract_request())
        charges = ChargeGenerator(self.storage, self.audit, self.contracts, self.clock)
        charges.create_ad_hoc_charge(COMPANY, contract.id, ChargeType.DEPOSIT, "Deposit",
                                     mxn("10000.00"), date(2025, 1, 10), date(2025, 1, 15))

        assert self.contracts.delete_contract(COMPANY, contract.id) is False
        stored = self.contracts.get_contract(COMPANY, contract.id)
        assert not stored.active
        assert self.contracts.find_contracts(COMPANY) == []
        assert len(self.contracts.find_contracts(COMPANY, include_inactive=True)) == 1

    # Time-driven notifications and queries

    def test_expiry_notifications_announced_once(self):
        contract = self.active_contract(end_date=date(2025, 2, 5))

        announced = self.contracts.refresh_expiry_notifications(COMPANY)
        assert [c.id for c in announced] == [contract.id]
        assert self.contracts.refresh_expiry_notifications(COMPANY) == []
        assert len(self.recorder.of_type(DomainEvent.CONTRACT_EXPIRING_SOON)) == 1

        self.clock.set(date(2025, 2, 5))
        announced = self.contracts.refresh_expiry_notifications(COMPANY)
        assert len(announced) == 1
        assert len(self.recorder.of_type(DomainEvent.CONTRACT_EXPIRED)) == 1

        # Stored status is never overwritten by time
        assert self.contracts.get_contract(COMPANY, contract.id).status == ContractStatus.ACTIVE

    def test_find_contracts_by_display_status(self):
        expiring = self.active_contract(end_date=date(2025, 2, 5))
        self.active_contract(property_id="prop-2", tenant_id="tenant-2")

        found = self.contracts.find_contracts(COMPANY, status=ContractStatus.EXPIRING_SOON)
        assert [c.id for c in found] == [expiring.id]
        assert [c.id for c in self.contracts.get_expiring_contracts(COMPANY)] == [expiring.id]
        assert len(self.contracts.get_expiring_contracts(COMPANY, within_days=400)) == 2

    def test_expired_contract_is_not_current(self):
        contract = self.active_contract(end_date=date(2025, 2, 5))
        assert self.contracts.is_current(contract)

        self.clock.set(date(2025, 2, 5))
        assert not self.contracts.is_current(contract)
        assert self.contracts.get_current_contracts(COMPANY) == []

    def test_contract_statistics(self):
        self.active_contract()
        self.contracts.create_contract(COMPANY, contract_request(property_id="prop-2"))

        stats = self.contracts.contract_statistics(COMPANY)
        assert stats["active"] == 1
        assert stats["draft"] == 1
        assert stats["total"] == 2
