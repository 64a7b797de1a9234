"""
Test suite for system composition, configuration and the daily cycle
"""

import pytest
from decimal import Decimal
from datetime import date

from lease_ledger.config import LeaseLedgerConfig
from lease_ledger.currency import Money, Currency
from lease_ledger.storage import InMemoryStorage, SQLiteStorage
from lease_ledger.clock import FixedClock
from lease_ledger.audit import AuditEventType
from lease_ledger.events import DomainEvent, RecordingHandler
from lease_ledger.registry import InMemoryPartyRegistry
from lease_ledger.system import LeaseLedgerSystem
from lease_ledger.contracts import CreateContractRequest
from lease_ledger.exceptions import ConfigurationError


COMPANY = "acme"


def mxn(amount):
    return Money(Decimal(amount), Currency.MXN)


class TestConfiguration:

    def test_defaults(self):
        config = LeaseLedgerConfig()
        assert config.default_currency == "MXN"
        assert config.expiring_soon_days == 30
        assert config.max_conflict_retries == 3

    def test_environment_prefix(self, monkeypatch):
        monkeypatch.setenv("LEASE_DEFAULT_CURRENCY", "usd")
        monkeypatch.setenv("LEASE_EXPIRING_SOON_DAYS", "45")
        config = LeaseLedgerConfig()
        assert config.default_currency == "usd"
        assert config.expiring_soon_days == 45

        system = LeaseLedgerSystem(config=config, storage=InMemoryStorage())
        assert system.default_currency == Currency.USD
        assert system.aging.default_currency == Currency.USD

    def test_unknown_currency(self):
        with pytest.raises(ConfigurationError, match="Unsupported currency code"):
            LeaseLedgerSystem(config=LeaseLedgerConfig(default_currency="XYZ"), storage=InMemoryStorage())

    def test_unknown_database_url(self):
        with pytest.raises(ConfigurationError, match="Unsupported database URL"):
            LeaseLedgerSystem(config=LeaseLedgerConfig(database_url="postgres://localhost/lease"))

    def test_storage_from_url(self, tmp_path):
        system = LeaseLedgerSystem(config=LeaseLedgerConfig(database_url=f"sqlite:///{tmp_path / 'lease.db'}"))
        assert isinstance(system.storage, SQLiteStorage)
        system.close()


class TestDailyCycle:
    """Test the time-driven maintenance run"""

    def setup_method(self):
        self.clock = FixedClock(date(2025, 1, 10))
        registry = InMemoryPartyRegistry()
        registry.register_property(COMPANY, "prop-1")
        registry.register_property(COMPANY, "prop-2")
        registry.register_person(COMPANY, "tenant-1")
        self.system = LeaseLedgerSystem(
            config=LeaseLedgerConfig(database_url="memory://"),
            storage=InMemoryStorage(),
            clock=self.clock,
            registry=registry
        )
        self.recorder = RecordingHandler()
        self.system.event_dispatcher.subscribe_all(self.recorder)

        # One long contract and one ending within the expiring-soon window
        for property_id, end_date in (("prop-1", date(2025, 12, 31)), ("prop-2", date(2025, 2, 15))):
            contract = self.system.contracts.create_contract(COMPANY, CreateContractRequest(
                property_id=property_id,
                tenant_id="tenant-1",
                start_date=date(2025, 1, 1),
                end_date=end_date,
                monthly_rent=mxn("1000.00"),
                payment_day=5,
                grace_days=3,
            ))
            self.system.contracts.activate(COMPANY, contract.id)
        self.system.charges.generate_fixed_charges(COMPANY, 1, 2025)

    def test_daily_cycle(self):
        summary = self.system.run_daily_cycle(date(2025, 1, 20))

        assert summary['as_of'] == '2025-01-20'
        assert summary['contracts_announced'] == 1
        assert summary['charges_overdue'] == 2
        assert summary['collections'] == {
            'opened': 2, 'updated': 0, 'closed': 0, 'deactivated': 0, 'unchanged': 0
        }
        assert len(self.recorder.of_type(DomainEvent.CONTRACT_EXPIRING_SOON)) == 1
        assert len(self.recorder.of_type(DomainEvent.CHARGE_OVERDUE)) == 2

    def test_daily_cycle_is_repeatable(self):
        self.system.run_daily_cycle(date(2025, 1, 20))
        summary = self.system.run_daily_cycle(date(2025, 1, 20))

        assert summary['contracts_announced'] == 0
        assert summary['charges_overdue'] == 0
        assert summary['collections']['unchanged'] == 2
        assert summary['collections']['opened'] == 0

    def test_daily_cycle_is_audited(self):
        self.system.run_daily_cycle(date(2025, 1, 20))

        events = self.system.audit_trail.get_events_by_type(AuditEventType.DAILY_CYCLE_COMPLETED)
        assert len(events) == 1
        assert events[0].entity_id == '2025-01-20'
        assert self.system.audit_trail.verify_integrity()['valid'] is True

    def test_expiry_announced_again_when_expired(self):
        self.system.run_daily_cycle(date(2025, 1, 20))
        summary = self.system.run_daily_cycle(date(2025, 2, 16))

        assert summary['contracts_announced'] == 1
        assert len(self.recorder.of_type(DomainEvent.CONTRACT_EXPIRED)) == 1
