"""
Lease Ledger System

Composition root: builds storage, audit trail, event dispatcher, clock and
the five ledger components from configuration, and runs the daily cycle.
"""

import threading
from datetime import date
from typing import Any, Dict, Optional

from .config import LeaseLedgerConfig, get_config
from .currency import currency_from_code
from .storage import StorageInterface, RecordLockManager, create_storage
from .audit import AuditTrail, AuditEventType
from .events import EventDispatcher
from .clock import Clock, SystemClock
from .registry import PartyRegistry, InMemoryPartyRegistry
from .contracts import ContractLifecycle
from .charges import ChargeGenerator
from .payments import PaymentAllocator
from .aging import AgingClassifier
from .collections_ledger import CollectionsLedger
from .reporting import ReportingEngine
from .exceptions import ConfigurationError
from .logging_config import get_logger, log_action


logger = get_logger("lease_ledger.system")


class LeaseLedgerSystem:
    """Lease & ledger engine with all components initialized"""

    def __init__(
        self,
        config: Optional[LeaseLedgerConfig] = None,
        storage: Optional[StorageInterface] = None,
        clock: Optional[Clock] = None,
        registry: Optional[PartyRegistry] = None
    ):
        self.config = config or get_config()

        try:
            self.default_currency = currency_from_code(self.config.default_currency)
        except ValueError as e:
            raise ConfigurationError(str(e), {"default_currency": self.config.default_currency}) from e

        if storage is None:
            try:
                storage = create_storage(self.config.database_url)
            except ValueError as e:
                raise ConfigurationError(str(e), {"database_url": self.config.database_url}) from e

        self.storage = storage
        self.clock = clock or SystemClock()
        self.registry = registry or InMemoryPartyRegistry()
        self.event_dispatcher = EventDispatcher()
        self.lock_manager = RecordLockManager()
        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)

        self.contracts = ContractLifecycle(
            self.storage, self.audit_trail, self.registry, self.clock,
            event_dispatcher=self.event_dispatcher,
            expiring_soon_days=self.config.expiring_soon_days
        )
        self.charges = ChargeGenerator(
            self.storage, self.audit_trail, self.contracts, self.clock,
            event_dispatcher=self.event_dispatcher,
            lock_manager=self.lock_manager
        )
        self.payments = PaymentAllocator(
            self.storage, self.audit_trail, self.contracts, self.charges,
            self.registry, self.clock,
            event_dispatcher=self.event_dispatcher,
            lock_manager=self.lock_manager
        )
        self.aging = AgingClassifier(self.charges, self.clock, default_currency=self.default_currency)
        self.collections = CollectionsLedger(
            self.storage, self.audit_trail, self.contracts, self.charges,
            self.aging, self.clock,
            event_dispatcher=self.event_dispatcher,
            lock_manager=self.lock_manager
        )
        self.reporting = ReportingEngine(
            self.contracts, self.charges, self.payments,
            self.aging, self.collections, self.clock
        )

    def run_daily_cycle(self, as_of: Optional[date] = None) -> Dict[str, Any]:
        """
        Time-driven maintenance for every company, in order: expiry
        notifications, overdue charge refresh, collections sync
        """
        as_of = as_of or self.clock.today()

        announced = self.contracts.refresh_expiry_notifications(as_of=as_of)
        overdue = self.charges.refresh_overdue_charges(as_of=as_of)
        synced = self.collections.sync_from_aging(as_of=as_of)

        summary = {
            'as_of': as_of.isoformat(),
            'contracts_announced': len(announced),
            'charges_overdue': len(overdue),
            'collections': synced.to_dict(),
        }
        self.audit_trail.log_event(
            event_type=AuditEventType.DAILY_CYCLE_COMPLETED,
            entity_type="system",
            entity_id=as_of.isoformat(),
            metadata=summary
        )
        log_action(logger, "info", f"Daily cycle completed for {as_of.isoformat()}",
                   action="run_daily_cycle", extra=summary)
        return summary

    def close(self) -> None:
        self.event_dispatcher.clear()
        self.storage.close()


_ledger_system: Optional[LeaseLedgerSystem] = None
_ledger_system_lock = threading.Lock()


def get_ledger_system() -> LeaseLedgerSystem:
    """Global system instance, built from configuration on first use"""
    global _ledger_system
    # Request handlers run in a threadpool
    with _ledger_system_lock:
        if _ledger_system is None:
            _ledger_system = LeaseLedgerSystem()
        return _ledger_system
