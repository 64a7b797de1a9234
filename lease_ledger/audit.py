"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Every state change of a contract, charge, payment or delinquency record is
logged here, inside the same storage transaction as the change itself.
"""

import hashlib
import json
import threading
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
from decimal import Decimal
import uuid

from .storage import StorageInterface, StorageRecord


class AuditEventType(Enum):
    """Types of audit events"""
    # Contract events
    CONTRACT_CREATED = "contract_created"
    CONTRACT_UPDATED = "contract_updated"
    CONTRACT_ACTIVATED = "contract_activated"
    CONTRACT_RENEWED = "contract_renewed"
    CONTRACT_TERMINATED = "contract_terminated"
    CONTRACT_CANCELLED = "contract_cancelled"
    CONTRACT_DELETED = "contract_deleted"
    CONTRACT_DEACTIVATED = "contract_deactivated"
    CONTRACT_NOTE_ADDED = "contract_note_added"

    # Charge events
    CHARGE_CREATED = "charge_created"
    CHARGE_CANCELLED = "charge_cancelled"
    CHARGE_OVERDUE = "charge_overdue"

    # Payment events
    PAYMENT_CREATED = "payment_created"
    PAYMENT_APPLIED = "payment_applied"
    PAYMENT_CANCELLED = "payment_cancelled"
    PAYMENT_REJECTED = "payment_rejected"

    # Collections events
    DELINQUENCY_OPENED = "delinquency_opened"
    DELINQUENCY_UPDATED = "delinquency_updated"
    DELINQUENCY_CLOSED = "delinquency_closed"
    PENALTY_ACCRUED = "penalty_accrued"
    FOLLOW_UP_REGISTERED = "follow_up_registered"
    COLLECTION_STATE_CHANGED = "collection_state_changed"
    DELINQUENCY_DEACTIVATED = "delinquency_deactivated"
    PROJECTION_SAVED = "projection_saved"
    PROJECTION_COLLECTED_UPDATED = "projection_collected_updated"

    # System events
    DAILY_CYCLE_COMPLETED = "daily_cycle_completed"
    AUDIT_INTEGRITY_CHECK = "audit_integrity_check"


def _json_safe(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    elif isinstance(value, (datetime, date)):
        return value.isoformat()
    elif isinstance(value, Enum):
        return value.value
    elif isinstance(value, dict):
        return {k: _json_safe(v) for k, v in value.items()}
    elif isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    return value


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    event_type: AuditEventType
    entity_type: str  # contract, charge, payment, delinquency_record
    entity_id: str
    sequence: int  # position in the chain
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    company_id: Optional[str] = None
    user_id: Optional[str] = None

    def __post_init__(self):
        if self.metadata:
            self.metadata = _json_safe(self.metadata)

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event.
        Covers every field except current_hash.
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'sequence': self.sequence,
            'previous_hash': self.previous_hash,
            'company_id': self.company_id,
            'user_id': self.user_id,
            'metadata': self.metadata
        }

        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['event_type'] = self.event_type.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        if isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        if isinstance(data['event_type'], str):
            data['event_type'] = AuditEventType(data['event_type'])
        return cls(**data)


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection

    Events logged inside a storage transaction are held back and chained
    when that transaction commits, so an event rolled back with its
    transaction never becomes a link in the chain. The chain head is a
    single stored record updated in the same transaction as the events.
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events",
                 enabled: bool = True):
        self.storage = storage
        self.table_name = table_name
        self.head_table = f"{table_name}_head"
        self.enabled = enabled
        self._lock = threading.Lock()
        self._pending = threading.local()

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        company_id: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> Optional[AuditEvent]:
        """
        Log an audit event with hash chaining

        Args:
            event_type: Type of audit event
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            metadata: Additional event-specific data
            company_id: Owning company of the entity
            user_id: ID of user who initiated the action

        Returns:
            Created AuditEvent, or None when audit logging is disabled.
            Inside a transaction its sequence and hashes are filled in
            when the transaction commits.
        """
        if not self.enabled:
            return None

        now = datetime.now(timezone.utc)
        event = AuditEvent(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            sequence=0,
            previous_hash="",
            current_hash="",
            metadata=metadata or {},
            company_id=company_id,
            user_id=user_id
        )

        with self.storage.atomic():
            pending = getattr(self._pending, 'events', None)
            if pending is None:
                pending = self._pending.events = []
                self.storage.before_commit(self._chain_pending)
                self.storage.on_rollback(self._discard_pending)
            pending.append(event)
        return event

    def _chain_pending(self) -> None:
        events = getattr(self._pending, 'events', None) or []
        self._pending.events = None
        if not events:
            return

        with self._lock:
            head = self.storage.load(self.head_table, "head")
            sequence = head['sequence'] if head else 0
            previous_hash = head['current_hash'] if head else ""

            for event in events:
                sequence += 1
                event.sequence = sequence
                event.previous_hash = previous_hash
                event.current_hash = event.calculate_hash()
                self.storage.insert(self.table_name, event.id, event.to_dict())
                previous_hash = event.current_hash

            self.storage.save(self.head_table, "head", {
                'id': "head",
                'sequence': sequence,
                'current_hash': previous_hash,
            })

    def _discard_pending(self) -> None:
        self._pending.events = None

    def _all_events(self) -> List[AuditEvent]:
        events = [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]
        events.sort(key=lambda e: e.sequence)
        return events

    def get_events_for_entity(
        self,
        entity_type: str,
        entity_id: str,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """
        Get all audit events for a specific entity, oldest first
        """
        events_data = self.storage.find(self.table_name, {
            'entity_type': entity_type,
            'entity_id': entity_id
        })
        events = [AuditEvent.from_dict(data) for data in events_data]
        events.sort(key=lambda e: e.sequence)

        if limit:
            events = events[-limit:]

        return events

    def get_events_by_type(
        self,
        event_type: AuditEventType,
        company_id: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """Get audit events of one type, optionally for one company"""
        events = [e for e in self._all_events() if e.event_type == event_type]
        if company_id is not None:
            events = [e for e in events if e.company_id == company_id]

        if limit:
            events = events[-limit:]

        return events

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire audit chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        events = self._all_events()
        result['total_events'] = len(events)

        previous_hash = ""
        for position, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            previous_hash = event.current_hash

        return result
