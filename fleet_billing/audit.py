"""
Audit Trail Module

Hash-chained append-only log of ledger state changes. Each event carries the
SHA-256 hash of the previous one, so editing or removing a stored event
breaks the chain and is reported by verify_integrity().
"""

import hashlib
import json
import threading
import uuid
from datetime import datetime, date, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
from decimal import Decimal

from .storage import StorageInterface, StorageRecord


class AuditEventType(Enum):
    """Types of audit events"""
    # Financing events
    FINANCING_CREATED = "financing_created"
    FINANCING_STATUS_CHANGED = "financing_status_changed"

    # Quota events
    QUOTA_GENERATED = "quota_generated"
    QUOTA_OVERDUE = "quota_overdue"
    QUOTA_DELETED = "quota_deleted"
    PAYMENT_APPLIED = "payment_applied"
    PAYMENT_VERIFIED = "payment_verified"
    ADVANCE_RECONCILED = "advance_reconciled"

    # Batch events
    GENERATION_PASS_COMPLETED = "generation_pass_completed"
    OVERDUE_PASS_COMPLETED = "overdue_pass_completed"


def _json_safe(value):
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
    """Immutable audit event chained to its predecessor by hash"""
    event_type: AuditEventType
    entity_type: str  # financing or quota
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    sequence: int = 0

    def __post_init__(self):
        self.metadata = _json_safe(self.metadata or {})

    def calculate_hash(self) -> str:
        """SHA-256 over every field except current_hash"""
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'sequence': self.sequence,
            'metadata': self.metadata
        }
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['event_type'] = self.event_type.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['event_type'] = AuditEventType(data['event_type'])
        return cls(**data)


class AuditTrail:
    """Hash-chained audit trail stored through a storage backend"""

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self._lock = threading.Lock()
        self._last_hash = ""
        self._sequence = 0
        self._load_chain_head()

    def _load_chain_head(self) -> None:
        events = self.storage.load_all(self.table_name)
        if events:
            head = max(events, key=lambda e: e.get('sequence', 0))
            self._last_hash = head.get('current_hash', "")
            self._sequence = head.get('sequence', 0)

    def log_event(self, event_type: AuditEventType, entity_type: str, entity_id: str,
                  metadata: Optional[Dict[str, Any]] = None) -> AuditEvent:
        """
        Append an event to the chain

        Args:
            event_type: Type of audit event
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            metadata: Additional event-specific data

        Returns:
            The stored AuditEvent
        """
        with self._lock:
            now = datetime.now(timezone.utc)
            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=self._last_hash,
                current_hash="",
                metadata=metadata or {},
                sequence=self._sequence + 1
            )
            event.current_hash = event.calculate_hash()
            self.storage.save(self.table_name, event.id, event.to_dict())

            self._last_hash = event.current_hash
            self._sequence = event.sequence
            return event

    def get_all_events(self) -> List[AuditEvent]:
        events = [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]
        events.sort(key=lambda e: e.sequence)
        return events

    def get_events_for_entity(self, entity_type: str, entity_id: str,
                              limit: Optional[int] = None) -> List[AuditEvent]:
        """Events for one entity in chain order, optionally the most recent ``limit``"""
        events = [
            AuditEvent.from_dict(data) for data in self.storage.find(
                self.table_name, {'entity_type': entity_type, 'entity_id': entity_id}
            )
        ]
        events.sort(key=lambda e: e.sequence)
        if limit:
            events = events[-limit:]
        return events

    def get_events_by_type(self, event_type: AuditEventType) -> List[AuditEvent]:
        return [e for e in self.get_all_events() if e.event_type == event_type]

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify every event hash and every chain link

        Returns:
            Dictionary with 'valid', 'total_events', 'hash_errors' and 'chain_breaks'
        """
        result = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        events = self.get_all_events()
        result['total_events'] = len(events)

        previous_hash = ""
        for index, event in enumerate(events, start=1):
            if not event.verify_hash():
                result['hash_errors'].append(event.id)
            if event.previous_hash != previous_hash or event.sequence != index:
                result['chain_breaks'].append(event.id)
            previous_hash = event.current_hash

        result['valid'] = not result['hash_errors'] and not result['chain_breaks']
        return result
