"""
Audit Trail Module

Append-only log of every state change to a loan, payment, invoice, customer
or the lender profile. Each event carries the SHA-256 hash of its
predecessor, so editing, dropping or reordering stored events breaks the
chain and shows up in ``verify_integrity``.
"""

import hashlib
import json
import threading
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Any
from enum import Enum
import uuid

from .storage import StorageInterface, StorageRecord, to_storage_value


class AuditEventType(Enum):
    """Types of audit events"""
    # Loan events
    LOAN_CREATED = "loan_created"
    LOAN_UPDATED = "loan_updated"
    LOAN_APPROVED = "loan_approved"
    LOAN_CANCELLED = "loan_cancelled"
    LOAN_STATUS_CHANGED = "loan_status_changed"
    LOAN_FORECLOSED = "loan_foreclosed"
    LOAN_COMPLETED = "loan_completed"
    LOAN_DELETED = "loan_deleted"
    LOAN_RECONCILED = "loan_reconciled"

    # Payment events
    PAYMENT_RECORDED = "payment_recorded"
    PAYMENT_UPDATED = "payment_updated"
    PAYMENT_REVERSED = "payment_reversed"

    # Invoice events
    INVOICE_CREATED = "invoice_created"
    INVOICE_CANCELLED = "invoice_cancelled"
    INVOICE_DELETED = "invoice_deleted"
    INVOICE_RUN_COMPLETED = "invoice_run_completed"

    # Party events
    CUSTOMER_CREATED = "customer_created"
    CUSTOMER_UPDATED = "customer_updated"
    CUSTOMER_DELETED = "customer_deleted"
    LENDER_UPDATED = "lender_updated"

    # Document events
    DOCUMENT_GENERATED = "document_generated"


@dataclass
class AuditEvent(StorageRecord):
    """One link in the audit chain"""
    event_type: AuditEventType
    entity_type: str  # loan, payment, invoice, customer, lender
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    sequence: int = 0  # Position in the chain, starting at 1

    def __post_init__(self):
        # Amounts and dates in metadata are hashed in their stored form
        if self.metadata:
            self.metadata = to_storage_value(self.metadata)

    def calculate_hash(self) -> str:
        """SHA-256 over every field except ``current_hash`` and ``updated_at``"""
        payload = json.dumps({
            'id': self.id,
            'sequence': self.sequence,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'metadata': self.metadata
        }, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(payload.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        if isinstance(data['event_type'], str):
            data['event_type'] = AuditEventType(data['event_type'])
        return super().from_dict(data)


class AuditTrail:
    """
    Hash-chained audit trail

    When ``enabled`` is False, ``log_event`` still builds and returns the
    event but nothing is persisted.
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events",
                 enabled: bool = True):
        self.storage = storage
        self.table_name = table_name
        self.enabled = enabled
        self._lock = threading.Lock()

    def _chain_head(self):
        """(hash, sequence) of the newest stored event, ("", 0) for an empty trail"""
        newest = None
        for record in self.storage.load_all(self.table_name):
            if newest is None or record.get('sequence', 0) > newest.get('sequence', 0):
                newest = record
        if newest is None:
            return "", 0
        return newest.get('current_hash', ""), newest.get('sequence', 0)

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> AuditEvent:
        """
        Append an event to the chain

        Args:
            event_type: What happened
            entity_type: Kind of record it happened to (loan, payment, ...)
            entity_id: ID of that record
            metadata: Event-specific details; Decimals and dates are stored as strings

        Returns:
            The new AuditEvent
        """
        with self._lock:
            # The head is read from storage every time: an enclosing atomic()
            # that rolled back may have discarded the event written last
            previous_hash, sequence = self._chain_head() if self.enabled else ("", 0)
            now = datetime.now(timezone.utc)

            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=previous_hash,
                current_hash="",
                metadata=metadata or {},
                sequence=sequence + 1
            )
            event.current_hash = event.calculate_hash()

            if self.enabled:
                self.storage.save(self.table_name, event.id, event.to_dict())
            return event

    def _select(self, predicate: Optional[Callable[[AuditEvent], bool]] = None,
                limit: Optional[int] = None) -> List[AuditEvent]:
        """Events in chain order, optionally filtered; ``limit`` keeps the newest N"""
        records = sorted(self.storage.load_all(self.table_name), key=lambda r: r.get('sequence', 0))
        events = [AuditEvent.from_dict(record) for record in records]
        if predicate is not None:
            events = [event for event in events if predicate(event)]
        return events[-limit:] if limit else events

    def get_events_for_entity(
        self,
        entity_type: str,
        entity_id: str,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """History of one record, oldest first"""
        return self._select(lambda e: e.entity_type == entity_type and e.entity_id == entity_id, limit)

    def get_events_by_type(
        self,
        event_type: AuditEventType,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """Events of one type within an inclusive time range"""
        def wanted(event: AuditEvent) -> bool:
            if event.event_type != event_type:
                return False
            if start_time and event.created_at < start_time:
                return False
            return not (end_time and event.created_at > end_time)

        return self._select(wanted, limit)

    def get_all_events(self, limit: Optional[int] = None) -> List[AuditEvent]:
        return self._select(limit=limit)

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Walk the chain from the first event

        Returns:
            ``valid``, ``total_events``, ``hash_errors`` (events whose content
            no longer matches their hash) and ``chain_breaks`` (events whose
            ``previous_hash`` does not point at their predecessor)
        """
        events = self._select()
        hash_errors = []
        chain_breaks = []

        expected_previous = ""
        for position, event in enumerate(events):
            recomputed = event.calculate_hash()
            if recomputed != event.current_hash:
                hash_errors.append({
                    'event_id': event.id,
                    'position': position,
                    'expected_hash': recomputed,
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != expected_previous:
                chain_breaks.append({
                    'event_id': event.id,
                    'position': position,
                    'expected_previous_hash': expected_previous,
                    'actual_previous_hash': event.previous_hash
                })
            expected_previous = event.current_hash

        return {
            'valid': not hash_errors and not chain_breaks,
            'total_events': len(events),
            'hash_errors': hash_errors,
            'chain_breaks': chain_breaks
        }

    def count_events(self) -> int:
        return self.storage.count(self.table_name)
