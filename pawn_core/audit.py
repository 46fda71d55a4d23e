"""
Audit Trail Module

Hash-chained append-only audit log with SHA-256 for tamper detection.
Every loan, shift and sweep state change is logged here.
"""

import hashlib
import json
import uuid
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
from decimal import Decimal

from .storage import StorageInterface, StorageRecord


class AuditEventType(Enum):
    """Types of audit events"""
    # Loan events
    LOAN_CREATED = "loan_created"
    PRINCIPAL_ADDED = "principal_added"
    PAYMENT_RECORDED = "payment_recorded"
    DISCOUNT_APPLIED = "discount_applied"
    DUE_DATE_EXTENDED = "due_date_extended"
    LOAN_MARKED_OVERDUE = "loan_marked_overdue"
    LOAN_REACTIVATED = "loan_reactivated"
    LOAN_REDEEMED = "loan_redeemed"
    LOAN_FORFEITED = "loan_forfeited"
    
    # Shift events
    SHIFT_OPENED = "shift_opened"
    SHIFT_CASH_ADDED = "shift_cash_added"
    SHIFT_CLOSED = "shift_closed"
    
    # Scheduler events
    SWEEP_COMPLETED = "sweep_completed"
    SWEEP_LOAN_FAILED = "sweep_loan_failed"
    
    # System events
    MIGRATION_APPLIED = "migration_applied"


def _serialize_value(value):
    if isinstance(value, Decimal):
        return str(value)
    elif isinstance(value, datetime):
        return value.isoformat()
    elif isinstance(value, Enum):
        return value.value
    elif hasattr(value, 'isoformat'):
        return value.isoformat()
    elif isinstance(value, dict):
        return {k: _serialize_value(v) for k, v in value.items()}
    elif isinstance(value, (list, tuple)):
        return [_serialize_value(v) for v in value]
    return value


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    event_type: AuditEventType
    entity_type: str    # loan, shift, scheduler, ...
    entity_id: str
    sequence: int       # position in the chain
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    user_id: Optional[str] = None
    username: Optional[str] = None
    
    def __post_init__(self):
        if self.metadata:
            self.metadata = {k: _serialize_value(v) for k, v in self.metadata.items()}
    
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
            'user_id': self.user_id,
            'username': self.username,
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
    """
    Hash-chained audit trail for tamper detection
    """
    
    def __init__(self, storage: StorageInterface, table_name: str = "audit_events",
                 enabled: bool = True):
        self.storage = storage
        self.table_name = table_name
        self.enabled = enabled
        self._last_hash: Optional[str] = None
        self._last_sequence = 0
        self._last_event_id: Optional[str] = None
        self._load_last_hash()
    
    def _load_last_hash(self) -> None:
        """Load the hash of the most recent audit event"""
        self._last_hash = None
        self._last_sequence = 0
        self._last_event_id = None
        events = self.storage.load_all(self.table_name)
        if events:
            latest = max(events, key=lambda x: x.get('sequence', 0))
            self._last_hash = latest.get('current_hash')
            self._last_sequence = latest.get('sequence', 0)
            self._last_event_id = latest.get('id')
    
    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        username: Optional[str] = None
    ) -> Optional[AuditEvent]:
        """
        Log an audit event with hash chaining
        
        Args:
            event_type: Type of audit event
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            metadata: Additional event-specific data
            user_id: Operator who initiated the action
            username: Operator username snapshot
            
        Returns:
            Created AuditEvent, or None when audit logging is disabled
        """
        if not self.enabled:
            return None
        
        # Shares the storage lock so events written inside a manager's atomic
        # section join its transaction
        with self.storage.atomic():
            # Head of the chain was rolled back with an enclosing transaction
            if self._last_event_id and not self.storage.exists(self.table_name, self._last_event_id):
                self._load_last_hash()
            
            now = datetime.now(timezone.utc)
            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                sequence=self._last_sequence + 1,
                previous_hash=self._last_hash or "",
                current_hash="",
                user_id=user_id,
                username=username,
                metadata=metadata or {}
            )
            event.current_hash = event.calculate_hash()
            
            self.storage.save(self.table_name, event.id, event.to_dict())
            
            self._last_hash = event.current_hash
            self._last_sequence = event.sequence
            self._last_event_id = event.id
            
            return event
    
    def _load_events(self) -> List[AuditEvent]:
        events = [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]
        events.sort(key=lambda x: x.sequence)
        return events
    
    def get_events_for_entity(
        self,
        entity_type: str,
        entity_id: str,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """Get audit events for one entity, oldest first"""
        events_data = self.storage.find(self.table_name, {
            'entity_type': entity_type,
            'entity_id': entity_id
        })
        events = [AuditEvent.from_dict(data) for data in events_data]
        events.sort(key=lambda x: x.sequence)
        
        if limit:
            events = events[-limit:]
        
        return events
    
    def get_events_by_type(
        self,
        event_type: AuditEventType,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None
    ) -> List[AuditEvent]:
        """Get audit events by type within an inclusive time range"""
        events = [e for e in self._load_events() if e.event_type == event_type]
        if start_time:
            events = [e for e in events if e.created_at >= start_time]
        if end_time:
            events = [e for e in events if e.created_at <= end_time]
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
        
        events = self._load_events()
        result['total_events'] = len(events)
        
        previous_hash = ""
        for i, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'position': i,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': i,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            previous_hash = event.current_hash
        
        return result
    
    def count_events(self) -> int:
        return self.storage.count(self.table_name)
    
    def get_latest_hash(self) -> Optional[str]:
        return self._last_hash
