"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Every workflow, task and SLA state change is recorded here.
"""

import hashlib
import json
import logging
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .storage import StorageInterface, StorageRecord, to_primitive


logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    """Categories of audit events"""
    WORKFLOW = "workflow"
    TASK = "task"
    SLA = "sla"
    NOTIFICATION = "notification"
    IDENTITY = "identity"
    SYSTEM = "system"


class AuditAction(Enum):
    """Specific audited actions"""
    # Definition actions
    DEFINITION_CREATED = "workflow_definition_created"
    DEFINITION_VERSIONED = "workflow_definition_versioned"
    DEFINITION_DEACTIVATED = "workflow_definition_deactivated"

    # Instance actions
    WORKFLOW_STARTED = "workflow_started"
    WORKFLOW_TRANSITIONED = "workflow_transitioned"
    WORKFLOW_COMPLETED = "workflow_completed"
    WORKFLOW_CANCELLED = "workflow_cancelled"
    WORKFLOW_SUSPENDED = "workflow_suspended"
    WORKFLOW_RESUMED = "workflow_resumed"

    # Task actions
    TASK_CREATED = "task_created"
    TASK_CLAIMED = "task_claimed"
    TASK_RELEASED = "task_released"
    TASK_COMPLETED = "task_completed"
    TASK_CANCELLED = "task_cancelled"
    TASK_ESCALATED = "task_escalated"

    # SLA actions
    SLA_BREACHED = "sla_breached"
    SLA_WARNING_SENT = "sla_warning_sent"

    # Notification actions
    NOTIFICATION_SENT = "notification_sent"

    # Identity actions
    USER_REGISTERED = "user_registered"
    ROLE_GRANTED = "role_granted"
    ROLE_REVOKED = "role_revoked"

    # System actions
    JOB_FAILED = "job_failed"


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    event_type: AuditEventType
    action: AuditAction
    entity_type: str  # workflow_instance, workflow_task, workflow_definition...
    entity_id: str
    sequence: int  # Position in the chain, starting at 1
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None
    organization_id: Optional[str] = None
    tags: List[str] = field(default_factory=list)

    enum_fields = {'event_type': AuditEventType, 'action': AuditAction}

    def __post_init__(self):
        # Keep metadata JSON serializable so the hash is stable after reload
        self.metadata = to_primitive(self.metadata or {})

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'action': self.action.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'sequence': self.sequence,
            'previous_hash': self.previous_hash,
            'user_id': self.user_id,
            'organization_id': self.organization_id,
            'tags': self.tags,
            'metadata': self.metadata
        }

        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection.

    The chain head (last sequence and hash) is read and advanced inside a
    storage transaction, so events written from concurrent workers still form
    a single unbroken chain.
    """

    HEAD_ID = "head"

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events",
                 enabled: bool = True):
        self.storage = storage
        self.table_name = table_name
        self.head_table = f"{table_name}_head"
        self.enabled = enabled

    def _load_head(self) -> Dict[str, Any]:
        head = self.storage.load(self.head_table, self.HEAD_ID)
        return head or {'id': self.HEAD_ID, 'sequence': 0, 'hash': ""}

    def log_event(
        self,
        event_type: AuditEventType,
        action: AuditAction,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        tags: Optional[List[str]] = None
    ) -> AuditEvent:
        """
        Log an audit event with hash chaining

        Args:
            event_type: Category of the event
            action: Specific action being audited
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            metadata: Additional event-specific data
            user_id: ID of user who initiated the action
            organization_id: Organization scope of the entity
            tags: Free-form labels for filtering

        Returns:
            Created AuditEvent
        """
        with self.storage.atomic():
            head = self._load_head()
            now = datetime.now(timezone.utc)

            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                sequence=head['sequence'] + 1,
                previous_hash=head['hash'],
                current_hash="",  # Will be calculated below
                metadata=metadata or {},
                user_id=user_id,
                organization_id=organization_id,
                tags=list(tags or [])
            )
            event.current_hash = event.calculate_hash()

            self.storage.save(self.table_name, event.id, event.to_dict())
            self.storage.save(self.head_table, self.HEAD_ID, {
                'id': self.HEAD_ID,
                'sequence': event.sequence,
                'hash': event.current_hash
            })

            return event

    def record(
        self,
        event_type: AuditEventType,
        action: AuditAction,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        tags: Optional[List[str]] = None
    ) -> Optional[AuditEvent]:
        """Best-effort variant of log_event: failures are logged, never raised"""
        if not self.enabled:
            return None
        try:
            return self.log_event(event_type, action, entity_type, entity_id,
                                  metadata, user_id, organization_id, tags)
        except Exception:
            logger.exception(f"Failed to record audit event {action.value} for {entity_type}:{entity_id}")
            return None

    def _sorted_events(self, events_data: List[Dict[str, Any]]) -> List[AuditEvent]:
        events = [AuditEvent.from_dict(data) for data in events_data]
        events.sort(key=lambda e: e.sequence)
        return events

    def get_events_for_entity(
        self,
        entity_type: str,
        entity_id: str,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """
        Get all audit events for a specific entity

        Args:
            entity_type: Type of entity
            entity_id: ID of entity
            limit: Maximum number of events to return

        Returns:
            List of AuditEvent objects in chain order
        """
        events = self._sorted_events(self.storage.find(self.table_name, {
            'entity_type': entity_type,
            'entity_id': entity_id
        }))

        if limit:
            events = events[-limit:]  # Most recent N events

        return events

    def get_events_by_action(
        self,
        action: AuditAction,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """Get audit events for one action within a time range"""
        events = self._sorted_events(self.storage.find(self.table_name, {'action': action.value}))

        if start_time:
            events = [e for e in events if e.created_at >= start_time]
        if end_time:
            events = [e for e in events if e.created_at <= end_time]

        if limit:
            events = events[-limit:]

        return events

    def get_all_events(self, limit: Optional[int] = None) -> List[AuditEvent]:
        """Get all audit events in chain order"""
        events = self._sorted_events(self.storage.load_all(self.table_name))
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

        events = self.get_all_events()
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

            if event.previous_hash != previous_hash or event.sequence != position + 1:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            previous_hash = event.current_hash

        return result

    def count_events(self) -> int:
        """Get total number of audit events"""
        return self.storage.count(self.table_name)

    def get_latest_hash(self) -> Optional[str]:
        """Get the hash of the most recent audit event"""
        return self._load_head()['hash'] or None
