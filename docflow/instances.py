"""
Workflow Instance Module

The instance state machine: one execution of a definition bound to a
document. All changes go through the transition protocol, which completes
the outgoing task, appends to the history, moves the state and opens the
next task inside a single storage transaction. Notifications are sent only
after that transaction commits.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone, timedelta
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional, Union
import logging
import uuid

from .audit import AuditTrail, AuditEventType, AuditAction
from .definitions import DefinitionStore, WorkflowDefinition
from .errors import (
    ConcurrentModificationError, InvalidStateError, NotFoundError, TransitionNotAllowedError
)
from .identity import DocumentRef
from .logging_config import log_action
from .notifications import NotificationDispatcher, NotificationKind, NullDispatcher, TargetRef
from .storage import StorageInterface, StorageRecord, parse_datetime, to_primitive
from .tasks import TaskManager, WorkflowTask


logger = logging.getLogger(__name__)


CANCELLED_MARKER = "cancelled"  # to_state of the history entry written on cancel


class InstanceStatus(Enum):
    """Status of a workflow instance"""
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    SUSPENDED = "suspended"


@dataclass(frozen=True)
class HistoryEntry:
    """One recorded move of an instance"""
    from_state: str
    to_state: str
    action: Optional[str]
    actor_id: Optional[str]
    actor_name: str
    at: datetime
    comment: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'HistoryEntry':
        return cls(
            from_state=data['from_state'],
            to_state=data['to_state'],
            action=data.get('action'),
            actor_id=data.get('actor_id'),
            actor_name=data.get('actor_name', ""),
            at=parse_datetime(data['at']),
            comment=data.get('comment')
        )


class StateHistory:
    """
    Append-only log of an instance's moves.

    Entries can be appended and iterated, never edited or removed. Timestamps
    never decrease: an entry stamped earlier than its predecessor is recorded
    at the predecessor's time.
    """

    def __init__(self, entries: Iterable[HistoryEntry] = ()):
        self._entries: List[HistoryEntry] = list(entries)

    def append(self, entry: HistoryEntry) -> HistoryEntry:
        last = self.last
        if last is not None and entry.at < last.at:
            entry = HistoryEntry(entry.from_state, entry.to_state, entry.action, entry.actor_id,
                                 entry.actor_name, last.at, entry.comment)
        self._entries.append(entry)
        return entry

    def __iter__(self) -> Iterator[HistoryEntry]:
        return iter(tuple(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def last(self) -> Optional[HistoryEntry]:
        return self._entries[-1] if self._entries else None

    def replay(self, initial_state: str) -> str:
        """Reconstruct the current state by applying every recorded move"""
        state = initial_state
        for entry in self._entries:
            if entry.to_state == CANCELLED_MARKER and entry.action == "cancel":
                continue
            state = entry.to_state
        return state

    def to_list(self) -> List[Dict[str, Any]]:
        return [to_primitive(asdict(entry)) for entry in self._entries]


@dataclass
class WorkflowInstance(StorageRecord):
    """Running workflow instance"""
    definition_id: str
    definition_name: str
    definition_version: int
    current_state: str
    initiated_by: str
    started_at: datetime
    status: InstanceStatus = InstanceStatus.ACTIVE
    organization_id: Optional[str] = None
    document_id: Optional[str] = None
    document_title: str = ""
    initiated_by_name: str = ""
    context_data: Dict[str, Any] = field(default_factory=dict)
    history: StateHistory = field(default_factory=StateHistory)
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None
    suspended_at: Optional[datetime] = None
    version: int = 0

    datetime_fields = ('started_at', 'completed_at', 'cancelled_at', 'suspended_at')
    enum_fields = {'status': InstanceStatus}

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['history'] = self.history.to_list()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowInstance':
        data = dict(data)
        data['history'] = StateHistory(HistoryEntry.from_dict(e) for e in data.get('history', []))
        return super().from_dict(data)

    @property
    def is_active(self) -> bool:
        return self.status == InstanceStatus.ACTIVE

    def stakeholder_ids(self) -> List[str]:
        """Initiator plus every actor in the history, deduplicated in order"""
        ids = [self.initiated_by] + [entry.actor_id for entry in self.history]
        seen = []
        for user_id in ids:
            if user_id and user_id not in seen:
                seen.append(user_id)
        return seen

    def duration(self, now: Optional[datetime] = None) -> timedelta:
        end_time = self.completed_at or self.cancelled_at or now or datetime.now(timezone.utc)
        return end_time - self.started_at

    def duration_in_state(self, state: str, now: Optional[datetime] = None) -> timedelta:
        """
        Total time spent in state, pairing each entry with the following exit.

        The start of the workflow counts as entering the initial state (taken
        from the first history entry, or the current state when there is none);
        suspend/resume self-loops are neither entries nor exits. An entry with
        no matching exit runs until now.
        """
        entries = list(self.history)
        occupied = entries[0].from_state if entries else self.current_state
        entered_at: Optional[datetime] = self.started_at if occupied == state else None
        total = timedelta(0)

        for entry in entries:
            if entry.from_state == entry.to_state and entry.action in ("suspend", "resume"):
                continue
            if entered_at is not None and entry.from_state == state:
                total += entry.at - entered_at
                entered_at = None
            if entry.to_state == state:
                entered_at = entry.at

        if entered_at is not None:
            total += (now or datetime.now(timezone.utc)) - entered_at
        return total


class WorkflowEngine:
    """Drives workflow instances through their definitions"""

    def __init__(self, storage: StorageInterface, definitions: DefinitionStore,
                 task_manager: TaskManager, audit_manager: Optional[AuditTrail] = None,
                 notifier: Optional[NotificationDispatcher] = None):
        self.storage = storage
        self.definitions = definitions
        self.tasks = task_manager
        self.audit = audit_manager or AuditTrail(storage)
        self.notifier = notifier or NullDispatcher()
        self.table = "workflow_instances"

    # Queries

    def get_instance(self, instance_id: str) -> Optional[WorkflowInstance]:
        data = self.storage.load(self.table, instance_id)
        if not data:
            return None
        return WorkflowInstance.from_dict(data)

    def require_instance(self, instance_id: str) -> WorkflowInstance:
        instance = self.get_instance(instance_id)
        if not instance:
            raise NotFoundError('workflow_instance', instance_id)
        return instance

    def list_instances(self, organization_id: Optional[str] = None,
                       status: Optional[InstanceStatus] = None,
                       document_id: Optional[str] = None,
                       definition_name: Optional[str] = None) -> List[WorkflowInstance]:
        """List instances, most recently started first"""
        filters: Dict[str, Any] = {}
        if organization_id:
            filters['organization_id'] = organization_id
        if status:
            filters['status'] = status.value
        if document_id:
            filters['document_id'] = document_id
        if definition_name:
            filters['definition_name'] = definition_name

        instances = [WorkflowInstance.from_dict(d) for d in self.storage.find(self.table, filters)]
        return sorted(instances, key=lambda i: i.started_at, reverse=True)

    def current_task(self, instance_id: str) -> Optional[WorkflowTask]:
        """Open task for the instance's current state"""
        instance = self.require_instance(instance_id)
        return self.tasks.open_task_for(instance.id, instance.current_state)

    def tasks_for(self, instance_id: str) -> List[WorkflowTask]:
        return self.tasks.tasks_for_instance(instance_id)

    def available_actions(self, instance_id: str) -> List[Dict[str, Any]]:
        """Actions offered from the current state; none unless active"""
        instance = self.require_instance(instance_id)
        if not instance.is_active:
            return []

        definition = self.definitions.require_definition(instance.definition_id)
        return [
            {
                'action': t.action,
                'to_state': t.to_state,
                'label': (t.action or t.to_state).replace("_", " ").title()
            }
            for t in definition.transitions_from(instance.current_state)
        ]

    def duration_in_state(self, instance_id: str, state: str,
                          now: Optional[datetime] = None) -> timedelta:
        return self.require_instance(instance_id).duration_in_state(state, now)

    # Lifecycle

    def create_instance(self, definition: Union[WorkflowDefinition, str],
                        document: Optional[DocumentRef], initiator,
                        context_data: Optional[Dict[str, Any]] = None,
                        now: Optional[datetime] = None,
                        organization_id: Optional[str] = None) -> WorkflowInstance:
        """
        Start a new instance in the definition's initial state.

        Raises:
            InvalidStateError: the definition has been deactivated
        """
        if isinstance(definition, str):
            definition = self.definitions.require_definition(definition)
        if not definition.is_active:
            raise InvalidStateError(
                f"Workflow definition {definition.name} v{definition.version} is not active"
            )

        now = now or datetime.now(timezone.utc)
        organization_id = (definition.organization_id
                           or organization_id
                           or (document.organization_id if document else None)
                           or getattr(initiator, 'organization_id', None))

        instance = WorkflowInstance(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            definition_id=definition.id,
            definition_name=definition.name,
            definition_version=definition.version,
            current_state=definition.initial_state,
            initiated_by=initiator.id,
            initiated_by_name=getattr(initiator, 'full_name', ""),
            started_at=now,
            organization_id=organization_id,
            document_id=document.id if document else None,
            document_title=document.title if document else "",
            context_data=dict(context_data or {})
        )

        task = None
        with self.storage.atomic():
            if definition.is_final(instance.current_state):
                instance.status = InstanceStatus.COMPLETED
                instance.completed_at = now
            self.storage.save(self.table, instance.id, instance.to_dict())

            if instance.is_active:
                task = self.tasks.create_task(instance.id, organization_id, definition,
                                              instance.current_state, now)

            self._audit(AuditAction.WORKFLOW_STARTED, instance, initiator.id, {
                'workflow_name': definition.name,
                'initial_state': instance.current_state,
                'document_id': instance.document_id
            }, tags=["workflow", "started"])

            if task:
                self._notify_on_commit(NotificationKind.TASK_CREATED, task, instance)

        logger.info(f"Started workflow {definition.name} instance {instance.id}")
        return instance

    def transition_to(self, instance_id: str, to_state: str, actor,
                      action: Optional[str] = None, comment: Optional[str] = None,
                      now: Optional[datetime] = None) -> WorkflowInstance:
        """
        Move an active instance along an allowed edge.

        Completes the open task of the current state, records the move,
        then either completes the instance (final state) or opens the
        task for the new state.

        Raises:
            InvalidStateError: instance is not active
            TransitionNotAllowedError: no edge from the current state to to_state
        """
        now = now or datetime.now(timezone.utc)

        with self.storage.atomic():
            instance = self.require_instance(instance_id)
            if not instance.is_active:
                raise InvalidStateError("Workflow is not active", instance.status.value)

            definition = self.definitions.require_definition(instance.definition_id)
            from_state = instance.current_state
            if not definition.transition_allowed(from_state, to_state):
                raise TransitionNotAllowedError(from_state, to_state)

            outgoing = self.tasks.open_task_for(instance.id, from_state)
            if outgoing:
                self.tasks.complete(outgoing.id, actor, comment, now)

            entry = instance.history.append(HistoryEntry(
                from_state=from_state,
                to_state=to_state,
                action=action or definition.action_for(from_state, to_state),
                actor_id=actor.id,
                actor_name=getattr(actor, 'full_name', ""),
                at=now,
                comment=comment
            ))
            instance.current_state = to_state

            incoming = None
            if definition.is_final(to_state):
                instance.status = InstanceStatus.COMPLETED
                instance.completed_at = now
            else:
                incoming = self.tasks.create_task(instance.id, instance.organization_id,
                                                  definition, to_state, now)

            self._save(instance)

            self._audit(AuditAction.WORKFLOW_TRANSITIONED, instance, actor.id, {
                'from_state': from_state,
                'to_state': to_state,
                'action': entry.action,
                'comment': comment
            }, tags=["workflow", "transition"])
            if instance.status == InstanceStatus.COMPLETED:
                self._audit(AuditAction.WORKFLOW_COMPLETED, instance, actor.id,
                            {'final_state': to_state}, tags=["workflow", "completed"])

            payload = self._instance_payload(instance)
            payload.update({
                'from_state': from_state,
                'to_state': to_state,
                'action': entry.action,
                'actor_id': actor.id,
                'actor_name': entry.actor_name,
                'comment': comment
            })
            self.storage.on_commit(lambda: self.notifier.notify(
                NotificationKind.TRANSITION, TargetRef('workflow_instance', instance.id), payload
            ))
            if incoming:
                self._notify_on_commit(NotificationKind.TASK_CREATED, incoming, instance)

        log_action(logger, "info", f"Workflow {instance.id} moved {from_state} -> {to_state}",
                   user_id=actor.id, action=entry.action, resource=f"workflow_instance:{instance.id}")
        return instance

    def perform_action(self, instance_id: str, action: str, actor,
                       comment: Optional[str] = None,
                       now: Optional[datetime] = None) -> WorkflowInstance:
        """Transition along the edge named action from the current state"""
        with self.storage.atomic():
            instance = self.require_instance(instance_id)
            if not instance.is_active:
                raise InvalidStateError("Workflow is not active", instance.status.value)

            definition = self.definitions.require_definition(instance.definition_id)
            to_state = definition.target_for_action(instance.current_state, action)
            if to_state is None:
                raise TransitionNotAllowedError(instance.current_state, action=action)

            return self.transition_to(instance_id, to_state, actor, action, comment, now)

    def cancel(self, instance_id: str, actor, reason: Optional[str] = None,
               now: Optional[datetime] = None) -> WorkflowInstance:
        """Cancel an active instance and every task that is not yet finished"""
        now = now or datetime.now(timezone.utc)

        with self.storage.atomic():
            instance = self.require_instance(instance_id)
            if not instance.is_active:
                raise InvalidStateError("Workflow is not active", instance.status.value)

            instance.status = InstanceStatus.CANCELLED
            instance.cancelled_at = now
            instance.cancelled_by = actor.id
            instance.cancellation_reason = reason
            instance.history.append(HistoryEntry(
                from_state=instance.current_state,
                to_state=CANCELLED_MARKER,
                action="cancel",
                actor_id=actor.id,
                actor_name=getattr(actor, 'full_name', ""),
                at=now,
                comment=reason
            ))

            for task in self.tasks.tasks_for_instance(instance.id):
                if task.is_open:
                    self.tasks.cancel(task.id, actor, now)

            self._save(instance)
            self._audit(AuditAction.WORKFLOW_CANCELLED, instance, actor.id,
                        {'reason': reason, 'state': instance.current_state},
                        tags=["workflow", "cancelled"])

            payload = self._instance_payload(instance)
            payload.update({'reason': reason, 'actor_id': actor.id,
                            'actor_name': getattr(actor, 'full_name', "")})
            self.storage.on_commit(lambda: self.notifier.notify(
                NotificationKind.CANCELLED, TargetRef('workflow_instance', instance.id), payload
            ))

        logger.info(f"Workflow {instance.id} cancelled by {actor.id}")
        return instance

    def suspend(self, instance_id: str, actor, reason: Optional[str] = None,
                now: Optional[datetime] = None) -> WorkflowInstance:
        """Pause an active instance; its state and tasks are left untouched"""
        return self._set_suspended(instance_id, actor, True, reason, now)

    def resume(self, instance_id: str, actor, now: Optional[datetime] = None) -> WorkflowInstance:
        """Reactivate a suspended instance"""
        return self._set_suspended(instance_id, actor, False, None, now)

    def _set_suspended(self, instance_id: str, actor, suspend: bool,
                       reason: Optional[str], now: Optional[datetime]) -> WorkflowInstance:
        now = now or datetime.now(timezone.utc)

        with self.storage.atomic():
            instance = self.require_instance(instance_id)
            if suspend and instance.status != InstanceStatus.ACTIVE:
                raise InvalidStateError("Workflow is not active", instance.status.value)
            if not suspend and instance.status != InstanceStatus.SUSPENDED:
                raise InvalidStateError("Workflow is not suspended", instance.status.value)

            instance.status = InstanceStatus.SUSPENDED if suspend else InstanceStatus.ACTIVE
            instance.suspended_at = now if suspend else None
            instance.history.append(HistoryEntry(
                from_state=instance.current_state,
                to_state=instance.current_state,
                action="suspend" if suspend else "resume",
                actor_id=actor.id,
                actor_name=getattr(actor, 'full_name', ""),
                at=now,
                comment=reason
            ))

            self._save(instance)
            self._audit(AuditAction.WORKFLOW_SUSPENDED if suspend else AuditAction.WORKFLOW_RESUMED,
                        instance, actor.id, {'reason': reason, 'state': instance.current_state})

        return instance

    # Helpers

    def _save(self, instance: WorkflowInstance) -> None:
        """Version compare-and-swap save"""
        expected = {'version': instance.version}
        instance.version += 1
        instance.updated_at = datetime.now(timezone.utc)
        if not self.storage.update_if(self.table, instance.id, expected, instance.to_dict()):
            instance.version -= 1
            raise ConcurrentModificationError('workflow_instance', instance.id)

    def _instance_payload(self, instance: WorkflowInstance) -> Dict[str, Any]:
        return {
            'workflow_instance_id': instance.id,
            'workflow_name': instance.definition_name,
            'document_id': instance.document_id,
            'document_title': instance.document_title,
            'organization_id': instance.organization_id,
            'current_state': instance.current_state,
            'status': instance.status.value,
            'initiated_by': instance.initiated_by,
            'stakeholder_ids': instance.stakeholder_ids()
        }

    def _notify_on_commit(self, kind: NotificationKind, task: WorkflowTask,
                          instance: WorkflowInstance) -> None:
        payload = dict(task.snapshot(),
                       organization_id=instance.organization_id,
                       workflow_name=instance.definition_name,
                       document_title=instance.document_title)
        self.storage.on_commit(lambda: self.notifier.notify(
            kind, TargetRef('workflow_task', task.id), payload
        ))

    def _audit(self, action: AuditAction, instance: WorkflowInstance, user_id: Optional[str],
               metadata: Dict[str, Any], tags: Optional[List[str]] = None) -> None:
        self.audit.record(AuditEventType.WORKFLOW, action, 'workflow_instance', instance.id,
                          metadata, user_id, instance.organization_id, tags)
