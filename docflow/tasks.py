"""
Task Manager Module

Lifecycle of the unit of work created for each state an instance occupies:
claim, release, completion, cancellation and SLA escalation. Every update is
a version compare-and-swap so concurrent claims, completions and scheduled
SLA checks never overwrite each other.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional
import logging
import uuid

from .audit import AuditTrail, AuditEventType, AuditAction
from .definitions import WorkflowDefinition
from .errors import (
    ConcurrentModificationError, InvalidStateError, NotAssigneeError, NotCompletableError,
    NotFoundError, NotInProgressError, NotPendingError, RoleMismatchError
)
from .notifications import NotificationDispatcher, NotificationKind, NullDispatcher, TargetRef
from .storage import StorageInterface, StorageRecord, parse_datetime


logger = logging.getLogger(__name__)


class TaskStatus(Enum):
    """Status of a workflow task"""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    OVERDUE = "overdue"


# Statuses counted toward "at most one active task per (instance, state)"
ACTIVE_STATUSES = (TaskStatus.PENDING, TaskStatus.IN_PROGRESS)
OPEN_STATUSES = (TaskStatus.PENDING, TaskStatus.IN_PROGRESS, TaskStatus.OVERDUE)
TERMINAL_STATUSES = (TaskStatus.COMPLETED, TaskStatus.CANCELLED)


@dataclass(frozen=True)
class EscalationRecord:
    """One entry of a task's escalation history"""
    level: int
    reason: str
    at: datetime

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EscalationRecord':
        return cls(level=data['level'], reason=data.get('reason', ""), at=parse_datetime(data['at']))


@dataclass
class WorkflowTask(StorageRecord):
    """Unit of work for one state occupancy of one instance"""
    instance_id: str
    state: str
    organization_id: Optional[str] = None
    status: TaskStatus = TaskStatus.PENDING
    assigned_role: Optional[str] = None
    assignee_id: Optional[str] = None
    description: str = ""
    sla_hours: Optional[int] = None
    due_at: Optional[datetime] = None
    priority: int = 0  # Higher = more urgent
    escalation_level: int = 0
    escalation_history: List[EscalationRecord] = field(default_factory=list)
    last_escalated_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    completed_by: Optional[str] = None
    completion_comment: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    version: int = 0

    datetime_fields = ('due_at', 'last_escalated_at', 'started_at', 'completed_at', 'cancelled_at')
    enum_fields = {'status': TaskStatus}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowTask':
        data = dict(data)
        data['escalation_history'] = [
            EscalationRecord.from_dict(entry) for entry in data.get('escalation_history', [])
        ]
        return super().from_dict(data)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        """Past due and still open"""
        if self.due_at is None or self.is_terminal:
            return False
        return (now or datetime.now(timezone.utc)) > self.due_at

    def time_remaining(self, now: Optional[datetime] = None) -> Optional[timedelta]:
        """Time left until due_at; zero once overdue, None without a deadline"""
        if self.due_at is None:
            return None
        if self.is_overdue(now):
            return timedelta(0)
        return self.due_at - (now or datetime.now(timezone.utc))

    def time_remaining_text(self, now: Optional[datetime] = None) -> str:
        """Human readable remaining time, e.g. "3 days", "5 hours", "1 minute" """
        remaining = self.time_remaining(now)
        if remaining is None:
            return "No deadline"
        if remaining <= timedelta(0):
            return "Overdue"

        hours = int(remaining.total_seconds() // 3600)
        if hours >= 24:
            days = hours // 24
            return f"{days} day{'' if days == 1 else 's'}"
        if hours >= 1:
            return f"{hours} hour{'' if hours == 1 else 's'}"
        minutes = int(remaining.total_seconds() // 60)
        return f"{minutes} minute{'' if minutes == 1 else 's'}"

    def sla_compliant(self, now: Optional[datetime] = None) -> bool:
        if self.due_at is None:
            return True
        if self.status == TaskStatus.COMPLETED:
            return self.completed_at <= self.due_at
        if self.status == TaskStatus.OVERDUE:
            return False
        return (now or datetime.now(timezone.utc)) <= self.due_at

    def duration(self, now: Optional[datetime] = None) -> Optional[timedelta]:
        """Time worked: started to completed (or now)"""
        if not self.started_at:
            return None
        return (self.completed_at or now or datetime.now(timezone.utc)) - self.started_at

    def snapshot(self) -> Dict[str, Any]:
        """Fields recorded with SLA audit events and notifications"""
        return {
            'task_id': self.id,
            'workflow_instance_id': self.instance_id,
            'state': self.state,
            'status': self.status.value,
            'due_at': self.due_at.isoformat() if self.due_at else None,
            'assigned_role': self.assigned_role,
            'assignee_id': self.assignee_id,
            'escalation_level': self.escalation_level,
            'priority': self.priority
        }


TaskHook = Callable[[WorkflowTask], None]


class TaskManager:
    """Creates and advances workflow tasks"""

    def __init__(self, storage: StorageInterface, audit_manager: Optional[AuditTrail] = None,
                 notifier: Optional[NotificationDispatcher] = None,
                 escalation_priority_step: int = 10, max_retries: int = 3):
        self.storage = storage
        self.audit = audit_manager or AuditTrail(storage)
        self.notifier = notifier or NullDispatcher()
        self.table = "workflow_tasks"
        self.escalation_priority_step = escalation_priority_step
        self.max_retries = max_retries
        self._created_hooks: List[TaskHook] = []

    def on_task_created(self, hook: TaskHook) -> None:
        """Run hook inside the creating transaction for every new task"""
        self._created_hooks.append(hook)

    # Queries

    def get_task(self, task_id: str) -> Optional[WorkflowTask]:
        data = self.storage.load(self.table, task_id)
        if not data:
            return None
        return WorkflowTask.from_dict(data)

    def require_task(self, task_id: str) -> WorkflowTask:
        task = self.get_task(task_id)
        if not task:
            raise NotFoundError('workflow_task', task_id)
        return task

    def tasks_for_instance(self, instance_id: str) -> List[WorkflowTask]:
        tasks = [WorkflowTask.from_dict(d) for d in self.storage.find(self.table, {'instance_id': instance_id})]
        return sorted(tasks, key=lambda t: t.created_at)

    def active_task_for(self, instance_id: str, state: str) -> Optional[WorkflowTask]:
        """The pending or in-progress task for (instance, state), if any"""
        for task in self.tasks_for_instance(instance_id):
            if task.state == state and task.status in ACTIVE_STATUSES:
                return task
        return None

    def open_task_for(self, instance_id: str, state: str) -> Optional[WorkflowTask]:
        """Like active_task_for but also returns an overdue task"""
        for task in self.tasks_for_instance(instance_id):
            if task.state == state and task.is_open:
                return task
        return None

    def find_tasks(self, organization_id: Optional[str] = None,
                   statuses: Optional[Iterable[TaskStatus]] = None,
                   assigned_role: Optional[str] = None,
                   assignee_id: Optional[str] = None) -> List[WorkflowTask]:
        filters: Dict[str, Any] = {}
        if organization_id:
            filters['organization_id'] = organization_id
        if assigned_role:
            filters['assigned_role'] = assigned_role
        if assignee_id:
            filters['assignee_id'] = assignee_id

        tasks = [WorkflowTask.from_dict(d) for d in self.storage.find(self.table, filters)]
        if statuses is not None:
            wanted = set(statuses)
            tasks = [t for t in tasks if t.status in wanted]
        return tasks

    def user_can_work(self, task: WorkflowTask, user) -> bool:
        """
        Whether user may act on the task: it must still be open, and the user
        is either its assignee or (while unclaimed) holds the assigned role.
        """
        if not task.is_open:
            return False
        if task.assignee_id is not None:
            return task.assignee_id == user.id
        return task.assigned_role is None or user.has_role(task.assigned_role)

    # Lifecycle

    def create_task(self, instance_id: str, organization_id: Optional[str],
                    definition: WorkflowDefinition, state: str,
                    now: Optional[datetime] = None) -> WorkflowTask:
        """Create the pending task for an instance entering state"""
        if self.active_task_for(instance_id, state):
            raise InvalidStateError(f"Instance {instance_id} already has an active task for state '{state}'")

        now = now or datetime.now(timezone.utc)
        step = definition.step_for(state)
        sla_hours = definition.sla_hours_for(state)

        task = WorkflowTask(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            instance_id=instance_id,
            organization_id=organization_id,
            state=state,
            assigned_role=step.assigned_role,
            description=step.description,
            sla_hours=sla_hours,
            due_at=now + timedelta(hours=sla_hours) if sla_hours is not None else None
        )

        with self.storage.atomic():
            self.storage.save(self.table, task.id, task.to_dict())
            for hook in self._created_hooks:
                hook(task)
            self._audit(AuditAction.TASK_CREATED, task, None,
                        {'state': state, 'assigned_role': task.assigned_role,
                         'due_at': task.due_at})

        return task

    def claim(self, task_id: str, user, now: Optional[datetime] = None) -> WorkflowTask:
        """
        Atomically assign a pending task to user.

        Raises:
            NotPendingError: task is not pending (including losing a race to another claimer)
            RoleMismatchError: user lacks the task's assigned role
        """
        for _ in range(self.max_retries):
            task = self.require_task(task_id)
            if task.status != TaskStatus.PENDING:
                raise NotPendingError(task.id, task.status.value)
            if task.assigned_role and not user.has_role(task.assigned_role):
                raise RoleMismatchError(user.id, task.assigned_role)

            task.assignee_id = user.id
            task.status = TaskStatus.IN_PROGRESS
            task.started_at = now or datetime.now(timezone.utc)
            if not self._save(task, {'status': TaskStatus.PENDING.value}):
                continue

            self._audit(AuditAction.TASK_CLAIMED, task, user.id)
            return task

        raise ConcurrentModificationError('workflow_task', task_id)

    def release(self, task_id: str, user) -> WorkflowTask:
        """Return an in-progress task to the pool"""
        def apply(task: WorkflowTask) -> None:
            if task.status != TaskStatus.IN_PROGRESS:
                raise NotInProgressError(task.id, task.status.value)
            if task.assignee_id != user.id:
                raise NotAssigneeError(user.id, task.id)
            task.assignee_id = None
            task.status = TaskStatus.PENDING
            task.started_at = None

        task = self._update(task_id, apply)
        self._audit(AuditAction.TASK_RELEASED, task, user.id)
        return task

    def complete(self, task_id: str, actor, comment: Optional[str] = None,
                 now: Optional[datetime] = None) -> WorkflowTask:
        """Mark a pending, in-progress or overdue task completed"""
        def apply(task: WorkflowTask) -> None:
            if task.is_terminal:
                raise NotCompletableError(task.id, task.status.value)
            task.status = TaskStatus.COMPLETED
            task.completed_at = now or datetime.now(timezone.utc)
            task.completed_by = actor.id
            task.completion_comment = comment

        task = self._update(task_id, apply)
        self._audit(AuditAction.TASK_COMPLETED, task, actor.id,
                    {'comment': comment, 'sla_compliant': task.sla_compliant()})
        return task

    def cancel(self, task_id: str, actor=None, now: Optional[datetime] = None) -> WorkflowTask:
        """Cancel a task that is not yet completed or cancelled"""
        def apply(task: WorkflowTask) -> None:
            if task.is_terminal:
                raise InvalidStateError(f"Task {task.id} is already {task.status.value}", task.status.value)
            task.status = TaskStatus.CANCELLED
            task.cancelled_at = now or datetime.now(timezone.utc)
            task.cancelled_by = actor.id if actor else None

        task = self._update(task_id, apply)
        self._audit(AuditAction.TASK_CANCELLED, task, actor.id if actor else None)
        return task

    def escalate(self, task_id: str, reason: str, now: Optional[datetime] = None) -> WorkflowTask:
        """Raise the task's escalation level and priority; always increments"""
        task = self._update(task_id, lambda t: self._apply_escalation(t, reason, now))
        self._after_escalation(task, reason)
        return task

    def mark_overdue(self, task_id: str, reason: str, now: Optional[datetime] = None) -> WorkflowTask:
        """Set a pending or in-progress task overdue and escalate it in a single update"""
        def apply(task: WorkflowTask) -> None:
            if task.is_terminal or task.status == TaskStatus.OVERDUE:
                raise InvalidStateError(f"Task {task.id} is already {task.status.value}", task.status.value)
            task.status = TaskStatus.OVERDUE
            self._apply_escalation(task, reason, now)

        task = self._update(task_id, apply)
        self._after_escalation(task, reason)
        return task

    def _apply_escalation(self, task: WorkflowTask, reason: str, now: Optional[datetime]) -> None:
        at = now or datetime.now(timezone.utc)
        task.escalation_level += 1
        task.last_escalated_at = at
        task.priority += self.escalation_priority_step
        task.escalation_history.append(EscalationRecord(task.escalation_level, reason, at))

    def _after_escalation(self, task: WorkflowTask, reason: str) -> None:
        self._audit(AuditAction.TASK_ESCALATED, task, None,
                    {'escalation_level': task.escalation_level, 'reason': reason})
        payload = dict(task.snapshot(), reason=reason, organization_id=task.organization_id)
        self.storage.on_commit(lambda: self.notifier.notify(
            NotificationKind.TASK_ESCALATED, TargetRef('workflow_task', task.id), payload
        ))

    # Persistence

    def _update(self, task_id: str, apply: Callable[[WorkflowTask], None]) -> WorkflowTask:
        """Load, mutate and compare-and-swap a task, retrying lost races"""
        for _ in range(self.max_retries):
            task = self.require_task(task_id)
            apply(task)
            if self._save(task):
                return task
            logger.debug(f"Retrying update of task {task_id} after concurrent modification")
        raise ConcurrentModificationError('workflow_task', task_id)

    def _save(self, task: WorkflowTask, expected: Optional[Dict[str, Any]] = None) -> bool:
        conditions = {'version': task.version}
        conditions.update(expected or {})
        task.version += 1
        task.updated_at = datetime.now(timezone.utc)
        if self.storage.update_if(self.table, task.id, conditions, task.to_dict()):
            return True
        task.version -= 1
        return False

    def _audit(self, action: AuditAction, task: WorkflowTask, user_id: Optional[str],
               metadata: Optional[Dict[str, Any]] = None) -> None:
        details = {'workflow_instance_id': task.instance_id, 'state': task.state,
                   'status': task.status.value}
        details.update(metadata or {})
        self.audit.record(AuditEventType.TASK, action, 'workflow_task', task.id,
                          details, user_id, task.organization_id)
