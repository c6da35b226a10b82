"""
Workflow Service Module

High-level API for one user working within one organization: starting
workflows, moving them along, working tasks and the task list views.
"""

from datetime import datetime, timezone, timedelta
from typing import Any, Dict, List, Optional, Union
import logging

from .errors import NotAssigneeError, NotFoundError, RoleMismatchError
from .identity import DocumentRef
from .instances import InstanceStatus, WorkflowInstance
from .tasks import OPEN_STATUSES, TaskStatus, WorkflowTask


logger = logging.getLogger(__name__)


InstanceRef = Union[WorkflowInstance, str]
TaskRef = Union[WorkflowTask, str]


def _id(ref) -> str:
    return ref if isinstance(ref, str) else ref.id


class WorkflowService:
    """Workflow operations performed by a user, scoped to their organization"""

    def __init__(self, system, user, organization_id: Optional[str] = None):
        self.system = system
        self.user = user
        self.organization_id = organization_id or getattr(user, 'organization_id', None)

    @property
    def engine(self):
        return self.system.engine

    @property
    def tasks(self):
        return self.system.task_manager

    # Workflows

    def start_workflow(self, definition_name: str, document: Optional[DocumentRef] = None,
                       context_data: Optional[Dict[str, Any]] = None) -> WorkflowInstance:
        """
        Start the latest active version of a named workflow.

        Raises:
            NotFoundError: no active definition with that name
        """
        definition = self.system.definitions.find_latest(definition_name, self.organization_id)
        if not definition:
            raise NotFoundError('workflow_definition', definition_name)

        instance = self.engine.create_instance(definition, document, self.user, context_data,
                                               organization_id=self.organization_id)
        logger.debug(f"User {self.user.id} started {definition_name} instance {instance.id}")
        return instance

    def find_instance(self, instance: InstanceRef) -> WorkflowInstance:
        """Load an instance visible to this organization"""
        found = self.engine.get_instance(_id(instance))
        if not found or not self._visible(found.organization_id):
            raise NotFoundError('workflow_instance', _id(instance))
        return found

    def transition(self, instance: InstanceRef, to_state: str,
                   comment: Optional[str] = None) -> WorkflowInstance:
        found = self.find_instance(instance)
        return self.engine.transition_to(found.id, to_state, self.user, comment=comment)

    def perform_action(self, instance: InstanceRef, action: str,
                       comment: Optional[str] = None) -> WorkflowInstance:
        found = self.find_instance(instance)
        return self.engine.perform_action(found.id, action, self.user, comment)

    def available_actions(self, instance: InstanceRef) -> List[Dict[str, Any]]:
        return self.engine.available_actions(self.find_instance(instance).id)

    def cancel_workflow(self, instance: InstanceRef, reason: Optional[str] = None) -> WorkflowInstance:
        found = self.find_instance(instance)
        return self.engine.cancel(found.id, self.user, reason)

    def suspend_workflow(self, instance: InstanceRef, reason: Optional[str] = None) -> WorkflowInstance:
        found = self.find_instance(instance)
        return self.engine.suspend(found.id, self.user, reason)

    def resume_workflow(self, instance: InstanceRef) -> WorkflowInstance:
        found = self.find_instance(instance)
        return self.engine.resume(found.id, self.user)

    def active_workflows(self) -> List[WorkflowInstance]:
        """Active instances in the organization, newest first"""
        return self.engine.list_instances(self.organization_id, InstanceStatus.ACTIVE)

    def workflows_for_document(self, document: Union[DocumentRef, str]) -> List[WorkflowInstance]:
        """Every instance started for a document, newest first"""
        return self.engine.list_instances(self.organization_id, document_id=_id(document))

    # Tasks

    def find_task(self, task: TaskRef) -> WorkflowTask:
        found = self.tasks.get_task(_id(task))
        if not found or not self._visible(found.organization_id):
            raise NotFoundError('workflow_task', _id(task))
        return found

    def claim_task(self, task: TaskRef) -> WorkflowTask:
        return self.tasks.claim(self.find_task(task).id, self.user)

    def release_task(self, task: TaskRef) -> WorkflowTask:
        return self.tasks.release(self.find_task(task).id, self.user)

    def complete_task(self, task: TaskRef, comment: Optional[str] = None) -> WorkflowTask:
        """Complete a task the user may work on"""
        found = self.find_task(task)
        self._check_can_work(found)
        return self.tasks.complete(found.id, self.user, comment)

    def cancel_task(self, task: TaskRef) -> WorkflowTask:
        """Cancel a task the user may work on"""
        found = self.find_task(task)
        self._check_can_work(found)
        return self.tasks.cancel(found.id, self.user)

    def my_tasks(self) -> List[WorkflowTask]:
        """
        Open tasks for the user: those whose role the user holds plus those
        assigned to the user, most urgent first.
        """
        candidates = self.tasks.find_tasks(self.organization_id, OPEN_STATUSES)
        mine = [
            task for task in candidates
            if task.assignee_id == self.user.id
            or (task.assigned_role and self.user.has_role(task.assigned_role))
        ]
        return sorted(mine, key=_urgency)

    def due_soon(self, hours: int = 4, now: Optional[datetime] = None) -> List[WorkflowTask]:
        """The user's tasks that fall due within the next hours"""
        now = now or datetime.now(timezone.utc)
        horizon = now + timedelta(hours=hours)
        return [
            task for task in self.my_tasks()
            if task.due_at is not None and now <= task.due_at <= horizon
        ]

    def statistics(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Workflow counts for the organization dashboard"""
        now = now or datetime.now(timezone.utc)
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)

        completed = self.engine.list_instances(self.organization_id, InstanceStatus.COMPLETED)
        # Past-due tasks count even before their overdue check has fired
        overdue = [
            task for task in self.tasks.find_tasks(self.organization_id, OPEN_STATUSES)
            if task.status == TaskStatus.OVERDUE or task.is_overdue(now)
        ]
        return {
            'active_workflows': len(self.active_workflows()),
            'completed_today': len([i for i in completed if i.completed_at and i.completed_at >= start_of_day]),
            'pending_tasks': len(self.tasks.find_tasks(self.organization_id, [TaskStatus.PENDING])),
            'overdue_tasks': len(overdue),
            'my_pending_tasks': len([t for t in self.my_tasks() if t.status == TaskStatus.PENDING])
        }

    # Helpers

    def _visible(self, organization_id: Optional[str]) -> bool:
        return self.organization_id is None or organization_id in (None, self.organization_id)

    def _check_can_work(self, task: WorkflowTask) -> None:
        if not task.is_open or self.tasks.user_can_work(task, self.user):
            return
        if task.assignee_id is not None:
            raise NotAssigneeError(self.user.id, task.id)
        raise RoleMismatchError(self.user.id, task.assigned_role)


def _urgency(task: WorkflowTask):
    due = task.due_at.timestamp() if task.due_at else float("inf")
    return (-task.priority, due)
