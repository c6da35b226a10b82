"""
Workflow Errors Module

Error taxonomy raised by the workflow engine. Every error is recoverable:
callers can retry, pick another action or report the problem to the user.
"""

from typing import List, Optional


class WorkflowError(Exception):
    """Base class for all workflow engine errors"""


class ValidationError(WorkflowError, ValueError):
    """Definition configuration is invalid (raised at save time)"""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("Invalid workflow definition: " + "; ".join(self.errors))


class StateError(WorkflowError):
    """Operation is not valid in the current lifecycle state"""


class InvalidStateError(StateError):
    """Instance or definition is not in a status that allows the operation"""

    def __init__(self, message: str, current_status: Optional[str] = None):
        self.current_status = current_status
        super().__init__(message)


class NotPendingError(StateError):
    """Task cannot be claimed because it is not pending"""

    def __init__(self, task_id: str, status: str):
        self.task_id = task_id
        self.status = status
        super().__init__(f"Task {task_id} is not pending (status: {status})")


class NotInProgressError(StateError):
    """Task cannot be released because it is not in progress"""

    def __init__(self, task_id: str, status: str):
        self.task_id = task_id
        self.status = status
        super().__init__(f"Task {task_id} is not in progress (status: {status})")


class NotCompletableError(StateError):
    """Task is already completed or cancelled"""

    def __init__(self, task_id: str, status: str):
        self.task_id = task_id
        self.status = status
        super().__init__(f"Task {task_id} cannot be completed (status: {status})")


class ConcurrentModificationError(StateError):
    """A conditional update lost against a concurrent writer"""

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} {entity_id} was modified concurrently")


class TransitionNotAllowedError(WorkflowError):
    """Requested edge or action does not exist in the definition"""

    def __init__(self, from_state: str, to_state: Optional[str] = None,
                 action: Optional[str] = None):
        self.from_state = from_state
        self.to_state = to_state
        self.action = action
        if to_state is None and action is not None:
            message = f"Action '{action}' not available from state '{from_state}'"
        else:
            message = f"Transition from '{from_state}' to '{to_state}' is not allowed"
        super().__init__(message)


class AuthorizationError(WorkflowError):
    """Actor is not allowed to perform the operation"""


class RoleMismatchError(AuthorizationError):
    """Actor does not hold the task's assigned role"""

    def __init__(self, user_id: str, required_role: str):
        self.user_id = user_id
        self.required_role = required_role
        super().__init__(f"User {user_id} does not have required role '{required_role}'")


class NotAssigneeError(AuthorizationError):
    """Only the task's assignee may perform the operation"""

    def __init__(self, user_id: str, task_id: str):
        self.user_id = user_id
        self.task_id = task_id
        super().__init__(f"User {user_id} is not the assignee of task {task_id}")


class NotFoundError(WorkflowError, LookupError):
    """Referenced definition, instance or task does not exist"""

    def __init__(self, entity_type: str, identifier: str):
        self.entity_type = entity_type
        self.identifier = identifier
        super().__init__(f"{entity_type} '{identifier}' not found")
