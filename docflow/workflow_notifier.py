"""
Workflow Notifier Module

Turns workflow events into notifications: resolves who should hear about an
event (stakeholders, role members, managers, the assignee), renders the
message and hands it to the notification center. Delivery problems are logged
and never propagate back into the workflow.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import logging

from .audit import AuditTrail, AuditEventType, AuditAction
from .identity import RoleDirectory
from .notifications import (
    NotificationCenter, NotificationDispatcher, NotificationKind, NotificationPriority, TargetRef
)


logger = logging.getLogger(__name__)


class _Fields(dict):
    """Template fields; anything missing renders as N/A"""

    def __missing__(self, key):
        return "N/A"


# kind -> (subject template, body template, priority)
MESSAGE_TEMPLATES = {
    NotificationKind.TRANSITION: (
        "Workflow transitioned: {from_state} -> {to_state}",
        "Workflow: {workflow_name}\nDocument: {document_title}\n\n"
        "State changed from \"{from_state}\" to \"{to_state}\"\n"
        "Changed by: {actor_name}\nComment: {comment}\nTime: {time}",
        NotificationPriority.MEDIUM
    ),
    NotificationKind.TASK_CREATED: (
        "New workflow task available: {state}",
        "A workflow task is available for your role.\n\n"
        "Workflow: {workflow_name}\nDocument: {document_title}\n"
        "State: {state}\nDue: {due}\nPriority: {priority}\n\n"
        "Please claim this task to begin working on it.",
        NotificationPriority.MEDIUM
    ),
    NotificationKind.TASK_ESCALATED: (
        "[ESCALATION Level {escalation_level}] Workflow task requires attention",
        "A workflow task has been escalated and requires management attention.\n\n"
        "Escalation Level: {escalation_level}\nReason: {reason}\n\n"
        "State: {state}\nAssigned Role: {assigned_role}\nDue: {due}\nAssignee: {assignee}",
        NotificationPriority.HIGH
    ),
    NotificationKind.CANCELLED: (
        "Workflow cancelled: {workflow_name}",
        "A workflow has been cancelled.\n\n"
        "Workflow: {workflow_name}\nDocument: {document_title}\n\n"
        "Cancelled by: {actor_name}\nReason: {reason}\nTime: {time}\n\n"
        "Previous state: {current_state}",
        NotificationPriority.MEDIUM
    ),
    NotificationKind.SLA_WARNING: (
        "[SLA Warning] Task due soon: {state}",
        "A workflow task is approaching its deadline.\n\n"
        "State: {state}\nDue: {due}\n"
        "Time Remaining: {time_remaining} ({percentage_remaining}%)\n\n"
        "Please complete this task before the deadline to avoid escalation.",
        NotificationPriority.HIGH
    ),
    NotificationKind.SLA_BREACHED: (
        "[SLA BREACH] Task overdue: {state}",
        "[URGENT] A workflow task has exceeded its SLA deadline.\n\n"
        "State: {state}\nWas Due: {due}\nOverdue By: {overdue_hours} hours\n\n"
        "Assigned Role: {assigned_role}\nAssignee: {assignee}\n\n"
        "Immediate action is required.",
        NotificationPriority.CRITICAL
    ),
}


class WorkflowNotifier(NotificationDispatcher):
    """Notification dispatcher that resolves recipients through the role directory"""

    def __init__(self, center: NotificationCenter, directory: Optional[RoleDirectory] = None,
                 audit_manager: Optional[AuditTrail] = None,
                 manager_roles: Optional[List[str]] = None):
        self.center = center
        self.directory = directory
        self.audit = audit_manager
        self.manager_roles = list(manager_roles or ["admin", "manager"])

    def notify(self, kind: NotificationKind, target: TargetRef, payload: Dict[str, Any]) -> None:
        try:
            recipients = self.recipients_for(kind, payload)
            if not recipients:
                logger.debug(f"No recipients for {kind.value} on {target.entity_type}:{target.entity_id}")
                return

            subject, body, priority = self.render(kind, payload)
            for recipient_id in recipients:
                self.center.send(recipient_id, kind, subject, body, target, priority,
                                 metadata={'payload': payload})
                self._audit_delivery(recipient_id, kind, target, subject, body, payload)

            logger.info(f"Sent {kind.value} notification for {target.entity_id} to {len(recipients)} recipient(s)")
        except Exception:
            logger.exception(f"Failed to dispatch {kind.value} notification for {target.entity_id}")

    def recipients_for(self, kind: NotificationKind, payload: Dict[str, Any]) -> List[str]:
        """Resolve recipient user IDs for an event"""
        organization_id = payload.get('organization_id')
        assignee_id = payload.get('assignee_id')
        role = payload.get('assigned_role')

        if kind in (NotificationKind.TRANSITION, NotificationKind.CANCELLED):
            recipients = list(payload.get('stakeholder_ids', []))
        elif kind == NotificationKind.TASK_CREATED:
            recipients = self._role_members(organization_id, role)
        elif kind == NotificationKind.SLA_WARNING:
            recipients = [assignee_id] if assignee_id else self._role_members(organization_id, role)
        else:
            recipients = []
            for manager_role in self.manager_roles:
                recipients.extend(self._role_members(organization_id, manager_role))
            if assignee_id:
                recipients.append(assignee_id)

        return _unique(recipients)

    def render(self, kind: NotificationKind, payload: Dict[str, Any]):
        """Build (subject, body, priority) for an event"""
        subject_template, body_template, priority = MESSAGE_TEMPLATES[kind]

        fields = _Fields((k, v) for k, v in payload.items() if v is not None)
        fields['time'] = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M %Z")
        fields['due'] = payload.get('due_at') or "No deadline"
        fields['assignee'] = self._display_name(assignee_id=payload.get('assignee_id'))
        if kind == NotificationKind.TASK_ESCALATED and not payload.get('reason'):
            fields['reason'] = "Automatic escalation due to SLA"
        if kind == NotificationKind.CANCELLED and not payload.get('reason'):
            fields['reason'] = "No reason provided"

        return subject_template.format_map(fields), body_template.format_map(fields), priority

    def _role_members(self, organization_id: Optional[str], role: Optional[str]) -> List[str]:
        if not role or self.directory is None:
            return []
        return [user.id for user in self.directory.users_with_role(organization_id, role)]

    def _display_name(self, assignee_id: Optional[str]) -> str:
        if not assignee_id:
            return "Unclaimed"
        user = self.directory.get_user(assignee_id) if self.directory else None
        return user.display_name if user else assignee_id

    def _audit_delivery(self, recipient_id: str, kind: NotificationKind, target: TargetRef,
                        subject: str, body: str, payload: Dict[str, Any]) -> None:
        if not self.audit:
            return
        self.audit.record(
            AuditEventType.NOTIFICATION, AuditAction.NOTIFICATION_SENT, 'user', recipient_id,
            {'kind': kind.value, 'subject': subject, 'body_preview': body[:100],
             'target_type': target.entity_type, 'target_id': target.entity_id},
            organization_id=payload.get('organization_id'),
            tags=["notification", "workflow"]
        )


def _unique(ids: List[Optional[str]]) -> List[str]:
    seen: List[str] = []
    for user_id in ids:
        if user_id and user_id not in seen:
            seen.append(user_id)
    return seen
