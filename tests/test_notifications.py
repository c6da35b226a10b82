"""
Test suite for notification modules

Tests channel delivery and inbox handling in the notification center, and
recipient resolution and message rendering in the workflow notifier.
"""

import pytest
import requests
from unittest.mock import Mock, patch

from docflow.storage import InMemoryStorage
from docflow.audit import AuditTrail, AuditAction
from docflow.identity import Actor, StorageRoleDirectory
from docflow.notifications import (
    ChannelProvider, NotificationCenter, NotificationChannel, NotificationKind,
    NotificationPriority, NotificationStatus, TargetRef, WebhookChannelProvider
)
from docflow.workflow_notifier import WorkflowNotifier


TASK = TargetRef("workflow_task", "T1")


@pytest.fixture
def storage():
    """Create in-memory storage for testing"""
    return InMemoryStorage()


@pytest.fixture
def audit_manager(storage):
    return AuditTrail(storage)


@pytest.fixture
def center(storage):
    """Notification center with in-app delivery only"""
    return NotificationCenter(storage, [NotificationChannel.IN_APP])


@pytest.fixture
def directory(storage):
    """Role directory with users in two organizations"""
    users = StorageRoleDirectory(storage)
    users.register_user(Actor(id="alice", full_name="Alice", organization_id="ORG1", roles={"legal"}))
    users.register_user(Actor(id="bob", full_name="Bob", organization_id="ORG1", roles={"legal", "manager"}))
    users.register_user(Actor(id="carol", full_name="Carol", organization_id="ORG1", roles={"admin"}))
    users.register_user(Actor(id="dave", full_name="Dave", organization_id="ORG2", roles={"legal", "manager"}))
    users.register_user(Actor(id="erin", full_name="Erin", organization_id="ORG1", roles={"legal"},
                              is_active=False))
    return users


@pytest.fixture
def notifier(center, directory, audit_manager):
    return WorkflowNotifier(center, directory, audit_manager, ["admin", "manager"])


def recipients(center, kind):
    stats = center.storage.find(center.table, {"kind": kind.value})
    return sorted(n["recipient_id"] for n in stats)


class FailingProvider(ChannelProvider):
    def send(self, notification):
        raise ConnectionError("smtp down")


class TestNotificationCenter:
    """Test delivery and inbox operations"""

    def test_send_stores_sent_notification(self, center):
        sent = center.send("alice", NotificationKind.TASK_CREATED, "New task", "Please claim", TASK)

        assert len(sent) == 1
        assert sent[0].status == NotificationStatus.SENT
        assert center.get_unread_count("alice") == 1
        assert center.get_notifications("alice")[0].subject == "New task"

    def test_mark_as_read(self, center):
        notification = center.send("alice", NotificationKind.TASK_CREATED, "New task", "", TASK)[0]

        assert center.mark_as_read(notification.id)
        assert center.get_notification(notification.id).status == NotificationStatus.READ
        assert center.get_unread_count("alice") == 0
        assert not center.mark_as_read("missing")

    def test_one_notification_per_channel(self, storage):
        center = NotificationCenter(storage, [NotificationChannel.IN_APP, NotificationChannel.LOG])

        sent = center.send("alice", NotificationKind.TRANSITION, "Moved", "", TASK)

        assert [n.channel for n in sent] == [NotificationChannel.IN_APP, NotificationChannel.LOG]

    def test_failed_delivery_and_retry(self, storage):
        center = NotificationCenter(storage, [NotificationChannel.LOG], max_retries=2)
        center.register_provider(NotificationChannel.LOG, FailingProvider())

        notification = center.send("alice", NotificationKind.SLA_BREACHED, "Late", "", TASK)[0]
        assert notification.status == NotificationStatus.FAILED
        assert notification.failed_reason == "smtp down"

        center.register_provider(NotificationChannel.LOG, Mock(send=Mock(return_value=True)))
        results = center.retry_failed()

        assert results == {"attempted": 1, "succeeded": 1, "failed": 0}
        assert center.get_notification(notification.id).status == NotificationStatus.SENT

    def test_missing_provider_fails(self, storage):
        center = NotificationCenter(storage, [NotificationChannel.WEBHOOK])

        notification = center.send("alice", NotificationKind.CANCELLED, "Cancelled", "", TASK)[0]

        assert notification.status == NotificationStatus.FAILED
        assert "No provider" in notification.failed_reason

    def test_delivery_stats(self, center):
        center.send("alice", NotificationKind.TASK_CREATED, "a", "", TASK)
        center.send("bob", NotificationKind.SLA_WARNING, "b", "", TASK)

        stats = center.get_delivery_stats()

        assert stats["total_notifications"] == 2
        assert stats["by_kind"]["sla_warning"] == 1
        assert stats["delivery_rate"] == 1.0


class TestWebhookChannel:
    """Test webhook delivery via requests"""

    def test_posts_payload(self, storage):
        center = NotificationCenter(storage, [NotificationChannel.WEBHOOK])
        center.register_provider(NotificationChannel.WEBHOOK, WebhookChannelProvider("https://hooks.example.com/wf"))

        with patch("docflow.notifications.requests.post") as post:
            post.return_value = Mock(status_code=202)
            notification = center.send("alice", NotificationKind.SLA_BREACHED, "Late", "Body", TASK,
                                       NotificationPriority.CRITICAL)[0]

        assert notification.status == NotificationStatus.SENT
        sent_json = post.call_args.kwargs["json"]
        assert sent_json["kind"] == "sla_breached"
        assert sent_json["target"] == {"type": "workflow_task", "id": "T1"}

    def test_http_error_marks_failed(self, storage):
        center = NotificationCenter(storage, [NotificationChannel.WEBHOOK])
        center.register_provider(NotificationChannel.WEBHOOK, WebhookChannelProvider("https://hooks.example.com/wf"))

        with patch("docflow.notifications.requests.post", side_effect=requests.ConnectionError("refused")):
            notification = center.send("alice", NotificationKind.SLA_BREACHED, "Late", "", TASK)[0]

        assert notification.status == NotificationStatus.FAILED


class TestWorkflowNotifier:
    """Test recipient resolution and rendering"""

    def test_transition_goes_to_stakeholders(self, notifier, center):
        notifier.notify(NotificationKind.TRANSITION, TargetRef("workflow_instance", "WF1"), {
            "organization_id": "ORG1", "stakeholder_ids": ["alice", "bob", "alice"],
            "from_state": "draft", "to_state": "legal_review", "workflow_name": "contract_approval",
            "actor_name": "Alice"
        })

        assert recipients(center, NotificationKind.TRANSITION) == ["alice", "bob"]
        subject = center.get_notifications("bob")[0].subject
        assert subject == "Workflow transitioned: draft -> legal_review"

    def test_task_created_goes_to_role_in_organization(self, notifier, center):
        notifier.notify(NotificationKind.TASK_CREATED, TASK,
                        {"organization_id": "ORG1", "assigned_role": "legal", "state": "legal_review"})

        # dave is in another organization, erin is inactive
        assert recipients(center, NotificationKind.TASK_CREATED) == ["alice", "bob"]

    def test_breach_goes_to_managers_and_assignee(self, notifier, center):
        notifier.notify(NotificationKind.SLA_BREACHED, TASK, {
            "organization_id": "ORG1", "assigned_role": "legal", "assignee_id": "alice",
            "state": "legal_review", "due_at": "2026-01-01T00:00:00+00:00", "overdue_hours": 2.5
        })

        assert recipients(center, NotificationKind.SLA_BREACHED) == ["alice", "bob", "carol"]
        body = center.get_notifications("carol")[0].body
        assert "Overdue By: 2.5 hours" in body
        assert "Assignee: Alice" in body

    def test_escalation_uses_manager_roles(self, notifier, center):
        notifier.notify(NotificationKind.TASK_ESCALATED, TASK,
                        {"organization_id": "ORG1", "assigned_role": "legal", "escalation_level": 2})

        assert recipients(center, NotificationKind.TASK_ESCALATED) == ["bob", "carol"]
        notification = center.get_notifications("bob")[0]
        assert notification.subject == "[ESCALATION Level 2] Workflow task requires attention"
        assert notification.priority == NotificationPriority.HIGH
        assert "Automatic escalation due to SLA" in notification.body

    def test_warning_prefers_assignee(self, notifier, center):
        payload = {"organization_id": "ORG1", "assigned_role": "legal", "state": "legal_review",
                   "percentage_remaining": 25, "time_remaining": "12 hours"}

        notifier.notify(NotificationKind.SLA_WARNING, TASK, dict(payload, assignee_id="bob"))
        assert recipients(center, NotificationKind.SLA_WARNING) == ["bob"]

        notifier.notify(NotificationKind.SLA_WARNING, TASK, payload)
        assert recipients(center, NotificationKind.SLA_WARNING) == ["alice", "bob", "bob"]

    def test_deliveries_are_audited(self, notifier, audit_manager):
        notifier.notify(NotificationKind.CANCELLED, TargetRef("workflow_instance", "WF1"),
                        {"organization_id": "ORG1", "stakeholder_ids": ["alice"], "reason": None})

        events = audit_manager.get_events_by_action(AuditAction.NOTIFICATION_SENT)
        assert [e.entity_id for e in events] == ["alice"]
        assert events[0].metadata["kind"] == "cancelled"

    def test_cancel_message_defaults_reason(self, notifier, center):
        notifier.notify(NotificationKind.CANCELLED, TargetRef("workflow_instance", "WF1"),
                        {"organization_id": "ORG1", "stakeholder_ids": ["alice"], "workflow_name": "nda"})

        notification = center.get_notifications("alice")[0]
        assert notification.subject == "Workflow cancelled: nda"
        assert "Reason: No reason provided" in notification.body

    def test_failures_never_propagate(self, directory, caplog):
        center = Mock()
        center.send.side_effect = RuntimeError("queue full")
        notifier = WorkflowNotifier(center, directory)

        notifier.notify(NotificationKind.TASK_CREATED, TASK,
                        {"organization_id": "ORG1", "assigned_role": "legal"})

        assert "Failed to dispatch task_created notification" in caplog.text
