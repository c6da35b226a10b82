"""
Notification Module

Delivers workflow notifications (transitions, new tasks, escalations, SLA
warnings and breaches) through pluggable channels and keeps a per-recipient
inbox of everything sent.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
import logging
import uuid

import requests

from .scheduler import JobScheduler, StorageJobScheduler
from .storage import StorageInterface, StorageRecord


logger = logging.getLogger(__name__)


class NotificationKind(Enum):
    """Workflow events that produce notifications"""
    TRANSITION = "transition"
    TASK_CREATED = "task_created"
    TASK_ESCALATED = "task_escalated"
    CANCELLED = "cancelled"
    SLA_WARNING = "sla_warning"
    SLA_BREACHED = "sla_breached"


class NotificationChannel(Enum):
    """Available notification channels"""
    LOG = "log"
    IN_APP = "in_app"
    WEBHOOK = "webhook"


class NotificationPriority(Enum):
    """Notification priority levels"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class NotificationStatus(Enum):
    """Status of notifications"""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    READ = "read"


@dataclass(frozen=True)
class TargetRef:
    """Entity a notification is about"""
    entity_type: str  # workflow_instance or workflow_task
    entity_id: str


@dataclass
class Notification(StorageRecord):
    """Individual notification delivered to one recipient on one channel"""
    kind: NotificationKind
    channel: NotificationChannel
    priority: NotificationPriority
    recipient_id: str
    subject: str
    body: str
    target_type: str
    target_id: str
    status: NotificationStatus = NotificationStatus.PENDING
    sent_at: Optional[datetime] = None
    read_at: Optional[datetime] = None
    failed_reason: Optional[str] = None
    retry_count: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)

    datetime_fields = ('sent_at', 'read_at')
    enum_fields = {
        'kind': NotificationKind,
        'channel': NotificationChannel,
        'priority': NotificationPriority,
        'status': NotificationStatus
    }


class NotificationDispatcher(ABC):
    """Receives workflow notification events from the engine"""

    @abstractmethod
    def notify(self, kind: NotificationKind, target: TargetRef, payload: Dict[str, Any]) -> None:
        """Dispatch one event; implementations must not raise"""
        pass


class NullDispatcher(NotificationDispatcher):
    """Dispatcher that drops every event"""

    def notify(self, kind: NotificationKind, target: TargetRef, payload: Dict[str, Any]) -> None:
        logger.debug(f"Dropping {kind.value} notification for {target.entity_type}:{target.entity_id}")


NOTIFY_JOB = "workflow.notify"


class QueuedDispatcher(NotificationDispatcher):
    """
    Dispatcher that hands events to the job scheduler.

    notify() only stores a job due immediately; the next worker poll passes the
    event on to the delivering dispatcher, so a slow channel never holds up
    the operation that raised the event.
    """

    def __init__(self, scheduler: JobScheduler, delivery: NotificationDispatcher):
        self.scheduler = scheduler
        self.delivery = delivery

    def register_jobs(self, scheduler: StorageJobScheduler) -> None:
        """Register the delivery handler with a job runner"""
        scheduler.register(NOTIFY_JOB, self.deliver)

    def notify(self, kind: NotificationKind, target: TargetRef, payload: Dict[str, Any]) -> None:
        try:
            self.scheduler.schedule_at(datetime.now(timezone.utc), NOTIFY_JOB, {
                'kind': kind.value,
                'target_type': target.entity_type,
                'target_id': target.entity_id,
                'payload': payload
            })
        except Exception:
            logger.exception(f"Failed to queue {kind.value} notification for {target.entity_id}")

    def deliver(self, arguments: Dict[str, Any], now: datetime) -> None:
        """Job handler: pass a queued event to the delivering dispatcher"""
        self.delivery.notify(
            NotificationKind(arguments['kind']),
            TargetRef(arguments['target_type'], arguments['target_id']),
            arguments['payload']
        )


class ChannelProvider(ABC):
    """Abstract base class for notification channel providers"""

    @abstractmethod
    def send(self, notification: Notification) -> bool:
        """Send notification via this channel. Returns True if successful."""
        pass


class LogChannelProvider(ChannelProvider):
    """Logging channel provider for development"""

    def __init__(self, channel_logger: Optional[logging.Logger] = None):
        self.logger = channel_logger or logging.getLogger("docflow.notifications.outbox")

    def send(self, notification: Notification) -> bool:
        """Log the notification instead of actually sending"""
        self.logger.info(
            f"{notification.kind.value} to {notification.recipient_id}: "
            f"{notification.subject} | {notification.body[:100]}"
        )
        return True


class WebhookChannelProvider(ChannelProvider):
    """Webhook channel provider for external integrations"""

    def __init__(self, url: str, timeout: float = 10.0):
        self.url = url
        self.timeout = timeout

    def send(self, notification: Notification) -> bool:
        """Send notification via webhook POST"""
        payload = {
            "notification_id": notification.id,
            "kind": notification.kind.value,
            "priority": notification.priority.value,
            "recipient_id": notification.recipient_id,
            "subject": notification.subject,
            "body": notification.body,
            "target": {"type": notification.target_type, "id": notification.target_id},
            "timestamp": notification.created_at.isoformat(),
            "metadata": notification.metadata
        }

        try:
            response = requests.post(
                self.url,
                json=payload,
                timeout=self.timeout,
                headers={"Content-Type": "application/json"}
            )
        except requests.RequestException as e:
            logger.warning(f"Webhook send failed for notification {notification.id}: {e}")
            return False

        return 200 <= response.status_code < 300


class InAppChannelProvider(ChannelProvider):
    """In-app delivery: the stored notification itself is the inbox entry"""

    def send(self, notification: Notification) -> bool:
        return True


class NotificationCenter:
    """Creates, delivers and tracks notifications across channels"""

    def __init__(self, storage: StorageInterface, channels: Optional[List[NotificationChannel]] = None,
                 max_retries: int = 3):
        self.storage = storage
        self.table = "notifications"
        self.max_retries = max_retries
        self.channels = channels or [NotificationChannel.IN_APP, NotificationChannel.LOG]
        self.providers: Dict[NotificationChannel, ChannelProvider] = {
            NotificationChannel.LOG: LogChannelProvider(),
            NotificationChannel.IN_APP: InAppChannelProvider()
        }

    def register_provider(self, channel: NotificationChannel, provider: ChannelProvider) -> None:
        """Register or replace the provider for a channel"""
        self.providers[channel] = provider

    def send(
        self,
        recipient_id: str,
        kind: NotificationKind,
        subject: str,
        body: str,
        target: TargetRef,
        priority: NotificationPriority = NotificationPriority.MEDIUM,
        metadata: Optional[Dict[str, Any]] = None
    ) -> List[Notification]:
        """
        Deliver one message to a recipient on every configured channel.

        Returns:
            The stored notifications, one per channel, with their delivery status
        """
        sent = []
        for channel in self.channels:
            now = datetime.now(timezone.utc)
            notification = Notification(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                kind=kind,
                channel=channel,
                priority=priority,
                recipient_id=recipient_id,
                subject=subject,
                body=body,
                target_type=target.entity_type,
                target_id=target.entity_id,
                metadata=dict(metadata or {})
            )
            self._deliver(notification)
            sent.append(notification)
        return sent

    def _deliver(self, notification: Notification) -> bool:
        provider = self.providers.get(notification.channel)
        success = False
        if provider is None:
            notification.failed_reason = f"No provider for channel {notification.channel.value}"
        else:
            try:
                success = provider.send(notification)
                if not success:
                    notification.failed_reason = "Provider reported failure"
            except Exception as e:
                logger.exception(f"Channel {notification.channel.value} failed for notification {notification.id}")
                notification.failed_reason = str(e)

        notification.updated_at = datetime.now(timezone.utc)
        if success:
            notification.status = NotificationStatus.SENT
            notification.sent_at = notification.updated_at
            notification.failed_reason = None
        else:
            notification.status = NotificationStatus.FAILED

        self.storage.save(self.table, notification.id, notification.to_dict())
        return success

    def get_notification(self, notification_id: str) -> Optional[Notification]:
        data = self.storage.load(self.table, notification_id)
        if not data:
            return None
        return Notification.from_dict(data)

    def get_notifications(
        self,
        recipient_id: str,
        kind: Optional[NotificationKind] = None,
        channel: Optional[NotificationChannel] = NotificationChannel.IN_APP,
        limit: int = 50
    ) -> List[Notification]:
        """Get a recipient's notifications, newest first"""
        filters: Dict[str, Any] = {"recipient_id": recipient_id}
        if kind:
            filters["kind"] = kind.value
        if channel:
            filters["channel"] = channel.value

        notifications = [Notification.from_dict(data) for data in self.storage.find(self.table, filters)]
        notifications.sort(key=lambda n: n.created_at, reverse=True)
        return notifications[:limit]

    def mark_as_read(self, notification_id: str) -> bool:
        """Mark notification as read"""
        notification = self.get_notification(notification_id)
        if not notification:
            return False

        if notification.status != NotificationStatus.READ:
            notification.status = NotificationStatus.READ
            notification.read_at = datetime.now(timezone.utc)
            notification.updated_at = notification.read_at
            self.storage.save(self.table, notification.id, notification.to_dict())

        return True

    def get_unread_count(self, recipient_id: str) -> int:
        """Count in-app notifications not yet read"""
        return len(self.storage.find(self.table, {
            "recipient_id": recipient_id,
            "channel": NotificationChannel.IN_APP.value,
            "status": NotificationStatus.SENT.value
        }))

    def retry_failed(self) -> Dict[str, int]:
        """Retry failed notifications that have not exhausted their retries"""
        results = {"attempted": 0, "succeeded": 0, "failed": 0}

        for data in self.storage.find(self.table, {"status": NotificationStatus.FAILED.value}):
            notification = Notification.from_dict(data)
            if notification.retry_count >= self.max_retries:
                continue

            results["attempted"] += 1
            notification.retry_count += 1
            if self._deliver(notification):
                results["succeeded"] += 1
            elif notification.retry_count >= self.max_retries:
                results["failed"] += 1

        return results

    def get_delivery_stats(self) -> Dict[str, Any]:
        """Get notification delivery statistics"""
        stats = {
            "total_notifications": 0,
            "by_status": {status.value: 0 for status in NotificationStatus},
            "by_channel": {channel.value: 0 for channel in NotificationChannel},
            "by_kind": {kind.value: 0 for kind in NotificationKind},
            "delivery_rate": 0.0
        }

        delivered = 0
        for data in self.storage.load_all(self.table):
            notification = Notification.from_dict(data)
            stats["total_notifications"] += 1
            stats["by_status"][notification.status.value] += 1
            stats["by_channel"][notification.channel.value] += 1
            stats["by_kind"][notification.kind.value] += 1
            if notification.status in (NotificationStatus.SENT, NotificationStatus.READ):
                delivered += 1

        if stats["total_notifications"] > 0:
            stats["delivery_rate"] = delivered / stats["total_notifications"]

        return stats
