"""
Workflow System Module

Builds every workflow component from a configuration and wires them
together.
"""

from typing import Optional
import logging

from .audit import AuditTrail
from .config import DocflowConfig, get_config
from .definitions import DefinitionStore
from .identity import RoleDirectory, StorageRoleDirectory
from .instances import WorkflowEngine
from .notifications import (
    NotificationCenter, NotificationChannel, NotificationDispatcher, QueuedDispatcher, WebhookChannelProvider
)
from .scheduler import StorageJobScheduler
from .service import WorkflowService
from .sla import SLAMonitor
from .storage import StorageInterface, create_storage
from .tasks import TaskManager
from .workflow_notifier import WorkflowNotifier


logger = logging.getLogger(__name__)


class WorkflowSystem:
    """Workflow engine with all components initialized"""

    def __init__(self, config: Optional[DocflowConfig] = None,
                 storage: Optional[StorageInterface] = None,
                 directory: Optional[RoleDirectory] = None):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config)

        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.directory = directory or StorageRoleDirectory(self.storage, self.audit_trail)
        self.definitions = DefinitionStore(self.storage, self.audit_trail,
                                           default_sla_hours=self.config.default_sla_hours)
        self.scheduler = StorageJobScheduler(
            self.storage, self.audit_trail,
            max_attempts=self.config.job_max_attempts,
            retry_delay_seconds=self.config.job_retry_delay_seconds,
            batch_size=self.config.job_batch_size,
            lease_seconds=self.config.job_lease_seconds
        )

        self.notification_center = NotificationCenter(
            self.storage, [NotificationChannel(name) for name in self.config.notification_channels]
        )
        if self.config.notification_webhook_url:
            self.notification_center.register_provider(
                NotificationChannel.WEBHOOK,
                WebhookChannelProvider(self.config.notification_webhook_url,
                                       self.config.notification_webhook_timeout)
            )
        self.notifier = WorkflowNotifier(self.notification_center, self.directory,
                                         self.audit_trail, self.config.manager_roles)
        self.dispatcher: NotificationDispatcher = self.notifier
        if self.config.notification_queue_enabled:
            queue = QueuedDispatcher(self.scheduler, self.notifier)
            queue.register_jobs(self.scheduler)
            self.dispatcher = queue

        self.task_manager = TaskManager(
            self.storage, self.audit_trail, self.dispatcher,
            escalation_priority_step=self.config.escalation_priority_step,
            max_retries=self.config.cas_max_retries
        )
        self.engine = WorkflowEngine(self.storage, self.definitions, self.task_manager,
                                     self.audit_trail, self.dispatcher)
        self.sla_monitor = SLAMonitor(
            self.task_manager, self.scheduler, self.audit_trail, self.dispatcher,
            warning_thresholds=self.config.sla_warning_thresholds
        )
        self.sla_monitor.register_jobs(self.scheduler)

        logger.debug(f"Workflow system ready ({type(self.storage).__name__})")

    def for_user(self, user, organization_id: Optional[str] = None) -> WorkflowService:
        """Service facade acting as user"""
        return WorkflowService(self, user, organization_id)

    def close(self) -> None:
        self.storage.close()
