"""
SLA Monitor Module

Arms one-shot checks for every task that has a deadline: an overdue check at
due_at and warning checks at configured percentages of the SLA period. Checks
read the task as persisted when they fire, so a task that was completed or
cancelled in the meantime simply turns the check into a no-op.
"""

from datetime import datetime, timezone, timedelta
from typing import Dict, List, Optional
import logging

from .audit import AuditTrail, AuditEventType, AuditAction
from .errors import InvalidStateError
from .logging_config import log_action
from .notifications import NotificationDispatcher, NotificationKind, NullDispatcher, TargetRef
from .scheduler import JobScheduler, StorageJobScheduler
from .tasks import ACTIVE_STATUSES, TaskManager, TaskStatus, WorkflowTask


logger = logging.getLogger(__name__)


SLA_CHECK_JOB = "workflow.sla_check"
SLA_WARNING_JOB = "workflow.sla_warning"
BREACH_REASON = "SLA deadline breached"

# Half-time warning only for SLAs over a working day, 75% warning for anything over 2 hours
DEFAULT_WARNING_THRESHOLDS = {50: 8, 75: 2}


class SLAMonitor:
    """Schedules and evaluates task deadline checks"""

    def __init__(self, task_manager: TaskManager, scheduler: JobScheduler,
                 audit_manager: Optional[AuditTrail] = None,
                 notifier: Optional[NotificationDispatcher] = None,
                 warning_thresholds: Optional[Dict[int, int]] = None):
        self.tasks = task_manager
        self.scheduler = scheduler
        self.storage = task_manager.storage
        self.audit = audit_manager or task_manager.audit
        self.notifier = notifier or NullDispatcher()
        # elapsed percentage -> minimum SLA hours for that warning
        self.warning_thresholds = dict(
            sorted((warning_thresholds if warning_thresholds is not None else DEFAULT_WARNING_THRESHOLDS).items())
        )

        task_manager.on_task_created(self.arm)

    def register_jobs(self, scheduler: StorageJobScheduler) -> None:
        """Register the check handlers with a job runner"""
        scheduler.register(SLA_CHECK_JOB, lambda args, now: self.check_overdue(args['task_id'], now))
        scheduler.register(SLA_WARNING_JOB, lambda args, now: self.send_warning(
            args['task_id'], args['percentage_remaining'], now
        ))

    def arm(self, task: WorkflowTask) -> List[str]:
        """
        Schedule the checks for a newly created task.

        The overdue check fires at due_at. Each warning fires once its
        percentage of the SLA has elapsed, and is only armed for SLAs longer
        than the minimum configured for that percentage.

        Returns:
            IDs of the scheduled jobs
        """
        if task.due_at is None:
            return []

        job_ids = [self.scheduler.schedule_at(
            task.due_at, SLA_CHECK_JOB, {'task_id': task.id}, key=f"sla_check:{task.id}"
        )]

        for elapsed_pct, min_sla_hours in self.warning_thresholds.items():
            if not task.sla_hours or task.sla_hours <= min_sla_hours:
                continue
            run_at = task.created_at + timedelta(hours=task.sla_hours * elapsed_pct / 100)
            job_ids.append(self.scheduler.schedule_at(
                run_at, SLA_WARNING_JOB,
                {'task_id': task.id, 'percentage_remaining': 100 - elapsed_pct},
                key=f"sla_warning:{task.id}:{elapsed_pct}"
            ))

        return job_ids

    def check_overdue(self, task_id: str, now: Optional[datetime] = None) -> str:
        """
        Mark the task overdue and escalate it if its deadline has passed.

        Returns:
            "breached", or "skipped" (completed, cancelled or already overdue),
            "not_due" or "missing"
        """
        now = now or datetime.now(timezone.utc)

        task = self.tasks.get_task(task_id)
        if task is None:
            logger.warning(f"SLA check for unknown task {task_id}")
            return "missing"
        if task.is_terminal or task.status == TaskStatus.OVERDUE:
            logger.debug(f"Skipping SLA check for task {task_id} ({task.status.value})")
            return "skipped"
        if task.due_at is None or now < task.due_at:
            return "not_due"

        try:
            with self.storage.atomic():
                task = self.tasks.mark_overdue(task_id, BREACH_REASON, now)
                snapshot = task.snapshot()
                self.audit.record(
                    AuditEventType.SLA, AuditAction.SLA_BREACHED, 'workflow_task', task.id,
                    snapshot, organization_id=task.organization_id,
                    tags=["workflow", "sla", "breached"]
                )
                payload = dict(snapshot, organization_id=task.organization_id,
                               overdue_hours=round((now - task.due_at).total_seconds() / 3600, 1))
                self.storage.on_commit(lambda: self.notifier.notify(
                    NotificationKind.SLA_BREACHED, TargetRef('workflow_task', task.id), payload
                ))
        except InvalidStateError:
            logger.debug(f"Task {task_id} finished before its SLA check could apply")
            return "skipped"

        log_action(logger, "warning",
                   f"SLA breached for task {task.id} (state: {task.state}, due: {task.due_at.isoformat()})",
                   action=AuditAction.SLA_BREACHED.value, resource=f"workflow_task:{task.id}",
                   extra={"escalation_level": task.escalation_level})
        return "breached"

    def send_warning(self, task_id: str, percentage_remaining: int,
                     now: Optional[datetime] = None) -> str:
        """
        Warn that a task is approaching its deadline.

        Returns:
            "warned", or "skipped" (completed, cancelled or overdue) or "missing"
        """
        now = now or datetime.now(timezone.utc)

        task = self.tasks.get_task(task_id)
        if task is None:
            logger.warning(f"SLA warning for unknown task {task_id}")
            return "missing"
        if task.is_terminal or task.status == TaskStatus.OVERDUE or task.is_overdue(now):
            logger.debug(f"Skipping SLA warning for task {task_id} ({task.status.value})")
            return "skipped"

        payload = dict(task.snapshot(), organization_id=task.organization_id,
                       percentage_remaining=percentage_remaining,
                       time_remaining=task.time_remaining_text(now))
        self.notifier.notify(NotificationKind.SLA_WARNING, TargetRef('workflow_task', task.id), payload)
        self.audit.record(
            AuditEventType.SLA, AuditAction.SLA_WARNING_SENT, 'workflow_task', task.id,
            {'percentage_remaining': percentage_remaining, 'due_at': task.due_at},
            organization_id=task.organization_id
        )

        logger.info(f"SLA warning sent for task {task.id} ({percentage_remaining}% time remaining)")
        return "warned"

    def sweep_overdue(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Apply the overdue check to every pending or in-progress task past its deadline"""
        now = now or datetime.now(timezone.utc)
        results = {"checked": 0, "breached": 0}

        for task in self.tasks.find_tasks(statuses=ACTIVE_STATUSES):
            if task.due_at is None or task.due_at > now:
                continue
            results["checked"] += 1
            if self.check_overdue(task.id, now) == "breached":
                results["breached"] += 1

        if results["breached"]:
            logger.info(f"SLA sweep marked {results['breached']} task(s) overdue")
        return results
