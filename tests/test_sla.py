"""
Test suite for SLA monitor module

Tests arming of deadline checks, the overdue and warning checks, their
tolerance of tasks that finished before the check fired, and the sweep.
"""

import pytest
from datetime import datetime, timezone, timedelta
from unittest.mock import Mock

from docflow.storage import InMemoryStorage
from docflow.audit import AuditTrail, AuditAction
from docflow.definitions import DefinitionStore, StepConfig, seed_contract_approval
from docflow.identity import Actor
from docflow.notifications import NotificationKind
from docflow.scheduler import JobStatus, StorageJobScheduler
from docflow.sla import SLA_CHECK_JOB, SLA_WARNING_JOB, SLAMonitor
from docflow.tasks import TaskManager, TaskStatus


NOW = datetime(2026, 9, 14, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def storage():
    """Create in-memory storage for testing"""
    return InMemoryStorage()


@pytest.fixture
def audit_manager(storage):
    return AuditTrail(storage)


@pytest.fixture
def notifier():
    return Mock()


@pytest.fixture
def task_manager(storage, audit_manager, notifier):
    return TaskManager(storage, audit_manager, notifier)


@pytest.fixture
def scheduler(storage, audit_manager):
    return StorageJobScheduler(storage, audit_manager)


@pytest.fixture
def monitor(task_manager, scheduler, audit_manager, notifier):
    """Create SLA monitor for testing"""
    sla_monitor = SLAMonitor(task_manager, scheduler, audit_manager, notifier,
                             warning_thresholds={50: 8, 75: 2})
    sla_monitor.register_jobs(scheduler)
    return sla_monitor


@pytest.fixture
def definition(storage):
    return seed_contract_approval(DefinitionStore(storage))


@pytest.fixture
def review_task(monitor, task_manager, definition):
    """Legal review task (48h SLA) created at NOW, with its checks armed"""
    return task_manager.create_task("WF1", "ORG1", definition, "legal_review", NOW)


@pytest.fixture
def lawyer():
    return Actor(id="U-LAWYER", roles={"legal"})


def notified(notifier, kind):
    return [c.args[2] for c in notifier.notify.call_args_list if c.args[0] == kind]


class TestArming:
    """Test checks scheduled at task creation"""

    def test_overdue_and_warning_checks_armed(self, review_task, scheduler):
        jobs = {j.key: j for j in scheduler.list_jobs()}

        check = jobs[f"sla_check:{review_task.id}"]
        assert check.job_name == SLA_CHECK_JOB
        assert check.run_at == review_task.due_at

        half = jobs[f"sla_warning:{review_task.id}:50"]
        assert half.job_name == SLA_WARNING_JOB
        assert half.run_at == NOW + timedelta(hours=24)
        assert half.arguments["percentage_remaining"] == 50

        three_quarters = jobs[f"sla_warning:{review_task.id}:75"]
        assert three_quarters.run_at == NOW + timedelta(hours=36)
        assert three_quarters.arguments["percentage_remaining"] == 25

    def test_short_sla_gets_no_warnings(self, monitor, task_manager, definition, scheduler):
        definition.steps["legal_review"] = StepConfig("legal", 2, "Quick check")

        task = task_manager.create_task("WF2", "ORG1", definition, "legal_review", NOW)

        keys = [j.key for j in scheduler.list_jobs()]
        assert keys == [f"sla_check:{task.id}"]

    def test_half_time_warning_needs_longer_sla(self, monitor, task_manager, definition, scheduler):
        definition.steps["legal_review"] = StepConfig("legal", 6, "Same-day check")

        task = task_manager.create_task("WF2", "ORG1", definition, "legal_review", NOW)

        warnings = [j for j in scheduler.list_jobs() if j.job_name == SLA_WARNING_JOB]
        assert [j.key for j in warnings] == [f"sla_warning:{task.id}:75"]
        assert warnings[0].run_at == NOW + timedelta(hours=4.5)


class TestOverdueCheck:
    """Test the overdue check"""

    def test_breach(self, monitor, review_task, task_manager, notifier, audit_manager):
        outcome = monitor.check_overdue(review_task.id, review_task.due_at + timedelta(minutes=1))

        task = task_manager.get_task(review_task.id)
        assert outcome == "breached"
        assert task.status == TaskStatus.OVERDUE
        assert task.escalation_level == 1
        assert task.escalation_history[0].reason == "SLA deadline breached"

        breach = notified(notifier, NotificationKind.SLA_BREACHED)
        assert len(breach) == 1
        assert breach[0]["assigned_role"] == "legal"
        assert notified(notifier, NotificationKind.TASK_ESCALATED)

        events = audit_manager.get_events_by_action(AuditAction.SLA_BREACHED)
        assert events[0].metadata["state"] == "legal_review"
        assert events[0].metadata["due_at"] == review_task.due_at.isoformat()

    def test_fires_exactly_at_due_at(self, monitor, review_task):
        assert monitor.check_overdue(review_task.id, review_task.due_at) == "breached"

    def test_not_due_yet(self, monitor, review_task, task_manager):
        assert monitor.check_overdue(review_task.id, NOW + timedelta(hours=1)) == "not_due"
        assert task_manager.get_task(review_task.id).status == TaskStatus.PENDING

    def test_completed_task_is_a_no_op(self, monitor, review_task, task_manager, lawyer, notifier):
        task_manager.complete(review_task.id, lawyer)
        notifier.reset_mock()

        assert monitor.check_overdue(review_task.id, review_task.due_at + timedelta(hours=1)) == "skipped"
        assert task_manager.get_task(review_task.id).status == TaskStatus.COMPLETED
        notifier.notify.assert_not_called()

    def test_second_check_does_not_escalate_again(self, monitor, review_task, task_manager):
        later = review_task.due_at + timedelta(hours=1)
        monitor.check_overdue(review_task.id, later)

        assert monitor.check_overdue(review_task.id, later) == "skipped"
        assert task_manager.get_task(review_task.id).escalation_level == 1

    def test_missing_task(self, monitor):
        assert monitor.check_overdue("ghost") == "missing"

    def test_scheduled_check_runs_through_scheduler(self, review_task, scheduler, task_manager):
        results = scheduler.run_due(review_task.due_at)

        assert results["succeeded"] == 3
        assert task_manager.get_task(review_task.id).status == TaskStatus.OVERDUE
        check = scheduler.list_jobs(key=f"sla_check:{review_task.id}")[0]
        assert check.status == JobStatus.COMPLETED
        assert check.result == "breached"


class TestWarningCheck:
    """Test SLA warnings"""

    def test_warning_sent(self, monitor, review_task, notifier, audit_manager):
        notifier.reset_mock()

        assert monitor.send_warning(review_task.id, 50, NOW + timedelta(hours=24)) == "warned"

        warning = notified(notifier, NotificationKind.SLA_WARNING)[0]
        assert warning["percentage_remaining"] == 50
        assert warning["time_remaining"] == "1 day"
        assert audit_manager.get_events_by_action(AuditAction.SLA_WARNING_SENT)

    def test_warning_skipped_for_finished_or_overdue(self, monitor, review_task, task_manager, lawyer):
        monitor.check_overdue(review_task.id, review_task.due_at)
        assert monitor.send_warning(review_task.id, 25, NOW + timedelta(hours=36)) == "skipped"

        task_manager.complete(review_task.id, lawyer)
        assert monitor.send_warning(review_task.id, 25, NOW + timedelta(hours=36)) == "skipped"

    def test_warning_after_deadline_skipped(self, monitor, review_task):
        assert monitor.send_warning(review_task.id, 25, review_task.due_at + timedelta(minutes=1)) == "skipped"


class TestSweep:
    """Test the recovery sweep"""

    def test_sweep_marks_past_due_tasks(self, monitor, review_task, task_manager, definition, scheduler):
        fresh = task_manager.create_task("WF2", "ORG1", definition, "legal_review", NOW + timedelta(days=1))

        results = monitor.sweep_overdue(review_task.due_at + timedelta(minutes=1))

        assert results == {"checked": 1, "breached": 1}
        assert task_manager.get_task(review_task.id).status == TaskStatus.OVERDUE
        assert task_manager.get_task(fresh.id).status == TaskStatus.PENDING

        # The armed check later finds the task already overdue
        assert monitor.check_overdue(review_task.id, review_task.due_at + timedelta(hours=1)) == "skipped"
