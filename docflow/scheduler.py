"""
Job Scheduler Module

Persistent one-shot jobs that fire no earlier than their run time. Workers
claim due jobs with a conditional update, so a job runs on exactly one worker
even when several poll the same storage.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
import logging
import uuid

from .audit import AuditTrail, AuditEventType, AuditAction
from .storage import StorageInterface, StorageRecord


logger = logging.getLogger(__name__)


JobHandler = Callable[[Dict[str, Any], datetime], Any]


class JobStatus(Enum):
    """Lifecycle of a scheduled job"""
    SCHEDULED = "scheduled"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class ScheduledJob(StorageRecord):
    """A job waiting for (or done with) its run time"""
    job_name: str
    run_at: datetime
    arguments: Dict[str, Any] = field(default_factory=dict)
    key: Optional[str] = None  # Deduplication key; rescheduling replaces the pending job
    status: JobStatus = JobStatus.SCHEDULED
    attempts: int = 0
    last_error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    result: Optional[Any] = None
    version: int = 0

    datetime_fields = ('run_at', 'started_at', 'finished_at')
    enum_fields = {'status': JobStatus}


class JobScheduler(ABC):
    """Schedules named jobs for later execution"""

    @abstractmethod
    def schedule_at(self, run_at: datetime, job_name: str,
                    arguments: Optional[Dict[str, Any]] = None,
                    key: Optional[str] = None) -> str:
        """Schedule job_name to run no earlier than run_at; returns the job ID"""
        pass

    @abstractmethod
    def cancel(self, key: str) -> int:
        """Cancel pending jobs with the given key; returns how many were cancelled"""
        pass


class StorageJobScheduler(JobScheduler):
    """Job scheduler persisted in the workflow storage backend"""

    def __init__(self, storage: StorageInterface, audit_manager: Optional[AuditTrail] = None,
                 max_attempts: int = 3, retry_delay_seconds: int = 60, batch_size: int = 100,
                 lease_seconds: int = 300):
        self.storage = storage
        self.audit = audit_manager
        self.table = "scheduled_jobs"
        self.max_attempts = max_attempts
        self.retry_delay = timedelta(seconds=retry_delay_seconds)
        self.batch_size = batch_size
        self.lease = timedelta(seconds=lease_seconds)
        self.handlers: Dict[str, JobHandler] = {}

    def register(self, job_name: str, handler: JobHandler) -> None:
        """Register the callable run for job_name; it receives the job arguments and the run time"""
        self.handlers[job_name] = handler

    def schedule_at(self, run_at: datetime, job_name: str,
                    arguments: Optional[Dict[str, Any]] = None,
                    key: Optional[str] = None) -> str:
        now = datetime.now(timezone.utc)

        if key:
            for job in self._pending_with_key(key):
                job.run_at = run_at
                job.arguments = dict(arguments or {})
                job.updated_at = now
                if self._save(job):
                    return job.id

        job = ScheduledJob(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            job_name=job_name,
            run_at=run_at,
            arguments=dict(arguments or {}),
            key=key
        )
        self.storage.save(self.table, job.id, job.to_dict())
        logger.debug(f"Scheduled {job_name} at {run_at.isoformat()} (key={key})")
        return job.id

    def cancel(self, key: str) -> int:
        cancelled = 0
        for job in self._pending_with_key(key):
            job.status = JobStatus.CANCELLED
            job.finished_at = datetime.now(timezone.utc)
            if self._save(job, {'status': JobStatus.SCHEDULED.value}):
                cancelled += 1
        return cancelled

    def get_job(self, job_id: str) -> Optional[ScheduledJob]:
        data = self.storage.load(self.table, job_id)
        if not data:
            return None
        return ScheduledJob.from_dict(data)

    def list_jobs(self, status: Optional[JobStatus] = None, key: Optional[str] = None) -> List[ScheduledJob]:
        """List jobs ordered by run time"""
        filters: Dict[str, Any] = {}
        if status:
            filters['status'] = status.value
        if key:
            filters['key'] = key
        jobs = [ScheduledJob.from_dict(data) for data in self.storage.find(self.table, filters)]
        return sorted(jobs, key=lambda j: j.run_at)

    def due_jobs(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> List[ScheduledJob]:
        """Scheduled jobs whose run time has arrived plus abandoned running jobs, oldest first"""
        now = now or datetime.now(timezone.utc)
        due = [job for job in self.list_jobs(JobStatus.SCHEDULED) if job.run_at <= now]
        due.extend(self.stale_jobs(now))
        due.sort(key=lambda j: j.run_at)
        return due[:limit or self.batch_size]

    def stale_jobs(self, now: Optional[datetime] = None) -> List[ScheduledJob]:
        """Running jobs held longer than the lease, left behind by a worker that died"""
        cutoff = (now or datetime.now(timezone.utc)) - self.lease
        return [
            job for job in self.list_jobs(JobStatus.RUNNING)
            if job.started_at is not None and job.started_at <= cutoff
        ]

    def run_due(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> Dict[str, int]:
        """
        Run every due job once.

        Args:
            now: Evaluation time (defaults to the current time)
            limit: Maximum number of jobs to pick up

        Returns:
            Counts of succeeded, retried, failed and skipped (claimed elsewhere) jobs
        """
        now = now or datetime.now(timezone.utc)
        results = {"succeeded": 0, "retried": 0, "failed": 0, "skipped": 0}

        for job in self.due_jobs(now, limit):
            outcome = self.run_job(job, now)
            results[outcome] += 1

        return results

    def run_job(self, job: ScheduledJob, now: Optional[datetime] = None) -> str:
        """Claim and run a single job; returns the outcome counter name"""
        now = now or datetime.now(timezone.utc)
        claimed_from = job.status

        if claimed_from == JobStatus.RUNNING:
            logger.warning(f"Lease expired for job {job.job_name} ({job.id}) on attempt {job.attempts}")
            if job.attempts >= self.max_attempts:
                return self._record_failure(job, TimeoutError("Worker lease expired"), now,
                                            retryable=False, expected=claimed_from)

        job.status = JobStatus.RUNNING
        job.started_at = datetime.now(timezone.utc)
        job.attempts += 1
        if not self._save(job, {'status': claimed_from.value}):
            logger.debug(f"Job {job.id} already claimed by another worker")
            return "skipped"

        handler = self.handlers.get(job.job_name)
        try:
            if handler is None:
                raise LookupError(f"No handler registered for job '{job.job_name}'")
            job.result = handler(dict(job.arguments), now)
        except Exception as e:
            logger.exception(f"Job {job.job_name} ({job.id}) failed on attempt {job.attempts}")
            return self._record_failure(job, e, now, retryable=handler is not None)

        job.status = JobStatus.COMPLETED
        job.finished_at = datetime.now(timezone.utc)
        job.last_error = None
        self._save(job)
        return "succeeded"

    def _record_failure(self, job: ScheduledJob, error: Exception, now: datetime,
                        retryable: bool, expected: JobStatus = JobStatus.RUNNING) -> str:
        conditions = {'status': expected.value}
        job.last_error = str(error)
        if retryable and job.attempts < self.max_attempts:
            job.status = JobStatus.SCHEDULED
            job.run_at = now + self.retry_delay
            return "retried" if self._save(job, conditions) else "skipped"

        job.status = JobStatus.FAILED
        job.finished_at = datetime.now(timezone.utc)
        if not self._save(job, conditions):
            return "skipped"
        if self.audit:
            self.audit.record(
                AuditEventType.SYSTEM, AuditAction.JOB_FAILED, 'scheduled_job', job.id,
                {'job_name': job.job_name, 'attempts': job.attempts, 'error': job.last_error,
                 'arguments': job.arguments}
            )
        return "failed"

    def _pending_with_key(self, key: str) -> List[ScheduledJob]:
        return self.list_jobs(JobStatus.SCHEDULED, key)

    def _save(self, job: ScheduledJob, expected: Optional[Dict[str, Any]] = None) -> bool:
        """Version compare-and-swap save; False when another writer got there first"""
        conditions = {'version': job.version}
        conditions.update(expected or {})
        job.version += 1
        job.updated_at = datetime.now(timezone.utc)
        if self.storage.update_if(self.table, job.id, conditions, job.to_dict()):
            return True
        job.version -= 1
        return False
