"""
Workflow Worker

Polls the job scheduler and runs due SLA checks. Any number of workers may
run against the same storage; each job is claimed by exactly one of them.

Run with ``python -m docflow.worker``; settings come from DOCFLOW_*
environment variables.
"""

from typing import Dict, Optional
import logging
import threading

from .config import get_config
from .logging_config import setup_logging
from .system import WorkflowSystem


logger = logging.getLogger(__name__)


def run_once(system: WorkflowSystem) -> Dict[str, int]:
    """Run due jobs, then the overdue sweep and notification retries"""
    totals = dict(system.scheduler.run_due())
    if system.config.sla_sweep_enabled:
        totals["swept"] = system.sla_monitor.sweep_overdue()["breached"]
    totals["notifications_retried"] = system.notification_center.retry_failed()["attempted"]
    return totals


def run_worker(system: WorkflowSystem, poll_interval: Optional[float] = None,
               max_iterations: Optional[int] = None,
               stop_event: Optional[threading.Event] = None) -> int:
    """
    Poll until stopped.

    Args:
        system: Wired workflow system
        poll_interval: Seconds between polls (defaults to configuration)
        max_iterations: Stop after this many polls
        stop_event: Set from another thread to stop the loop

    Returns:
        Number of polls performed
    """
    interval = poll_interval if poll_interval is not None else system.config.worker_poll_interval_seconds
    stop_event = stop_event or threading.Event()
    iterations = 0

    logger.info(f"Worker started (poll interval {interval}s)")
    while not stop_event.is_set():
        try:
            totals = run_once(system)
            if any(totals.values()):
                logger.info(f"Worker poll: {totals}")
        except Exception:
            logger.exception("Worker poll failed")

        iterations += 1
        if max_iterations is not None and iterations >= max_iterations:
            break
        stop_event.wait(interval)

    logger.info(f"Worker stopped after {iterations} poll(s)")
    return iterations


def main() -> None:
    settings = get_config()
    setup_logging(settings.log_level, fmt=settings.log_format, log_file=settings.log_file)

    system = WorkflowSystem(settings)
    try:
        run_worker(system)
    except KeyboardInterrupt:
        logger.info("Worker interrupted")
    finally:
        system.close()


if __name__ == "__main__":
    main()
