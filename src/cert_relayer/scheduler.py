"""
Scheduler — periodic reconciliation of submitted issuances and token balances.

Infrastructure layer — uses APScheduler (3.x) for lightweight in-process
scheduling driven by a standard 5-field cron expression.

Each run is wrapped in a LoggingExecutionContext for timing and outcome
logging. The job itself is idempotent: confirming an already-confirmed
digest or syncing an already-synced balance changes nothing.

Graceful shutdown: handles SIGINT/SIGTERM to stop the scheduler cleanly.
"""

from __future__ import annotations

import signal
import sys
from collections.abc import Callable
from dataclasses import asdict

import structlog
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

from cert_relayer.pipeline import ReconciliationSummary
from cert_relayer.railway import LoggingExecutionContext, Result

log = structlog.get_logger()


def create_scheduler(
    job_fn: Callable[[], Result[ReconciliationSummary]],
    cron: str = "*/5 * * * *",
    run_on_startup: bool = True,
) -> BlockingScheduler:
    """
    Create a configured APScheduler that runs reconciliation on a cron schedule.

    Args:
        job_fn: Zero-argument callable returning Result[ReconciliationSummary].
        cron: Standard 5-field cron expression (minute hour dom month dow).
        run_on_startup: If True, execute once immediately before entering the loop.

    Returns:
        A configured BlockingScheduler (call .start() to begin).
    """
    scheduler = BlockingScheduler()
    ctx = LoggingExecutionContext(operation="Reconciliation")

    def _job() -> None:
        result = ctx.execute(job_fn)
        if result.is_success():
            log.info("reconciler.job_completed", **asdict(result.value()))
        else:
            log.error("reconciler.job_failed", failure=str(result.error()))

    minute, hour, dom, month, dow = cron.split()
    scheduler.add_job(
        _job,
        trigger=CronTrigger(
            minute=minute,
            hour=hour,
            day=dom,
            month=month,
            day_of_week=dow,
        ),
        id="cert_relayer_reconcile",
        name="Issuance reconciliation",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    if run_on_startup:
        log.info("scheduler.startup_run", message="Reconciling immediately on startup")
        _job()

    _register_shutdown_signals(scheduler)

    return scheduler


def _register_shutdown_signals(scheduler: BlockingScheduler) -> None:
    """Register SIGINT and SIGTERM handlers for graceful shutdown."""

    def _shutdown(signum: int, frame: object) -> None:
        sig_name = signal.Signals(signum).name
        log.info("scheduler.shutdown_requested", signal=sig_name)
        scheduler.shutdown(wait=False)
        sys.exit(0)

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)
