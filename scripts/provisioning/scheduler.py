"""APScheduler-based interval scheduling for provisioning and orphan sweeps."""

from __future__ import annotations

import logging

from apscheduler.events import EVENT_JOB_ERROR
from apscheduler.schedulers.blocking import BlockingScheduler

from scripts.provisioning.runtime import Runtime

logger = logging.getLogger("provisioning.scheduler")


def _provision(runtime: Runtime) -> None:
    """Drain eligible records within one interval's time budget."""
    sched = runtime.config.scheduler
    # Leave headroom so a run finishes before the next one is due.
    budget_s = runtime.config.pipeline.deadline_s or sched.provision_interval_min * 60 * 0.9
    runtime.run_tracked("scheduler", drain=True, deadline_s=budget_s)


def _sweep(runtime: Runtime) -> None:
    results = runtime.sweeper.sweep()
    logger.info("Orphan sweep complete: %s", results)


def _on_job_error(event) -> None:
    """Log job execution errors."""
    logger.error(
        "Job %s raised an exception: %s",
        event.job_id,
        event.exception,
    )


def build_scheduler(runtime: Runtime) -> BlockingScheduler:
    sched = runtime.config.scheduler
    scheduler = BlockingScheduler()
    scheduler.add_listener(_on_job_error, EVENT_JOB_ERROR)

    # max_instances=1 keeps overlapping runs from queueing up; claims make
    # them safe regardless.
    scheduler.add_job(
        _provision,
        "interval",
        minutes=sched.provision_interval_min,
        args=[runtime],
        id="provision",
        max_instances=1,
        misfire_grace_time=sched.misfire_grace_time,
    )
    scheduler.add_job(
        _sweep,
        "interval",
        minutes=sched.sweep_interval_min,
        args=[runtime],
        id="orphan_sweep",
        max_instances=1,
        misfire_grace_time=sched.misfire_grace_time,
    )
    return scheduler


def start_scheduler(runtime: Runtime) -> None:
    """Start the blocking scheduler."""
    scheduler = build_scheduler(runtime)
    logger.info("Starting scheduler with jobs: %s",
                [j.id for j in scheduler.get_jobs()])
    scheduler.start()
