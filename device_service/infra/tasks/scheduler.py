"""Background reaper: APScheduler jobs that expire stale state.

- sweep_expired_tokens: purges blacklist entries and refresh records past expiry
- prune_idle_connections: closes realtime connections idle beyond the bound

Each job logs and swallows its own failure so the scheduler keeps running;
the next tick retries. The scheduler is created and started by the
application lifespan and stored on ``app.state.scheduler``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler  # type: ignore[import-untyped]
from apscheduler.triggers.interval import IntervalTrigger  # type: ignore[import-untyped]

from device_service.infra.metrics.prometheus import reaper_items_removed_total, reaper_runs_total

if TYPE_CHECKING:
    from device_service.core.settings.realtime import RealtimeSettings
    from device_service.core.settings.scheduler import SchedulerSettings
    from device_service.features.auth.service import TokenLedger
    from device_service.infra.realtime import RealtimeHub

logger = logging.getLogger(__name__)

TOKEN_SWEEP_JOB_ID = "sweep_expired_tokens"
CONNECTION_PRUNE_JOB_ID = "prune_idle_connections"


def create_scheduler(settings: SchedulerSettings) -> AsyncIOScheduler:
    """Build the in-process scheduler (not started)."""
    return AsyncIOScheduler(
        timezone="UTC",
        job_defaults={
            "coalesce": True,  # Combine multiple pending executions into one
            "max_instances": 1,  # Only one instance of each job at a time
            "misfire_grace_time": settings.misfire_grace_time,
        },
    )


# =============================================================================
# Jobs
# =============================================================================


async def sweep_expired_tokens(ledger: TokenLedger) -> int:
    """Delete expired blacklist entries and refresh records.

    Returns:
        Rows removed, or 0 when the run failed.
    """
    try:
        removed = await ledger.sweep_expired()
    except Exception:
        reaper_runs_total.labels(job=TOKEN_SWEEP_JOB_ID, outcome="failure").inc()
        logger.exception("Token sweep failed; will retry on next run")
        return 0

    reaper_runs_total.labels(job=TOKEN_SWEEP_JOB_ID, outcome="success").inc()
    reaper_items_removed_total.labels(job=TOKEN_SWEEP_JOB_ID).inc(removed)
    logger.info("Token sweep completed", extra={"removed": removed})
    return removed


async def prune_idle_connections(hub: RealtimeHub, max_idle_seconds: float) -> int:
    """Close realtime connections with no activity for ``max_idle_seconds``.

    Returns:
        Connections closed, or 0 when the run failed.
    """
    try:
        pruned = hub.prune_idle(max_idle_seconds)
    except Exception:
        reaper_runs_total.labels(job=CONNECTION_PRUNE_JOB_ID, outcome="failure").inc()
        logger.exception("Idle connection prune failed; will retry on next run")
        return 0

    reaper_runs_total.labels(job=CONNECTION_PRUNE_JOB_ID, outcome="success").inc()
    reaper_items_removed_total.labels(job=CONNECTION_PRUNE_JOB_ID).inc(pruned)
    if pruned:
        logger.info("Idle connections pruned", extra={"pruned": pruned, "max_idle_seconds": max_idle_seconds})
    return pruned


# =============================================================================
# Scheduler lifecycle
# =============================================================================


def setup_scheduled_jobs(
    scheduler: AsyncIOScheduler,
    *,
    ledger: TokenLedger,
    hub: RealtimeHub,
    scheduler_settings: SchedulerSettings,
    realtime_settings: RealtimeSettings,
) -> None:
    """Register the reaper jobs."""
    scheduler.add_job(
        func=sweep_expired_tokens,
        trigger=IntervalTrigger(seconds=scheduler_settings.token_sweep_interval_seconds),
        kwargs={"ledger": ledger},
        id=TOKEN_SWEEP_JOB_ID,
        name="Sweep expired tokens",
        replace_existing=True,
    )

    scheduler.add_job(
        func=prune_idle_connections,
        trigger=IntervalTrigger(seconds=scheduler_settings.connection_prune_interval_seconds),
        kwargs={"hub": hub, "max_idle_seconds": realtime_settings.idle_timeout},
        id=CONNECTION_PRUNE_JOB_ID,
        name="Prune idle realtime connections",
        replace_existing=True,
    )

    logger.info("Scheduled reaper jobs", extra={"jobs": [job.id for job in scheduler.get_jobs()]})


def start_scheduler(scheduler: AsyncIOScheduler) -> None:
    """Start the scheduler; must be called with the event loop running."""
    if scheduler.running:
        logger.warning("APScheduler is already running")
        return
    scheduler.start()
    logger.info("APScheduler started", extra={"job_count": len(scheduler.get_jobs())})


def stop_scheduler(scheduler: AsyncIOScheduler) -> None:
    """Stop the scheduler without waiting for running jobs."""
    if not scheduler.running:
        logger.debug("APScheduler is not running")
        return
    scheduler.shutdown(wait=False)
    logger.info("APScheduler stopped")


def get_job_status(scheduler: AsyncIOScheduler) -> list[dict[str, Any]]:
    """Id, name, next run time and trigger of every job.

    Jobs added before the scheduler starts are pending and report no
    next run time.
    """
    return [
        {
            "id": job.id,
            "name": job.name,
            "next_run_time": next_run.isoformat() if (next_run := getattr(job, "next_run_time", None)) else None,
            "trigger": str(job.trigger),
        }
        for job in scheduler.get_jobs()
    ]
