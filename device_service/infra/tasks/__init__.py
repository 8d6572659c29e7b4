"""Background reaper scheduling."""

from device_service.infra.tasks.scheduler import (
    CONNECTION_PRUNE_JOB_ID,
    TOKEN_SWEEP_JOB_ID,
    create_scheduler,
    get_job_status,
    prune_idle_connections,
    setup_scheduled_jobs,
    start_scheduler,
    stop_scheduler,
    sweep_expired_tokens,
)

__all__ = [
    "CONNECTION_PRUNE_JOB_ID",
    "TOKEN_SWEEP_JOB_ID",
    "create_scheduler",
    "get_job_status",
    "prune_idle_connections",
    "setup_scheduled_jobs",
    "start_scheduler",
    "stop_scheduler",
    "sweep_expired_tokens",
]
