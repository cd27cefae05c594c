"""Runs the arq worker that serves extraction reprocessing jobs.

Run with: python -m services.queue.worker

Redis location, concurrency and job timeout come from Settings
(APP_REDIS_URL, APP_QUEUE_MAX_JOBS, APP_QUEUE_JOB_TIMEOUT).
"""

import logging

from arq import run_worker
from arq.connections import RedisSettings

from services.queue.tasks import WorkerSettings
from services.shared.config import Settings, get_settings
from services.shared.logging import configure_logging

logger = logging.getLogger(__name__)


def configure_worker(settings: Settings) -> type[WorkerSettings]:
    """Apply queue settings to the arq worker class."""
    WorkerSettings.redis_settings = RedisSettings.from_dsn(settings.redis_url)
    WorkerSettings.max_jobs = settings.queue_max_jobs
    WorkerSettings.job_timeout = settings.queue_job_timeout
    return WorkerSettings


def main() -> None:
    settings = get_settings()
    configure_logging(settings)
    worker_settings = configure_worker(settings)

    redis = worker_settings.redis_settings
    logger.info(
        f"Starting {settings.service_name} {settings.service_version} worker "
        f"({settings.environment}) on redis {redis.host}:{redis.port}/{redis.database}, "
        f"{worker_settings.max_jobs} jobs max, {worker_settings.job_timeout}s timeout"
    )
    run_worker(worker_settings)  # type: ignore[arg-type]


if __name__ == "__main__":
    main()
