"""Durable design generation queue helpers (Redis/RQ)."""

from __future__ import annotations

from redis import Redis
from rq import Queue, Retry
from rq.job import Job

from config import settings


GENERATION_QUEUE_NAME = "generation_jobs"


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_generation_queue() -> Queue:
    """Return the configured generation queue."""
    return Queue(
        name=GENERATION_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=1800,
    )


def enqueue_design_job(design_id: str) -> Job:
    """Enqueue a design generation job.

    Retries are safe: ``complete_design`` skips designs that already reached a
    terminal state, and refunds are keyed on the design id.
    """
    queue = get_generation_queue()
    return queue.enqueue(
        "services.designs.process_design_job",
        design_id,
        job_id=f"design:{design_id}",
        retry=Retry(max=2, interval=[30, 120]),
        job_timeout=1800,
        result_ttl=86400,
        failure_ttl=86400,
    )
