"""Helpers shared by the pipeline registration functions."""

from jobalerts.config.models import QueueConfig, WorkerSettings
from jobalerts.queue import Backoff, JobOptions, Limiter, RepeatOptions, WorkerOptions


def worker_options(settings: WorkerSettings) -> WorkerOptions:
    """Translate configured worker settings into runtime worker options."""
    limiter = None
    if settings.limiter is not None:
        limiter = Limiter(
            max=settings.limiter.max, duration_seconds=settings.limiter.duration_seconds
        )
    return WorkerOptions(concurrency=settings.concurrency, limiter=limiter)


def job_options(queue_config: QueueConfig, **kwargs) -> JobOptions:
    """Job options using the configured attempts and backoff."""
    return JobOptions(
        attempts=queue_config.default_attempts,
        backoff=Backoff(type="exponential", delay_ms=queue_config.backoff_delay_ms),
        **kwargs,
    )


def schedule_options(queue_config: QueueConfig, schedule_id: str, pattern: str) -> JobOptions:
    """Options for a repeatable registration under a fixed id."""
    return job_options(queue_config, repeat=RepeatOptions(pattern=pattern), job_id=schedule_id)
