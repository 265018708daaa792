"""Process bootstrap for submitters and workers.

One broker connection is opened per process and passed explicitly to
each family's queue; nothing below this module reaches for a global.

Example:
    system = create_job_system(settings)
    job_id = await system.submitter.enqueue_import({"fileName": "a.json"})

    worker = system.create_worker(TaskFamily.IMPORT)
    await worker.run()

    await system.close()
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from cartojobs.broker import Broker, create_broker
from cartojobs.config import Settings
from cartojobs.jobs.families import TaskFamily
from cartojobs.jobs.queue import JobQueue
from cartojobs.jobs.retry import RetryPolicy
from cartojobs.jobs.tasks import default_registry
from cartojobs.jobs.worker import HandlerRegistry, JobWorker, WorkerConfig
from cartojobs.observability.metrics import JobMetrics
from cartojobs.submission import JobSubmitter

logger = logging.getLogger(__name__)


@dataclass
class JobSystem:
    """Broker, queues and submitter shared by one process."""

    settings: Settings
    broker: Broker
    queues: dict[TaskFamily, JobQueue]
    submitter: JobSubmitter
    metrics: JobMetrics
    handlers: HandlerRegistry = field(default_factory=default_registry)

    def queue(self, family: TaskFamily) -> JobQueue:
        return self.queues[family]

    def create_worker(
        self,
        family: TaskFamily,
        concurrency: int | None = None,
        name: str | None = None,
    ) -> JobWorker:
        """Worker for one family, limited to that family's task kinds."""
        tuning = self.settings.family(family)
        config = WorkerConfig(
            name=name or f"{family.value}-{self.settings.instance_id}",
            concurrency=concurrency or tuning.concurrency,
            poll_interval=self.settings.poll_interval,
            handler_timeout=tuning.handler_timeout,
        )
        return JobWorker(self.queues[family], self.handlers.restricted_to(family.kinds), config)

    async def close(self) -> None:
        await self.broker.close()
        logger.info("Job system closed")


def create_job_system(
    settings: Settings,
    broker: Broker | None = None,
    handlers: HandlerRegistry | None = None,
    clock: Callable[[], float] = time.time,
) -> JobSystem:
    """Wire a broker, one queue per family and the submitter.

    Args:
        settings: Process settings
        broker: Existing broker to use (created from settings if None)
        handlers: Task handlers for workers (built-ins if None)
        clock: Source of epoch seconds for claim deadlines
    """
    broker = broker or create_broker(settings)
    metrics = JobMetrics(enabled=settings.enable_metrics)
    queues: dict[TaskFamily, JobQueue] = {}

    for family in TaskFamily:
        tuning = settings.family(family)
        policy = RetryPolicy(
            max_attempts=tuning.max_attempts,
            base_delay=settings.retry_base_delay,
            multiplier=settings.retry_multiplier,
            max_delay=settings.retry_max_delay,
            jitter=settings.retry_jitter,
            retry_unclassified=settings.retry_unclassified,
        )
        queues[family] = JobQueue(
            family.queue_name,
            broker,
            retry_policy=policy,
            visibility_timeout=tuning.visibility_timeout,
            job_ttl=settings.job_ttl,
            result_ttl=settings.result_ttl,
            poll_interval=settings.poll_interval,
            clock=clock,
            metrics=metrics,
        )

    return JobSystem(
        settings=settings,
        broker=broker,
        queues=queues,
        submitter=JobSubmitter(queues),
        metrics=metrics,
        handlers=handlers or default_registry(),
    )
