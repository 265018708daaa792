"""Prometheus metrics for job submission and execution.

Usage:
    metrics = JobMetrics()
    metrics.jobs_submitted_total.labels(queue="IMPORT_QUEUE", task="import").inc()

    # Exposition (e.g. from a /metrics endpoint)
    body = metrics.render()
"""

from __future__ import annotations

import logging

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)

CONTENT_TYPE = CONTENT_TYPE_LATEST


class JobMetrics:
    """Job counters and timings held in their own registry.

    Each instance owns a ``CollectorRegistry`` so several job systems (or
    test cases) can live in one process without duplicate registration.
    """

    def __init__(self, enabled: bool = True) -> None:
        self.enabled = enabled
        self.registry = CollectorRegistry()

        self.jobs_submitted_total = Counter(
            "cartojobs_jobs_submitted_total",
            "Jobs accepted by a queue (idempotent resubmissions excluded)",
            ["queue", "task"],
            registry=self.registry,
        )
        self.jobs_completed_total = Counter(
            "cartojobs_jobs_completed_total",
            "Jobs acked as completed",
            ["queue", "task"],
            registry=self.registry,
        )
        self.jobs_failed_total = Counter(
            "cartojobs_jobs_failed_total",
            "Jobs moved to the terminal failed state",
            ["queue", "task", "kind"],
            registry=self.registry,
        )
        self.jobs_retried_total = Counter(
            "cartojobs_jobs_retried_total",
            "Jobs returned to the queue after a transient failure",
            ["queue", "task"],
            registry=self.registry,
        )
        self.jobs_reclaimed_total = Counter(
            "cartojobs_jobs_reclaimed_total",
            "Claims reclaimed after the visibility timeout elapsed",
            ["queue"],
            registry=self.registry,
        )
        self.job_duration_seconds = Histogram(
            "cartojobs_job_duration_seconds",
            "Handler execution time in seconds",
            ["queue", "task"],
            buckets=(0.05, 0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0, 900.0),
            registry=self.registry,
        )
        self.jobs_in_flight = Gauge(
            "cartojobs_jobs_in_flight",
            "Handler invocations currently running",
            ["queue"],
            registry=self.registry,
        )

        if not enabled:
            logger.info("Metrics are disabled")

    def inc(self, counter: Counter, **labels: str) -> None:
        """Increment a counter unless metrics are disabled."""
        if self.enabled:
            counter.labels(**labels).inc()

    def observe_duration(self, queue: str, task: str, seconds: float) -> None:
        if self.enabled:
            self.job_duration_seconds.labels(queue=queue, task=task).observe(seconds)

    def track_in_flight(self, queue: str, delta: int) -> None:
        if self.enabled:
            self.jobs_in_flight.labels(queue=queue).inc(delta)

    def render(self) -> bytes:
        """Prometheus text exposition of this registry."""
        return generate_latest(self.registry)
