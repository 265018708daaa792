"""Worker that claims and executes jobs for one task family.

Provides a worker that:
- Claims jobs from its queue and dispatches them by task kind
- Runs up to ``concurrency`` handlers at once (1 = sequential)
- Bounds each handler with a timeout and classifies its failures
- Reclaims jobs abandoned by crashed workers
- Supports graceful shutdown

Example:
    registry = HandlerRegistry({TaskKind.IMPORT: handle_import})
    worker = JobWorker(queue, registry, WorkerConfig(name="import-1"))

    # Run worker (blocks until SIGTERM/SIGINT or stop())
    await worker.run()
"""

from __future__ import annotations

import asyncio
import contextvars
import inspect
import logging
import signal
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from types import TracebackType
from typing import Any

from cartojobs.jobs.errors import ClaimNotHeldError, UnknownTaskError
from cartojobs.jobs.families import TaskKind
from cartojobs.jobs.queue import JobQueue
from cartojobs.jobs.record import FailureKind, JobRecord
from cartojobs.observability.logging import LogContext
from cartojobs.observability.metrics import JobMetrics

logger = logging.getLogger(__name__)

# Handlers take the job payload and return a JSON-serializable result,
# either directly or as an awaitable. Plain functions run in a thread.
TaskHandler = Callable[[dict[str, Any]], Any]

_current_job: contextvars.ContextVar[JobRecord | None] = contextvars.ContextVar(
    "current_job", default=None
)


def current_job() -> JobRecord:
    """The job whose handler is running in this context.

    Raises:
        RuntimeError: Called outside a handler invocation
    """
    job = _current_job.get()
    if job is None:
        raise RuntimeError("No job is being processed in this context")
    return job


def task_handler(kind: TaskKind) -> Callable[[TaskHandler], TaskHandler]:
    """Decorator to mark a function as the handler for a task kind.

    Example:
        @task_handler(TaskKind.EXPORT)
        async def handle_export(payload: dict) -> dict:
            ...

        registry = HandlerRegistry.from_functions([handle_export])
    """

    def decorator(func: TaskHandler) -> TaskHandler:
        func.__task_kind__ = kind  # type: ignore[attr-defined]
        return func

    return decorator


class HandlerRegistry:
    """Static mapping from task kind to handler.

    Names outside ``TaskKind`` and kinds without a handler both resolve
    to ``UnknownTaskError``.
    """

    def __init__(self, handlers: Mapping[TaskKind, TaskHandler] | None = None) -> None:
        self._handlers: dict[TaskKind, TaskHandler] = {}
        for kind, handler in (handlers or {}).items():
            self.register(kind, handler)

    @classmethod
    def from_functions(cls, functions: Iterable[TaskHandler]) -> HandlerRegistry:
        """Build a registry from ``@task_handler``-decorated functions."""
        registry = cls()
        for func in functions:
            kind = getattr(func, "__task_kind__", None)
            if kind is None:
                raise ValueError(f"{func!r} is not decorated with @task_handler")
            registry.register(kind, func)
        return registry

    def register(self, kind: TaskKind, handler: TaskHandler) -> None:
        self._handlers[TaskKind(kind)] = handler
        logger.debug(f"Registered handler for task: {kind.value}")

    def resolve(self, task: str) -> TaskHandler:
        kind = TaskKind.parse(task)
        handler = self._handlers.get(kind) if kind is not None else None
        if handler is None:
            raise UnknownTaskError(task)
        return handler

    def restricted_to(self, kinds: Iterable[TaskKind]) -> HandlerRegistry:
        """Registry holding only the given kinds (e.g. one family's)."""
        wanted = set(kinds)
        return HandlerRegistry({k: h for k, h in self._handlers.items() if k in wanted})

    @property
    def kinds(self) -> frozenset[TaskKind]:
        return frozenset(self._handlers)

    def __contains__(self, kind: object) -> bool:
        return kind in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)


@dataclass
class WorkerConfig:
    """Worker configuration."""

    # Worker identification
    name: str = "default"

    # Job processing
    concurrency: int = 1
    poll_interval: float = 1.0
    handler_timeout: float | None = 240.0

    # Claim upkeep
    reclaim_interval: float = 5.0
    heartbeat_interval: float | None = None

    install_signal_handlers: bool = True


class JobWorker:
    """Executes jobs from one queue until stopped.

    A failing job never stops the worker: handler errors are caught at
    the loop boundary and turned into a nack.
    """

    def __init__(
        self,
        queue: JobQueue,
        handlers: HandlerRegistry,
        config: WorkerConfig | None = None,
    ) -> None:
        self.queue = queue
        self.handlers = handlers
        self.config = config or WorkerConfig()
        if self.config.concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._running = False
        self._slots = asyncio.Semaphore(self.config.concurrency)
        self._tasks: set[asyncio.Task[None]] = set()
        self._last_reclaim = float("-inf")
        self._signals_installed = False
        self._started = False

    @property
    def metrics(self) -> JobMetrics | None:
        return self.queue.metrics

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def start(self) -> None:
        """Start the worker and install signal handlers for graceful shutdown."""
        self._running = True
        self._started = True

        if self.config.install_signal_handlers:
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, self._signal_handler)
            self._signals_installed = True

        logger.info(
            f"Worker started: {self.config.name} "
            f"(queue={self.queue.name}, concurrency={self.config.concurrency})"
        )

    async def stop(self) -> None:
        """Stop the worker, waiting for in-flight jobs to finish."""
        if not self._started:
            return
        self._started = False
        logger.info(f"Stopping worker: {self.config.name}")
        self._running = False

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        if self._signals_installed:
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(sig)
            self._signals_installed = False

        logger.info(f"Worker stopped: {self.config.name}")

    def _signal_handler(self) -> None:
        logger.info("Received shutdown signal")
        self._running = False

    async def run(self) -> None:
        """Claim and process jobs until stopped."""
        await self.start()

        try:
            while self._running:
                await self._maybe_reclaim()

                await self._slots.acquire()
                if not self._running:
                    self._slots.release()
                    break

                try:
                    job = await self.queue.claim_next(wait=self.config.poll_interval)
                except asyncio.CancelledError:
                    self._slots.release()
                    raise
                except Exception as e:
                    self._slots.release()
                    logger.error(f"Error claiming jobs: {e}")
                    await asyncio.sleep(self.config.poll_interval)
                    continue

                if job is None:
                    self._slots.release()
                    continue

                task = asyncio.create_task(self._run_in_slot(job))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

        finally:
            await self.stop()

    async def run_until_empty(self) -> int:
        """Process jobs until nothing is claimable, then return.

        Useful for tests and one-shot batch runs. Jobs waiting out a retry
        backoff are not waited for.

        Returns:
            Number of jobs processed
        """
        count = 0
        await self._maybe_reclaim(force=True)

        while True:
            job = await self.queue.claim_next(wait=0)
            if job is None:
                return count
            try:
                await self.process(job)
            except Exception as e:
                logger.error(f"Error processing job {job.id}: {e}")
            count += 1

    async def _run_in_slot(self, job: JobRecord) -> None:
        try:
            await self.process(job)
        except Exception as e:
            # Broker failure while recording the outcome; the claim expires
            # and the job is reclaimed.
            logger.error(f"Error processing job {job.id}: {e}")
        finally:
            self._slots.release()

    async def _maybe_reclaim(self, force: bool = False) -> None:
        now = time.monotonic()
        if not force and now - self._last_reclaim < self.config.reclaim_interval:
            return
        self._last_reclaim = now
        try:
            await self.queue.reclaim_expired()
        except Exception as e:
            logger.error(f"Error reclaiming expired jobs: {e}")

    async def process(self, job: JobRecord) -> JobRecord | None:
        """Execute one claimed job and ack or nack it.

        Returns:
            The job's updated record, or None if the claim was lost
            before the outcome could be recorded
        """
        with LogContext(job_id=job.id, queue=self.queue.name, worker=self.config.name):
            token = _current_job.set(job)
            try:
                return await self._process(job)
            finally:
                _current_job.reset(token)

    async def _process(self, job: JobRecord) -> JobRecord | None:
        try:
            handler = self.handlers.resolve(job.task)
        except UnknownTaskError as e:
            logger.error(f"No handler for task: {job.task}")
            return await self._fail(job, e)

        logger.info(f"Processing job: {job.id} ({job.task})")
        heartbeat = self._start_heartbeat(job)
        started = time.monotonic()
        if self.metrics:
            self.metrics.track_in_flight(self.queue.name, 1)

        error: Exception | None = None
        result: Any = None
        try:
            result = await self._invoke(handler, job.payload)
        except Exception as e:
            error = e
        finally:
            if heartbeat is not None:
                heartbeat.cancel()
            if self.metrics:
                self.metrics.track_in_flight(self.queue.name, -1)
                self.metrics.observe_duration(self.queue.name, job.task, time.monotonic() - started)

        if error is not None:
            logger.error(f"Job failed: {job.id} - {type(error).__name__}: {error}")
            return await self._fail(job, error)

        try:
            return await self.queue.ack(job, result)
        except ClaimNotHeldError:
            logger.warning(f"Claim lost before ack, result discarded: {job.id}")
            return None
        except (TypeError, ValueError) as e:
            return await self._fail(job, TypeError(f"Handler result is not serializable: {e}"))

    async def _invoke(self, handler: TaskHandler, payload: dict[str, Any]) -> Any:
        if inspect.iscoroutinefunction(handler):
            call = handler(payload)
        else:
            call = asyncio.to_thread(handler, payload)

        timeout = self.config.handler_timeout
        try:
            return await asyncio.wait_for(call, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise asyncio.TimeoutError(f"Handler exceeded {timeout:g}s timeout") from e

    async def _fail(self, job: JobRecord, error: BaseException) -> JobRecord | None:
        kind = self.queue.retry_policy.classify(error)
        retryable = kind is FailureKind.TRANSIENT
        detail = f"{type(error).__name__}: {error}"
        try:
            return await self.queue.nack(
                job,
                detail,
                retryable=retryable,
                kind=None if retryable else kind,
            )
        except ClaimNotHeldError:
            logger.warning(f"Claim lost before nack: {job.id}")
            return None

    def _start_heartbeat(self, job: JobRecord) -> asyncio.Task[None] | None:
        if not self.config.heartbeat_interval:
            return None
        return asyncio.create_task(self._heartbeat(job, self.config.heartbeat_interval))

    async def _heartbeat(self, job: JobRecord, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.queue.extend_claim(job)
            except ClaimNotHeldError:
                logger.warning(f"Heartbeat found claim already lost: {job.id}")
                return

    async def __aenter__(self) -> JobWorker:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.stop()


def create_worker(
    queue: JobQueue,
    handlers: Mapping[TaskKind, TaskHandler] | HandlerRegistry,
    config: WorkerConfig | None = None,
) -> JobWorker:
    """Factory function to create a configured worker.

    Args:
        queue: Queue to claim from
        handlers: Registry, or mapping of task kinds to handlers
        config: Worker configuration

    Returns:
        Configured worker (not yet started)
    """
    if not isinstance(handlers, HandlerRegistry):
        handlers = HandlerRegistry(handlers)
    return JobWorker(queue, handlers, config)
