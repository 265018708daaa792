"""Tests for the job worker."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from cartojobs.jobs import (
    FailureKind,
    HandlerRegistry,
    JobQueue,
    JobState,
    JobWorker,
    TaskKind,
    TerminalTaskError,
    TransientTaskError,
    WorkerConfig,
    create_worker,
    current_job,
    default_registry,
    task_handler,
)
from cartojobs.observability.metrics import JobMetrics

if TYPE_CHECKING:
    from conftest import FakeClock


def config(**kwargs: Any) -> WorkerConfig:
    defaults: dict[str, Any] = {
        "name": "test-worker",
        "poll_interval": 0.01,
        "install_signal_handlers": False,
    }
    defaults.update(kwargs)
    return WorkerConfig(**defaults)


async def wait_for_state(queue: JobQueue, job_id: str, state: JobState, timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while await queue.find_job_status(job_id) is not state:
        if time.monotonic() > deadline:
            raise AssertionError(f"{job_id} never reached {state.value}")
        await asyncio.sleep(0.01)


class TestHandlerRegistry:
    """Tests for HandlerRegistry."""

    def test_register_and_resolve(self) -> None:
        async def handler(payload: dict[str, Any]) -> dict[str, Any]:
            return {}

        registry = HandlerRegistry({TaskKind.IMPORT: handler})

        assert registry.resolve("import") is handler
        assert TaskKind.IMPORT in registry
        assert len(registry) == 1

    def test_unknown_name_raises(self) -> None:
        from cartojobs.jobs import UnknownTaskError

        registry = default_registry()

        with pytest.raises(UnknownTaskError, match="Unknown task type: vectorize"):
            registry.resolve("vectorize")

    def test_known_kind_without_handler_raises(self) -> None:
        from cartojobs.jobs import UnknownTaskError

        registry = default_registry().restricted_to([TaskKind.IMPORT])

        with pytest.raises(UnknownTaskError):
            registry.resolve("export")

    def test_from_functions(self) -> None:
        @task_handler(TaskKind.TEXT2MAP)
        async def text2map(payload: dict[str, Any]) -> dict[str, Any]:
            return {}

        registry = HandlerRegistry.from_functions([text2map])

        assert registry.kinds == frozenset({TaskKind.TEXT2MAP})

    def test_from_functions_rejects_undecorated(self) -> None:
        def plain(payload: dict[str, Any]) -> None:
            return None

        with pytest.raises(ValueError):
            HandlerRegistry.from_functions([plain])

    def test_default_registry_covers_every_kind(self) -> None:
        assert default_registry().kinds == frozenset(TaskKind)


class TestProcess:
    """Tests for single-job processing."""

    async def test_success_acks_with_result(self, queue: JobQueue) -> None:
        async def handler(payload: dict[str, Any]) -> dict[str, Any]:
            return {"echo": payload["fileName"]}

        worker = JobWorker(queue, HandlerRegistry({TaskKind.IMPORT: handler}), config())
        job_id = await queue.submit("import", {"fileName": "a.json"})

        assert await worker.run_until_empty() == 1

        job = await queue.get_job(job_id)
        assert job is not None
        assert job.state is JobState.COMPLETED
        assert job.result == {"echo": "a.json"}
        assert job.attempts == 1

    async def test_sync_handler_runs(self, queue: JobQueue) -> None:
        def handler(payload: dict[str, Any]) -> int:
            return payload["a"] + payload["b"]

        worker = JobWorker(queue, HandlerRegistry({TaskKind.IMPORT: handler}), config())
        job_id = await queue.submit("import", {"a": 2, "b": 3})

        await worker.run_until_empty()

        job = await queue.get_job(job_id)
        assert job is not None
        assert job.result == 5

    async def test_current_job_visible_to_handler(self, queue: JobQueue) -> None:
        seen: list[str] = []

        async def handler(payload: dict[str, Any]) -> None:
            seen.append(current_job().id)

        worker = JobWorker(queue, HandlerRegistry({TaskKind.IMPORT: handler}), config())
        job_id = await queue.submit("import", {})

        await worker.run_until_empty()

        assert seen == [job_id]
        with pytest.raises(RuntimeError):
            current_job()

    async def test_transient_twice_then_success(self, queue: JobQueue) -> None:
        """Two transient failures then success completes on the third attempt."""
        calls = 0

        async def handler(payload: dict[str, Any]) -> dict[str, str]:
            nonlocal calls
            calls += 1
            if calls < 3:
                raise TransientTaskError("upstream 503")
            return {"status": "completed"}

        worker = JobWorker(queue, HandlerRegistry({TaskKind.IMPORT: handler}), config())
        job_id = await queue.submit("import", {})

        await worker.run_until_empty()

        job = await queue.get_job(job_id)
        assert job is not None
        assert job.state is JobState.COMPLETED
        assert job.attempts == 3
        reasons = [h["reason"] for h in job.history]
        assert reasons.count("failed-retryable") == 2

    async def test_single_transient_failure_requeues_once(self, queue: JobQueue) -> None:
        failed = False

        async def handler(payload: dict[str, Any]) -> None:
            nonlocal failed
            if not failed:
                failed = True
                raise ConnectionResetError("peer reset")

        worker = JobWorker(queue, HandlerRegistry({TaskKind.IMPORT: handler}), config())
        job_id = await queue.submit("import", {})

        await worker.run_until_empty()

        job = await queue.get_job(job_id)
        assert job is not None
        assert [h["to"] for h in job.history].count("queued") == 2  # submitted + one retry
        assert job.state is JobState.COMPLETED

    async def test_transient_exhausts_attempts(self, queue: JobQueue) -> None:
        async def handler(payload: dict[str, Any]) -> None:
            raise TransientTaskError("still down")

        worker = JobWorker(queue, HandlerRegistry({TaskKind.IMPORT: handler}), config())
        job_id = await queue.submit("import", {})

        assert await worker.run_until_empty() == 3

        job = await queue.get_job(job_id)
        assert job is not None
        assert job.state is JobState.FAILED
        assert job.failure_kind is FailureKind.EXHAUSTED
        assert job.attempts == 3
        assert job.error == "TransientTaskError: still down"

    async def test_terminal_failure_not_retried(self, queue: JobQueue) -> None:
        calls = 0

        async def handler(payload: dict[str, Any]) -> None:
            nonlocal calls
            calls += 1
            raise TerminalTaskError("corrupt upload")

        worker = JobWorker(queue, HandlerRegistry({TaskKind.IMPORT: handler}), config())
        job_id = await queue.submit("import", {})

        await worker.run_until_empty()

        job = await queue.get_job(job_id)
        assert job is not None
        assert calls == 1
        assert job.state is JobState.FAILED
        assert job.attempts == 1
        assert job.failure_kind is FailureKind.TERMINAL
        assert job.error == "TerminalTaskError: corrupt upload"

    async def test_value_error_is_terminal(self, queue: JobQueue) -> None:
        async def handler(payload: dict[str, Any]) -> None:
            raise ValueError("dpi must be an integer")

        worker = JobWorker(queue, HandlerRegistry({TaskKind.IMPORT: handler}), config())
        job_id = await queue.submit("import", {})

        await worker.run_until_empty()

        job = await queue.get_job(job_id)
        assert job is not None
        assert job.attempts == 1
        assert job.failure_kind is FailureKind.TERMINAL

    async def test_unknown_task_fails_without_retry(self, queue: JobQueue) -> None:
        """Unregistered task names fail terminally on the first claim."""
        worker = JobWorker(queue, default_registry(), config())
        job_id = await queue.submit("vectorize", {})

        await worker.run_until_empty()

        job = await queue.get_job(job_id)
        assert job is not None
        assert job.state is JobState.FAILED
        assert job.attempts == 1
        assert job.failure_kind is FailureKind.UNKNOWN_TASK
        assert "Unknown task type: vectorize" in (job.error or "")

    async def test_handler_timeout_is_transient(self, make_queue: Callable[..., JobQueue]) -> None:
        queue = make_queue(max_attempts=2)

        async def handler(payload: dict[str, Any]) -> None:
            await asyncio.sleep(5)

        worker = JobWorker(
            queue, HandlerRegistry({TaskKind.TEXT2MAP: handler}), config(handler_timeout=0.02)
        )
        job_id = await queue.submit("text2map", {})

        await worker.run_until_empty()

        job = await queue.get_job(job_id)
        assert job is not None
        assert job.state is JobState.FAILED
        assert job.failure_kind is FailureKind.EXHAUSTED
        assert job.attempts == 2
        assert "timeout" in (job.error or "")

    async def test_unserializable_result_fails_job(self, queue: JobQueue) -> None:
        async def handler(payload: dict[str, Any]) -> object:
            return object()

        worker = JobWorker(queue, HandlerRegistry({TaskKind.IMPORT: handler}), config())
        job_id = await queue.submit("import", {})

        await worker.run_until_empty()

        job = await queue.get_job(job_id)
        assert job is not None
        assert job.state is JobState.FAILED
        assert job.failure_kind is FailureKind.TERMINAL

    async def test_bad_job_does_not_stop_worker(self, queue: JobQueue) -> None:
        async def handler(payload: dict[str, Any]) -> dict[str, str]:
            if payload.get("poison"):
                raise RuntimeError("unexpected")
            return {"status": "completed"}

        worker = JobWorker(
            queue, HandlerRegistry({TaskKind.IMPORT: handler}), config()
        )
        bad = await queue.submit("vectorize", {})
        poison = await queue.submit("import", {"poison": True}, max_attempts=1)
        good = await queue.submit("import", {})

        await worker.run_until_empty()

        assert await queue.find_job_status(bad) is JobState.FAILED
        assert await queue.find_job_status(poison) is JobState.FAILED
        assert await queue.find_job_status(good) is JobState.COMPLETED

    async def test_broker_error_on_ack_does_not_abort_batch(
        self,
        queue: JobQueue,
        monkeypatch: pytest.MonkeyPatch,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """A broker outage while recording one outcome leaves the rest of the batch running."""
        real_ack = queue.ack
        calls = 0

        async def flaky_ack(job: Any, result: Any = None) -> Any:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RedisConnectionError("connection reset")
            return await real_ack(job, result)

        monkeypatch.setattr(queue, "ack", flaky_ack)
        worker = JobWorker(queue, default_registry(), config())
        first = await queue.submit("import", {"fileName": "a.json"})
        second = await queue.submit("import", {"fileName": "b.json"})

        assert await worker.run_until_empty() == 2

        assert await queue.find_job_status(first) is JobState.ACTIVE
        assert await queue.find_job_status(second) is JobState.COMPLETED
        assert f"Error processing job {first}" in caplog.text

    async def test_lost_claim_discards_result(self, queue: JobQueue, clock: FakeClock) -> None:
        """A worker that outlived its claim cannot overwrite the new holder's work."""

        async def handler(payload: dict[str, Any]) -> dict[str, str]:
            clock.advance(31)
            await queue.reclaim_expired()
            return {"status": "late"}

        worker = JobWorker(queue, HandlerRegistry({TaskKind.IMPORT: handler}), config())
        job_id = await queue.submit("import", {})
        job = await queue.claim_next(wait=0)
        assert job is not None

        assert await worker.process(job) is None

        stored = await queue.get_job(job_id)
        assert stored is not None
        assert stored.state is JobState.QUEUED
        assert stored.result is None


class TestBuiltinHandlers:
    """End-to-end runs of the built-in task handlers."""

    async def test_import_completes(self, queue: JobQueue) -> None:
        worker = JobWorker(queue, default_registry(), config())
        job_id = await queue.submit("import", {"sourceType": "geojson", "fileName": "a.json"})

        await worker.run_until_empty()

        job = await queue.get_job(job_id)
        assert job is not None
        assert job.state is JobState.COMPLETED
        assert job.result == {"status": "completed"}

    async def test_import_without_file_is_terminal(self, queue: JobQueue) -> None:
        worker = JobWorker(queue, default_registry(), config())
        job_id = await queue.submit("import", {"sourceType": "geojson"})

        await worker.run_until_empty()

        job = await queue.get_job(job_id)
        assert job is not None
        assert job.state is JobState.FAILED
        assert job.attempts == 1

    async def test_export_reports_download_url(self, make_queue: Callable[..., JobQueue]) -> None:
        queue = make_queue("EXPORT_QUEUE")
        worker = JobWorker(queue, default_registry(), config())
        job_id = await queue.submit("export", {"projectId": "p1", "format": "png", "dpi": 150})

        await worker.run_until_empty()

        job = await queue.get_job(job_id)
        assert job is not None
        assert job.result == {"downloadUrl": f"s3://exports/{job_id}.zip"}

    @pytest.mark.parametrize("task", ["text2map", "ocr2vector", "styleFromPrompt"])
    async def test_ai_tasks(self, make_queue: Callable[..., JobQueue], task: str) -> None:
        queue = make_queue("AI_QUEUE")
        worker = JobWorker(queue, default_registry(), config())
        job_id = await queue.submit(task, {"projectId": "p1", "prompt": "rivers of Europe"})

        await worker.run_until_empty()

        job = await queue.get_job(job_id)
        assert job is not None
        assert job.result["assetRef"] == f"s3://ai/{job_id}.json"


class TestRunLoop:
    """Tests for the long-running worker loop."""

    async def test_run_processes_until_stopped(self, queue: JobQueue) -> None:
        async def handler(payload: dict[str, Any]) -> None:
            return None

        worker = JobWorker(queue, HandlerRegistry({TaskKind.IMPORT: handler}), config())
        runner = asyncio.create_task(worker.run())
        ids = [await queue.submit("import", {"n": n}) for n in range(3)]

        for job_id in ids:
            await wait_for_state(queue, job_id, JobState.COMPLETED)

        await worker.stop()
        await asyncio.wait_for(runner, timeout=1.0)

    async def test_run_survives_broker_error_on_ack(
        self,
        queue: JobQueue,
        monkeypatch: pytest.MonkeyPatch,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        real_ack = queue.ack
        failing = {"first": True}

        async def flaky_ack(job: Any, result: Any = None) -> Any:
            if failing.pop("first", False):
                raise RedisConnectionError("connection reset")
            return await real_ack(job, result)

        monkeypatch.setattr(queue, "ack", flaky_ack)
        worker = JobWorker(queue, default_registry(), config())
        first = await queue.submit("import", {"fileName": "a.json"})
        second = await queue.submit("import", {"fileName": "b.json"})
        runner = asyncio.create_task(worker.run())

        await wait_for_state(queue, second, JobState.COMPLETED)
        await worker.stop()
        await asyncio.wait_for(runner, timeout=1.0)

        assert await queue.find_job_status(first) is JobState.ACTIVE
        assert f"Error processing job {first}" in caplog.text

    async def test_sequential_by_default(self, queue: JobQueue) -> None:
        active = 0
        peak = 0

        async def handler(payload: dict[str, Any]) -> None:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.02)
            active -= 1

        worker = JobWorker(queue, HandlerRegistry({TaskKind.IMPORT: handler}), config())
        ids = [await queue.submit("import", {"n": n}) for n in range(4)]
        runner = asyncio.create_task(worker.run())

        for job_id in ids:
            await wait_for_state(queue, job_id, JobState.COMPLETED)
        await worker.stop()
        await runner

        assert peak == 1

    async def test_concurrency_is_bounded(self, make_queue: Callable[..., JobQueue]) -> None:
        queue = make_queue("AI_QUEUE")
        active = 0
        peak = 0

        async def handler(payload: dict[str, Any]) -> None:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.05)
            active -= 1

        worker = JobWorker(
            queue, HandlerRegistry({TaskKind.TEXT2MAP: handler}), config(concurrency=3)
        )
        ids = [await queue.submit("text2map", {"n": n}) for n in range(6)]
        runner = asyncio.create_task(worker.run())

        for job_id in ids:
            await wait_for_state(queue, job_id, JobState.COMPLETED)
        await worker.stop()
        await runner

        assert 1 < peak <= 3

    async def test_stop_waits_for_in_flight(self, queue: JobQueue) -> None:
        started = asyncio.Event()

        async def handler(payload: dict[str, Any]) -> None:
            started.set()
            await asyncio.sleep(0.05)

        worker = JobWorker(queue, HandlerRegistry({TaskKind.IMPORT: handler}), config())
        job_id = await queue.submit("import", {})
        runner = asyncio.create_task(worker.run())

        await started.wait()
        await worker.stop()
        await runner

        assert await queue.find_job_status(job_id) is JobState.COMPLETED

    async def test_worker_reclaims_abandoned_jobs(self, queue: JobQueue, clock: FakeClock) -> None:
        """A crashed holder's job is picked up by a live worker."""
        job_id = await queue.submit("import", {"fileName": "a.json"})
        assert await queue.claim_next(wait=0) is not None  # holder crashes here
        clock.advance(31)

        worker = JobWorker(queue, default_registry(), config())
        await worker.run_until_empty()

        job = await queue.get_job(job_id)
        assert job is not None
        assert job.state is JobState.COMPLETED
        assert job.attempts == 2

    async def test_heartbeat_keeps_claim(self, queue: JobQueue, clock: FakeClock) -> None:
        async def handler(payload: dict[str, Any]) -> str:
            for _ in range(3):
                clock.advance(20)
                await asyncio.sleep(0.03)
                assert await queue.reclaim_expired() == []
            return "done"

        worker = JobWorker(
            queue, HandlerRegistry({TaskKind.EXPORT: handler}), config(heartbeat_interval=0.01)
        )
        job_id = await queue.submit("export", {})

        await worker.run_until_empty()

        job = await queue.get_job(job_id)
        assert job is not None
        assert job.state is JobState.COMPLETED
        assert job.attempts == 1

    async def test_context_manager(self, queue: JobQueue) -> None:
        async with JobWorker(queue, default_registry(), config()) as worker:
            assert worker._running

        assert not worker._running

    def test_rejects_zero_concurrency(self, queue: JobQueue) -> None:
        with pytest.raises(ValueError):
            JobWorker(queue, default_registry(), config(concurrency=0))

    def test_create_worker_accepts_mapping(self, queue: JobQueue) -> None:
        async def handler(payload: dict[str, Any]) -> None:
            return None

        worker = create_worker(queue, {TaskKind.IMPORT: handler}, config())

        assert isinstance(worker.handlers, HandlerRegistry)
        assert TaskKind.IMPORT in worker.handlers


class TestMetrics:
    async def test_outcomes_counted(self, make_queue: Callable[..., JobQueue]) -> None:
        metrics = JobMetrics()
        queue = make_queue(metrics=metrics)

        async def handler(payload: dict[str, Any]) -> None:
            if payload.get("fail"):
                raise TerminalTaskError("nope")

        worker = JobWorker(queue, HandlerRegistry({TaskKind.IMPORT: handler}), config())
        await queue.submit("import", {})
        await queue.submit("import", {"fail": True})

        await worker.run_until_empty()

        registry = metrics.registry
        labels = {"queue": "IMPORT_QUEUE", "task": "import"}
        assert registry.get_sample_value("cartojobs_jobs_submitted_total", labels) == 2
        assert registry.get_sample_value("cartojobs_jobs_completed_total", labels) == 1
        assert (
            registry.get_sample_value(
                "cartojobs_jobs_failed_total", {**labels, "kind": "terminal"}
            )
            == 1
        )
        assert registry.get_sample_value("cartojobs_jobs_in_flight", {"queue": "IMPORT_QUEUE"}) == 0
