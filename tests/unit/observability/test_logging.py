"""Tests for structured logging."""

import json
import logging

import pytest

from cartojobs.observability.logging import (
    ConsoleFormatter,
    JsonFormatter,
    LogContext,
    current_context,
)


def make_record(message: str = "Job completed", **extra: object) -> logging.LogRecord:
    record = logging.LogRecord(
        name="cartojobs.jobs.worker",
        level=logging.INFO,
        pathname=__file__,
        lineno=10,
        msg=message,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJsonFormatter:
    """Tests for JsonFormatter."""

    def test_basic_fields(self) -> None:
        data = json.loads(JsonFormatter().format(make_record()))

        assert data["level"] == "INFO"
        assert data["logger"] == "cartojobs.jobs.worker"
        assert data["message"] == "Job completed"
        assert "job_id" not in data

    def test_includes_job_context(self) -> None:
        with LogContext(job_id="job-1", queue="AI_QUEUE", worker="ai-1"):
            data = json.loads(JsonFormatter().format(make_record()))

        assert data["job_id"] == "job-1"
        assert data["queue"] == "AI_QUEUE"
        assert data["worker"] == "ai-1"

    def test_includes_extra(self) -> None:
        data = json.loads(JsonFormatter().format(make_record(family="export", blob=object())))

        assert data["family"] == "export"
        assert isinstance(data["blob"], str)


class TestConsoleFormatter:
    def test_context_suffix(self) -> None:
        formatter = ConsoleFormatter(use_colors=False)

        with LogContext(job_id="0123456789abcdef", queue="IMPORT_QUEUE"):
            line = formatter.format(make_record())

        assert line.endswith("| job=01234567 queue=IMPORT_QUEUE")


class TestLogContext:
    def test_restores_previous_values(self) -> None:
        with LogContext(job_id="outer"):
            with LogContext(job_id="inner"):
                assert current_context()["job_id"] == "inner"
            assert current_context()["job_id"] == "outer"

        assert current_context() == {}

    def test_unknown_key(self) -> None:
        with pytest.raises(TypeError):
            LogContext(tenant="acme")
