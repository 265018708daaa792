"""Job record entity and its state machine.

States and the transitions allowed between them:

    queued --claim--> active
    active --ack--> completed                    (terminal)
    active --nack retryable--> queued            (failed-retryable)
    active --visibility timeout--> queued        (reclaim)
    active --nack terminal / exhausted--> failed (terminal)

A job only ever becomes ``active`` through a fresh claim from ``queued``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from cartojobs.jobs.errors import InvalidTransitionError

DEFAULT_MAX_ATTEMPTS = 3


class JobState(str, Enum):
    """Lifecycle state of a job record."""

    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"  # failed-terminal

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


class FailureKind(str, Enum):
    """Why the last execution attempt did not complete."""

    TRANSIENT = "transient"
    TERMINAL = "terminal"
    EXHAUSTED = "exhausted"  # retryable, but out of attempts
    RECLAIMED = "reclaimed"  # holder went silent past the visibility timeout
    UNKNOWN_TASK = "unknown_task"


TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.QUEUED: frozenset({JobState.ACTIVE}),
    JobState.ACTIVE: frozenset({JobState.COMPLETED, JobState.QUEUED, JobState.FAILED}),
    JobState.COMPLETED: frozenset(),
    JobState.FAILED: frozenset(),
}


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _format_dt(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass
class JobRecord:
    """One unit of work, its payload and its lifecycle state."""

    id: str
    task: str
    payload: dict[str, Any]
    state: JobState = JobState.QUEUED
    attempts: int = 0
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    result: Any = None
    error: str | None = None
    failure_kind: FailureKind | None = None
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: datetime | None = None
    finished_at: datetime | None = None
    available_at: datetime | None = None
    history: list[dict[str, Any]] = field(default_factory=list)

    # Set on records handed out by claim; never persisted
    claim_token: str | None = field(default=None, compare=False, repr=False)

    @property
    def attempts_left(self) -> int:
        return max(self.max_attempts - self.attempts, 0)

    def _transition(self, target: JobState, now: datetime, reason: str) -> None:
        if target not in TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"Job {self.id}: {self.state.value} -> {target.value} is not allowed"
            )
        self.history.append(
            {
                "from": self.state.value,
                "to": target.value,
                "at": now.isoformat(),
                "reason": reason,
            }
        )
        self.state = target

    def mark_active(self, now: datetime) -> None:
        """Claimed by a worker: one more execution attempt begins."""
        self._transition(JobState.ACTIVE, now, "claimed")
        self.attempts += 1
        self.started_at = now
        self.available_at = None

    def mark_completed(self, result: Any, now: datetime) -> None:
        self._transition(JobState.COMPLETED, now, "completed")
        self.result = result
        self.finished_at = now

    def mark_retry(
        self,
        error: str,
        kind: FailureKind,
        now: datetime,
        available_at: datetime | None = None,
    ) -> None:
        """Return to the queue after a retryable failure or a reclaim."""
        reason = "reclaimed" if kind is FailureKind.RECLAIMED else "failed-retryable"
        self._transition(JobState.QUEUED, now, reason)
        self.error = error
        self.failure_kind = kind
        self.available_at = available_at

    def mark_failed(self, error: str, kind: FailureKind, now: datetime) -> None:
        self._transition(JobState.FAILED, now, "failed-terminal")
        self.error = error
        self.failure_kind = kind
        self.finished_at = now

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dictionary (claim token excluded)."""
        return {
            "id": self.id,
            "task": self.task,
            "payload": self.payload,
            "state": self.state.value,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "result": self.result,
            "error": self.error,
            "failure_kind": self.failure_kind.value if self.failure_kind else None,
            "enqueued_at": self.enqueued_at.isoformat(),
            "started_at": _format_dt(self.started_at),
            "finished_at": _format_dt(self.finished_at),
            "available_at": _format_dt(self.available_at),
            "history": self.history,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> JobRecord:
        failure_kind = data.get("failure_kind")
        return cls(
            id=data["id"],
            task=data["task"],
            payload=data["payload"],
            state=JobState(data["state"]),
            attempts=data.get("attempts", 0),
            max_attempts=data.get("max_attempts", DEFAULT_MAX_ATTEMPTS),
            result=data.get("result"),
            error=data.get("error"),
            failure_kind=FailureKind(failure_kind) if failure_kind else None,
            enqueued_at=datetime.fromisoformat(data["enqueued_at"]),
            started_at=_parse_dt(data.get("started_at")),
            finished_at=_parse_dt(data.get("finished_at")),
            available_at=_parse_dt(data.get("available_at")),
            history=list(data.get("history", [])),
        )
