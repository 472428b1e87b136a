from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, StrictBool

from .errors import IllegalTransitionError

TASK_ID_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9._:-]{0,127}$"


def _utc_now() -> datetime:
    return datetime.now(UTC)


class TaskRunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    NEEDS_CHANGES = "needs_changes"
    DONE = "done"
    REJECTED = "rejected"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"


TERMINAL_STATUSES: frozenset[TaskRunStatus] = frozenset(
    {
        TaskRunStatus.DONE,
        TaskRunStatus.REJECTED,
        TaskRunStatus.BLOCKED,
        TaskRunStatus.CANCELLED,
    }
)

RUN_STATUS_TRANSITIONS: dict[TaskRunStatus, frozenset[TaskRunStatus]] = {
    TaskRunStatus.PENDING: frozenset({TaskRunStatus.RUNNING, TaskRunStatus.BLOCKED, TaskRunStatus.CANCELLED}),
    TaskRunStatus.RUNNING: frozenset(
        {
            TaskRunStatus.NEEDS_CHANGES,
            TaskRunStatus.DONE,
            TaskRunStatus.REJECTED,
        }
    ),
    TaskRunStatus.NEEDS_CHANGES: frozenset({TaskRunStatus.RUNNING, TaskRunStatus.CANCELLED}),
    TaskRunStatus.DONE: frozenset(),
    TaskRunStatus.REJECTED: frozenset(),
    TaskRunStatus.BLOCKED: frozenset(),
    TaskRunStatus.CANCELLED: frozenset(),
}


class IssueSeverity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Task(BaseModel):
    """One unit of work. Immutable once the graph is built."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    task_id: str = Field(pattern=TASK_ID_PATTERN)
    title: str = Field(min_length=1)
    description: str = ""
    depends_on: frozenset[str] = frozenset()
    acceptance_criteria: frozenset[str] = frozenset()
    max_iterations: int | None = Field(default=None, ge=1)

    def sorted_dependencies(self) -> list[str]:
        return sorted(self.depends_on)

    def sorted_criteria(self) -> list[str]:
        return sorted(self.acceptance_criteria)


class Issue(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    severity: IssueSeverity
    message: str = Field(min_length=1)
    acceptance_criterion: str | None = None
    category: str | None = None


class Verdict(BaseModel):
    """Review Capability judgment on one candidate.

    Serialised with the key ``pass``; ``passed`` is the attribute name.
    """

    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    passed: StrictBool = Field(alias="pass")
    issues: list[Issue] = Field(default_factory=list)
    score: float = Field(ge=0, le=100)
    summary: str = ""

    @classmethod
    def failing(cls, *, message: str, category: str, summary: str | None = None) -> "Verdict":
        """Synthetic failing verdict used for generation errors and review timeouts."""
        return cls(
            passed=False,
            score=0,
            issues=[Issue(severity=IssueSeverity.CRITICAL, message=message, category=category)],
            summary=summary if summary is not None else message,
        )


class Candidate(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    task_id: str
    attempt: int = Field(default=0, ge=0)
    strategy_index: int = Field(default=0, ge=0)
    payload: Any = None


class ArbiterDecision(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    winner: Literal[0, 1]
    rationale: str = ""


class TaskRunState(BaseModel):
    """Durable per-task run record.

    Only the Scheduler and the task's own Review Loop write to it; status
    changes go through :meth:`transition`.
    """

    model_config = ConfigDict(extra="forbid")

    task_id: str
    status: TaskRunStatus = TaskRunStatus.PENDING
    attempt: int = Field(default=0, ge=0)
    last_score: float | None = None
    history: list[Verdict] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=_utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, new_status: TaskRunStatus) -> TaskRunStatus:
        """Move to ``new_status`` and return the previous status.

        Raises:
            IllegalTransitionError: If the state machine forbids the move.
        """
        allowed = RUN_STATUS_TRANSITIONS[self.status]
        if new_status not in allowed:
            raise IllegalTransitionError(self.task_id, self.status.value, new_status.value)
        previous = self.status
        self.status = new_status
        self.updated_at = _utc_now()
        return previous

    def record_verdict(self, verdict: Verdict) -> None:
        self.history.append(verdict)
        self.last_score = verdict.score
        self.updated_at = _utc_now()


class TraceEvent(BaseModel):
    """One entry of the shared append-only audit log."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    event_id: str = Field(default_factory=lambda: f"EVT-{uuid.uuid4().hex[:12]}")
    run_id: str
    timestamp: datetime = Field(default_factory=_utc_now)
    event: str
    task_id: str | None = None
    from_status: TaskRunStatus | None = None
    to_status: TaskRunStatus | None = None
    attempt: int | None = None
    detail: dict[str, Any] = Field(default_factory=dict)


class RunOutcome(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    HARD_FAIL = "hard_fail"
    CANCELLED = "cancelled"


EXIT_CODES: dict[RunOutcome, int] = {
    RunOutcome.SUCCESS: 0,
    RunOutcome.PARTIAL: 1,
    RunOutcome.HARD_FAIL: 2,
    RunOutcome.CANCELLED: 3,
}


class RunSummary(BaseModel):
    model_config = ConfigDict(extra="forbid")

    run_id: str
    outcome: RunOutcome
    done: list[str] = Field(default_factory=list)
    rejected: list[str] = Field(default_factory=list)
    blocked: list[str] = Field(default_factory=list)
    cancelled: list[str] = Field(default_factory=list)
    average_score: float | None = None
    error: str | None = None

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.outcome]

    @property
    def total(self) -> int:
        return len(self.done) + len(self.rejected) + len(self.blocked) + len(self.cancelled)
