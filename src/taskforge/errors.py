from __future__ import annotations


class TaskforgeError(Exception):
    """Base class for every error raised by the engine."""


# ---------------------------------------------------------------------------
# Fatal, raised before any dispatch
# ---------------------------------------------------------------------------

class GraphValidationError(TaskforgeError, ValueError):
    """Task graph cannot be built."""


class CycleError(GraphValidationError):
    """Dependency relation contains a cycle.

    ``members`` lists every task on the cycle in traversal order, starting
    from the smallest id that was entered first.
    """

    def __init__(self, members: list[str]) -> None:
        self.members = list(members)
        path = " -> ".join([*self.members, self.members[0]]) if self.members else ""
        super().__init__(f"Task dependency graph contains a cycle: {path}")


class DanglingDependencyError(GraphValidationError):
    """One or more ``depends_on`` ids do not name a task in the set."""

    def __init__(self, missing: dict[str, list[str]]) -> None:
        self.missing = {task_id: sorted(deps) for task_id, deps in sorted(missing.items())}
        details = "; ".join(f"{task_id} -> {', '.join(deps)}" for task_id, deps in self.missing.items())
        super().__init__(f"Tasks depend on unknown task ids: {details}")


class DuplicateTaskError(GraphValidationError):
    def __init__(self, task_ids: list[str]) -> None:
        self.task_ids = sorted(set(task_ids))
        super().__init__(f"Duplicate task ids: {', '.join(self.task_ids)}")


class ConfigurationError(TaskforgeError, ValueError):
    """Invalid engine configuration (voting strategy, pool size, retry cap)."""


class TaskInputError(TaskforgeError, ValueError):
    """A task set failed strict parsing at the system boundary."""


# ---------------------------------------------------------------------------
# Per-task, contained within one branch of the graph
# ---------------------------------------------------------------------------

class GenerationError(TaskforgeError):
    """Generation Capability failed to produce a candidate for an attempt."""

    def __init__(self, message: str, *, task_id: str | None = None) -> None:
        self.task_id = task_id
        super().__init__(message)


class ReviewTimeoutError(TaskforgeError):
    def __init__(self, task_id: str, timeout_seconds: float) -> None:
        self.task_id = task_id
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Review of task {task_id} timed out after {timeout_seconds:g}s")


class MaxIterationsExceeded(TaskforgeError):
    def __init__(self, task_id: str, max_iterations: int) -> None:
        self.task_id = task_id
        self.max_iterations = max_iterations
        super().__init__(f"Task {task_id} failed review {max_iterations} time(s); rejecting")


class UpstreamBlocked(TaskforgeError):
    """Marker for a task blocked by a rejected ancestor. Recorded, never raised."""

    def __init__(self, task_id: str, rejected_ancestor: str) -> None:
        self.task_id = task_id
        self.rejected_ancestor = rejected_ancestor
        super().__init__(f"Task {task_id} blocked: upstream task {rejected_ancestor} was rejected")


class IllegalTransitionError(TaskforgeError, ValueError):
    def __init__(self, task_id: str, current: str, requested: str) -> None:
        self.task_id = task_id
        self.current = current
        self.requested = requested
        super().__init__(f"Illegal status transition for {task_id}: {current} -> {requested}")


class RecordNotFoundError(TaskforgeError, KeyError):
    """State store has no record for the requested task id."""

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(task_id)

    def __str__(self) -> str:
        return f"No run state recorded for task {self.task_id}"
