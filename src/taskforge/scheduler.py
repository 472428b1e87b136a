from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from .errors import ConfigurationError, UpstreamBlocked
from .graph import TaskGraph
from .models import TaskRunState, TaskRunStatus
from .review_loop import ReviewLoop
from .state_store import RunRecorder

logger = logging.getLogger(__name__)


@dataclass
class ScheduleResult:
    done: list[str] = field(default_factory=list)
    rejected: list[str] = field(default_factory=list)
    blocked: list[str] = field(default_factory=list)
    cancelled: list[str] = field(default_factory=list)
    states: dict[str, TaskRunState] = field(default_factory=dict)
    peak_running: int = 0
    was_cancelled: bool = False


class Scheduler:
    """Bounded asyncio worker pool over a :class:`TaskGraph`.

    Each of the ``max_parallel`` slots runs one task's whole review loop.
    Ready tasks are dispatched in id order; completions seen in the same
    wake-up are processed in id order as well.
    """

    def __init__(
        self,
        *,
        review_loop: ReviewLoop,
        recorder: RunRecorder,
        max_parallel: int,
        max_iterations: int,
    ) -> None:
        if max_parallel < 1:
            raise ConfigurationError(f"max_parallel must be >= 1, got: {max_parallel}")
        if max_iterations < 1:
            raise ConfigurationError(f"max_iterations must be >= 1, got: {max_iterations}")
        self.review_loop = review_loop
        self.recorder = recorder
        self.max_parallel = max_parallel
        self.max_iterations = max_iterations
        self.peak_running = 0
        self._cancel_event: asyncio.Event | None = None
        self._cancel_requested = False

    def cancel(self) -> None:
        """Request cooperative cancellation; in-flight attempts run to completion."""
        self._cancel_requested = True
        if self._cancel_event is not None:
            self._cancel_event.set()
        logger.info("Cancellation requested")

    @property
    def cancelling(self) -> bool:
        return self._cancel_requested

    async def _dispatch(self, graph: TaskGraph, state: TaskRunState) -> TaskRunState:
        task = graph.task(state.task_id)
        max_iterations = task.max_iterations if task.max_iterations is not None else self.max_iterations
        assert self._cancel_event is not None
        result = await self.review_loop.run(
            task,
            state,
            max_iterations=max_iterations,
            cancel_event=self._cancel_event,
        )
        return result.run_state

    async def _fail_unexpectedly(self, state: TaskRunState, exc: BaseException) -> None:
        """Record a task whose loop raised as ``REJECTED``."""
        if state.status == TaskRunStatus.NEEDS_CHANGES:
            await self.recorder.transition(state, TaskRunStatus.RUNNING, reason="unexpected_error")
        if state.status == TaskRunStatus.RUNNING:
            await self.recorder.transition(
                state,
                TaskRunStatus.REJECTED,
                reason="unexpected_error",
                message=f"{type(exc).__name__}: {exc}",
            )

    async def _block_descendants(
        self, graph: TaskGraph, task_id: str, states: dict[str, TaskRunState]
    ) -> list[str]:
        blocked: list[str] = []
        for descendant in graph.descendants_of(task_id):
            state = states[descendant]
            if state.status != TaskRunStatus.PENDING:
                continue
            marker = UpstreamBlocked(descendant, task_id)
            await self.recorder.transition(
                state,
                TaskRunStatus.BLOCKED,
                event="upstream_blocked",
                rejected_ancestor=task_id,
                message=str(marker),
            )
            blocked.append(descendant)
        return blocked

    async def run(self, graph: TaskGraph) -> ScheduleResult:
        self._cancel_event = asyncio.Event()
        if self._cancel_requested:
            self._cancel_event.set()
        self.peak_running = 0

        states = {task_id: TaskRunState(task_id=task_id) for task_id in graph.task_ids}
        for state in states.values():
            await self.recorder.save(state)

        running: dict[asyncio.Task[TaskRunState], str] = {}
        try:
            while True:
                if not self._cancel_requested:
                    statuses = {task_id: state.status for task_id, state in states.items()}
                    for task_id in graph.ready_set(statuses):
                        if len(running) >= self.max_parallel:
                            break
                        state = states[task_id]
                        await self.recorder.transition(state, TaskRunStatus.RUNNING, event="dispatched")
                        running[asyncio.create_task(self._dispatch(graph, state), name=f"taskforge:{task_id}")] = task_id
                    self.peak_running = max(self.peak_running, len(running))

                if not running:
                    break

                finished, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                for handle in sorted(finished, key=lambda item: running[item]):
                    task_id = running.pop(handle)
                    try:
                        states[task_id] = handle.result()
                    except Exception as exc:  # noqa: BLE001 - one task's crash must not abort the run
                        logger.exception("Task %s failed unexpectedly", task_id)
                        await self._fail_unexpectedly(states[task_id], exc)
                    if states[task_id].status == TaskRunStatus.REJECTED:
                        blocked = await self._block_descendants(graph, task_id, states)
                        if blocked:
                            logger.warning("Task %s rejected; blocked %s", task_id, ", ".join(blocked))
        finally:
            for handle in running:
                handle.cancel()

        if self._cancel_requested:
            for state in states.values():
                if state.status == TaskRunStatus.PENDING:
                    await self.recorder.transition(state, TaskRunStatus.CANCELLED, reason="run_cancelled")

        result = ScheduleResult(states=states, peak_running=self.peak_running, was_cancelled=self._cancel_requested)
        for task_id in graph.task_ids:
            status = states[task_id].status
            if status == TaskRunStatus.DONE:
                result.done.append(task_id)
            elif status == TaskRunStatus.REJECTED:
                result.rejected.append(task_id)
            elif status == TaskRunStatus.BLOCKED:
                result.blocked.append(task_id)
            elif status == TaskRunStatus.CANCELLED:
                result.cancelled.append(task_id)
            else:
                raise RuntimeError(f"Task {task_id} ended the run in non-terminal status {status.value}")
        return result
