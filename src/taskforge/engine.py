from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Sequence

from .capabilities import ArbiterCapability, GenerationCapability, ReviewCapability, ScoringCapability
from .graph import TaskGraph
from .models import RunOutcome, RunSummary
from .review_loop import ReviewLoop
from .scheduler import ScheduleResult, Scheduler
from .settings import EngineConfig
from .state_store import InMemoryStateStore, RunRecorder, StateStore
from .voting import build_strategy

logger = logging.getLogger(__name__)


def new_run_id() -> str:
    return f"RUN-{uuid.uuid4().hex[:8]}"


def summarize(run_id: str, result: ScheduleResult) -> RunSummary:
    """Map a finished schedule to its outcome and average score."""
    if result.was_cancelled:
        outcome = RunOutcome.CANCELLED
    elif result.rejected or result.blocked or result.cancelled:
        outcome = RunOutcome.PARTIAL
    else:
        outcome = RunOutcome.SUCCESS
    scores = [state.last_score for state in result.states.values() if state.last_score is not None]
    return RunSummary(
        run_id=run_id,
        outcome=outcome,
        done=list(result.done),
        rejected=list(result.rejected),
        blocked=list(result.blocked),
        cancelled=list(result.cancelled),
        average_score=round(sum(scores) / len(scores), 2) if scores else None,
    )


def hard_fail_summary(error: BaseException, *, run_id: str | None = None) -> RunSummary:
    """Summary for a run that failed before anything was dispatched."""
    return RunSummary(
        run_id=run_id or new_run_id(),
        outcome=RunOutcome.HARD_FAIL,
        error=f"{type(error).__name__}: {error}",
    )


class TaskEngine:
    """Entry point wiring capabilities, voting, review loop and scheduler for one run.

    Capabilities are injected; nothing here reaches for a module-level client.
    """

    def __init__(
        self,
        *,
        generator: GenerationCapability,
        reviewer: ReviewCapability,
        store: StateStore | None = None,
        arbiter: ArbiterCapability | None = None,
        scorer: ScoringCapability | None = None,
        committee: Sequence[ReviewCapability] | None = None,
    ) -> None:
        self.generator = generator
        self.reviewer = reviewer
        self.store: StateStore = store if store is not None else InMemoryStateStore()
        self.arbiter = arbiter
        self.scorer = scorer
        self.committee = list(committee) if committee else None
        self._scheduler: Scheduler | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._cancel_requested = False
        self.last_result: ScheduleResult | None = None

    def cancel(self) -> None:
        """Request cooperative cancellation of the current (or next) run. Thread-safe."""
        self._cancel_requested = True
        scheduler, loop = self._scheduler, self._loop
        if scheduler is None or loop is None:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            scheduler.cancel()
        else:
            loop.call_soon_threadsafe(scheduler.cancel)

    async def arun(self, graph: TaskGraph, config: EngineConfig) -> RunSummary:
        """Execute ``graph`` and return its summary.

        Raises:
            ConfigurationError: Before any dispatch, for an unusable voting setup.
        """
        strategy = build_strategy(
            config,
            generator=self.generator,
            reviewer=self.reviewer,
            scorer=self.scorer,
            arbiter=self.arbiter,
            committee=self.committee,
        )
        run_id = new_run_id()
        recorder = RunRecorder(self.store, run_id)
        review_loop = ReviewLoop(
            strategy=strategy,
            reviewer=self.reviewer,
            recorder=recorder,
            review_timeout_seconds=config.review_timeout_seconds,
            recursion_margin=config.recursion_margin,
        )
        scheduler = Scheduler(
            review_loop=review_loop,
            recorder=recorder,
            max_parallel=config.max_parallel,
            max_iterations=config.max_iterations,
        )
        self._scheduler = scheduler
        self._loop = asyncio.get_running_loop()
        if self._cancel_requested:
            scheduler.cancel()

        logger.info(
            "Run %s: %d task(s), max_parallel=%d, max_iterations=%d, voting=%s",
            run_id,
            len(graph),
            config.max_parallel,
            config.max_iterations,
            config.voting or "none",
        )
        await recorder.emit(
            "run_started",
            tasks=len(graph),
            max_parallel=config.max_parallel,
            max_iterations=config.max_iterations,
            voting=config.voting,
        )
        try:
            result = await scheduler.run(graph)
        finally:
            self._scheduler = None
            self._loop = None
            self._cancel_requested = False
        self.last_result = result
        summary = summarize(run_id, result)
        await recorder.emit(
            "run_finished",
            outcome=summary.outcome.value,
            done=len(summary.done),
            rejected=len(summary.rejected),
            blocked=len(summary.blocked),
            cancelled=len(summary.cancelled),
            average_score=summary.average_score,
            peak_running=result.peak_running,
        )
        logger.info(
            "Run %s finished: %s (done=%d rejected=%d blocked=%d cancelled=%d)",
            run_id,
            summary.outcome.value,
            len(summary.done),
            len(summary.rejected),
            len(summary.blocked),
            len(summary.cancelled),
        )
        return summary

    def run(self, graph: TaskGraph, config: EngineConfig) -> RunSummary:
        return asyncio.run(self.arun(graph, config))


def run(
    graph: TaskGraph,
    config: EngineConfig,
    *,
    generator: GenerationCapability,
    reviewer: ReviewCapability,
    store: StateStore | None = None,
    arbiter: ArbiterCapability | None = None,
    scorer: ScoringCapability | None = None,
    committee: Sequence[ReviewCapability] | None = None,
) -> RunSummary:
    engine = TaskEngine(
        generator=generator,
        reviewer=reviewer,
        store=store,
        arbiter=arbiter,
        scorer=scorer,
        committee=committee,
    )
    return engine.run(graph, config)
