from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, TypedDict

from langgraph.graph import END, START, StateGraph
from langgraph.types import Command
from pydantic import ValidationError

from .capabilities import ReviewCapability
from .errors import GenerationError, MaxIterationsExceeded, ReviewTimeoutError
from .models import Candidate, Issue, Task, TaskRunState, TaskRunStatus, Verdict
from .state_store import RunRecorder
from .voting import VotingStrategy

logger = logging.getLogger(__name__)


class ReviewLoopState(TypedDict, total=False):
    task: Task
    run_state: TaskRunState
    max_iterations: int
    cancel_event: asyncio.Event
    feedback: list[Issue] | None
    candidates: list[Candidate]
    winner: Candidate | None
    generation_error: str | None
    verdict: Verdict


@dataclass
class ReviewLoopResult:
    run_state: TaskRunState
    verdict: Verdict | None
    winner: Candidate | None


class ReviewLoop:
    """Per-task quality gate: generate -> vote -> review -> route -> revise/approve/reject/cancel.

    One compiled graph serves every task of a run; all per-task data lives in
    the graph state, so concurrent ``run`` calls never share mutable state.
    """

    def __init__(
        self,
        *,
        strategy: VotingStrategy,
        reviewer: ReviewCapability,
        recorder: RunRecorder,
        review_timeout_seconds: float,
        recursion_margin: int = 10,
    ) -> None:
        self.strategy = strategy
        self.reviewer = reviewer
        self.recorder = recorder
        self.review_timeout_seconds = review_timeout_seconds
        self.recursion_margin = recursion_margin
        self.graph = self._build_graph().compile()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(ReviewLoopState)
        graph.add_node("generate", self._generate)
        graph.add_node("vote", self._vote)
        graph.add_node("review", self._review)
        graph.add_node("route", self._route)
        graph.add_node("revise", self._revise)
        graph.add_node("approve", self._approve)
        graph.add_node("reject", self._reject)
        graph.add_node("cancel", self._cancel)

        graph.add_edge(START, "generate")
        graph.add_edge("generate", "vote")
        graph.add_edge("vote", "review")
        graph.add_edge("review", "route")
        graph.add_edge("approve", END)
        graph.add_edge("reject", END)
        graph.add_edge("cancel", END)
        return graph

    async def _generate(self, state: ReviewLoopState) -> dict[str, Any]:
        task = state["task"]
        run_state = state["run_state"]
        run_state.attempt += 1
        await self.recorder.save(run_state)
        logger.debug("Task %s: attempt %d/%d", task.task_id, run_state.attempt, state["max_iterations"])
        try:
            candidates = await self.strategy.generate_candidates(
                task, state.get("feedback"), attempt=run_state.attempt
            )
        except GenerationError as exc:
            logger.warning("Task %s attempt %d: generation failed: %s", task.task_id, run_state.attempt, exc)
            return {"candidates": [], "winner": None, "generation_error": str(exc), "run_state": run_state}
        await self.recorder.emit(
            "candidates_generated",
            task_id=task.task_id,
            attempt=run_state.attempt,
            requested=self.strategy.n,
            received=len(candidates),
        )
        return {"candidates": candidates, "winner": None, "generation_error": None, "run_state": run_state}

    async def _vote(self, state: ReviewLoopState) -> dict[str, Any]:
        candidates = state.get("candidates") or []
        if state.get("generation_error") or not candidates:
            return {}
        if len(candidates) == 1:
            return {"winner": candidates[0]}
        task = state["task"]
        result = await self.strategy.choose(task, candidates)
        await self.recorder.emit(
            "vote",
            task_id=task.task_id,
            attempt=state["run_state"].attempt,
            method=result.method,
            winner_index=result.winner.strategy_index,
            scores=result.scores,
            rationale=result.rationale,
        )
        return {"winner": result.winner}

    async def _judge(self, task: Task, winner: Candidate) -> Verdict:
        try:
            raw = await asyncio.wait_for(
                self.reviewer.review(winner, task.sorted_criteria()),
                timeout=self.review_timeout_seconds,
            )
        except asyncio.TimeoutError:
            error = ReviewTimeoutError(task.task_id, self.review_timeout_seconds)
            logger.warning("%s", error)
            return Verdict.failing(message=str(error), category="timeout")
        except Exception as exc:  # noqa: BLE001 - reviewer failures fail the attempt, not the run
            logger.warning("Task %s: review failed: %s", task.task_id, exc)
            return Verdict.failing(message=f"Review failed: {type(exc).__name__}: {exc}", category="review_error")
        if isinstance(raw, Verdict):
            return raw
        try:
            return Verdict.model_validate(raw)
        except ValidationError as exc:
            logger.warning("Task %s: reviewer returned an invalid verdict: %s", task.task_id, exc)
            return Verdict.failing(message=f"Reviewer returned an invalid verdict: {exc}", category="review_error")

    async def _review(self, state: ReviewLoopState) -> dict[str, Any]:
        task = state["task"]
        run_state = state["run_state"]
        generation_error = state.get("generation_error")
        winner = state.get("winner")
        if generation_error or winner is None:
            verdict = Verdict.failing(
                message=generation_error or "No candidate was produced",
                category="generation_error",
            )
        else:
            verdict = await self._judge(task, winner)
        run_state.record_verdict(verdict)
        await self.recorder.save(run_state)
        await self.recorder.emit(
            "reviewed",
            task_id=task.task_id,
            attempt=run_state.attempt,
            passed=verdict.passed,
            score=verdict.score,
            issues=len(verdict.issues),
        )
        return {"verdict": verdict, "run_state": run_state}

    async def _route(self, state: ReviewLoopState) -> Command[str]:
        verdict = state["verdict"]
        run_state = state["run_state"]
        if verdict.passed:
            return Command(goto="approve")
        if run_state.attempt >= state["max_iterations"]:
            return Command(goto="reject")
        await self.recorder.transition(
            run_state,
            TaskRunStatus.NEEDS_CHANGES,
            score=verdict.score,
            issues=len(verdict.issues),
        )
        if state["cancel_event"].is_set():
            return Command(goto="cancel", update={"run_state": run_state})
        return Command(goto="revise", update={"run_state": run_state})

    async def _revise(self, state: ReviewLoopState) -> Command[str]:
        run_state = state["run_state"]
        feedback = list(state["verdict"].issues)
        await self.recorder.transition(run_state, TaskRunStatus.RUNNING, feedback_issues=len(feedback))
        return Command(goto="generate", update={"feedback": feedback, "run_state": run_state})

    async def _approve(self, state: ReviewLoopState) -> dict[str, Any]:
        run_state = state["run_state"]
        await self.recorder.transition(run_state, TaskRunStatus.DONE, score=state["verdict"].score)
        return {"run_state": run_state}

    async def _reject(self, state: ReviewLoopState) -> dict[str, Any]:
        run_state = state["run_state"]
        error = MaxIterationsExceeded(run_state.task_id, state["max_iterations"])
        logger.warning("%s", error)
        await self.recorder.transition(
            run_state,
            TaskRunStatus.REJECTED,
            reason="max_iterations_exceeded",
            message=str(error),
            score=state["verdict"].score,
        )
        return {"run_state": run_state}

    async def _cancel(self, state: ReviewLoopState) -> dict[str, Any]:
        run_state = state["run_state"]
        await self.recorder.transition(run_state, TaskRunStatus.CANCELLED, reason="run_cancelled")
        return {"run_state": run_state}

    async def run(
        self,
        task: Task,
        run_state: TaskRunState,
        *,
        max_iterations: int,
        cancel_event: asyncio.Event | None = None,
    ) -> ReviewLoopResult:
        """Drive ``task`` from ``RUNNING`` to ``DONE``, ``REJECTED`` or ``CANCELLED``.

        The caller owns the ``PENDING -> RUNNING`` dispatch transition.
        """
        if run_state.status != TaskRunStatus.RUNNING:
            raise ValueError(f"Task {task.task_id} must be RUNNING to enter the review loop, is {run_state.status.value}")
        if max_iterations < 1:
            raise ValueError(f"max_iterations must be >= 1, got: {max_iterations}")
        result = await self.graph.ainvoke(
            {
                "task": task,
                "run_state": run_state,
                "max_iterations": max_iterations,
                "cancel_event": cancel_event if cancel_event is not None else asyncio.Event(),
                "feedback": None,
                "candidates": [],
                "winner": None,
                "generation_error": None,
            },
            config={"recursion_limit": 5 * max_iterations + self.recursion_margin},
        )
        return ReviewLoopResult(
            run_state=result["run_state"],
            verdict=result.get("verdict"),
            winner=result.get("winner"),
        )
