import asyncio

import pytest

from fakes import AlwaysRejects, ScriptedGenerator, ScriptedReviewer, failing, make_task, passing
from taskforge.errors import GenerationError
from taskforge.models import IssueSeverity, TaskRunState, TaskRunStatus, Verdict
from taskforge.review_loop import ReviewLoop
from taskforge.settings import EngineConfig
from taskforge.state_store import InMemoryStateStore, RunRecorder
from taskforge.voting import build_strategy


def make_loop(generator, reviewer, *, voting=None, review_timeout=5.0):
    store = InMemoryStateStore()
    config = EngineConfig(voting=voting, review_timeout_seconds=review_timeout)
    strategy = build_strategy(config, generator=generator, reviewer=reviewer)
    loop = ReviewLoop(
        strategy=strategy,
        reviewer=reviewer,
        recorder=RunRecorder(store, "RUN-test"),
        review_timeout_seconds=review_timeout,
    )
    return loop, store


def run_task(loop, task, *, max_iterations=3, cancel_event=None):
    state = TaskRunState(task_id=task.task_id)
    state.transition(TaskRunStatus.RUNNING)
    return asyncio.run(loop.run(task, state, max_iterations=max_iterations, cancel_event=cancel_event))


def test_always_failing_review_rejects_after_cap() -> None:
    generator = ScriptedGenerator()
    loop, store = make_loop(generator, AlwaysRejects())
    result = run_task(loop, make_task("T1"))

    assert result.run_state.status == TaskRunStatus.REJECTED
    assert result.run_state.attempt == 3
    assert len(result.run_state.history) == 3
    assert len(generator.calls) == 3
    rejected = [e for e in store.events() if e.to_status == TaskRunStatus.REJECTED]
    assert rejected[0].detail["reason"] == "max_iterations_exceeded"
    assert store.get("T1").status == TaskRunStatus.REJECTED


def test_retry_passes_previous_issues_as_feedback() -> None:
    generator = ScriptedGenerator()
    reviewer = ScriptedReviewer({"T1": [failing("missing tests"), failing("no error handling"), passing(95)]})
    loop, store = make_loop(generator, reviewer)
    result = run_task(loop, make_task("T1"))

    assert result.run_state.status == TaskRunStatus.DONE
    assert len(result.run_state.history) == 3
    assert result.run_state.last_score == 95
    feedback = generator.calls_for("T1")
    assert feedback[0] is None
    assert [issue.message for issue in feedback[1]] == ["missing tests"]
    assert [issue.message for issue in feedback[2]] == ["no error handling"]

    transitions = [(e.from_status, e.to_status) for e in store.events() if e.to_status is not None]
    assert transitions == [
        (TaskRunStatus.RUNNING, TaskRunStatus.NEEDS_CHANGES),
        (TaskRunStatus.NEEDS_CHANGES, TaskRunStatus.RUNNING),
        (TaskRunStatus.RUNNING, TaskRunStatus.NEEDS_CHANGES),
        (TaskRunStatus.NEEDS_CHANGES, TaskRunStatus.RUNNING),
        (TaskRunStatus.RUNNING, TaskRunStatus.DONE),
    ]


def test_generation_error_consumes_an_attempt() -> None:
    generator = ScriptedGenerator({"T1": [GenerationError("model refused")]})
    loop, _ = make_loop(generator, ScriptedReviewer())
    result = run_task(loop, make_task("T1"))

    assert result.run_state.status == TaskRunStatus.DONE
    assert result.run_state.attempt == 2
    first = result.run_state.history[0]
    assert not first.passed
    assert first.issues[0].severity == IssueSeverity.CRITICAL
    assert first.issues[0].category == "generation_error"
    assert "model refused" in first.issues[0].message


def test_review_timeout_becomes_failing_verdict() -> None:
    loop, _ = make_loop(ScriptedGenerator(), ScriptedReviewer(delay=0.5), review_timeout=0.05)
    result = run_task(loop, make_task("T1"), max_iterations=1)

    assert result.run_state.status == TaskRunStatus.REJECTED
    assert result.run_state.history[0].issues[0].category == "timeout"


def test_review_exception_becomes_failing_verdict() -> None:
    reviewer = ScriptedReviewer({"T1": [RuntimeError("reviewer crashed")]})
    loop, _ = make_loop(ScriptedGenerator(), reviewer)
    result = run_task(loop, make_task("T1"))

    assert result.run_state.status == TaskRunStatus.DONE
    assert result.run_state.history[0].issues[0].category == "review_error"


def test_invalid_review_payload_is_rejected_not_coerced() -> None:
    reviewer = ScriptedReviewer({"T1": [{"pass": "maybe", "score": 50}]})
    loop, _ = make_loop(ScriptedGenerator(), reviewer)
    result = run_task(loop, make_task("T1"))
    assert result.run_state.history[0].issues[0].category == "review_error"


def test_single_candidate_never_votes() -> None:
    loop, store = make_loop(ScriptedGenerator(), ScriptedReviewer())
    run_task(loop, make_task("T1"))
    assert not [e for e in store.events() if e.event == "vote"]


def test_voting_reviews_only_the_winner() -> None:
    reviewer = ScriptedReviewer(judge=lambda c: Verdict(passed=True, score=90 if c.payload == "T1#2" else 50))
    loop, store = make_loop(ScriptedGenerator(), reviewer, voting="self-consistency:3")
    result = run_task(loop, make_task("T1"))

    assert result.winner is not None and result.winner.payload == "T1#2"
    votes = [e for e in store.events() if e.event == "vote"]
    assert len(votes) == 1
    assert result.run_state.attempt == 1
    # three scoring reviews plus one gate review of the winner
    assert len(reviewer.reviewed) == 4
    assert reviewer.reviewed[-1].payload == "T1#2"


def test_cancel_moves_retrying_task_to_cancelled() -> None:
    cancel = asyncio.Event()
    generator = ScriptedGenerator(on_call=lambda task: cancel.set())
    loop, _ = make_loop(generator, AlwaysRejects())
    result = run_task(loop, make_task("T1"), cancel_event=cancel)

    assert result.run_state.status == TaskRunStatus.CANCELLED
    assert result.run_state.attempt == 1
    assert len(generator.calls) == 1


def test_loop_requires_running_state() -> None:
    loop, _ = make_loop(ScriptedGenerator(), ScriptedReviewer())
    with pytest.raises(ValueError):
        asyncio.run(loop.run(make_task("T1"), TaskRunState(task_id="T1"), max_iterations=3))
