import asyncio
import json

import pytest

from fakes import AlwaysRejects, ConstantReviewer, ScriptedGenerator, ScriptedReviewer, failing, make_task
from taskforge.engine import TaskEngine, run
from taskforge.errors import ConfigurationError, CycleError
from taskforge.graph import build_task_graph
from taskforge.models import RunOutcome, TaskRunStatus
from taskforge.settings import EngineConfig
from taskforge.state_store import FileStateStore, InMemoryStateStore


def diamond():
    return build_task_graph(
        [
            make_task("T1"),
            make_task("T2", "T1"),
            make_task("T3", "T1"),
            make_task("T4", "T2", "T3"),
        ]
    )


def dispatch_log(store):
    return [e.task_id for e in store.events() if e.event == "dispatched"]


def test_diamond_runs_in_dependency_waves() -> None:
    store = InMemoryStateStore()
    generator = ScriptedGenerator(delay=0.02)
    engine = TaskEngine(generator=generator, reviewer=ScriptedReviewer(), store=store)
    summary = engine.run(diamond(), EngineConfig(max_parallel=2))

    assert summary.outcome == RunOutcome.SUCCESS
    assert summary.exit_code == 0
    assert summary.done == ["T1", "T2", "T3", "T4"]
    assert dispatch_log(store) == ["T1", "T2", "T3", "T4"]
    assert generator.peak_in_flight == 2
    assert engine.last_result is not None and engine.last_result.peak_running == 2


def test_dependents_dispatch_only_after_dependencies_are_done() -> None:
    store = InMemoryStateStore()
    engine = TaskEngine(generator=ScriptedGenerator(), reviewer=ScriptedReviewer(), store=store)
    engine.run(diamond(), EngineConfig(max_parallel=4))

    seen_done: set[str] = set()
    graph = diamond()
    for event in store.events():
        if event.to_status == TaskRunStatus.DONE:
            seen_done.add(event.task_id)
        if event.event == "dispatched":
            assert graph.task(event.task_id).depends_on <= seen_done


def test_pool_never_exceeds_max_parallel() -> None:
    tasks = [make_task(f"T{i}") for i in range(6)]
    generator = ScriptedGenerator(delay=0.03)
    engine = TaskEngine(generator=generator, reviewer=ScriptedReviewer())
    summary = engine.run(build_task_graph(tasks), EngineConfig(max_parallel=2))

    assert len(summary.done) == 6
    assert generator.peak_in_flight == 2


def test_rejection_blocks_descendants_without_generating_them() -> None:
    store = InMemoryStateStore()
    generator = ScriptedGenerator()
    reviewer = ScriptedReviewer({"T1": [failing(), failing(), failing()]})
    graph = build_task_graph([make_task("T1"), make_task("T2", "T1"), make_task("T3", "T2"), make_task("T9")])
    summary = run(graph, EngineConfig(max_iterations=3), generator=generator, reviewer=reviewer, store=store)

    assert summary.outcome == RunOutcome.PARTIAL
    assert summary.exit_code == 1
    assert summary.rejected == ["T1"]
    assert summary.blocked == ["T2", "T3"]
    assert summary.done == ["T9"]
    assert generator.calls_for("T2") == []
    assert generator.calls_for("T3") == []
    blocked_events = [e for e in store.events() if e.event == "upstream_blocked"]
    assert {e.task_id: e.detail["rejected_ancestor"] for e in blocked_events} == {"T2": "T1", "T3": "T1"}


def test_task_level_iteration_cap_overrides_config() -> None:
    generator = ScriptedGenerator()
    graph = build_task_graph([make_task("T1", max_iterations=1)])
    summary = run(graph, EngineConfig(max_iterations=5), generator=generator, reviewer=AlwaysRejects())

    assert summary.rejected == ["T1"]
    assert len(generator.calls) == 1


def test_cancel_stops_dispatch_and_retries() -> None:
    engine: TaskEngine
    generator = ScriptedGenerator(on_call=lambda task: engine.cancel())
    engine = TaskEngine(generator=generator, reviewer=AlwaysRejects())
    graph = build_task_graph([make_task("A"), make_task("B", "A"), make_task("C")])
    summary = engine.run(graph, EngineConfig(max_parallel=1))

    assert summary.outcome == RunOutcome.CANCELLED
    assert summary.exit_code == 3
    assert summary.cancelled == ["A", "B", "C"]
    assert generator.calls_for("C") == []


def test_average_score_covers_reviewed_tasks() -> None:
    reviewer = ScriptedReviewer({"A": [failing(score=60)]})
    summary = run(
        build_task_graph([make_task("A"), make_task("B")]),
        EngineConfig(max_iterations=1),
        generator=ScriptedGenerator(),
        reviewer=reviewer,
    )
    assert summary.rejected == ["A"]
    assert summary.done == ["B"]
    assert summary.average_score == 75.0


def test_invalid_voting_fails_before_any_generation() -> None:
    with pytest.raises(ConfigurationError):
        EngineConfig(voting="pair-debate:3")
    with pytest.raises(ConfigurationError):
        EngineConfig(max_parallel=0)
    with pytest.raises(ConfigurationError):
        EngineConfig(max_iterations=0)


def test_cycle_is_fatal_before_dispatch() -> None:
    generator = ScriptedGenerator()
    with pytest.raises(CycleError):
        run(
            build_task_graph([make_task("T1", "T2"), make_task("T2", "T1")]),
            EngineConfig(),
            generator=generator,
            reviewer=ScriptedReviewer(),
        )
    assert generator.calls == []


def test_committee_voting_end_to_end() -> None:
    reviewer = ConstantReviewer({"T1#1": 70, "T1#2": 85, "T1#3": 60})
    store = InMemoryStateStore()
    summary = run(
        build_task_graph([make_task("T1")]),
        EngineConfig(voting="committee:3"),
        generator=ScriptedGenerator(),
        reviewer=reviewer,
        store=store,
    )
    assert summary.done == ["T1"]
    vote = next(e for e in store.events() if e.event == "vote")
    assert vote.detail["winner_index"] == 1
    assert store.get("T1").last_score == 85


def test_file_store_records_every_transition(tmp_path) -> None:
    store = FileStateStore(tmp_path, project_id="demo")
    summary = run(
        build_task_graph([make_task("T1"), make_task("T2", "T1")]),
        EngineConfig(),
        generator=ScriptedGenerator(),
        reviewer=ScriptedReviewer(),
        store=store,
    )
    assert summary.outcome == RunOutcome.SUCCESS
    root = tmp_path / "projects" / "demo"
    assert sorted(p.name for p in (root / "tasks").glob("*.json")) == ["T1.json", "T2.json"]
    record = json.loads((root / "tasks" / "T2.json").read_text(encoding="utf-8"))
    assert record["status"] == "done"
    assert record["history"][0]["pass"] is True
    lines = (root / "events.jsonl").read_text(encoding="utf-8").splitlines()
    events = [json.loads(line) for line in lines]
    assert events[0]["event"] == "run_started"
    assert events[-1]["event"] == "run_finished"
    assert {e["run_id"] for e in events} == {summary.run_id}


def test_arun_can_be_awaited_inside_a_running_loop() -> None:
    engine = TaskEngine(generator=ScriptedGenerator(), reviewer=ScriptedReviewer())

    async def main():
        return await engine.arun(build_task_graph([make_task("T1")]), EngineConfig())

    assert asyncio.run(main()).done == ["T1"]


@pytest.mark.parametrize(
    "voting, payloads",
    [
        ("self-consistency:3", [{"n": 2**60}, {"n": 2**60 + 1}, {"n": 2**61}]),
        ("committee:3", [{"x": float("nan")}, [1, float("nan")], {"x": float("nan"), "y": 1}]),
    ],
)
def test_payloads_without_canonical_json_still_vote(voting, payloads) -> None:
    store = InMemoryStateStore()
    generator = ScriptedGenerator({"T1": payloads})
    summary = run(
        build_task_graph([make_task("T1"), make_task("T2", "T1")]),
        EngineConfig(voting=voting),
        generator=generator,
        reviewer=ScriptedReviewer(),
        store=store,
    )
    assert summary.done == ["T1", "T2"]
    assert summary.rejected == []
    state = store.get("T1")
    assert state.attempt == 1
    assert len(state.history) == 1


def test_verdict_dicts_from_reviewer_are_validated_while_voting() -> None:
    reviewer = ScriptedReviewer(judge=lambda c: {"pass": True, "score": 90})
    summary = run(
        build_task_graph([make_task("T1")]),
        EngineConfig(voting="self-consistency:2"),
        generator=ScriptedGenerator(),
        reviewer=reviewer,
    )
    assert summary.done == ["T1"]
    assert summary.average_score == 90.0
