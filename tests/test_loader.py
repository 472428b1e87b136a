import json
from pathlib import Path

import pytest

from taskforge.errors import CycleError, TaskInputError
from taskforge.loader import load_task_set, parse_task_set


def write_tasks(path: Path, document: dict) -> Path:
    path.write_text(json.dumps(document), encoding="utf-8")
    return path


def test_load_task_set_builds_graph(tmp_path: Path) -> None:
    path = write_tasks(
        tmp_path / "tasks.json",
        {
            "project": "shop",
            "tasks": [
                {"task_id": "api", "title": "Build API", "acceptance_criteria": ["returns 200"]},
                {"task_id": "ui", "title": "Build UI", "depends_on": ["api"], "max_iterations": 2},
            ],
        },
    )
    task_set = load_task_set(path)
    assert task_set.project == "shop"
    graph = task_set.build_graph()
    assert graph.waves() == [["api"], ["ui"]]
    assert graph.task("ui").max_iterations == 2


@pytest.mark.parametrize(
    "text",
    [
        "not json",
        '{"tasks": [{"task_id": "a"}]}',
        '{"tasks": [{"task_id": "a", "title": "A", "priority": "high"}]}',
        '{"tasks": [], "owner": "me"}',
        '{"tasks": [{"task_id": "a", "title": "A", "depends_on": "b"}]}',
    ],
)
def test_parse_task_set_is_strict(text: str) -> None:
    with pytest.raises(TaskInputError):
        parse_task_set(text)


def test_missing_file_is_input_error(tmp_path: Path) -> None:
    with pytest.raises(TaskInputError):
        load_task_set(tmp_path / "absent.json")


def test_cyclic_task_set_fails_graph_build() -> None:
    task_set = parse_task_set(
        '{"tasks": [{"task_id": "T1", "title": "a", "depends_on": ["T2"]},'
        ' {"task_id": "T2", "title": "b", "depends_on": ["T1"]}]}'
    )
    with pytest.raises(CycleError):
        task_set.build_graph()
