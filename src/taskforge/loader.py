from __future__ import annotations

import logging
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import TaskInputError
from .graph import TaskGraph, build_task_graph
from .models import Task

logger = logging.getLogger(__name__)


class TaskSet(BaseModel):
    """Task-set document: ``{"project": "...", "tasks": [...]}``."""

    model_config = ConfigDict(extra="forbid")

    project: str | None = Field(default=None, min_length=1)
    tasks: list[Task] = Field(default_factory=list)

    def build_graph(self) -> TaskGraph:
        return build_task_graph(self.tasks)


def parse_task_set(text: str, *, source: str = "<string>") -> TaskSet:
    """Strictly parse a task-set JSON document.

    Raises:
        TaskInputError: On malformed JSON, unknown keys or invalid field values.
    """
    try:
        return TaskSet.model_validate_json(text)
    except ValidationError as exc:
        raise TaskInputError(f"Invalid task set in {source}: {exc}") from exc


def load_task_set(path: Path) -> TaskSet:
    if not path.is_file():
        raise TaskInputError(f"Task file does not exist: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise TaskInputError(f"Unable to read task file {path}: {exc}") from exc
    task_set = parse_task_set(text, source=str(path))
    logger.debug("Loaded %d task(s) for project %s from %s", len(task_set.tasks), task_set.project or "-", path)
    return task_set
