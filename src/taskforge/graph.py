from __future__ import annotations

import logging
from collections import Counter, defaultdict, deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from .errors import CycleError, DanglingDependencyError, DuplicateTaskError
from .models import Task, TaskRunStatus

logger = logging.getLogger(__name__)

_WHITE, _GREY, _BLACK = 0, 1, 2


@dataclass(frozen=True, eq=False)
class TaskGraph:
    """Validated, immutable task DAG.

    Build instances with :func:`build_task_graph`; every query here is a pure
    function of the graph and the status snapshot passed in.
    """

    tasks: Mapping[str, Task]
    _dependents: Mapping[str, tuple[str, ...]] = field(repr=False)

    @property
    def task_ids(self) -> list[str]:
        return sorted(self.tasks)

    def __len__(self) -> int:
        return len(self.tasks)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self.tasks

    def task(self, task_id: str) -> Task:
        try:
            return self.tasks[task_id]
        except KeyError:
            raise KeyError(f"Unknown task id: {task_id}") from None

    def dependents_of(self, task_id: str) -> list[str]:
        self.task(task_id)
        return list(self._dependents.get(task_id, ()))

    def descendants_of(self, task_id: str) -> list[str]:
        """Return every transitive dependent of ``task_id``, sorted by id."""
        queue: deque[str] = deque(self.dependents_of(task_id))
        seen: set[str] = set()
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            queue.extend(self._dependents.get(current, ()))
        return sorted(seen)

    def ready_set(self, statuses: Mapping[str, TaskRunStatus]) -> list[str]:
        """Return ``PENDING`` tasks whose dependencies are all ``DONE``, sorted by id."""
        ready: list[str] = []
        for task_id in self.task_ids:
            if statuses.get(task_id, TaskRunStatus.PENDING) != TaskRunStatus.PENDING:
                continue
            task = self.tasks[task_id]
            if all(statuses.get(dep) == TaskRunStatus.DONE for dep in task.depends_on):
                ready.append(task_id)
        return ready

    def topological_order(self) -> list[str]:
        indegree = {task_id: len(task.depends_on) for task_id, task in self.tasks.items()}
        queue = deque(sorted(task_id for task_id, degree in indegree.items() if degree == 0))
        ordered: list[str] = []
        while queue:
            current = queue.popleft()
            ordered.append(current)
            for nxt in self._dependents.get(current, ()):
                indegree[nxt] -= 1
                if indegree[nxt] == 0:
                    queue.append(nxt)
        return ordered

    def waves(self) -> list[list[str]]:
        """Group tasks into dispatch waves assuming every task succeeds.

        Wave ``k`` holds the tasks whose longest dependency chain has length
        ``k``; the Scheduler may still overlap waves when ``max_parallel``
        allows and completion timing differs.
        """
        depth: dict[str, int] = {}
        for task_id in self.topological_order():
            deps = self.tasks[task_id].depends_on
            depth[task_id] = 1 + max((depth[dep] for dep in deps), default=-1)
        grouped: dict[int, list[str]] = defaultdict(list)
        for task_id, level in depth.items():
            grouped[level].append(task_id)
        return [sorted(grouped[level]) for level in sorted(grouped)]


def _find_cycle(tasks: Mapping[str, Task]) -> list[str] | None:
    """Three-colour DFS. Returns the members of the first cycle found, in order."""
    color = {task_id: _WHITE for task_id in tasks}
    path: list[str] = []

    for root in sorted(tasks):
        if color[root] != _WHITE:
            continue
        # Iterative DFS; each frame holds the node and its remaining dependencies.
        stack: list[tuple[str, Iterable[str]]] = [(root, iter(sorted(tasks[root].depends_on)))]
        color[root] = _GREY
        path.append(root)
        while stack:
            node, deps = stack[-1]
            advanced = False
            for dep in deps:
                if color[dep] == _GREY:
                    start = path.index(dep)
                    return path[start:]
                if color[dep] == _WHITE:
                    color[dep] = _GREY
                    path.append(dep)
                    stack.append((dep, iter(sorted(tasks[dep].depends_on))))
                    advanced = True
                    break
            if not advanced:
                color[node] = _BLACK
                path.pop()
                stack.pop()
    return None


def build_task_graph(tasks: Iterable[Task]) -> TaskGraph:
    """Validate ``tasks`` and return an immutable :class:`TaskGraph`.

    Raises:
        DuplicateTaskError: If two tasks share an id.
        DanglingDependencyError: If any ``depends_on`` id is unknown. All
            dangling references are reported together.
        CycleError: If the dependency relation is cyclic; ``members`` holds
            the whole cycle.
    """
    task_list = list(tasks)
    counts = Counter(task.task_id for task in task_list)
    duplicates = [task_id for task_id, count in counts.items() if count > 1]
    if duplicates:
        raise DuplicateTaskError(duplicates)

    by_id = {task.task_id: task for task in task_list}
    missing: dict[str, list[str]] = {}
    for task in task_list:
        unknown = [dep for dep in task.depends_on if dep not in by_id]
        if unknown:
            missing[task.task_id] = unknown
    if missing:
        raise DanglingDependencyError(missing)

    cycle = _find_cycle(by_id)
    if cycle is not None:
        raise CycleError(cycle)

    dependents: dict[str, list[str]] = defaultdict(list)
    for task in task_list:
        for dep in task.depends_on:
            dependents[dep].append(task.task_id)

    logger.debug("Built task graph with %d task(s)", len(by_id))
    return TaskGraph(
        tasks=MappingProxyType(dict(sorted(by_id.items()))),
        _dependents=MappingProxyType({key: tuple(sorted(values)) for key, values in dependents.items()}),
    )
