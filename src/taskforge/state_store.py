from __future__ import annotations

import asyncio
import fcntl
import logging
import os
import re
import tempfile
import threading
from collections import defaultdict
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Protocol, runtime_checkable
from urllib.parse import quote

from pydantic import ValidationError

from .errors import RecordNotFoundError
from .models import TaskRunState, TaskRunStatus, TraceEvent

logger = logging.getLogger(__name__)


@runtime_checkable
class StateStore(Protocol):
    """Minimal durable key-value contract used by the engine.

    Implementations must accept concurrent writes for *different* task ids
    and thread-safe appends to the shared event log.
    """

    def put(self, task_id: str, state: TaskRunState) -> None: ...

    def get(self, task_id: str) -> TaskRunState: ...

    def append(self, event: TraceEvent) -> None: ...

    def events(self) -> list[TraceEvent]: ...

    def task_ids(self) -> list[str]: ...


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------

class InMemoryStateStore:
    """Process-local store with per-key locks and a single log lock.

    Records are deep-copied on the way in and out so callers never share a
    mutable ``TaskRunState`` with the store.
    """

    def __init__(self) -> None:
        self._records: dict[str, TaskRunState] = {}
        self._events: list[TraceEvent] = []
        self._key_locks: defaultdict[str, threading.Lock] = defaultdict(threading.Lock)
        self._registry_lock = threading.Lock()
        self._log_lock = threading.Lock()

    def _lock_for(self, task_id: str) -> threading.Lock:
        with self._registry_lock:
            return self._key_locks[task_id]

    def put(self, task_id: str, state: TaskRunState) -> None:
        if state.task_id != task_id:
            raise ValueError(f"State for {state.task_id} cannot be stored under key {task_id}")
        snapshot = state.model_copy(deep=True)
        with self._lock_for(task_id):
            self._records[task_id] = snapshot

    def get(self, task_id: str) -> TaskRunState:
        with self._lock_for(task_id):
            record = self._records.get(task_id)
        if record is None:
            raise RecordNotFoundError(task_id)
        return record.model_copy(deep=True)

    def append(self, event: TraceEvent) -> None:
        with self._log_lock:
            self._events.append(event)

    def events(self) -> list[TraceEvent]:
        with self._log_lock:
            return list(self._events)

    def task_ids(self) -> list[str]:
        with self._registry_lock:
            keys = list(self._key_locks)
        return sorted(key for key in keys if key in self._records)


# ---------------------------------------------------------------------------
# Filesystem store
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Hold an exclusive ``fcntl`` lock on a ``.lock`` sidecar of ``path``.

    The sidecar keeps the lock stable while the data file itself is replaced
    with ``os.replace``.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _safe_read_text(path: Path, label: str) -> str:
    """Read ``path`` or raise ``ValueError`` when it is empty or not UTF-8."""
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{label} at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise ValueError(f"{label} at {path} is empty")
    return text


def sanitize_project_id(project_id: str) -> str:
    """Return a filesystem-safe project id, truncated to 128 characters.

    Raises:
        ValueError: If nothing safe remains after sanitizing.
    """
    value = project_id.strip()
    if not value:
        raise ValueError("project_id must be non-empty")
    value = re.sub(r"[^A-Za-z0-9._-]+", "-", value).strip("-")
    if not value:
        raise ValueError("project_id contains no filesystem-safe characters")
    return value[:128]


def project_scoped_root(root: Path, project_id: str | None) -> Path:
    """Return ``root/projects/<project_id>``, or ``root`` when no id is given."""
    if project_id is None:
        return root
    slug = sanitize_project_id(project_id)
    if root.name == slug and root.parent.name == "projects":
        return root
    return root / "projects" / slug


class FileStateStore:
    """Filesystem store: one JSON record per task plus ``events.jsonl``.

    Record writes are atomic (temp file then ``os.replace``) and guarded by a
    per-record ``fcntl`` lock; appends to the shared event log take the log's
    own lock, so concurrent processes and threads can share one directory.
    """

    def __init__(self, root: Path, *, project_id: str | None = None) -> None:
        self.base_root = root
        self.project_id = project_id
        self.root = project_scoped_root(root, project_id)
        self.tasks_dir = self.root / "tasks"
        self.tasks_dir.mkdir(parents=True, exist_ok=True)

    @property
    def events_path(self) -> Path:
        return self.root / "events.jsonl"

    def _record_path(self, task_id: str) -> Path:
        if not re.fullmatch(r"[A-Za-z0-9][A-Za-z0-9._:-]*", task_id):
            raise ValueError(f"task_id is not filesystem-safe: {task_id!r}")
        # Percent-encoding keeps "a:b" and "a_b" in separate files.
        return self.tasks_dir / f"{quote(task_id, safe='')}.json"

    def put(self, task_id: str, state: TaskRunState) -> None:
        if state.task_id != task_id:
            raise ValueError(f"State for {state.task_id} cannot be stored under key {task_id}")
        path = self._record_path(task_id)
        with _locked_file(path):
            _atomic_write_text(path, state.model_dump_json(indent=2, by_alias=True))

    def get(self, task_id: str) -> TaskRunState:
        """Read the run state for ``task_id``.

        Raises:
            RecordNotFoundError: If no record was ever written.
            ValueError: If the record is corrupt or fails validation.
        """
        path = self._record_path(task_id)
        if not path.is_file():
            raise RecordNotFoundError(task_id)
        with _locked_file(path):
            text = _safe_read_text(path, "task run state")
            try:
                return TaskRunState.model_validate_json(text)
            except ValidationError as exc:
                raise ValueError(f"task run state at {path} failed validation: {exc}") from exc

    def append(self, event: TraceEvent) -> None:
        line = event.model_dump_json() + "\n"
        with _locked_file(self.events_path):
            with self.events_path.open("a", encoding="utf-8") as handle:
                handle.write(line)
                handle.flush()
                os.fsync(handle.fileno())

    def events(self) -> list[TraceEvent]:
        if not self.events_path.is_file():
            return []
        with _locked_file(self.events_path):
            lines = self.events_path.read_text(encoding="utf-8").splitlines()
        events: list[TraceEvent] = []
        for number, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                events.append(TraceEvent.model_validate_json(line))
            except ValidationError as exc:
                raise ValueError(f"event log {self.events_path} line {number} failed validation: {exc}") from exc
        return events

    def task_ids(self) -> list[str]:
        ids: list[str] = []
        for path in sorted(self.tasks_dir.glob("*.json")):
            ids.append(self.get_by_path(path).task_id)
        return sorted(ids)

    def get_by_path(self, path: Path) -> TaskRunState:
        text = _safe_read_text(path, "task run state")
        try:
            return TaskRunState.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"task run state at {path} failed validation: {exc}") from exc


class RunRecorder:
    """Writes run state and trace events for one run.

    Store calls are pushed to a worker thread so file locking never stalls
    the event loop; every status change goes through :meth:`transition`.
    """

    def __init__(self, store: StateStore, run_id: str) -> None:
        self.store = store
        self.run_id = run_id

    async def save(self, state: TaskRunState) -> None:
        await asyncio.to_thread(self.store.put, state.task_id, state)

    async def emit(
        self,
        event: str,
        *,
        task_id: str | None = None,
        from_status: TaskRunStatus | None = None,
        to_status: TaskRunStatus | None = None,
        attempt: int | None = None,
        **detail: Any,
    ) -> TraceEvent:
        record = TraceEvent(
            run_id=self.run_id,
            event=event,
            task_id=task_id,
            from_status=from_status,
            to_status=to_status,
            attempt=attempt,
            detail=detail,
        )
        await asyncio.to_thread(self.store.append, record)
        return record

    async def transition(
        self,
        state: TaskRunState,
        new_status: TaskRunStatus,
        *,
        event: str = "status_changed",
        **detail: Any,
    ) -> None:
        previous = state.transition(new_status)
        logger.info("Task %s: %s -> %s", state.task_id, previous.value, new_status.value)
        await self.save(state)
        await self.emit(
            event,
            task_id=state.task_id,
            from_status=previous,
            to_status=new_status,
            attempt=state.attempt,
            **detail,
        )
