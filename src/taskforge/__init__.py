from importlib.metadata import PackageNotFoundError, version

from .capabilities import ArbiterCapability, GenerationCapability, ReviewCapability, ScoringCapability
from .engine import TaskEngine, run
from .errors import (
    ConfigurationError,
    CycleError,
    DanglingDependencyError,
    DuplicateTaskError,
    GenerationError,
    GraphValidationError,
    IllegalTransitionError,
    MaxIterationsExceeded,
    RecordNotFoundError,
    ReviewTimeoutError,
    TaskforgeError,
    TaskInputError,
    UpstreamBlocked,
)
from .graph import TaskGraph, build_task_graph
from .loader import TaskSet, load_task_set, parse_task_set
from .models import (
    ArbiterDecision,
    Candidate,
    Issue,
    IssueSeverity,
    RunOutcome,
    RunSummary,
    Task,
    TaskRunState,
    TaskRunStatus,
    TraceEvent,
    Verdict,
)
from .settings import EngineConfig, RuntimeSettings
from .state_store import FileStateStore, InMemoryStateStore, StateStore
from .voting import parse_voting_spec


def get_version() -> str:
    try:
        return version(__name__)
    except PackageNotFoundError:
        return "0.0.0"


__all__ = [
    "ArbiterCapability",
    "ArbiterDecision",
    "Candidate",
    "ConfigurationError",
    "CycleError",
    "DanglingDependencyError",
    "DuplicateTaskError",
    "EngineConfig",
    "FileStateStore",
    "GenerationCapability",
    "GenerationError",
    "GraphValidationError",
    "IllegalTransitionError",
    "InMemoryStateStore",
    "Issue",
    "IssueSeverity",
    "MaxIterationsExceeded",
    "RecordNotFoundError",
    "ReviewCapability",
    "ReviewTimeoutError",
    "RunOutcome",
    "RunSummary",
    "RuntimeSettings",
    "ScoringCapability",
    "StateStore",
    "Task",
    "TaskEngine",
    "TaskGraph",
    "TaskInputError",
    "TaskRunState",
    "TaskRunStatus",
    "TaskSet",
    "TaskforgeError",
    "TraceEvent",
    "UpstreamBlocked",
    "Verdict",
    "build_task_graph",
    "get_version",
    "load_task_set",
    "parse_task_set",
    "parse_voting_spec",
    "run",
]
