from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from .errors import ConfigurationError
from .voting import parse_voting_spec


@dataclass(frozen=True)
class EngineConfig:
    """Per-run engine configuration, validated on construction.

    ``voting=None`` runs every attempt with a single candidate and no vote.
    """

    max_parallel: int = 2
    max_iterations: int = 3
    voting: str | None = None
    review_timeout_seconds: float = 300.0
    generation_timeout_seconds: float = 600.0
    recursion_margin: int = 10

    def __post_init__(self) -> None:
        if self.max_parallel < 1:
            raise ConfigurationError(f"max_parallel must be >= 1, got: {self.max_parallel}")
        if self.max_iterations < 1:
            raise ConfigurationError(f"max_iterations must be >= 1, got: {self.max_iterations}")
        if self.review_timeout_seconds <= 0:
            raise ConfigurationError(f"review_timeout_seconds must be > 0, got: {self.review_timeout_seconds}")
        if self.generation_timeout_seconds <= 0:
            raise ConfigurationError(
                f"generation_timeout_seconds must be > 0, got: {self.generation_timeout_seconds}"
            )
        if self.recursion_margin < 0:
            raise ConfigurationError(f"recursion_margin must be >= 0, got: {self.recursion_margin}")
        if self.voting is not None:
            parse_voting_spec(self.voting)


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    max_parallel: int = 2
    max_iterations: int = 3
    voting: str = ""
    review_timeout_seconds: float = 300.0
    generation_timeout_seconds: float = 600.0
    recursion_margin: int = 10
    state_store_root: str = "state_store"
    project_id: str = "PROJECT-001"
    model: str = "gpt-4o-mini"
    model_reviewer: str = ""
    model_arbiter: str = ""

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        try:
            return cls(
                max_parallel=_get_env_int("TASKFORGE_MAX_PARALLEL", default=2, minimum=1, maximum=256),
                max_iterations=_get_env_int("TASKFORGE_MAX_ITERATIONS", default=3, minimum=1, maximum=100),
                voting=os.getenv("TASKFORGE_VOTING", ""),
                review_timeout_seconds=_get_env_float("TASKFORGE_REVIEW_TIMEOUT_SECONDS", default=300.0),
                generation_timeout_seconds=_get_env_float("TASKFORGE_GENERATION_TIMEOUT_SECONDS", default=600.0),
                recursion_margin=_get_env_int("TASKFORGE_RECURSION_MARGIN", default=10, minimum=0, maximum=10_000),
                state_store_root=os.getenv("TASKFORGE_STATE_STORE_ROOT", "state_store"),
                project_id=os.getenv("TASKFORGE_PROJECT_ID", "PROJECT-001"),
                model=os.getenv("TASKFORGE_MODEL", "gpt-4o-mini"),
                model_reviewer=os.getenv("TASKFORGE_MODEL_REVIEWER", ""),
                model_arbiter=os.getenv("TASKFORGE_MODEL_ARBITER", ""),
            ).normalized()
        except ConfigurationError:
            raise
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ConfigurationError on invalid configuration."""
        model = self.model.strip()
        if not model:
            raise ConfigurationError("TASKFORGE_MODEL must be non-empty")
        if not self.project_id.strip():
            raise ConfigurationError("TASKFORGE_PROJECT_ID must be non-empty")
        if not self.state_store_root.strip():
            raise ConfigurationError("TASKFORGE_STATE_STORE_ROOT must be non-empty")

        voting = self.voting.strip().lower()
        if voting:
            parse_voting_spec(voting)
        return RuntimeSettings(
            max_parallel=self.max_parallel,
            max_iterations=self.max_iterations,
            voting=voting,
            review_timeout_seconds=self.review_timeout_seconds,
            generation_timeout_seconds=self.generation_timeout_seconds,
            recursion_margin=self.recursion_margin,
            state_store_root=self.state_store_root.strip(),
            project_id=self.project_id.strip(),
            model=model,
            model_reviewer=self.model_reviewer.strip() or model,
            model_arbiter=self.model_arbiter.strip() or model,
        )

    def engine_config(
        self,
        *,
        max_parallel: int | None = None,
        max_iterations: int | None = None,
        voting: str | None = None,
    ) -> EngineConfig:
        """Build the run :class:`EngineConfig`, letting CLI flags override the environment."""
        chosen_voting = voting if voting is not None else self.voting
        return EngineConfig(
            max_parallel=max_parallel if max_parallel is not None else self.max_parallel,
            max_iterations=max_iterations if max_iterations is not None else self.max_iterations,
            voting=chosen_voting or None,
            review_timeout_seconds=self.review_timeout_seconds,
            generation_timeout_seconds=self.generation_timeout_seconds,
            recursion_margin=self.recursion_margin,
        )

    def state_store_path(self, repo_root: Path) -> Path:
        path = Path(self.state_store_root)
        return path if path.is_absolute() else repo_root / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_float(name: str, default: float, minimum: float = 0.001, maximum: float = 86_400.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc
    if not minimum <= parsed <= maximum:
        raise ValueError(f"{name} must be between {minimum:g} and {maximum:g}, got: {parsed:g}")
    return parsed
