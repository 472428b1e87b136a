"""Contracts for the external collaborators the engine calls.

The core never inspects payloads or prompts; it only awaits these methods.
Implementations are injected into :class:`taskforge.engine.TaskEngine`.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol, runtime_checkable

from .models import ArbiterDecision, Candidate, Issue, Task, Verdict


@runtime_checkable
class GenerationCapability(Protocol):
    async def generate(self, task: Task, feedback: Sequence[Issue] | None) -> Candidate:
        """Produce one candidate for ``task``.

        ``feedback`` holds the issues of the previous failing verdict, or
        ``None`` on the first attempt. May raise ``GenerationError``.
        """
        ...


@runtime_checkable
class ReviewCapability(Protocol):
    async def review(self, candidate: Candidate, acceptance_criteria: Sequence[str]) -> Verdict: ...


@runtime_checkable
class ArbiterCapability(Protocol):
    async def arbitrate(self, a: Candidate, b: Candidate) -> ArbiterDecision: ...


@runtime_checkable
class ScoringCapability(Protocol):
    """Cheap proxy scorer used by self-consistency voting in place of a full review."""

    async def score(self, candidate: Candidate, acceptance_criteria: Sequence[str]) -> float: ...
