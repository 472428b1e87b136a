"""LLM-backed Generation, Review and Arbiter capabilities.

These are the only collaborators that talk to a model. Each wraps a
:class:`~taskforge.llm.StructuredOutputAdapter`; tests pass an adapter around
a stub runnable instead of a live ``ChatOpenAI``.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from .canonical import to_canonical_json
from .errors import GenerationError
from .llm import StructuredOutputAdapter, get_structured_chat_model
from .models import ArbiterDecision, Candidate, Issue, IssueSeverity, Task, Verdict
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)


class GeneratedFile(BaseModel):
    model_config = ConfigDict(extra="forbid")

    path: str
    content: str


class GeneratedArtifact(BaseModel):
    model_config = ConfigDict(extra="forbid")

    summary: str = Field(description="What was implemented and how it meets each acceptance criterion")
    files: list[GeneratedFile] = Field(default_factory=list)


class ReviewIssue(BaseModel):
    model_config = ConfigDict(extra="forbid")

    severity: IssueSeverity
    message: str
    acceptance_criterion: str | None = None
    category: str | None = None


class ReviewReport(BaseModel):
    model_config = ConfigDict(extra="forbid")

    approved: bool
    score: float = Field(ge=0, le=100)
    summary: str
    issues: list[ReviewIssue] = Field(default_factory=list)

    def to_verdict(self) -> Verdict:
        return Verdict(
            passed=self.approved,
            score=self.score,
            summary=self.summary,
            issues=[Issue.model_validate(issue.model_dump()) for issue in self.issues],
        )


_GENERATOR_ROLE = (
    "You are a senior software engineer executing one development task. "
    "Implement it completely: every acceptance criterion must be satisfied by the files you return. "
    "Write clean, production-ready code with error handling and tests. "
    "Return GeneratedArtifact JSON only."
)

_REVIEWER_ROLE = (
    "You are a senior code reviewer. Judge the implementation strictly against the acceptance criteria, "
    "then against correctness, security, and test coverage. "
    "Score 90-100 production ready, 80-89 minor fixes, 70-79 moderate rework, 60-69 major issues, "
    "0-59 unacceptable. Approve only when every acceptance criterion is met. "
    "Every issue must be specific and actionable. Return ReviewReport JSON only."
)

_ARBITER_ROLE = (
    "You are the arbiter between two candidate implementations of the same task. "
    "Pick the one that better satisfies the acceptance criteria; on a tie prefer the simpler one. "
    "Answer with winner 0 for candidate A or 1 for candidate B, plus a short rationale."
)


def _bullets(items: Sequence[str], empty: str = "None") -> str:
    return "\n".join(f"- {item}" for item in items) if items else empty


def build_generation_prompt(task: Task, feedback: Sequence[Issue] | None) -> str:
    sections = [
        _GENERATOR_ROLE,
        f"Task ID: {task.task_id}",
        f"Title: {task.title}",
        f"Description: {task.description or '(none)'}",
        f"Dependencies (already approved): {', '.join(task.sorted_dependencies()) or 'None'}",
        f"Acceptance criteria:\n{_bullets(task.sorted_criteria())}",
    ]
    if feedback:
        lines = [
            f"[{issue.severity.value}] {issue.message}"
            + (f" (criterion: {issue.acceptance_criterion})" if issue.acceptance_criterion else "")
            for issue in feedback
        ]
        sections.append(
            "Your previous attempt was rejected by review. Fix every issue below:\n" + _bullets(lines)
        )
    return "\n\n".join(sections)


def build_review_prompt(candidate: Candidate, acceptance_criteria: Sequence[str]) -> str:
    return "\n\n".join(
        [
            _REVIEWER_ROLE,
            f"Task ID: {candidate.task_id} (attempt {candidate.attempt})",
            f"Acceptance criteria:\n{_bullets(list(acceptance_criteria))}",
            f"Implementation:\n{to_canonical_json(candidate.payload)}",
        ]
    )


def build_arbiter_prompt(a: Candidate, b: Candidate) -> str:
    return "\n\n".join(
        [
            _ARBITER_ROLE,
            f"Task ID: {a.task_id}",
            f"Candidate A:\n{to_canonical_json(a.payload)}",
            f"Candidate B:\n{to_canonical_json(b.payload)}",
        ]
    )


@dataclass
class LLMGenerator:
    adapter: StructuredOutputAdapter[GeneratedArtifact]

    async def generate(self, task: Task, feedback: Sequence[Issue] | None) -> Candidate:
        prompt = build_generation_prompt(task, feedback)
        try:
            artifact = await self.adapter.ainvoke(prompt)
        except Exception as exc:
            raise GenerationError(f"model call failed: {exc}", task_id=task.task_id) from exc
        logger.debug("Task %s: generated %d file(s)", task.task_id, len(artifact.files))
        return Candidate(task_id=task.task_id, payload=artifact.model_dump(mode="json"))


@dataclass
class LLMReviewer:
    adapter: StructuredOutputAdapter[ReviewReport]

    async def review(self, candidate: Candidate, acceptance_criteria: Sequence[str]) -> Verdict:
        report = await self.adapter.ainvoke(build_review_prompt(candidate, acceptance_criteria))
        return report.to_verdict()


@dataclass
class LLMArbiter:
    adapter: StructuredOutputAdapter[ArbiterDecision]

    async def arbitrate(self, a: Candidate, b: Candidate) -> ArbiterDecision:
        return await self.adapter.ainvoke(build_arbiter_prompt(a, b))


@dataclass
class LLMCapabilities:
    generator: LLMGenerator
    reviewer: LLMReviewer
    arbiter: LLMArbiter


def build_llm_capabilities(settings: RuntimeSettings, *, repo_root: Path | None = None) -> LLMCapabilities:
    """Construct model-backed capabilities from settings.

    Raises:
        RuntimeError: If ``OPENAI_API_KEY`` is not available.
    """
    timeout = int(max(settings.generation_timeout_seconds, settings.review_timeout_seconds))
    return LLMCapabilities(
        generator=LLMGenerator(
            get_structured_chat_model(
                model_name=settings.model,
                schema=GeneratedArtifact,
                temperature=0.7,
                timeout=timeout,
                repo_root=repo_root,
            )
        ),
        reviewer=LLMReviewer(
            get_structured_chat_model(
                model_name=settings.model_reviewer or settings.model,
                schema=ReviewReport,
                timeout=timeout,
                repo_root=repo_root,
            )
        ),
        arbiter=LLMArbiter(
            get_structured_chat_model(
                model_name=settings.model_arbiter or settings.model,
                schema=ArbiterDecision,
                timeout=timeout,
                repo_root=repo_root,
            )
        ),
    )
