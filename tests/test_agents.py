import asyncio

import pytest
from langchain_core.runnables import RunnableLambda

from fakes import make_task
from taskforge.agents import (
    GeneratedArtifact,
    LLMArbiter,
    LLMGenerator,
    LLMReviewer,
    ReviewReport,
    build_generation_prompt,
)
from taskforge.errors import GenerationError
from taskforge.llm import StructuredOutputAdapter, StructuredOutputError, get_chat_model, normalize_structured_output
from taskforge.models import ArbiterDecision, Candidate, Issue, IssueSeverity


class StubRunnable:
    """Real LangChain runnable that records prompts and replies with a fixed value."""

    def __init__(self, reply) -> None:
        self.reply = reply
        self.prompts: list[str] = []
        self.runnable = RunnableLambda(self._respond)

    def _respond(self, prompt):
        self.prompts.append(prompt)
        if isinstance(self.reply, Exception):
            raise self.reply
        return self.reply

    async def ainvoke(self, prompt):
        return await self.runnable.ainvoke(prompt)


def test_generator_wraps_artifact_in_candidate() -> None:
    runnable = StubRunnable({"summary": "done", "files": [{"path": "app.py", "content": "print(1)"}]})
    generator = LLMGenerator(StructuredOutputAdapter(schema=GeneratedArtifact, runnable=runnable))
    candidate = asyncio.run(generator.generate(make_task("T1", criteria=["prints one"]), None))

    assert candidate.task_id == "T1"
    assert candidate.payload["files"][0]["path"] == "app.py"
    assert "prints one" in runnable.prompts[0]
    assert "previous attempt" not in runnable.prompts[0]


def test_generation_prompt_includes_feedback_issues() -> None:
    feedback = [Issue(severity=IssueSeverity.HIGH, message="no tests", acceptance_criterion="has tests")]
    prompt = build_generation_prompt(make_task("T1"), feedback)
    assert "[high] no tests (criterion: has tests)" in prompt


def test_generator_maps_model_failures_to_generation_error() -> None:
    generator = LLMGenerator(StructuredOutputAdapter(schema=GeneratedArtifact, runnable=StubRunnable(TimeoutError())))
    with pytest.raises(GenerationError):
        asyncio.run(generator.generate(make_task("T1"), None))


def test_reviewer_converts_report_to_verdict() -> None:
    runnable = StubRunnable(
        ReviewReport(
            approved=False,
            score=64,
            summary="needs work",
            issues=[{"severity": "critical", "message": "SQL injection", "category": "security"}],
        )
    )
    reviewer = LLMReviewer(StructuredOutputAdapter(schema=ReviewReport, runnable=runnable))
    verdict = asyncio.run(reviewer.review(Candidate(task_id="T1", payload={"x": 1}), ["safe queries"]))

    assert not verdict.passed
    assert verdict.score == 64
    assert verdict.issues[0].severity == IssueSeverity.CRITICAL
    assert '{"x":1}' in runnable.prompts[0]


def test_arbiter_returns_decision() -> None:
    runnable = StubRunnable({"winner": 1, "rationale": "simpler"})
    arbiter = LLMArbiter(StructuredOutputAdapter(schema=ArbiterDecision, runnable=runnable))
    decision = asyncio.run(arbiter.arbitrate(Candidate(task_id="T1", payload="a"), Candidate(task_id="T1", payload="b")))
    assert decision == ArbiterDecision(winner=1, rationale="simpler")


def test_normalize_structured_output_envelope_errors() -> None:
    with pytest.raises(StructuredOutputError):
        normalize_structured_output(
            raw_output={"parsed": None, "parsing_error": ValueError("bad"), "raw": None},
            schema=ArbiterDecision,
        )
    with pytest.raises(StructuredOutputError):
        normalize_structured_output(raw_output="text", schema=ArbiterDecision)
    with pytest.raises(StructuredOutputError):
        normalize_structured_output(raw_output={"winner": 3}, schema=ArbiterDecision)
    parsed = normalize_structured_output(
        raw_output={"parsed": {"winner": 0}, "parsing_error": None, "raw": None},
        schema=ArbiterDecision,
    )
    assert parsed.winner == 0


def test_chat_model_requires_api_key(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(RuntimeError):
        get_chat_model(model_name="gpt-4o-mini", repo_root=tmp_path)


def test_chat_model_rejects_blank_model_name(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    with pytest.raises(ValueError):
        get_chat_model(model_name="  ", repo_root=tmp_path)
