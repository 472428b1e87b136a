"""Voting strategies: generate N candidates per attempt and pick one winner.

Strategies are registered by name and built from a voting spec string such
as ``"self-consistency"``, ``"committee:5"`` or ``"pair-debate"``. Selection
is deterministic: highest score wins, ties go to the smallest canonical
payload, then to the lowest ``strategy_index``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, ClassVar

from pydantic import ValidationError

from .canonical import payload_size
from .capabilities import ArbiterCapability, GenerationCapability, ReviewCapability, ScoringCapability
from .errors import ConfigurationError, GenerationError
from .models import ArbiterDecision, Candidate, Issue, Task, Verdict

if TYPE_CHECKING:
    from .settings import EngineConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VotingSpec:
    name: str
    n: int

    def __str__(self) -> str:
        return f"{self.name}:{self.n}"


@dataclass(frozen=True)
class VoteResult:
    winner: Candidate
    index: int
    scores: list[float] = field(default_factory=list)
    method: str = "unopposed"
    rationale: str = ""


def _tie_break_size(candidate: Candidate) -> int:
    # rfc8785 raises ValueError for ints beyond 2**53 and non-finite floats;
    # payloads without a canonical form are measured by their repr.
    try:
        return payload_size(candidate.payload)
    except (TypeError, ValueError):
        return len(repr(candidate.payload).encode("utf-8"))


def select_winner(candidates: Sequence[Candidate], scores: Sequence[float]) -> int:
    """Index of the best candidate: max score, then smallest payload, then lowest strategy index."""
    if not candidates:
        raise ValueError("cannot select a winner from zero candidates")
    if len(candidates) != len(scores):
        raise ValueError(f"got {len(scores)} score(s) for {len(candidates)} candidate(s)")
    return min(
        range(len(candidates)),
        key=lambda i: (-scores[i], _tie_break_size(candidates[i]), candidates[i].strategy_index),
    )


class VotingStrategy:
    """Base strategy: concurrent generation plus score-and-select voting.

    Subclasses override :meth:`score` and, where the selection is not a plain
    ranking, :meth:`choose`.
    """

    name: ClassVar[str] = "single"
    default_n: ClassVar[int] = 1

    def __init__(
        self,
        *,
        generator: GenerationCapability,
        reviewer: ReviewCapability,
        n: int | None = None,
        scorer: ScoringCapability | None = None,
        arbiter: ArbiterCapability | None = None,
        committee: Sequence[ReviewCapability] | None = None,
        generation_timeout_seconds: float | None = None,
        review_timeout_seconds: float | None = None,
    ) -> None:
        self.n = self.validate_n(self.default_n if n is None else n)
        self.generator = generator
        self.reviewer = reviewer
        self.scorer = scorer
        self.arbiter = arbiter
        self.committee = list(committee) if committee else [reviewer]
        self.generation_timeout_seconds = generation_timeout_seconds
        self.review_timeout_seconds = review_timeout_seconds

    @classmethod
    def validate_n(cls, n: int) -> int:
        if n < 1:
            raise ConfigurationError(f"voting strategy {cls.name!r} needs n >= 1, got: {n}")
        return n

    async def _generate_one(
        self, task: Task, feedback: Sequence[Issue] | None, *, attempt: int, index: int
    ) -> Candidate:
        try:
            candidate = await asyncio.wait_for(
                self.generator.generate(task, feedback),
                timeout=self.generation_timeout_seconds,
            )
        except GenerationError:
            raise
        except asyncio.TimeoutError as exc:
            raise GenerationError(
                f"generation timed out after {self.generation_timeout_seconds:g}s",
                task_id=task.task_id,
            ) from exc
        except Exception as exc:
            raise GenerationError(f"{type(exc).__name__}: {exc}", task_id=task.task_id) from exc
        if not isinstance(candidate, Candidate):
            raise GenerationError(
                f"generator returned {type(candidate).__name__}, expected Candidate",
                task_id=task.task_id,
            )
        return candidate.model_copy(update={"task_id": task.task_id, "attempt": attempt, "strategy_index": index})

    async def generate_candidates(
        self,
        task: Task,
        feedback: Sequence[Issue] | None,
        *,
        attempt: int,
        n: int | None = None,
    ) -> list[Candidate]:
        """Run ``n`` generation calls concurrently and return the survivors.

        Raises:
            GenerationError: If every call failed.
        """
        count = self.n if n is None else self.validate_n(n)
        results = await asyncio.gather(
            *(self._generate_one(task, feedback, attempt=attempt, index=i) for i in range(count)),
            return_exceptions=True,
        )
        survivors: list[Candidate] = []
        errors: list[GenerationError] = []
        for index, result in enumerate(results):
            if isinstance(result, Candidate):
                survivors.append(result)
            elif isinstance(result, GenerationError):
                logger.warning(
                    "Task %s attempt %d: candidate %d dropped: %s", task.task_id, attempt, index, result
                )
                errors.append(result)
            else:
                # Cancellation and other BaseExceptions are not generation failures.
                raise result
        if not survivors:
            detail = "; ".join(str(error) for error in errors)
            raise GenerationError(
                f"all {count} generation call(s) failed: {detail}", task_id=task.task_id
            ) from errors[0]
        return survivors

    async def _review_score(self, reviewer: ReviewCapability, candidate: Candidate, criteria: list[str]) -> float:
        try:
            raw = await asyncio.wait_for(reviewer.review(candidate, criteria), timeout=self.review_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                "Scoring review of %s candidate %d timed out; scoring 0",
                candidate.task_id,
                candidate.strategy_index,
            )
            return 0.0
        except Exception as exc:  # noqa: BLE001 - a failing judge scores the candidate 0
            logger.warning(
                "Scoring review of %s candidate %d failed (%s); scoring 0",
                candidate.task_id,
                candidate.strategy_index,
                exc,
            )
            return 0.0
        if isinstance(raw, Verdict):
            return float(raw.score)
        try:
            return float(Verdict.model_validate(raw).score)
        except ValidationError as exc:
            logger.warning(
                "Scoring review of %s candidate %d returned an invalid verdict (%s); scoring 0",
                candidate.task_id,
                candidate.strategy_index,
                exc,
            )
            return 0.0

    async def score(self, task: Task, candidates: Sequence[Candidate]) -> list[float]:
        criteria = task.sorted_criteria()
        return list(await asyncio.gather(*(self._review_score(self.reviewer, c, criteria) for c in candidates)))

    def select(self, candidates: Sequence[Candidate], scores: Sequence[float]) -> int:
        return select_winner(candidates, scores)

    async def choose(self, task: Task, candidates: Sequence[Candidate]) -> VoteResult:
        if not candidates:
            raise ValueError(f"no candidates to choose from for task {task.task_id}")
        if len(candidates) == 1:
            return VoteResult(winner=candidates[0], index=0)
        scores = await self.score(task, candidates)
        index = self.select(candidates, scores)
        logger.debug("Task %s: %s picked candidate %d with scores %s", task.task_id, self.name, index, scores)
        return VoteResult(winner=candidates[index], index=index, scores=scores, method=self.name)


class SelfConsistencyStrategy(VotingStrategy):
    name = "self-consistency"
    default_n = 3

    async def _proxy_score(self, candidate: Candidate, criteria: list[str]) -> float:
        assert self.scorer is not None
        try:
            value = float(
                await asyncio.wait_for(self.scorer.score(candidate, criteria), timeout=self.review_timeout_seconds)
            )
        except Exception as exc:  # noqa: BLE001 - includes timeouts
            logger.warning(
                "Proxy scorer failed for %s candidate %d (%s); scoring 0",
                candidate.task_id,
                candidate.strategy_index,
                str(exc) or type(exc).__name__,
            )
            return 0.0
        return value

    async def score(self, task: Task, candidates: Sequence[Candidate]) -> list[float]:
        if self.scorer is None:
            return await super().score(task, candidates)
        criteria = task.sorted_criteria()
        return list(await asyncio.gather(*(self._proxy_score(c, criteria) for c in candidates)))


class PairDebateStrategy(SelfConsistencyStrategy):
    """Two candidates judged head to head by the Arbiter.

    Falls back to self-consistency scoring when the Arbiter is missing,
    raises, or answers with something other than index 0 or 1.
    """

    name = "pair-debate"
    default_n = 2

    @classmethod
    def validate_n(cls, n: int) -> int:
        if n != 2:
            raise ConfigurationError(f"voting strategy 'pair-debate' needs exactly 2 candidates, got: {n}")
        return n

    async def _arbitrate(self, task: Task, a: Candidate, b: Candidate) -> ArbiterDecision | None:
        if self.arbiter is None:
            logger.info("Task %s: no arbiter configured; falling back to scoring", task.task_id)
            return None
        try:
            raw = await asyncio.wait_for(self.arbiter.arbitrate(a, b), timeout=self.review_timeout_seconds)
        except Exception as exc:  # noqa: BLE001 - includes timeouts
            logger.warning("Task %s: arbiter failed (%s); falling back to scoring", task.task_id, exc)
            return None
        if isinstance(raw, ArbiterDecision):
            return raw
        try:
            return ArbiterDecision.model_validate(raw)
        except ValidationError as exc:
            logger.warning("Task %s: arbiter returned an invalid decision (%s); falling back to scoring", task.task_id, exc)
            return None

    async def choose(self, task: Task, candidates: Sequence[Candidate]) -> VoteResult:
        if len(candidates) != 2:
            return await super().choose(task, candidates)
        decision = await self._arbitrate(task, candidates[0], candidates[1])
        if decision is None:
            scores = await self.score(task, candidates)
            index = self.select(candidates, scores)
            return VoteResult(
                winner=candidates[index],
                index=index,
                scores=scores,
                method="pair-debate-fallback",
            )
        return VoteResult(
            winner=candidates[decision.winner],
            index=decision.winner,
            method=self.name,
            rationale=decision.rationale,
        )


class CommitteeStrategy(VotingStrategy):
    """Every panel member reviews every candidate; candidates rank by mean score."""

    name = "committee"
    default_n = 3

    async def score(self, task: Task, candidates: Sequence[Candidate]) -> list[float]:
        criteria = task.sorted_criteria()

        async def panel_mean(candidate: Candidate) -> float:
            member_scores = await asyncio.gather(
                *(self._review_score(member, candidate, criteria) for member in self.committee)
            )
            return sum(member_scores) / len(member_scores)

        return list(await asyncio.gather(*(panel_mean(c) for c in candidates)))


STRATEGIES: dict[str, type[VotingStrategy]] = {}


def register_strategy(strategy_cls: type[VotingStrategy]) -> type[VotingStrategy]:
    if strategy_cls.name in STRATEGIES:
        raise ValueError(f"voting strategy {strategy_cls.name!r} is already registered")
    STRATEGIES[strategy_cls.name] = strategy_cls
    return strategy_cls


for _strategy in (SelfConsistencyStrategy, PairDebateStrategy, CommitteeStrategy):
    register_strategy(_strategy)


def parse_voting_spec(text: str) -> VotingSpec:
    """Parse ``"name"`` or ``"name:n"`` into a validated :class:`VotingSpec`.

    Raises:
        ConfigurationError: Unknown name, non-integer or non-positive ``n``,
            or ``pair-debate`` with ``n != 2``.
    """
    raw = text.strip().lower()
    name, sep, count = raw.partition(":")
    name = name.strip()
    strategy_cls = STRATEGIES.get(name)
    if strategy_cls is None:
        known = ", ".join(sorted(STRATEGIES))
        raise ConfigurationError(f"unknown voting strategy {name!r}; expected one of: {known}")
    if not sep:
        return VotingSpec(name=name, n=strategy_cls.default_n)
    try:
        n = int(count.strip())
    except ValueError as exc:
        raise ConfigurationError(f"voting strategy count must be an integer, got: {count!r}") from exc
    return VotingSpec(name=name, n=strategy_cls.validate_n(n))


def build_strategy(
    config: "EngineConfig",
    *,
    generator: GenerationCapability,
    reviewer: ReviewCapability,
    scorer: ScoringCapability | None = None,
    arbiter: ArbiterCapability | None = None,
    committee: Sequence[ReviewCapability] | None = None,
) -> VotingStrategy:
    """Instantiate the strategy named by ``config.voting``.

    ``config.voting=None`` yields the single-candidate strategy, which never votes.
    """
    if config.voting is None:
        strategy_cls: type[VotingStrategy] = VotingStrategy
        n = 1
    else:
        spec = parse_voting_spec(config.voting)
        strategy_cls = STRATEGIES[spec.name]
        n = spec.n
    return strategy_cls(
        generator=generator,
        reviewer=reviewer,
        n=n,
        scorer=scorer,
        arbiter=arbiter,
        committee=committee,
        generation_timeout_seconds=config.generation_timeout_seconds,
        review_timeout_seconds=config.review_timeout_seconds,
    )
