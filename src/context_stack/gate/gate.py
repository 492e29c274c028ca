# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Similarity / provenance gate.

Scores context candidates against the current goal through an injected
scorer and applies admission policy on top:
- below ``similarity_floor``: rejected
- at or above ``confidence_threshold``: admitted
- in between: a distractor, admitted only while the distractor budget lasts

Distractors compete for the budget by similarity, then provenance trust
(user > bootstrapped > tool-output), then ID.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from context_stack.config import GateConfig
from context_stack.gate.scorers import SimilarityScorer, clamp_score
from context_stack.schemas.records import MemoryFact, ProvenanceTier

logger = logging.getLogger(__name__)


@dataclass
class Candidate:
    """A context item offered to the gate."""

    candidate_id: str
    text: str
    tier: ProvenanceTier
    payload: Any = None

    @classmethod
    def from_fact(cls, fact: MemoryFact) -> "Candidate":
        return cls(candidate_id=fact.id, text=fact.content, tier=fact.tier, payload=fact)


@dataclass
class GateDecision:
    """Admission decision for one candidate."""

    candidate: Candidate
    similarity: float
    admitted: bool
    distractor: bool = False
    reason: str = ""


class SimilarityGate:
    """Applies similarity-floor and distractor-budget policy.

    Read-only: the gate never touches stored state.

    Example:
        >>> gate = SimilarityGate(WordOverlapScorer(), GateConfig(similarity_floor=0.3))
        >>> decisions = await gate.screen(candidates, "fix failing test")
    """

    def __init__(
        self,
        scorer: SimilarityScorer,
        config: Optional[GateConfig] = None,
    ) -> None:
        self.scorer = scorer
        self.config = config or GateConfig()
        self.config.validate()

    async def score(self, candidate_text: str, current_goal: str) -> float:
        """Similarity of a candidate to the goal, clamped to [0, 1]."""
        return clamp_score(await self.scorer.score(candidate_text, current_goal))

    async def admit(
        self,
        candidate: Candidate,
        current_goal: str,
        distractor_budget: Optional[int] = None,
    ) -> bool:
        """Decide a single candidate.

        ``distractor_budget`` is the number of distractor slots still open
        (defaults to the configured budget).
        """
        budget = self.config.distractor_budget if distractor_budget is None else distractor_budget
        similarity = await self.score(candidate.text, current_goal)
        if similarity < self.config.similarity_floor:
            return False
        if similarity >= self.config.confidence_threshold:
            return True
        return budget > 0

    async def screen(
        self,
        candidates: Sequence[Candidate],
        current_goal: str,
        distractor_budget: Optional[int] = None,
    ) -> list[GateDecision]:
        """Decide a batch of candidates; decisions keep input order."""
        budget = self.config.distractor_budget if distractor_budget is None else distractor_budget
        scores = await asyncio.gather(
            *(self.score(candidate.text, current_goal) for candidate in candidates)
        )

        decisions: list[GateDecision] = []
        distractors: list[GateDecision] = []
        for candidate, similarity in zip(candidates, scores):
            if similarity < self.config.similarity_floor:
                decision = GateDecision(candidate, similarity, admitted=False, reason="below floor")
            elif similarity >= self.config.confidence_threshold:
                decision = GateDecision(candidate, similarity, admitted=True, reason="confident")
            else:
                decision = GateDecision(
                    candidate, similarity, admitted=False, distractor=True, reason="distractor"
                )
                distractors.append(decision)
            decisions.append(decision)

        distractors.sort(
            key=lambda d: (-d.similarity, -d.candidate.tier.trust, d.candidate.candidate_id)
        )
        for rank, decision in enumerate(distractors):
            if rank < budget:
                decision.admitted = True
                decision.reason = "distractor within budget"
            else:
                decision.reason = "distractor over budget"

        admitted = sum(1 for d in decisions if d.admitted)
        logger.debug(
            f"Gate admitted {admitted}/{len(decisions)} candidates "
            f"({min(budget, len(distractors))} distractors)"
        )
        return decisions

    async def filter_facts(
        self,
        facts: Sequence[MemoryFact],
        current_goal: str,
        distractor_budget: Optional[int] = None,
    ) -> list[tuple[MemoryFact, float]]:
        """Admitted facts with their similarity, in input order."""
        decisions = await self.screen(
            [Candidate.from_fact(fact) for fact in facts], current_goal, distractor_budget
        )
        return [(d.candidate.payload, d.similarity) for d in decisions if d.admitted]
