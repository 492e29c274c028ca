# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""
Context Assembler: linearizes the task stack and long-term memory into a
budget-bounded, ordered payload.

Priority order, filled greedily and never reordered:
1. Root goal (verbatim; truncated alone if it exceeds the budget)
2. Ancestors between root and current: results if complete, else goals
3. Completed sibling results of the current frame, completion order
4. Current frame detail: goal, blocked reason, recent action trace
5. Memory facts admitted by the gate, ranked by
   (provenance trust, helpful - harmful, recency) descending

When a segment does not fit, assembly stops at that segment boundary and
every remaining segment is counted as dropped. Assembly is read-only and
deterministic for identical inputs.
"""

import logging
from datetime import datetime
from typing import Optional, Sequence, Union

from context_stack.assembly.tokens import TokenCounter
from context_stack.config import AssemblyConfig
from context_stack.gate.gate import SimilarityGate
from context_stack.schemas.context import (
    SEGMENT_PRIORITIES,
    AssembledContext,
    ContextSegment,
    SegmentRole,
)
from context_stack.schemas.records import FrameStatus, MemoryFact
from context_stack.stack.task_stack import StackSnapshot, TaskStack

logger = logging.getLogger(__name__)


def fact_rank_key(fact: MemoryFact) -> tuple:
    """Sort key for memory facts: most trusted, most helpful, newest first."""
    recency: datetime = fact.ingested_at or fact.event_time
    return (-fact.tier.trust, -fact.net_score, -recency.timestamp(), fact.id)


class ContextAssembler:
    """
    Assembles the per-turn context payload within a size budget.

    Example:
        >>> assembler = ContextAssembler(gate)
        >>> context = await assembler.assemble(stack, facts, budget=2000)
        >>> if context.incomplete:
        ...     print(f"{context.dropped_count} segments dropped")
    """

    def __init__(
        self,
        gate: SimilarityGate,
        counter: Optional[TokenCounter] = None,
        config: Optional[AssemblyConfig] = None,
    ) -> None:
        """
        Initialize the assembler.

        Args:
            gate: Gate used to admit memory facts
            counter: Size counter (defaults to the word approximation)
            config: Assembly settings (default budget)
        """
        self.gate = gate
        self.counter = counter or TokenCounter()
        self.config = config or AssemblyConfig()

    def _segment(
        self,
        role: SegmentRole,
        text: str,
        source_id: Optional[str] = None,
        **metadata,
    ) -> ContextSegment:
        return ContextSegment(
            role=role,
            text=text,
            size=self.counter.count(text),
            priority=SEGMENT_PRIORITIES[role],
            source_id=source_id,
            metadata=metadata,
        )

    def structural_segments(self, snapshot: StackSnapshot) -> list[ContextSegment]:
        """
        Build tiers 1-4 from a stack snapshot, in priority order.

        Args:
            snapshot: Consistent stack snapshot

        Returns:
            Root goal segment followed by ancestor, sibling and current segments
        """
        view = snapshot.view
        root = view.root
        current = view.current
        segments = [self._segment(SegmentRole.ROOT_GOAL, root.goal, root.frame_id)]

        for ancestor in view.ancestors[1:]:
            if ancestor.status == FrameStatus.COMPLETE and ancestor.result is not None:
                role = SegmentRole.ANCESTOR_SUMMARY
            else:
                role = SegmentRole.ANCESTOR_DETAIL
            segments.append(
                self._segment(role, ancestor.summary, ancestor.frame_id, status=ancestor.status.value)
            )

        for sibling in snapshot.siblings:
            segments.append(
                self._segment(
                    SegmentRole.SIBLING_RESULT,
                    sibling.result or "",
                    sibling.id,
                    goal=sibling.goal,
                )
            )

        if current.id != root.frame_id:
            segments.append(self._segment(SegmentRole.CURRENT_DETAIL, current.goal, current.id, part="goal"))
        if current.status == FrameStatus.BLOCKED and current.blocked_reason:
            segments.append(
                self._segment(
                    SegmentRole.CURRENT_DETAIL,
                    f"Blocked: {current.blocked_reason}",
                    current.id,
                    part="blocked",
                )
            )
        for entry in current.trace:
            segments.append(self._segment(SegmentRole.CURRENT_DETAIL, entry, current.id, part="trace"))

        return [segment for segment in segments if segment.text]

    async def memory_segments(
        self,
        memory_facts: Sequence[MemoryFact],
        current_goal: str,
    ) -> list[ContextSegment]:
        """
        Gate and rank memory facts into tier-5 segments.

        Args:
            memory_facts: Candidate facts (currently valid at the snapshot instant)
            current_goal: Goal text of the current frame

        Returns:
            Admitted fact segments in rank order
        """
        admitted = await self.gate.filter_facts(memory_facts, current_goal)
        admitted.sort(key=lambda pair: fact_rank_key(pair[0]))
        return [
            self._segment(
                SegmentRole.MEMORY_FACT,
                fact.content,
                fact.id,
                section=fact.section_id,
                tier=fact.tier.value,
                similarity=round(similarity, 4),
                net_score=fact.net_score,
            )
            for fact, similarity in admitted
        ]

    async def assemble(
        self,
        stack: Union[TaskStack, StackSnapshot],
        memory_facts: Sequence[MemoryFact],
        budget: Optional[int] = None,
    ) -> AssembledContext:
        """
        Assemble an ordered payload whose total size never exceeds ``budget``.

        The stack is snapshotted before the first suspension point, so every
        segment reflects the same stack state.

        Args:
            stack: Live stack or a snapshot (e.g. from ``view_as_of``)
            memory_facts: Candidate long-term facts
            budget: Size budget (defaults to the configured token budget)

        Returns:
            AssembledContext; ``truncated`` if the root goal alone exceeded
            the budget, ``incomplete`` with ``dropped_count`` if whole
            segments were left out

        Raises:
            EmptyStackError: If the live stack has no current frame
        """
        if budget is None:
            budget = self.config.token_budget
        budget = max(0, budget)
        snapshot = stack.snapshot() if isinstance(stack, TaskStack) else stack

        structural = self._structural_or_truncated(snapshot, budget)
        if isinstance(structural, AssembledContext):
            return structural

        facts = await self.memory_segments(memory_facts, snapshot.view.current.goal)
        ordered = structural + facts

        selected: list[ContextSegment] = []
        remaining = budget
        for index, segment in enumerate(ordered):
            if segment.size > remaining:
                dropped = len(ordered) - index
                logger.debug(
                    f"Assembly stopped at {segment.role.value} segment: "
                    f"{dropped} segments dropped (budget {budget})"
                )
                return AssembledContext(
                    segments=selected,
                    budget=budget,
                    incomplete=True,
                    dropped_count=dropped,
                )
            selected.append(segment)
            remaining -= segment.size

        return AssembledContext(segments=selected, budget=budget)

    def _structural_or_truncated(
        self, snapshot: StackSnapshot, budget: int
    ) -> Union[list[ContextSegment], AssembledContext]:
        segments = self.structural_segments(snapshot)
        root = segments[0] if segments and segments[0].role == SegmentRole.ROOT_GOAL else None
        if root is None or root.size <= budget:
            return segments

        others = len(segments) - 1
        text = self.counter.truncate(root.text, budget)
        if not text:
            logger.warning(
                f"Budget {budget} below minimal root size "
                f"{self.counter.minimal_size(root.text)}; nothing assembled"
            )
            return AssembledContext(
                segments=[],
                budget=budget,
                truncated=True,
                incomplete=True,
                dropped_count=len(segments),
            )

        logger.warning(f"Root goal ({root.size}) exceeds budget {budget}; truncated")
        truncated_root = ContextSegment(
            role=SegmentRole.ROOT_GOAL,
            text=text,
            size=self.counter.count(text),
            priority=root.priority,
            source_id=root.source_id,
            truncated=True,
            metadata={"original_size": root.size},
        )
        return AssembledContext(
            segments=[truncated_root],
            budget=budget,
            truncated=True,
            incomplete=others > 0,
            dropped_count=others,
        )
