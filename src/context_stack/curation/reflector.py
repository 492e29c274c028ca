# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""
Reflector: turns a finished interaction and model feedback into proposed
deltas.

The Reflector holds a StoreReader, never the store, so reflection cannot
write. Its output is a list of inert ProposedDelta values for the Curator.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from context_stack.curation.deltas import DeltaOperation, DeltaPayload, ProposedDelta
from context_stack.curation.feedback import BulletMark, ModelFeedback
from context_stack.schemas.records import RowKind, TaskFrame
from context_stack.storage.reader import StoreReader

logger = logging.getLogger(__name__)

MARK_OPERATIONS = {
    BulletMark.HELPFUL: DeltaOperation.INCREMENT_HELPFUL,
    BulletMark.HARMFUL: DeltaOperation.INCREMENT_HARMFUL,
}


@dataclass
class InteractionTrace:
    """A completed interaction: one frame's goal, outcome and actions."""

    frame_id: Optional[str]
    goal: str
    result: Optional[str] = None
    actions: list[str] = field(default_factory=list)

    @classmethod
    def from_frame(cls, frame: TaskFrame, actions: Optional[list[str]] = None) -> "InteractionTrace":
        return cls(
            frame_id=frame.id,
            goal=frame.goal,
            result=frame.result,
            actions=list(actions if actions is not None else frame.trace),
        )


class Reflector:
    """Proposes deltas from model feedback without touching the store.

    Example:
        >>> reflector = Reflector(store.reader(), namespace="playbook")
        >>> deltas = await reflector.reflect(trace, ModelFeedback.parse(raw))
        >>> report = await curator.curate(deltas)
    """

    def __init__(self, reader: StoreReader, namespace: str = "playbook") -> None:
        self._reader = reader
        self.namespace = namespace

    async def reflect(
        self,
        trace: InteractionTrace,
        feedback: ModelFeedback,
    ) -> list[ProposedDelta]:
        """Propose deltas for one interaction.

        Helpful/harmful marks become increments addressed to the marked
        fact's section; neutral marks and marks on unknown facts are
        dropped. Insights become add-content deltas, or revise-content
        deltas when they name a fact to replace.

        Args:
            trace: The completed interaction
            feedback: Parsed model feedback

        Returns:
            Proposed deltas, marks first (in fact ID order), then insights
        """
        deltas: list[ProposedDelta] = []

        for fact_id in sorted(feedback.bullet_marks):
            operation = MARK_OPERATIONS.get(feedback.bullet_marks[fact_id])
            if operation is None:
                continue
            section_id = await self._section_of(fact_id)
            if section_id is None:
                logger.warning(f"Dropping mark on unknown fact {fact_id}")
                continue
            deltas.append(
                ProposedDelta(
                    section_id=section_id,
                    operation=operation,
                    payload=DeltaPayload(fact_id=fact_id, source_frame_id=trace.frame_id),
                )
            )

        for insight in feedback.insights:
            if insight.revises:
                operation = DeltaOperation.REVISE_CONTENT
            else:
                operation = DeltaOperation.ADD_CONTENT
            deltas.append(
                ProposedDelta(
                    section_id=insight.section_id,
                    operation=operation,
                    payload=DeltaPayload(
                        fact_id=insight.revises,
                        content=insight.content,
                        tier=insight.tier,
                        source_frame_id=trace.frame_id,
                    ),
                )
            )

        logger.debug(
            f"Reflected on {trace.frame_id}: {len(deltas)} deltas "
            f"from {len(feedback.bullet_marks)} marks, {len(feedback.insights)} insights"
        )
        return deltas

    async def _section_of(self, fact_id: str) -> Optional[str]:
        row = await self._reader.get_current(fact_id)
        if row is None:
            versions = await self._reader.history(fact_id)
            row = versions[-1] if versions else None
        if row is None or row.kind != RowKind.FACT:
            return None
        return row.status_or_section
