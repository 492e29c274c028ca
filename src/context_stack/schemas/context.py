# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""
Ephemeral context values produced each turn.

This module defines the non-persisted data structures:
- SegmentRole: role of a context segment in the assembled payload
- ContextSegment: one budgeted piece of context
- AssembledContext: ordered, budget-bounded assembly result
- AncestorView / FrameView: materialized view of the current stack path

None of these own state beyond the call that produced them.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from context_stack.schemas.records import FrameStatus, TaskFrame


class SegmentRole(str, Enum):
    """Role of a segment, in assembly priority order."""

    ROOT_GOAL = "root-goal"
    ANCESTOR_SUMMARY = "ancestor-summary"
    ANCESTOR_DETAIL = "ancestor-detail"
    SIBLING_RESULT = "sibling-result"
    CURRENT_DETAIL = "current-detail"
    MEMORY_FACT = "memory-fact"


# Priority rank per role (1 = highest); ancestors share a rank
SEGMENT_PRIORITIES: dict[SegmentRole, int] = {
    SegmentRole.ROOT_GOAL: 1,
    SegmentRole.ANCESTOR_SUMMARY: 2,
    SegmentRole.ANCESTOR_DETAIL: 2,
    SegmentRole.SIBLING_RESULT: 3,
    SegmentRole.CURRENT_DETAIL: 4,
    SegmentRole.MEMORY_FACT: 5,
}

_RENDER_HEADINGS: dict[SegmentRole, str] = {
    SegmentRole.ROOT_GOAL: "Goal",
    SegmentRole.ANCESTOR_SUMMARY: "Parent tasks",
    SegmentRole.ANCESTOR_DETAIL: "Parent tasks",
    SegmentRole.SIBLING_RESULT: "Completed subtasks",
    SegmentRole.CURRENT_DETAIL: "Current task",
    SegmentRole.MEMORY_FACT: "Playbook",
}


@dataclass
class ContextSegment:
    """A piece of context tagged with role, size and priority.

    Attributes:
        role: What the segment represents
        text: Segment text as shown to the model
        size: Cost in size units (tokens)
        priority: Priority rank of the role (1 = highest)
        source_id: Frame or fact the segment came from
        truncated: True if text was cut to fit the budget
        metadata: Role-specific extras (similarity, tier, ...)
    """

    role: SegmentRole
    text: str
    size: int
    priority: int
    source_id: Optional[str] = None
    truncated: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert segment to dictionary for serialization."""
        return {
            "role": self.role.value,
            "text": self.text,
            "size": self.size,
            "priority": self.priority,
            "source_id": self.source_id,
            "truncated": self.truncated,
            "metadata": self.metadata,
        }


@dataclass
class AssembledContext:
    """Result of one assembly call.

    ``truncated`` means the root goal alone exceeded the budget.
    ``incomplete`` means whole segments were dropped at a boundary;
    ``dropped_count`` says how many.
    """

    segments: list[ContextSegment]
    budget: int
    truncated: bool = False
    incomplete: bool = False
    dropped_count: int = 0

    @property
    def total_size(self) -> int:
        return sum(segment.size for segment in self.segments)

    @property
    def is_lossy(self) -> bool:
        return self.truncated or self.incomplete

    def roles(self) -> list[SegmentRole]:
        return [segment.role for segment in self.segments]

    def render(self) -> str:
        """Render segments as a sectioned text payload, preserving order."""
        lines: list[str] = []
        heading: Optional[str] = None
        for segment in self.segments:
            segment_heading = _RENDER_HEADINGS[segment.role]
            if segment_heading != heading:
                if lines:
                    lines.append("")
                lines.append(f"## {segment_heading}")
                heading = segment_heading
            if segment.role == SegmentRole.MEMORY_FACT and segment.source_id:
                lines.append(f"- [{segment.source_id}] {segment.text}")
            else:
                lines.append(segment.text)
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "segments": [segment.to_dict() for segment in self.segments],
            "budget": self.budget,
            "total_size": self.total_size,
            "truncated": self.truncated,
            "incomplete": self.incomplete,
            "dropped_count": self.dropped_count,
        }


@dataclass
class AncestorView:
    """An ancestor on the current path, reduced to what assembly needs."""

    frame_id: str
    goal: str
    status: FrameStatus
    depth: int
    result: Optional[str] = None

    @property
    def summary(self) -> str:
        """Stored result when complete, goal text otherwise."""
        if self.status == FrameStatus.COMPLETE and self.result is not None:
            return self.result
        return self.goal

    @classmethod
    def from_frame(cls, frame: TaskFrame) -> "AncestorView":
        return cls(
            frame_id=frame.id,
            goal=frame.goal,
            status=frame.status,
            depth=frame.depth,
            result=frame.result,
        )


@dataclass
class FrameView:
    """The current frame plus its ancestor path.

    Attributes:
        current: The current frame (copy; mutating it has no effect)
        ancestors: Ancestors ordered root first, excluding the current frame
    """

    current: TaskFrame
    ancestors: list[AncestorView] = field(default_factory=list)

    @property
    def root(self) -> AncestorView:
        if self.ancestors:
            return self.ancestors[0]
        return AncestorView.from_frame(self.current)

    @property
    def path(self) -> list[AncestorView]:
        """Root to current, inclusive."""
        return self.ancestors + [AncestorView.from_frame(self.current)]

    @property
    def ancestor_goals(self) -> list[str]:
        return [ancestor.summary for ancestor in self.ancestors]

    @property
    def depth(self) -> int:
        return self.current.depth
