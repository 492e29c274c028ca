# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Proposed deltas and curation reports.

A ProposedDelta is an inert value produced by reflection. Only the Curator
applies deltas to the store.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from context_stack.schemas.records import ProvenanceTier


class DeltaOperation(str, Enum):
    """Operations a delta may request on one section."""

    INCREMENT_HELPFUL = "increment-helpful"
    INCREMENT_HARMFUL = "increment-harmful"
    ADD_CONTENT = "add-content"
    REVISE_CONTENT = "revise-content"


COUNTER_OPERATIONS = frozenset(
    {DeltaOperation.INCREMENT_HELPFUL, DeltaOperation.INCREMENT_HARMFUL}
)


@dataclass(frozen=True)
class DeltaPayload:
    """Operation arguments.

    Attributes:
        fact_id: Target fact (increments and revisions)
        content: New content (add-content and revise-content)
        tier: Provenance tier of added content
        amount: Counter increment (increment operations)
        helpful: Initial helpful count of added content
        harmful: Initial harmful count of added content
        source_frame_id: Frame whose interaction produced the delta
    """

    fact_id: Optional[str] = None
    content: Optional[str] = None
    tier: ProvenanceTier = ProvenanceTier.TOOL_OUTPUT
    amount: int = 1
    helpful: int = 0
    harmful: int = 0
    source_frame_id: Optional[str] = None


@dataclass(frozen=True)
class ProposedDelta:
    """One localized change to one section."""

    section_id: str
    operation: DeltaOperation
    payload: DeltaPayload = field(default_factory=DeltaPayload)

    @property
    def target(self) -> Optional[str]:
        return self.payload.fact_id


@dataclass
class AppliedDelta:
    """Result of applying one delta.

    ``outcome`` is one of ``inserted``, ``merged``, ``revised``,
    ``incremented`` or ``unchanged``.
    """

    delta: ProposedDelta
    outcome: str
    fact_id: str
    merged_into: Optional[str] = None
    similarity: Optional[float] = None


@dataclass
class CurationReport:
    """Summary of one curate pass."""

    applied: list[AppliedDelta] = field(default_factory=list)
    sections: list[str] = field(default_factory=list)
    duration_ms: float = 0.0

    def count(self, outcome: str) -> int:
        return sum(1 for a in self.applied if a.outcome == outcome)

    @property
    def inserted(self) -> int:
        return self.count("inserted")

    @property
    def merged(self) -> int:
        return self.count("merged")

    @property
    def revised(self) -> int:
        return self.count("revised")

    @property
    def incremented(self) -> int:
        return self.count("incremented")

    def to_dict(self) -> dict[str, Any]:
        return {
            "sections": list(self.sections),
            "inserted": self.inserted,
            "merged": self.merged,
            "revised": self.revised,
            "incremented": self.incremented,
            "duration_ms": self.duration_ms,
        }
