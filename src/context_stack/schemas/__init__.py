# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Schemas for persisted records and per-turn context values."""

from context_stack.schemas.context import (
    SEGMENT_PRIORITIES,
    AncestorView,
    AssembledContext,
    ContextSegment,
    FrameView,
    SegmentRole,
)
from context_stack.schemas.records import (
    TIER_TRUST,
    ActionEntry,
    FrameStatus,
    LedgerRow,
    MemoryFact,
    ProvenanceTier,
    RowKind,
    TaskFrame,
    content_hash,
    new_id,
)

__all__ = [
    "ActionEntry",
    "AncestorView",
    "AssembledContext",
    "ContextSegment",
    "FrameStatus",
    "FrameView",
    "LedgerRow",
    "MemoryFact",
    "ProvenanceTier",
    "RowKind",
    "SEGMENT_PRIORITIES",
    "SegmentRole",
    "TIER_TRUST",
    "TaskFrame",
    "content_hash",
    "new_id",
]
