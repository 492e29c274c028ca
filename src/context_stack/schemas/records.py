# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""
Persisted record schemas for the episodic store.

Defines Pydantic models for:
- LedgerRow: the single immutable row shape every write is stored as
- TaskFrame: a unit of hierarchical agent work
- MemoryFact: a curated long-term knowledge bullet
- ActionEntry: one tool/action trace line owned by a frame

Row shape (one record per frame snapshot, fact version or action):
    id, session_id, parent_id, content, status_or_section, result, depth,
    created_at, completed_at, valid_from, valid_to
plus the ledger bookkeeping columns (sequence, kind, ingested_at, ...).
"""

import hashlib
import re
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

_WHITESPACE = re.compile(r"\s+")


def new_id(prefix: str) -> str:
    """Generate a short prefixed identifier (e.g. ``frame-1a2b3c4d5e6f``)."""
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def content_hash(text: str) -> str:
    """Hash content after case and whitespace normalization."""
    normalized = _WHITESPACE.sub(" ", text.strip().lower())
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


class RowKind(str, Enum):
    """Kinds of rows kept in the ledger."""

    FRAME = "frame"
    FACT = "fact"
    ACTION = "action"


class FrameStatus(str, Enum):
    """Lifecycle status of a task frame.

    ACTIVE <-> BLOCKED is repeatable; ACTIVE -> COMPLETE is terminal.
    BLOCKED -> COMPLETE is not allowed.
    """

    ACTIVE = "active"
    BLOCKED = "blocked"
    COMPLETE = "complete"


class ProvenanceTier(str, Enum):
    """Trust classification of a fact's origin."""

    BOOTSTRAPPED = "bootstrapped"
    USER = "user"
    TOOL_OUTPUT = "tool-output"

    @property
    def trust(self) -> int:
        """Trust rank, higher is more trusted (user > bootstrapped > tool-output)."""
        return TIER_TRUST[self]


TIER_TRUST: dict[ProvenanceTier, int] = {
    ProvenanceTier.USER: 3,
    ProvenanceTier.BOOTSTRAPPED: 2,
    ProvenanceTier.TOOL_OUTPUT: 1,
}


class LedgerRow(BaseModel):
    """One immutable ledger row.

    Rows are never edited once appended. ``valid_to`` is materialized
    from the store's invalidation markers when rows are queried.
    """

    model_config = ConfigDict(frozen=True)

    sequence: int = Field(..., ge=0, description="Global monotonic sequence number")
    kind: RowKind
    id: str = Field(..., description="Frame, fact or action identifier")
    session_id: str = Field(..., description="Owning session or knowledge namespace")
    parent_id: Optional[str] = None
    content: str = Field(..., description="Goal text, fact content or action text")
    status_or_section: str
    result: Optional[str] = None
    depth: int = 0
    created_at: datetime
    completed_at: Optional[datetime] = None
    valid_from: datetime
    valid_to: Optional[datetime] = None
    ingested_at: datetime
    event_time: datetime
    children: tuple[str, ...] = ()
    helpful: int = Field(default=0, ge=0)
    harmful: int = Field(default=0, ge=0)
    tier: Optional[ProvenanceTier] = None
    lineage_id: Optional[str] = None
    supersedes: Optional[str] = None
    source_frame_id: Optional[str] = None
    blocked_reason: Optional[str] = None
    content_hash: Optional[str] = None

    @model_validator(mode="after")
    def _check_validity_interval(self) -> "LedgerRow":
        if self.valid_to is not None and self.valid_to < self.valid_from:
            raise ValueError("valid_to must not be before valid_from")
        return self

    def is_valid_at(self, instant: datetime) -> bool:
        """True if ``valid_from <= instant < valid_to`` (open-ended when null)."""
        if instant < self.valid_from:
            return False
        return self.valid_to is None or instant < self.valid_to


class TaskFrame(BaseModel):
    """A node of hierarchical agent work.

    ``trace`` holds the recent action window for live frames only; the full
    trace lives in the store as ACTION rows.
    """

    id: str = Field(default_factory=lambda: new_id("frame"))
    session_id: str
    parent_id: Optional[str] = None
    children: list[str] = Field(default_factory=list)
    goal: str
    status: FrameStatus = FrameStatus.ACTIVE
    result: Optional[str] = None
    depth: int = Field(default=0, ge=0)
    created_at: datetime
    completed_at: Optional[datetime] = None
    blocked_reason: Optional[str] = None
    trace: list[str] = Field(default_factory=list)

    def to_row(self, sequence: int, ingested_at: datetime) -> LedgerRow:
        return LedgerRow(
            sequence=sequence,
            kind=RowKind.FRAME,
            id=self.id,
            session_id=self.session_id,
            parent_id=self.parent_id,
            content=self.goal,
            status_or_section=self.status.value,
            result=self.result,
            depth=self.depth,
            created_at=self.created_at,
            completed_at=self.completed_at,
            valid_from=ingested_at,
            ingested_at=ingested_at,
            event_time=self.completed_at or self.created_at,
            children=tuple(self.children),
            blocked_reason=self.blocked_reason,
        )

    @classmethod
    def from_row(cls, row: LedgerRow) -> "TaskFrame":
        return cls(
            id=row.id,
            session_id=row.session_id,
            parent_id=row.parent_id,
            children=list(row.children),
            goal=row.content,
            status=FrameStatus(row.status_or_section),
            result=row.result,
            depth=row.depth,
            created_at=row.created_at,
            completed_at=row.completed_at,
            blocked_reason=row.blocked_reason,
        )


class MemoryFact(BaseModel):
    """A curated long-term knowledge bullet.

    At most one version per (section, content hash) is currently valid.
    ``lineage_id`` is shared by a fact and all of its revisions.
    """

    id: str = Field(default_factory=lambda: new_id("fact"))
    namespace: str = Field(..., description="Knowledge namespace (store session_id)")
    section_id: str
    content: str
    helpful: int = Field(default=0, ge=0)
    harmful: int = Field(default=0, ge=0)
    tier: ProvenanceTier = ProvenanceTier.TOOL_OUTPUT
    event_time: datetime
    ingested_at: Optional[datetime] = None
    valid_from: Optional[datetime] = None
    valid_to: Optional[datetime] = None
    lineage_id: Optional[str] = None
    supersedes: Optional[str] = None
    source_frame_id: Optional[str] = None

    @property
    def net_score(self) -> int:
        return self.helpful - self.harmful

    @property
    def content_hash(self) -> str:
        return content_hash(self.content)

    @property
    def is_current(self) -> bool:
        return self.ingested_at is not None and self.valid_to is None

    def to_row(self, sequence: int, ingested_at: datetime) -> LedgerRow:
        return LedgerRow(
            sequence=sequence,
            kind=RowKind.FACT,
            id=self.id,
            session_id=self.namespace,
            parent_id=self.supersedes,
            content=self.content,
            status_or_section=self.section_id,
            created_at=self.event_time,
            valid_from=ingested_at,
            ingested_at=ingested_at,
            event_time=self.event_time,
            helpful=self.helpful,
            harmful=self.harmful,
            tier=self.tier,
            lineage_id=self.lineage_id or self.id,
            supersedes=self.supersedes,
            source_frame_id=self.source_frame_id,
            content_hash=self.content_hash,
        )

    @classmethod
    def from_row(cls, row: LedgerRow) -> "MemoryFact":
        return cls(
            id=row.id,
            namespace=row.session_id,
            section_id=row.status_or_section,
            content=row.content,
            helpful=row.helpful,
            harmful=row.harmful,
            tier=row.tier or ProvenanceTier.TOOL_OUTPUT,
            event_time=row.event_time,
            ingested_at=row.ingested_at,
            valid_from=row.valid_from,
            valid_to=row.valid_to,
            lineage_id=row.lineage_id,
            supersedes=row.supersedes,
            source_frame_id=row.source_frame_id,
        )

    def evolve(self, **changes: Any) -> "MemoryFact":
        """Copy of this fact with storage timestamps cleared, ready to append."""
        changes.setdefault("ingested_at", None)
        changes.setdefault("valid_from", None)
        changes.setdefault("valid_to", None)
        return self.model_copy(update=changes)


class ActionEntry(BaseModel):
    """A single tool/action trace line recorded against a frame."""

    id: str = Field(default_factory=lambda: new_id("action"))
    session_id: str
    frame_id: str
    text: str
    event_time: datetime

    def to_row(self, sequence: int, ingested_at: datetime) -> LedgerRow:
        return LedgerRow(
            sequence=sequence,
            kind=RowKind.ACTION,
            id=self.id,
            session_id=self.session_id,
            parent_id=self.frame_id,
            content=self.text,
            status_or_section=RowKind.ACTION.value,
            created_at=self.event_time,
            valid_from=ingested_at,
            ingested_at=ingested_at,
            event_time=self.event_time,
        )

    @classmethod
    def from_row(cls, row: LedgerRow) -> "ActionEntry":
        return cls(
            id=row.id,
            session_id=row.session_id,
            frame_id=row.parent_id or "",
            text=row.content,
            event_time=row.event_time,
        )
