# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Tests for record and context schemas."""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from context_stack.schemas import (
    AncestorView,
    AssembledContext,
    ContextSegment,
    FrameStatus,
    FrameView,
    LedgerRow,
    MemoryFact,
    ProvenanceTier,
    RowKind,
    SegmentRole,
    TaskFrame,
    content_hash,
)

T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)


class TestProvenanceTier:
    """Tests for trust ordering."""

    def test_trust_order(self):
        """user > bootstrapped > tool-output."""
        assert ProvenanceTier.USER.trust > ProvenanceTier.BOOTSTRAPPED.trust
        assert ProvenanceTier.BOOTSTRAPPED.trust > ProvenanceTier.TOOL_OUTPUT.trust


class TestContentHash:
    """Tests for content normalization."""

    def test_case_and_whitespace_insensitive(self):
        """Hash should ignore case and whitespace runs."""
        assert content_hash("Run  tests\tfirst") == content_hash(" run tests first ")

    def test_different_content(self):
        """Different words should hash differently."""
        assert content_hash("run tests first") != content_hash("run tests last")


class TestLedgerRow:
    """Tests for the immutable row shape."""

    def _row(self, **overrides):
        values = dict(
            sequence=0,
            kind=RowKind.FACT,
            id="fact-1",
            session_id="playbook",
            content="x",
            status_or_section="pitfalls",
            created_at=T0,
            valid_from=T0,
            ingested_at=T0,
            event_time=T0,
        )
        values.update(overrides)
        return LedgerRow(**values)

    def test_rows_are_frozen(self):
        """Rows should reject attribute assignment."""
        row = self._row()
        with pytest.raises(ValidationError):
            row.content = "changed"

    def test_valid_to_not_before_valid_from(self):
        """valid_to earlier than valid_from should be rejected."""
        with pytest.raises(ValidationError):
            self._row(valid_to=T0 - timedelta(seconds=1))

    def test_validity_interval_is_half_open(self):
        """is_valid_at should include valid_from and exclude valid_to."""
        row = self._row(valid_to=T0 + timedelta(seconds=10))
        assert row.is_valid_at(T0)
        assert row.is_valid_at(T0 + timedelta(seconds=9))
        assert not row.is_valid_at(T0 + timedelta(seconds=10))
        assert not row.is_valid_at(T0 - timedelta(seconds=1))


class TestRecordConversion:
    """Tests for converting records to rows and back."""

    def test_frame_round_trip_keeps_structure(self):
        """A frame should survive to_row/from_row with links intact."""
        frame = TaskFrame(
            session_id="s1",
            parent_id="frame-parent",
            children=["frame-a", "frame-b"],
            goal="write tests",
            depth=1,
            created_at=T0,
        )
        restored = TaskFrame.from_row(frame.to_row(5, T0))
        assert restored.id == frame.id
        assert restored.children == ["frame-a", "frame-b"]
        assert restored.status == FrameStatus.ACTIVE
        assert restored.depth == 1

    def test_fact_row_uses_section_and_lineage(self):
        """A fact row should store its section and default lineage to its id."""
        fact = MemoryFact(namespace="playbook", section_id="pitfalls", content="x", event_time=T0)
        row = fact.to_row(0, T0)
        assert row.status_or_section == "pitfalls"
        assert row.lineage_id == fact.id
        assert row.content_hash == content_hash("x")

    def test_evolve_clears_storage_fields(self):
        """evolve() should drop ingestion and validity timestamps."""
        fact = MemoryFact(
            namespace="playbook",
            section_id="pitfalls",
            content="x",
            event_time=T0,
            ingested_at=T0,
            valid_from=T0,
        )
        evolved = fact.evolve(helpful=2)
        assert evolved.id == fact.id
        assert evolved.helpful == 2
        assert evolved.ingested_at is None
        assert evolved.valid_from is None


class TestContextValues:
    """Tests for ephemeral context values."""

    def test_ancestor_summary_prefers_result(self):
        """Complete ancestors should summarize as their result."""
        done = AncestorView("f1", "goal", FrameStatus.COMPLETE, 1, result="done")
        open_ = AncestorView("f2", "goal two", FrameStatus.BLOCKED, 1)
        assert done.summary == "done"
        assert open_.summary == "goal two"

    def test_frame_view_root_without_ancestors(self):
        """A root-only view should report the current frame as root."""
        frame = TaskFrame(session_id="s1", goal="build feature", created_at=T0)
        view = FrameView(current=frame)
        assert view.root.frame_id == frame.id
        assert view.depth == 0
        assert [a.goal for a in view.path] == ["build feature"]

    def test_render_sections_by_role(self):
        """render() should group consecutive roles under headings."""
        context = AssembledContext(
            segments=[
                ContextSegment(SegmentRole.ROOT_GOAL, "build feature", 2, 1),
                ContextSegment(SegmentRole.CURRENT_DETAIL, "write tests", 2, 4),
                ContextSegment(SegmentRole.MEMORY_FACT, "run tests often", 3, 5, source_id="fact-1"),
            ],
            budget=10,
        )
        rendered = context.render()
        assert rendered.splitlines() == [
            "## Goal",
            "build feature",
            "",
            "## Current task",
            "write tests",
            "",
            "## Playbook",
            "- [fact-1] run tests often",
        ]
        assert context.total_size == 7
        assert not context.is_lossy
