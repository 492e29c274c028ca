# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Tests for the Reflector."""

import logging

import pytest

from context_stack.curation import (
    BulletMark,
    Curator,
    DeltaOperation,
    DeltaPayload,
    InteractionTrace,
    ModelFeedback,
    ProposedDelta,
    Reflector,
)
from context_stack.schemas.records import ProvenanceTier


@pytest.fixture
def reflector(store):
    return Reflector(store.reader())


@pytest.fixture
def trace():
    return InteractionTrace(frame_id="frame-abc", goal="write parser tests", actions=["ran pytest"])


async def seed_fact(store, section_id, content):
    curator = Curator(store)
    report = await curator.curate(
        [ProposedDelta(section_id, DeltaOperation.ADD_CONTENT, DeltaPayload(content=content))]
    )
    return report.applied[0].fact_id


class TestReflect:
    """Tests for turning feedback into deltas."""

    @pytest.mark.asyncio
    async def test_marks_become_increments(self, reflector, store, trace):
        """helpful/harmful marks should address the fact's own section."""
        helpful_id = await seed_fact(store, "strategies", "prefer small commits")
        harmful_id = await seed_fact(store, "pitfalls", "skip the linter")
        feedback = ModelFeedback(
            bullet_marks={helpful_id: BulletMark.HELPFUL, harmful_id: BulletMark.HARMFUL}
        )

        deltas = await reflector.reflect(trace, feedback)

        by_fact = {d.target: d for d in deltas}
        assert by_fact[helpful_id].operation == DeltaOperation.INCREMENT_HELPFUL
        assert by_fact[helpful_id].section_id == "strategies"
        assert by_fact[harmful_id].operation == DeltaOperation.INCREMENT_HARMFUL
        assert by_fact[harmful_id].section_id == "pitfalls"
        assert all(d.payload.source_frame_id == "frame-abc" for d in deltas)

    @pytest.mark.asyncio
    async def test_neutral_and_unknown_marks_dropped(self, reflector, store, trace, caplog):
        """Neutral marks produce nothing; unknown facts are logged and dropped."""
        fact_id = await seed_fact(store, "strategies", "prefer small commits")
        feedback = ModelFeedback(
            bullet_marks={fact_id: BulletMark.NEUTRAL, "fact-unknown": BulletMark.HELPFUL}
        )

        with caplog.at_level(logging.WARNING):
            deltas = await reflector.reflect(trace, feedback)

        assert deltas == []
        assert "fact-unknown" in caplog.text

    @pytest.mark.asyncio
    async def test_insights_become_add_or_revise(self, reflector, trace):
        """Insights map to add-content, or revise-content when they name a fact."""
        feedback = ModelFeedback.parse(
            {
                "insights": [
                    {"section_id": "pitfalls", "content": "run migrations first"},
                    {
                        "section_id": "strategies",
                        "content": "prefer tiny commits",
                        "revises": "fact-old",
                        "tier": "user",
                    },
                ]
            }
        )

        deltas = await reflector.reflect(trace, feedback)

        assert [d.operation for d in deltas] == [
            DeltaOperation.ADD_CONTENT,
            DeltaOperation.REVISE_CONTENT,
        ]
        assert deltas[0].payload.content == "run migrations first"
        assert deltas[1].target == "fact-old"
        assert deltas[1].payload.tier == ProvenanceTier.USER

    @pytest.mark.asyncio
    async def test_reflection_never_writes(self, reflector, store, trace):
        """Reflecting should leave the store unchanged."""
        fact_id = await seed_fact(store, "strategies", "prefer small commits")
        rows_before = len(store)

        await reflector.reflect(
            trace,
            ModelFeedback.parse(
                {
                    "bullet_marks": {fact_id: "helpful"},
                    "insights": [{"section_id": "strategies", "content": "pin versions"}],
                }
            ),
        )

        assert len(store) == rows_before

    @pytest.mark.asyncio
    async def test_mark_on_retired_fact_uses_last_section(self, reflector, store, trace):
        """A mark on a retired fact should still be routed to its section."""
        fact_id = await seed_fact(store, "pitfalls", "skip the linter")
        await store.invalidate(fact_id, store.clock.now())

        deltas = await reflector.reflect(
            trace, ModelFeedback(bullet_marks={fact_id: BulletMark.HARMFUL})
        )

        assert [d.section_id for d in deltas] == ["pitfalls"]


class TestInteractionTrace:
    """Tests for building traces from frames."""

    @pytest.mark.asyncio
    async def test_from_frame(self, stack):
        """A trace should carry the frame's goal and recent actions."""
        await stack.push("build feature")
        await stack.record_action("ran pytest")
        frame = stack.peek().current

        trace = InteractionTrace.from_frame(frame)

        assert trace.frame_id == frame.id
        assert trace.goal == "build feature"
        assert trace.actions == ["ran pytest"]
