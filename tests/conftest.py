# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""
Root pytest configuration with shared fixtures and markers.

This file is automatically loaded by pytest and provides:
- Custom markers for test categories
- Shared fixtures: deterministic clock, store, stack, gate configs
"""

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from context_stack.clock import ManualClock
from context_stack.config import GateConfig
from context_stack.gate.gate import SimilarityGate
from context_stack.gate.scorers import WordOverlapScorer
from context_stack.stack.task_stack import TaskStack
from context_stack.storage.episodic import EpisodicStore

START = datetime(2025, 1, 1, tzinfo=timezone.utc)


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "scenario(name): Link test to an end-to-end behaviour scenario",
    )
    config.addinivalue_line(
        "markers",
        "integration: Mark test as integration test (several components)",
    )
    config.addinivalue_line(
        "markers",
        "slow: Mark test as slow-running (may be skipped in quick runs)",
    )
    config.addinivalue_line(
        "markers",
        "embeddings: Test needs sentence-transformers installed",
    )


# ============================================================================
# Shared Fixtures
# ============================================================================


@pytest.fixture
def temp_session_id():
    """Generate a temporary session ID for isolation tests."""
    return f"test-session-{uuid.uuid4().hex[:8]}"


@pytest.fixture
def clock():
    """Deterministic clock starting at 2025-01-01 UTC, one second per tick."""
    return ManualClock(START, step=timedelta(seconds=1))


@pytest.fixture
def store(clock):
    """Empty in-memory episodic store on the manual clock."""
    return EpisodicStore(clock=clock)


@pytest.fixture
def stack(store, temp_session_id):
    """Empty task stack for a fresh session."""
    return TaskStack(store, temp_session_id)


@pytest.fixture
def open_gate():
    """Gate that admits every candidate (floor and threshold at zero)."""
    return SimilarityGate(
        WordOverlapScorer(),
        GateConfig(similarity_floor=0.0, confidence_threshold=0.0, distractor_budget=0),
    )


# ============================================================================
# Test Collection Hooks
# ============================================================================


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add automatic markers based on names."""
    for item in items:
        if "engine" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
