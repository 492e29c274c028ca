# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Tests for the per-session task stack registry."""

import asyncio

import pytest

from context_stack.errors import ContextStackError, SessionCapacityError
from context_stack.stack.registry import TaskStackRegistry


class TestTaskStackRegistry:
    """Tests for lazy creation, caching and eviction."""

    @pytest.mark.asyncio
    async def test_get_returns_same_stack(self, store):
        """Repeated get() calls should return the cached stack."""
        registry = TaskStackRegistry(store)
        first = await registry.get("s1")
        second = await registry.get("s1")
        assert first is second
        assert "s1" in registry
        assert len(registry) == 1

    @pytest.mark.asyncio
    async def test_concurrent_get_creates_one_stack(self, store):
        """Concurrent first use of a session should still yield one stack."""
        registry = TaskStackRegistry(store)
        stacks = await asyncio.gather(*(registry.get("s1") for _ in range(5)))
        assert all(s is stacks[0] for s in stacks)

    @pytest.mark.asyncio
    async def test_capacity_displaces_idle_stack(self, store):
        """At the limit the least recently used idle stack makes room."""
        registry = TaskStackRegistry(store, max_sessions=1)
        one = await registry.get("s1")
        root = await one.push("task in s1")

        await registry.get("s2")

        assert registry.session_ids() == ["s2"]
        rebuilt = await registry.get("s1")
        assert rebuilt.current_id == root
        assert registry.session_ids() == ["s1"]

    @pytest.mark.asyncio
    async def test_closed_stacks_evicted_first(self, store):
        """Stacks whose root has completed go before open ones."""
        registry = TaskStackRegistry(store, max_sessions=2)
        open_stack = await registry.get("s1")
        await open_stack.push("still working")
        closed = await registry.get("s2")
        await closed.push("done soon")
        await closed.pop("done")

        await registry.get("s3")

        assert registry.session_ids() == ["s1", "s3"]

    @pytest.mark.asyncio
    async def test_capacity_error_when_all_busy(self, store):
        """With every live stack mid-mutation a new session is refused."""
        registry = TaskStackRegistry(store, max_sessions=1)
        busy = await registry.get("s1")
        await busy._lock.acquire()
        try:
            with pytest.raises(SessionCapacityError) as exc_info:
                await registry.get("s2")
        finally:
            busy._lock.release()
        assert exc_info.value.limit == 1
        assert isinstance(exc_info.value, ContextStackError)
        assert "s1" in registry

    @pytest.mark.asyncio
    async def test_evicted_stack_is_rebuilt(self, store):
        """After eviction the stack should be reloaded from the store."""
        registry = TaskStackRegistry(store)
        stack = await registry.get("s1")
        await stack.push("root")
        child = await stack.push("child")

        assert registry.evict("s1")
        assert not registry.evict("s1")

        rebuilt = await registry.get("s1")
        assert rebuilt is not stack
        assert rebuilt.current_id == child

    @pytest.mark.asyncio
    async def test_sessions_are_independent(self, store):
        """Stacks of different sessions should not share frames."""
        registry = TaskStackRegistry(store)
        one = await registry.get("s1")
        two = await registry.get("s2")
        await one.push("task in s1")
        assert two.is_empty
        assert registry.session_ids() == ["s1", "s2"]
