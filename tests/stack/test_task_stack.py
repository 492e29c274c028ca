# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""
Tests for the hierarchical task stack.

Covers push/pop/block/resume transitions, the working set, sibling
results, reconstruction from the store and point-in-time views.
"""

import pytest

from context_stack.errors import EmptyStackError, FrameNotFoundError, InvalidStateError
from context_stack.schemas.records import FrameStatus, RowKind
from context_stack.stack.task_stack import ResumeOutcome, TaskStack
from context_stack.storage.episodic import RowFilter


class TestPushPop:
    """Tests for basic stack shape."""

    @pytest.mark.scenario("A")
    @pytest.mark.asyncio
    async def test_nested_push_then_pop(self, stack):
        """push x3 then pop: current is the middle frame with the root as only ancestor."""
        await stack.push("build feature")
        write_tests = await stack.push("write tests")
        await stack.push("fix failing test")
        await stack.pop("test fixed")

        view = stack.peek()
        assert view.current.id == write_tests
        assert view.current.goal == "write tests"
        assert await stack.sibling_results(write_tests) == []
        assert view.ancestor_goals == ["build feature"]

    @pytest.mark.parametrize("pushes", [1, 2, 5])
    @pytest.mark.asyncio
    async def test_stack_balance(self, stack, pushes):
        """N pushes followed by N pops should return to the same frame and depth."""
        await stack.push("build feature")
        await stack.push("implement parser")
        start_id, start_depth = stack.current_id, stack.depth

        for i in range(pushes):
            await stack.push(f"subtask {i}")
        for i in range(pushes):
            await stack.pop(f"subtask {pushes - 1 - i} done")

        assert stack.current_id == start_id
        assert stack.depth == start_depth

    @pytest.mark.asyncio
    async def test_depth_is_parent_plus_one(self, stack):
        """Each pushed frame should sit one level below its parent."""
        await stack.push("root")
        await stack.push("child")
        await stack.push("grandchild")
        view = stack.peek()
        assert [a.depth for a in view.path] == [0, 1, 2]
        assert view.current.parent_id == view.ancestors[-1].frame_id

    @pytest.mark.asyncio
    async def test_parent_records_children_in_order(self, stack, store):
        """Pushing should append the child ID to the parent's stored children."""
        root = await stack.push("root")
        first = await stack.push("first")
        await stack.pop("first done")
        second = await stack.push("second")

        row = await store.get_current(root)
        assert list(row.children) == [first, second]

    @pytest.mark.asyncio
    async def test_pop_root_closes_stack(self, stack):
        """Popping the root should leave the stack empty; the next push is a new root."""
        root = await stack.push("root")
        assert await stack.pop("all done") == root
        assert stack.is_empty

        new_root = await stack.push("next task")
        view = stack.peek()
        assert view.current.id == new_root
        assert view.current.parent_id is None
        assert view.depth == 0

    @pytest.mark.asyncio
    async def test_pop_empty_raises(self, stack):
        """pop() with no current frame should raise EmptyStackError."""
        with pytest.raises(EmptyStackError):
            await stack.pop("nothing")

    def test_peek_empty_raises(self, stack):
        """peek() with no current frame should raise EmptyStackError."""
        with pytest.raises(EmptyStackError):
            stack.peek()

    @pytest.mark.asyncio
    async def test_completed_frame_keeps_result(self, stack, store):
        """Popping should store status, result and completion time exactly once."""
        await stack.push("root")
        child = await stack.push("child")
        await stack.pop("child result")

        row = await store.get_current(child)
        assert row.status_or_section == FrameStatus.COMPLETE.value
        assert row.result == "child result"
        assert row.completed_at is not None
        history = await store.history(child)
        assert [r.result for r in history] == [None, "child result"]


class TestBlockResume:
    """Tests for the blocked state."""

    @pytest.mark.asyncio
    async def test_block_then_resume(self, stack):
        """block/resume should toggle status without changing shape."""
        await stack.push("root")
        frame_id = await stack.push("deploy")
        await stack.block("waiting for credentials")

        view = stack.peek()
        assert view.current.status == FrameStatus.BLOCKED
        assert view.current.blocked_reason == "waiting for credentials"

        assert await stack.resume() == ResumeOutcome.RESUMED
        assert stack.current_id == frame_id
        assert stack.peek().current.status == FrameStatus.ACTIVE
        assert stack.peek().current.blocked_reason is None

    @pytest.mark.asyncio
    async def test_resume_not_blocked_is_reported(self, stack, store):
        """resume() on an active frame should report NOT_BLOCKED and write nothing."""
        await stack.push("root")
        rows_before = len(store)
        assert await stack.resume() == ResumeOutcome.NOT_BLOCKED
        assert len(store) == rows_before

    @pytest.mark.asyncio
    async def test_push_while_blocked_rejected(self, stack):
        """push() on a blocked frame should raise InvalidStateError."""
        await stack.push("root")
        await stack.block("need input")
        with pytest.raises(InvalidStateError) as exc_info:
            await stack.push("subtask")
        assert exc_info.value.status == "blocked"

    @pytest.mark.asyncio
    async def test_pop_while_blocked_rejected(self, stack):
        """A blocked frame must be resumed before it can complete."""
        await stack.push("root")
        await stack.block("need input")
        with pytest.raises(InvalidStateError):
            await stack.pop("done anyway")
        await stack.resume()
        await stack.pop("done")
        assert stack.is_empty

    @pytest.mark.asyncio
    async def test_block_twice_rejected(self, stack):
        """Blocking a blocked frame should raise InvalidStateError."""
        await stack.push("root")
        await stack.block("first reason")
        with pytest.raises(InvalidStateError):
            await stack.block("second reason")

    @pytest.mark.asyncio
    async def test_block_empty_raises(self, stack):
        """block() with no current frame should raise EmptyStackError."""
        with pytest.raises(EmptyStackError):
            await stack.block("nothing to block")


class TestWorkingSet:
    """Tests for what the stack keeps live."""

    @pytest.mark.asyncio
    async def test_sibling_results_in_completion_order(self, stack):
        """Completed siblings should be reported oldest first."""
        await stack.push("root")
        await stack.push("a")
        await stack.pop("a done")
        await stack.push("b")
        await stack.pop("b done")
        current = await stack.push("c")

        assert await stack.sibling_results(current) == ["a done", "b done"]
        assert stack.snapshot().sibling_results == ["a done", "b done"]

    @pytest.mark.asyncio
    async def test_popped_subtree_leaves_working_set(self, stack):
        """A completed frame's own children should be evicted on pop."""
        root = await stack.push("root")
        child = await stack.push("child")
        grandchild = await stack.push("grandchild")
        await stack.pop("grandchild done")
        await stack.pop("child done")

        assert set(stack.working_set()) == {root, child}
        assert grandchild not in stack.working_set()

    @pytest.mark.asyncio
    async def test_sibling_results_for_evicted_frame(self, stack):
        """Siblings of an evicted frame should be read back from the store."""
        await stack.push("root")
        await stack.push("child")
        first = await stack.push("first grandchild")
        await stack.pop("first result")
        await stack.push("second grandchild")
        await stack.pop("second result")
        await stack.pop("child done")

        assert await stack.sibling_results(first) == ["second result"]

    @pytest.mark.asyncio
    async def test_sibling_results_unknown_frame(self, stack):
        """An unknown frame ID should raise FrameNotFoundError."""
        await stack.push("root")
        with pytest.raises(FrameNotFoundError):
            await stack.sibling_results("frame-missing")

    @pytest.mark.asyncio
    async def test_complete_ancestor_absent_from_path(self, stack):
        """The active path should never contain a complete frame."""
        await stack.push("root")
        await stack.push("a")
        await stack.pop("a done")
        await stack.push("b")
        view = stack.peek()
        assert all(a.status != FrameStatus.COMPLETE for a in view.ancestors)


class TestRecordAction:
    """Tests for the action trace."""

    @pytest.mark.asyncio
    async def test_trace_window(self, store, temp_session_id):
        """The live frame should keep only the most recent entries."""
        stack = TaskStack(store, temp_session_id, trace_window=2)
        frame_id = await stack.push("root")
        for text in ("ran ls", "ran pytest", "edited parser.py"):
            await stack.record_action(text)

        assert stack.peek().current.trace == ["ran pytest", "edited parser.py"]
        rows = await store.query_current(
            temp_session_id, RowFilter(kind=RowKind.ACTION, parent_id=frame_id)
        )
        assert [row.content for row in rows] == ["ran ls", "ran pytest", "edited parser.py"]

    @pytest.mark.asyncio
    async def test_trace_dropped_on_completion(self, stack, store):
        """A completed frame should not carry its trace in the working set."""
        await stack.push("root")
        child = await stack.push("child")
        await stack.record_action("ran pytest")
        await stack.pop("child done")
        snapshot = stack.snapshot()
        assert [s.id for s in snapshot.siblings] == [child]
        assert snapshot.siblings[0].trace == []


class TestReconstruction:
    """Tests for rebuilding stacks from the store."""

    @pytest.mark.asyncio
    async def test_load_rebuilds_live_state(self, stack, store, temp_session_id):
        """A loaded stack should match the live one."""
        await stack.push("root")
        await stack.push("a")
        await stack.pop("a done")
        await stack.push("b")
        await stack.record_action("ran pytest")
        await stack.block("waiting for review")

        loaded = await TaskStack.load(store, temp_session_id)
        view = loaded.peek()
        assert loaded.current_id == stack.current_id
        assert loaded.depth == stack.depth
        assert view.current.status == FrameStatus.BLOCKED
        assert view.current.blocked_reason == "waiting for review"
        assert view.current.trace == ["ran pytest"]
        assert view.ancestor_goals == ["root"]
        assert loaded.snapshot().sibling_results == ["a done"]

    @pytest.mark.asyncio
    async def test_load_empty_session(self, store):
        """Loading a session with no frames should yield an empty stack."""
        loaded = await TaskStack.load(store, "session-without-frames")
        assert loaded.is_empty

    @pytest.mark.asyncio
    async def test_view_as_of(self, stack, clock):
        """view_as_of(t) should show the stack as it was at t."""
        assert await stack.view_as_of(clock.peek()) is None

        await stack.push("root")
        await stack.push("a")
        during_a = clock.now()
        await stack.pop("a done")
        await stack.push("b")
        during_b = clock.now()

        past = await stack.view_as_of(during_a)
        assert past.view.current.goal == "a"
        assert past.view.ancestor_goals == ["root"]
        assert past.siblings == []
        assert past.taken_at == during_a

        later = await stack.view_as_of(during_b)
        assert later.view.current.goal == "b"
        assert later.sibling_results == ["a done"]
