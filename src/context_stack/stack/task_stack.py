# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Hierarchical task stack for one session.

The stack mirrors a call stack for agent work: ``push`` opens a subtask
under the current frame, ``pop`` completes the current frame and returns
to its parent. Frames live in an arena keyed by ID; parent and child links
are IDs, never object references.

The live working set holds only:
- the frames on the active path (root -> current)
- the completed children of each path frame, reduced to their results

Everything else is read back from the episodic store on demand. Every
transition appends a new frame snapshot, which closes the previous one.

State machine per frame:
    ACTIVE -> BLOCKED -> ACTIVE   (repeatable)
    ACTIVE -> COMPLETE            (terminal; BLOCKED must resume first)
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from context_stack.clock import Clock
from context_stack.errors import EmptyStackError, FrameNotFoundError, InvalidStateError
from context_stack.schemas.context import AncestorView, FrameView
from context_stack.schemas.records import (
    ActionEntry,
    FrameStatus,
    LedgerRow,
    RowKind,
    TaskFrame,
)
from context_stack.storage.episodic import EpisodicStore, RowFilter

logger = logging.getLogger(__name__)

DEFAULT_TRACE_WINDOW = 8


class ResumeOutcome(str, Enum):
    """Result of ``resume``; resuming a frame that is not blocked is a no-op."""

    RESUMED = "resumed"
    NOT_BLOCKED = "not-blocked"


@dataclass
class StackSnapshot:
    """Consistent copy of what assembly needs from a stack.

    Attributes:
        view: Current frame and ancestor path
        siblings: Completed siblings of the current frame, completion order
        taken_at: Instant the snapshot reflects (None for live snapshots)
    """

    view: FrameView
    siblings: list[TaskFrame] = field(default_factory=list)
    taken_at: Optional[datetime] = None

    @property
    def sibling_results(self) -> list[str]:
        return [frame.result or "" for frame in self.siblings]


def _completion_key(frame: TaskFrame) -> tuple:
    return (frame.completed_at or frame.created_at, frame.id)


class TaskStack:
    """Task stack for a single session.

    Mutations are serialized by a per-session asyncio.Lock (single writer).
    Reads of the live working set never await, so they always observe a
    state between two complete mutations.

    Example:
        >>> stack = TaskStack(store, "session-1")
        >>> root_id = await stack.push("build feature")
        >>> await stack.push("write tests")
        >>> await stack.pop("tests written")
        >>> stack.peek().current.goal
        'build feature'
    """

    def __init__(
        self,
        store: EpisodicStore,
        session_id: str,
        clock: Optional[Clock] = None,
        trace_window: int = DEFAULT_TRACE_WINDOW,
    ) -> None:
        self.store = store
        self.session_id = session_id
        self._clock = clock or store.clock
        self.trace_window = trace_window
        self._frames: dict[str, TaskFrame] = {}
        self._path: list[str] = []
        # parent frame ID (None for roots) -> completed child IDs, completion order
        self._completed: dict[Optional[str], list[str]] = {None: []}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    @property
    def is_empty(self) -> bool:
        return not self._path

    @property
    def busy(self) -> bool:
        """True while a mutation holds the writer lock."""
        return self._lock.locked()

    @property
    def current_id(self) -> Optional[str]:
        return self._path[-1] if self._path else None

    @property
    def depth(self) -> Optional[int]:
        return len(self._path) - 1 if self._path else None

    def working_set(self) -> list[str]:
        """IDs held live: the active path plus completed children of path frames."""
        return list(self._frames)

    def peek(self) -> FrameView:
        """Current frame with its ancestor path (root first).

        Complete ancestors carry their stored result instead of detail.

        Raises:
            EmptyStackError: If the session has no current frame
        """
        if not self._path:
            raise EmptyStackError(self.session_id, "peek")
        ancestors = [AncestorView.from_frame(self._frames[fid]) for fid in self._path[:-1]]
        return FrameView(current=self._frames[self._path[-1]].model_copy(deep=True), ancestors=ancestors)

    def snapshot(self) -> StackSnapshot:
        """Atomic snapshot of the current view and its completed siblings."""
        view = self.peek()
        siblings = [
            self._frames[fid].model_copy()
            for fid in self._completed.get(view.current.parent_id, [])
        ]
        return StackSnapshot(view=view, siblings=siblings)

    async def sibling_results(self, frame_id: str) -> list[str]:
        """Results of completed frames sharing ``frame_id``'s parent.

        Served from the working set when the parent is live, otherwise
        read from the store via the (session_id, parent_id) access path.

        Raises:
            FrameNotFoundError: If the frame is unknown
        """
        frame = self._frames.get(frame_id)
        if frame is None:
            row = await self.store.get_current(frame_id)
            if row is None or row.kind != RowKind.FRAME or row.session_id != self.session_id:
                raise FrameNotFoundError(frame_id)
            frame = TaskFrame.from_row(row)

        parent_id = frame.parent_id
        if parent_id in self._completed and (parent_id is None or parent_id in self._path):
            ids = [fid for fid in self._completed[parent_id] if fid != frame_id]
            return [self._frames[fid].result or "" for fid in ids]

        siblings = await self._completed_children(parent_id)
        return [sibling.result or "" for sibling in siblings if sibling.id != frame_id]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def push(self, goal: str) -> str:
        """Open a new ACTIVE frame under the current one (or a new root).

        Raises:
            InvalidStateError: If the current frame is not ACTIVE
        """
        async with self._lock:
            now = self._clock.now()
            parent = self._frames[self._path[-1]] if self._path else None
            if parent is not None and parent.status != FrameStatus.ACTIVE:
                raise InvalidStateError(parent.id, parent.status.value, "push")

            frame = TaskFrame(
                session_id=self.session_id,
                parent_id=parent.id if parent else None,
                goal=goal,
                depth=parent.depth + 1 if parent else 0,
                created_at=now,
            )
            records: list[TaskFrame] = [frame]
            if parent is not None:
                updated_parent = parent.model_copy(update={"children": parent.children + [frame.id]})
                records.append(updated_parent)

            await self.store.append_many(records)

            if parent is not None:
                self._frames[parent.id] = updated_parent
            self._frames[frame.id] = frame
            self._path.append(frame.id)
            self._completed[frame.id] = []
            logger.debug(f"[{self.session_id}] push {frame.id} depth={frame.depth}: {goal[:60]}")
            return frame.id

    async def pop(self, result: str) -> str:
        """Complete the current frame with ``result`` and return to its parent.

        The frame's trace and completed children leave the working set; the
        frame itself stays live only as a result under its parent.

        Raises:
            EmptyStackError: If there is no current frame
            InvalidStateError: If the current frame is BLOCKED
        """
        async with self._lock:
            if not self._path:
                raise EmptyStackError(self.session_id, "pop")
            current = self._frames[self._path[-1]]
            if current.status != FrameStatus.ACTIVE:
                raise InvalidStateError(current.id, current.status.value, "pop")

            now = self._clock.now()
            completed = current.model_copy(
                update={
                    "status": FrameStatus.COMPLETE,
                    "result": result,
                    "completed_at": now,
                    "blocked_reason": None,
                    "trace": [],
                }
            )
            await self.store.append(completed)

            self._path.pop()
            for child_id in self._completed.pop(current.id, []):
                self._frames.pop(child_id, None)
            self._frames[current.id] = completed
            self._completed.setdefault(current.parent_id, []).append(current.id)
            if not self._path:
                logger.info(f"[{self.session_id}] root frame {current.id} complete; stack closed")
            else:
                logger.debug(f"[{self.session_id}] pop {current.id} -> {self._path[-1]}")
            return current.id

    async def block(self, reason: str) -> str:
        """Mark the current frame BLOCKED with ``reason``.

        Raises:
            EmptyStackError: If there is no current frame
            InvalidStateError: If the current frame is not ACTIVE
        """
        async with self._lock:
            current = self._require_current("block")
            if current.status != FrameStatus.ACTIVE:
                raise InvalidStateError(current.id, current.status.value, "block")
            updated = current.model_copy(
                update={"status": FrameStatus.BLOCKED, "blocked_reason": reason}
            )
            await self.store.append(updated)
            self._frames[current.id] = updated
            logger.debug(f"[{self.session_id}] block {current.id}: {reason[:60]}")
            return current.id

    async def resume(self) -> ResumeOutcome:
        """Return the current frame from BLOCKED to ACTIVE.

        Resuming a frame that is not blocked changes nothing and reports
        NOT_BLOCKED.

        Raises:
            EmptyStackError: If there is no current frame
        """
        async with self._lock:
            current = self._require_current("resume")
            if current.status != FrameStatus.BLOCKED:
                logger.debug(f"[{self.session_id}] resume on {current.id}: not blocked")
                return ResumeOutcome.NOT_BLOCKED
            updated = current.model_copy(
                update={"status": FrameStatus.ACTIVE, "blocked_reason": None}
            )
            await self.store.append(updated)
            self._frames[current.id] = updated
            logger.debug(f"[{self.session_id}] resume {current.id}")
            return ResumeOutcome.RESUMED

    async def record_action(self, text: str) -> str:
        """Append a tool/action trace entry to the current frame.

        The store keeps the full trace; the live frame keeps the most recent
        ``trace_window`` entries.

        Raises:
            EmptyStackError: If there is no current frame
        """
        async with self._lock:
            current = self._require_current("record_action")
            entry = ActionEntry(
                session_id=self.session_id,
                frame_id=current.id,
                text=text,
                event_time=self._clock.now(),
            )
            await self.store.append(entry)
            trace = (current.trace + [text])[-self.trace_window:] if self.trace_window else []
            self._frames[current.id] = current.model_copy(update={"trace": trace})
            return entry.id

    def _require_current(self, operation: str) -> TaskFrame:
        if not self._path:
            raise EmptyStackError(self.session_id, operation)
        return self._frames[self._path[-1]]

    # ------------------------------------------------------------------
    # Reconstruction
    # ------------------------------------------------------------------

    @classmethod
    async def load(
        cls,
        store: EpisodicStore,
        session_id: str,
        clock: Optional[Clock] = None,
        trace_window: int = DEFAULT_TRACE_WINDOW,
    ) -> "TaskStack":
        """Rebuild a session's live stack from the store's current rows."""
        stack = cls(store, session_id, clock=clock, trace_window=trace_window)
        open_rows: list[LedgerRow] = []
        for status in (FrameStatus.ACTIVE, FrameStatus.BLOCKED):
            open_rows.extend(
                await store.query_current(
                    session_id,
                    RowFilter(kind=RowKind.FRAME, status_or_section=status.value),
                )
            )
        path = _order_path([TaskFrame.from_row(row) for row in open_rows])

        stack._completed[None] = []
        for root in await stack._completed_children(None):
            stack._frames[root.id] = root
            stack._completed[None].append(root.id)
        for frame in path:
            stack._frames[frame.id] = frame
            stack._path.append(frame.id)
            stack._completed[frame.id] = []
            for child in await stack._completed_children(frame.id):
                stack._frames[child.id] = child
                stack._completed[frame.id].append(child.id)

        if path and trace_window:
            current = path[-1]
            actions = await store.query_current(
                session_id, RowFilter(kind=RowKind.ACTION, parent_id=current.id)
            )
            trace = [row.content for row in actions][-trace_window:]
            stack._frames[current.id] = current.model_copy(update={"trace": trace})

        logger.debug(f"[{session_id}] loaded stack depth={stack.depth}")
        return stack

    async def view_as_of(self, point_in_time: datetime) -> Optional[StackSnapshot]:
        """What ``snapshot()`` would have returned at ``point_in_time``.

        Returns None if the session had no open frame at that instant.
        """
        rows = await self.store.query_as_of(
            self.session_id, point_in_time, RowFilter(kind=RowKind.FRAME)
        )
        frames = {row.id: TaskFrame.from_row(row) for row in rows}
        open_frames = [f for f in frames.values() if f.status != FrameStatus.COMPLETE]
        if not open_frames:
            return None
        path = _order_path(open_frames)
        current = path[-1]

        if self.trace_window:
            actions = await self.store.query_as_of(
                self.session_id,
                point_in_time,
                RowFilter(kind=RowKind.ACTION, parent_id=current.id),
            )
            current = current.model_copy(
                update={"trace": [row.content for row in actions][-self.trace_window:]}
            )

        siblings = sorted(
            (
                f
                for f in frames.values()
                if f.parent_id == current.parent_id and f.status == FrameStatus.COMPLETE
            ),
            key=_completion_key,
        )
        view = FrameView(
            current=current,
            ancestors=[AncestorView.from_frame(f) for f in path[:-1]],
        )
        return StackSnapshot(view=view, siblings=siblings, taken_at=point_in_time)

    async def _completed_children(self, parent_id: Optional[str]) -> list[TaskFrame]:
        rows = await self.store.query_current(
            self.session_id,
            RowFilter(
                kind=RowKind.FRAME,
                parent_id=parent_id,
                status_or_section=FrameStatus.COMPLETE.value,
            ),
        )
        return sorted((TaskFrame.from_row(row) for row in rows), key=_completion_key)


def _order_path(open_frames: list[TaskFrame]) -> list[TaskFrame]:
    """Order the open frames of a session root-first and check they chain.

    Raises:
        ValueError: If the open frames do not form a single parent chain
    """
    path = sorted(open_frames, key=lambda f: f.depth)
    for expected_depth, frame in enumerate(path):
        if frame.depth != expected_depth:
            raise ValueError(f"Open frames skip depth {expected_depth} at {frame.id}")
        expected_parent = path[expected_depth - 1].id if expected_depth else None
        if frame.parent_id != expected_parent:
            raise ValueError(f"Open frame {frame.id} is not a child of {expected_parent}")
    return path
