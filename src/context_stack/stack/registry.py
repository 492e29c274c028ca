# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Per-session task stack registry.

Sessions are independent units of work: each gets its own TaskStack and
its own writer lock, so stacks of different sessions never wait on each
other. Stacks are created lazily and rebuilt from the store on first use.

At the session limit, a new session first displaces closed stacks (root
popped), then the least recently used stack that is not mid-mutation.
Displaced stacks lose nothing; they are rebuilt from the store on demand.
"""

import asyncio
import logging
from collections import OrderedDict
from typing import Optional

from context_stack.clock import Clock
from context_stack.errors import SessionCapacityError
from context_stack.stack.task_stack import DEFAULT_TRACE_WINDOW, TaskStack
from context_stack.storage.episodic import EpisodicStore

logger = logging.getLogger(__name__)

# Default limit for live stacks held in memory
DEFAULT_MAX_SESSIONS = 10000

__all__ = ["DEFAULT_MAX_SESSIONS", "SessionCapacityError", "TaskStackRegistry"]


class TaskStackRegistry:
    """Creates, caches and evicts TaskStacks by session ID.

    Usage:
        registry = TaskStackRegistry(store)
        stack = await registry.get("session-1")
        await stack.push("build feature")
    """

    def __init__(
        self,
        store: EpisodicStore,
        clock: Optional[Clock] = None,
        trace_window: int = DEFAULT_TRACE_WINDOW,
        max_sessions: int = DEFAULT_MAX_SESSIONS,
    ) -> None:
        self.store = store
        self._clock = clock
        self._trace_window = trace_window
        self._max_sessions = max_sessions
        # Least recently used first
        self._stacks: "OrderedDict[str, TaskStack]" = OrderedDict()
        self._lock = asyncio.Lock()

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._stacks

    def __len__(self) -> int:
        return len(self._stacks)

    async def get(self, session_id: str) -> TaskStack:
        """Return the session's stack, loading it from the store if needed.

        Raises:
            SessionCapacityError: If the limit is reached and every live
                stack is in the middle of a mutation
        """
        stack = self._stacks.get(session_id)
        if stack is not None:
            self._stacks.move_to_end(session_id)
            return stack
        async with self._lock:
            stack = self._stacks.get(session_id)
            if stack is None:
                if len(self._stacks) >= self._max_sessions:
                    self._make_room()
                stack = await TaskStack.load(
                    self.store,
                    session_id,
                    clock=self._clock,
                    trace_window=self._trace_window,
                )
                self._stacks[session_id] = stack
                logger.debug(f"Opened stack for session {session_id}")
            return stack

    def evict(self, session_id: str) -> bool:
        """Drop a live stack; it will be rebuilt from the store on next use."""
        return self._stacks.pop(session_id, None) is not None

    def evict_closed(self) -> int:
        """Drop every stack whose root frame has completed."""
        closed = [sid for sid, stack in self._stacks.items() if stack.is_empty and not stack.busy]
        for session_id in closed:
            del self._stacks[session_id]
        return len(closed)

    def session_ids(self) -> list[str]:
        return sorted(self._stacks)

    def _make_room(self) -> None:
        if self.evict_closed():
            return
        for session_id, stack in self._stacks.items():
            if not stack.busy:
                del self._stacks[session_id]
                logger.debug(f"Evicted idle stack for session {session_id}")
                return
        raise SessionCapacityError(self._max_sessions)
