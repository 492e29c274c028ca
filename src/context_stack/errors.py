# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Exceptions raised by the context stack.

Structural task-stack errors are surfaced to the agent loop, which decides
whether to start a fresh root frame or halt. Conditions that are reported
rather than raised (a resume on a frame that is not blocked, a truncated
assembly, a racing invalidation) are modelled as return values elsewhere.
"""

from typing import Optional


class ContextStackError(Exception):
    """Base class for all context stack errors."""


class EmptyStackError(ContextStackError):
    """Raised when an operation needs a current frame and there is none."""

    def __init__(self, session_id: str, operation: str):
        self.session_id = session_id
        self.operation = operation
        super().__init__(
            f"Cannot {operation}: session '{session_id}' has no current frame"
        )


class InvalidStateError(ContextStackError):
    """Raised when a frame is not in a status that allows the operation."""

    def __init__(self, frame_id: str, status: str, operation: str):
        self.frame_id = frame_id
        self.status = status
        self.operation = operation
        super().__init__(
            f"Cannot {operation}: frame '{frame_id}' is {status}"
        )


class FrameNotFoundError(ContextStackError):
    """Raised when a frame ID is unknown to the store."""

    def __init__(self, frame_id: str):
        self.frame_id = frame_id
        super().__init__(f"Frame '{frame_id}' not found")


class FactNotFoundError(ContextStackError):
    """Raised when a fact ID has no currently valid version."""

    def __init__(self, fact_id: str):
        self.fact_id = fact_id
        super().__init__(f"No valid fact with ID '{fact_id}'")


class DuplicateFactError(ContextStackError):
    """Raised when appending a fact whose content is already valid in its section."""

    def __init__(self, section_id: str, existing_fact_id: str):
        self.section_id = section_id
        self.existing_fact_id = existing_fact_id
        super().__init__(
            f"Section '{section_id}' already holds valid fact "
            f"'{existing_fact_id}' with the same content"
        )


class MalformedDeltaError(ContextStackError):
    """Raised when a reflection contains a delta that cannot be applied.

    The whole reflection is discarded; nothing is written to the store.
    """

    def __init__(self, reason: str, section_id: Optional[str] = None):
        self.reason = reason
        self.section_id = section_id
        super().__init__(f"Malformed delta: {reason}")


class SessionCapacityError(ContextStackError):
    """Raised when every live stack is busy and the session limit is reached."""

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f"Session capacity exceeded: limit is {limit}")


class ConfigError(ContextStackError):
    """Raised when configuration values are out of range."""
