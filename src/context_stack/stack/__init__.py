# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Hierarchical task stack and its per-session registry."""

from context_stack.errors import SessionCapacityError
from context_stack.stack.registry import TaskStackRegistry
from context_stack.stack.task_stack import ResumeOutcome, StackSnapshot, TaskStack

__all__ = [
    "ResumeOutcome",
    "SessionCapacityError",
    "StackSnapshot",
    "TaskStack",
    "TaskStackRegistry",
]
