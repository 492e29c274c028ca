# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Context Stack - hierarchical task context and memory consolidation for agents.

Decides, every agent turn, which slice of an ever-growing history is shown
to the model under a strict size budget, and updates long-term knowledge
through localized deltas instead of rewrites.

Usage:
    from context_stack import ContextEngine

    engine = ContextEngine()
    await engine.push("session-1", "build feature")
    context = await engine.assemble("session-1", budget=2000)

For installation:
    pip install context-stack                  # Core
    pip install "context-stack[embeddings]"    # + sentence-transformers scorer
"""

from context_stack.clock import Clock, ManualClock, SystemClock
from context_stack.config import ContextStackConfig, load_config
from context_stack.engine import ContextEngine, ModelOutput, TextGenerator, TurnResult
from context_stack.errors import (
    ConfigError,
    ContextStackError,
    DuplicateFactError,
    EmptyStackError,
    FactNotFoundError,
    FrameNotFoundError,
    InvalidStateError,
    MalformedDeltaError,
    SessionCapacityError,
)

__version__ = "0.1.0"

__all__ = [
    "Clock",
    "ConfigError",
    "ContextEngine",
    "ContextStackConfig",
    "ContextStackError",
    "DuplicateFactError",
    "EmptyStackError",
    "FactNotFoundError",
    "FrameNotFoundError",
    "InvalidStateError",
    "MalformedDeltaError",
    "ManualClock",
    "ModelOutput",
    "SessionCapacityError",
    "SystemClock",
    "TextGenerator",
    "TurnResult",
    "__version__",
    "load_config",
]
