# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Context assembly under a size budget."""

from context_stack.assembly.assembler import ContextAssembler, fact_rank_key
from context_stack.assembly.tokens import TokenCounter, approximate_tokens

__all__ = [
    "ContextAssembler",
    "TokenCounter",
    "approximate_tokens",
    "fact_rank_key",
]
