# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Similarity / provenance gate and scorer adapters."""

from context_stack.gate.gate import Candidate, GateDecision, SimilarityGate
from context_stack.gate.scorers import (
    EmbeddingModel,
    EmbeddingScorer,
    SimilarityScorer,
    WordOverlapScorer,
    clamp_score,
)

__all__ = [
    "Candidate",
    "EmbeddingModel",
    "EmbeddingScorer",
    "GateDecision",
    "SimilarityGate",
    "SimilarityScorer",
    "WordOverlapScorer",
    "clamp_score",
]
