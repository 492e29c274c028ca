# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Memory curation: reflection, delta application and fact cleanup."""

from context_stack.curation.curator import Curator, KeyedLock
from context_stack.curation.deltas import (
    AppliedDelta,
    CurationReport,
    DeltaOperation,
    DeltaPayload,
    ProposedDelta,
)
from context_stack.curation.feedback import BulletMark, Insight, ModelFeedback
from context_stack.curation.janitor import FactJanitor
from context_stack.curation.reflector import InteractionTrace, Reflector
from context_stack.curation.scoring import decay_factor, feedback_boost, score_fact

__all__ = [
    "AppliedDelta",
    "BulletMark",
    "CurationReport",
    "Curator",
    "DeltaOperation",
    "DeltaPayload",
    "FactJanitor",
    "Insight",
    "InteractionTrace",
    "KeyedLock",
    "ModelFeedback",
    "ProposedDelta",
    "Reflector",
    "decay_factor",
    "feedback_boost",
    "score_fact",
]
