# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""
Model feedback schema.

The text-generation service may return, alongside its action, a feedback
object marking the facts it was shown and proposing new insights:

    {
      "bullet_marks": {"fact-1a2b3c4d5e6f": "helpful"},
      "insights": [
        {"section_id": "pitfalls", "content": "Run migrations before tests"},
        {"section_id": "strategies", "content": "...", "revises": "fact-..."}
      ]
    }
"""

from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, Field, ValidationError, field_validator

from context_stack.errors import MalformedDeltaError
from context_stack.schemas.records import ProvenanceTier


class BulletMark(str, Enum):
    """Per-fact verdict from the model."""

    HELPFUL = "helpful"
    HARMFUL = "harmful"
    NEUTRAL = "neutral"


class Insight(BaseModel):
    """A proposed piece of long-term knowledge."""

    section_id: str = Field(..., description="Target section")
    content: str = Field(..., description="Insight text")
    revises: Optional[str] = Field(
        default=None, description="ID of the fact this insight replaces"
    )
    tier: ProvenanceTier = Field(
        default=ProvenanceTier.TOOL_OUTPUT,
        description="Provenance of the insight",
    )

    @field_validator("content")
    @classmethod
    def validate_content(cls, v: str) -> str:
        """Strip surrounding whitespace and reject empty content."""
        v = v.strip()
        if not v:
            raise ValueError("content must not be empty")
        return v


class ModelFeedback(BaseModel):
    """Feedback emitted by the model for one turn."""

    bullet_marks: dict[str, BulletMark] = Field(
        default_factory=dict,
        description="Fact ID -> helpful | harmful | neutral",
    )
    insights: list[Insight] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.insights and all(
            mark == BulletMark.NEUTRAL for mark in self.bullet_marks.values()
        )

    @classmethod
    def parse(cls, data: Union[str, bytes, dict[str, Any], None]) -> "ModelFeedback":
        """Validate feedback from a dict or JSON text.

        ``None`` and empty text yield empty feedback.

        Raises:
            MalformedDeltaError: If the feedback does not match the schema
        """
        if data is None:
            return cls()
        try:
            if isinstance(data, (str, bytes)):
                if not data.strip():
                    return cls()
                return cls.model_validate_json(data)
            return cls.model_validate(data)
        except ValidationError as e:
            raise MalformedDeltaError(f"invalid model feedback: {e}") from e
