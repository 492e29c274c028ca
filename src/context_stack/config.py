# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""
Configuration for the context stack.

This module provides:
- GateConfig, AssemblyConfig, CurationConfig dataclasses
- ContextStackConfig aggregating all of them
- load_config() to parse .agent/context_stack.yaml

The gate defaults are deliberately strict: a high similarity floor and a
distractor budget of zero. Both are empirical settings and are meant to be
tuned per deployment.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional

import yaml

from context_stack.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_RELATIVE_PATH = Path(".agent") / "context_stack.yaml"

DEFAULT_SECTIONS = [
    "strategies",
    "pitfalls",
    "tool_usage",
    "domain_facts",
]


@dataclass
class GateConfig:
    """Admission policy for context candidates.

    Attributes:
        similarity_floor: Candidates scoring below this are always rejected
        confidence_threshold: Candidates at or above this are admitted freely;
            those between the floor and this threshold are distractors
        distractor_budget: Maximum number of distractors admitted per call
    """

    similarity_floor: float = 0.8
    confidence_threshold: float = 0.9
    distractor_budget: int = 0

    def validate(self) -> None:
        if not 0.0 <= self.similarity_floor <= 1.0:
            raise ConfigError(
                f"similarity_floor must be in [0, 1], got {self.similarity_floor}"
            )
        if not 0.0 <= self.confidence_threshold <= 1.0:
            raise ConfigError(
                f"confidence_threshold must be in [0, 1], got {self.confidence_threshold}"
            )
        if self.similarity_floor > self.confidence_threshold:
            raise ConfigError(
                "similarity_floor must not exceed confidence_threshold"
            )
        if self.distractor_budget < 0:
            raise ConfigError("distractor_budget must be >= 0")


@dataclass
class AssemblyConfig:
    """Settings for context assembly.

    Attributes:
        token_budget: Default budget when the caller passes none
        trace_window: Number of recent action entries kept on the live frame
    """

    token_budget: int = 4000
    trace_window: int = 8

    def validate(self) -> None:
        if self.token_budget < 0:
            raise ConfigError("token_budget must be >= 0")
        if self.trace_window < 0:
            raise ConfigError("trace_window must be >= 0")


@dataclass
class CurationConfig:
    """Settings for the memory curator and fact janitor.

    Attributes:
        dedup_threshold: Content similarity at or above which add-content merges
        sections: Section identifiers the curator accepts
        knowledge_namespace: Store namespace holding long-term facts
        harmful_margin: Janitor retires facts with harmful - helpful >= margin
        decay_half_life_days: Half-life for fact decay scoring
        retention_days: Janitor retires facts older than this (None disables)
    """

    dedup_threshold: float = 0.9
    sections: List[str] = field(default_factory=lambda: DEFAULT_SECTIONS.copy())
    knowledge_namespace: str = "playbook"
    harmful_margin: int = 3
    decay_half_life_days: int = 30
    retention_days: Optional[int] = None

    def validate(self) -> None:
        if not 0.0 < self.dedup_threshold <= 1.0:
            raise ConfigError(
                f"dedup_threshold must be in (0, 1], got {self.dedup_threshold}"
            )
        if self.harmful_margin < 1:
            raise ConfigError("harmful_margin must be >= 1")
        if self.decay_half_life_days <= 0:
            raise ConfigError("decay_half_life_days must be > 0")
        if self.retention_days is not None and self.retention_days <= 0:
            raise ConfigError("retention_days must be > 0 when set")


@dataclass
class ContextStackConfig:
    """Top-level configuration."""

    gate: GateConfig = field(default_factory=GateConfig)
    assembly: AssemblyConfig = field(default_factory=AssemblyConfig)
    curation: CurationConfig = field(default_factory=CurationConfig)

    def validate(self) -> "ContextStackConfig":
        self.gate.validate()
        self.assembly.validate()
        self.curation.validate()
        return self

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ContextStackConfig":
        """Build a config from a parsed ``context_stack`` mapping.

        Unknown keys are ignored. Raises ConfigError on invalid values.
        """
        gate = data.get("gate") or {}
        assembly = data.get("assembly") or {}
        curation = data.get("curation") or {}

        defaults = CurationConfig()
        config = cls(
            gate=GateConfig(
                similarity_floor=float(gate.get("similarity_floor", 0.8)),
                confidence_threshold=float(gate.get("confidence_threshold", 0.9)),
                distractor_budget=int(gate.get("distractor_budget", 0)),
            ),
            assembly=AssemblyConfig(
                token_budget=int(assembly.get("token_budget", 4000)),
                trace_window=int(assembly.get("trace_window", 8)),
            ),
            curation=CurationConfig(
                dedup_threshold=float(curation.get("dedup_threshold", 0.9)),
                sections=list(curation.get("sections", defaults.sections)),
                knowledge_namespace=str(
                    curation.get("knowledge_namespace", defaults.knowledge_namespace)
                ),
                harmful_margin=int(curation.get("harmful_margin", 3)),
                decay_half_life_days=int(curation.get("decay_half_life_days", 30)),
                retention_days=(
                    int(curation["retention_days"])
                    if curation.get("retention_days") is not None
                    else None
                ),
            ),
        )
        return config.validate()


def load_config(project_root: Path) -> ContextStackConfig:
    """Load configuration from .agent/context_stack.yaml.

    Args:
        project_root: Path to the project root directory

    Returns:
        ContextStackConfig from the file, or defaults when the file is
        missing or cannot be parsed

    Raises:
        ConfigError: If the file parses but holds invalid values
    """
    config_path = Path(project_root) / CONFIG_RELATIVE_PATH

    if not config_path.exists():
        return ContextStackConfig()

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f) or {}
    except (yaml.YAMLError, IOError) as e:
        logger.warning(f"Ignoring unreadable config {config_path}: {e}")
        return ContextStackConfig()

    if not isinstance(data, dict):
        logger.warning(f"Ignoring config {config_path}: top level is not a mapping")
        return ContextStackConfig()

    return ContextStackConfig.from_dict(data.get("context_stack") or {})
