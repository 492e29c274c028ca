# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""
Context engine: the surface the agent loop talks to.

Exposes push/pop/block/resume, assemble, reflect, curate, query_current
and query_as_of, and wires one agent turn end to end:

    stack state -> assemble -> generate -> record action
                -> reflect -> curate -> next turn

Example:
    >>> engine = ContextEngine()
    >>> await engine.push("session-1", "build feature")
    >>> result = await engine.run_turn("session-1", generator, budget=2000)
    >>> result.context.incomplete
    False
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Protocol, Union

from pydantic import BaseModel, Field

from context_stack.assembly.assembler import ContextAssembler
from context_stack.assembly.tokens import TokenCounter
from context_stack.clock import Clock
from context_stack.config import ContextStackConfig, load_config
from context_stack.curation.curator import Curator
from context_stack.curation.deltas import CurationReport, ProposedDelta
from context_stack.curation.feedback import ModelFeedback
from context_stack.curation.janitor import FactJanitor
from context_stack.curation.reflector import InteractionTrace, Reflector
from context_stack.errors import EmptyStackError, MalformedDeltaError
from context_stack.gate.gate import SimilarityGate
from context_stack.gate.scorers import SimilarityScorer, WordOverlapScorer
from context_stack.observability.metrics import ContextMetrics
from context_stack.schemas.context import AssembledContext, FrameView
from context_stack.schemas.records import LedgerRow, MemoryFact, RowKind
from context_stack.stack.registry import TaskStackRegistry
from context_stack.stack.task_stack import ResumeOutcome
from context_stack.storage.episodic import EpisodicStore, InvalidationResult, RowFilter
from context_stack.storage.ledger_file import JsonlLedgerSink

logger = logging.getLogger(__name__)

FeedbackInput = Union[ModelFeedback, dict[str, Any], str, None]


class ModelOutput(BaseModel):
    """What the text-generation service returns for one turn."""

    action: str = Field(default="", description="Action text chosen by the model")
    feedback: ModelFeedback = Field(default_factory=ModelFeedback)


class TextGenerator(Protocol):
    """Protocol for the external text-generation service."""

    async def generate(self, context: AssembledContext) -> Union[ModelOutput, dict[str, Any]]:
        """Produce an action and optional feedback from an assembled context."""
        ...


@dataclass
class TurnResult:
    """Outcome of ``run_turn``.

    ``rejected_reason`` is set when the model's reflection was discarded;
    the turn itself still completes.
    """

    context: AssembledContext
    output: ModelOutput
    deltas: list[ProposedDelta] = field(default_factory=list)
    report: Optional[CurationReport] = None
    rejected_reason: Optional[str] = None


class ContextEngine:
    """Wires store, stacks, gate, assembler, reflector and curator."""

    def __init__(
        self,
        store: Optional[EpisodicStore] = None,
        config: Optional[ContextStackConfig] = None,
        scorer: Optional[SimilarityScorer] = None,
        clock: Optional[Clock] = None,
        counter: Optional[TokenCounter] = None,
        metrics: Optional[ContextMetrics] = None,
    ) -> None:
        self.config = (config or ContextStackConfig()).validate()
        self.store = store or EpisodicStore(clock=clock)
        self.scorer = scorer or WordOverlapScorer()
        self.metrics = metrics or ContextMetrics()

        self.stacks = TaskStackRegistry(
            self.store,
            clock=clock,
            trace_window=self.config.assembly.trace_window,
        )
        self.gate = SimilarityGate(self.scorer, self.config.gate)
        self.assembler = ContextAssembler(self.gate, counter, self.config.assembly)
        self.reflector = Reflector(self.store.reader(), self.namespace)
        self.curator = Curator(self.store, self.scorer, self.config.curation)
        self.janitor = FactJanitor(
            self.store,
            self.scorer,
            self.config.curation,
            locks=self.curator.locks,
        )

    @classmethod
    def from_project(
        cls,
        project_root: Path,
        ledger_path: Optional[Path] = None,
        scorer: Optional[SimilarityScorer] = None,
        clock: Optional[Clock] = None,
    ) -> "ContextEngine":
        """Build an engine from ``.agent/context_stack.yaml``.

        If ``ledger_path`` exists it is replayed; every later write is
        mirrored to it.
        """
        config = load_config(project_root)
        store = None
        if ledger_path is not None:
            sink = JsonlLedgerSink(ledger_path)
            if Path(ledger_path).exists():
                store = EpisodicStore.replay(ledger_path, clock=clock, sink=sink)
            else:
                store = EpisodicStore(clock=clock, sink=sink)
        return cls(store=store, config=config, scorer=scorer, clock=clock)

    @property
    def namespace(self) -> str:
        return self.config.curation.knowledge_namespace

    # ------------------------------------------------------------------
    # Task stack
    # ------------------------------------------------------------------

    async def push(self, session_id: str, goal: str) -> str:
        stack = await self.stacks.get(session_id)
        frame_id = await stack.push(goal)
        self.metrics.record_transition("push")
        return frame_id

    async def pop(self, session_id: str, result: str) -> str:
        stack = await self.stacks.get(session_id)
        frame_id = await stack.pop(result)
        self.metrics.record_transition("pop")
        if stack.is_empty and not stack.busy:
            self.stacks.evict(session_id)
        return frame_id

    async def block(self, session_id: str, reason: str) -> str:
        stack = await self.stacks.get(session_id)
        frame_id = await stack.block(reason)
        self.metrics.record_transition("block")
        return frame_id

    async def resume(self, session_id: str) -> ResumeOutcome:
        stack = await self.stacks.get(session_id)
        outcome = await stack.resume()
        self.metrics.record_transition("resume")
        return outcome

    async def record_action(self, session_id: str, text: str) -> str:
        stack = await self.stacks.get(session_id)
        return await stack.record_action(text)

    async def peek(self, session_id: str) -> FrameView:
        stack = await self.stacks.get(session_id)
        return stack.peek()

    async def sibling_results(self, session_id: str, frame_id: str) -> list[str]:
        stack = await self.stacks.get(session_id)
        return await stack.sibling_results(frame_id)

    # ------------------------------------------------------------------
    # Assembly
    # ------------------------------------------------------------------

    async def assemble(
        self,
        session_id: str,
        budget: Optional[int] = None,
        as_of: Optional[datetime] = None,
    ) -> AssembledContext:
        """Assemble the context for a session's current frame.

        The stack view and the memory facts are read from the same state:
        the live stack with the currently valid facts, or both as of
        ``as_of`` for a historical assembly.

        Raises:
            EmptyStackError: If the session had no open frame at that instant
        """
        stack = await self.stacks.get(session_id)
        with self.metrics.timed("assemble"):
            if as_of is None:
                snapshot = stack.snapshot()
                facts = await self.current_facts()
            else:
                snapshot = await stack.view_as_of(as_of)
                if snapshot is None:
                    raise EmptyStackError(session_id, "assemble")
                facts = await self.facts_at(as_of)
            context = await self.assembler.assemble(snapshot, facts, budget)

        self.metrics.record_assembly(context)
        return context

    async def current_facts(self) -> list[MemoryFact]:
        """Long-term facts with no ``valid_to``."""
        rows = await self.store.query_current(self.namespace, RowFilter(kind=RowKind.FACT))
        return [MemoryFact.from_row(row) for row in rows]

    async def facts_at(self, instant: datetime) -> list[MemoryFact]:
        """Long-term facts valid at ``instant``."""
        rows = await self.store.query_as_of(
            self.namespace, instant, RowFilter(kind=RowKind.FACT)
        )
        return [MemoryFact.from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Curation
    # ------------------------------------------------------------------

    async def reflect(
        self, trace: InteractionTrace, feedback: FeedbackInput
    ) -> list[ProposedDelta]:
        """Propose deltas from model feedback; never writes.

        Raises:
            MalformedDeltaError: If the feedback does not parse
        """
        if not isinstance(feedback, ModelFeedback):
            feedback = ModelFeedback.parse(feedback)
        return await self.reflector.reflect(trace, feedback)

    async def curate(self, deltas: list[ProposedDelta]) -> CurationReport:
        """Apply deltas.

        Raises:
            MalformedDeltaError: If the reflection is rejected (store untouched)
        """
        with self.metrics.timed("curate"):
            try:
                report = await self.curator.curate(deltas)
            except MalformedDeltaError:
                self.metrics.record_rejected_reflection()
                raise
        self.metrics.record_curation(report)
        return report

    async def run_janitor(self, dry_run: bool = False) -> dict[str, Any]:
        with self.metrics.timed("janitor"):
            return await self.janitor.run(dry_run=dry_run)

    # ------------------------------------------------------------------
    # Store
    # ------------------------------------------------------------------

    async def query_current(
        self, session_id: str, row_filter: Optional[RowFilter] = None
    ) -> list[LedgerRow]:
        return await self.store.query_current(session_id, row_filter)

    async def query_as_of(
        self,
        session_id: str,
        point_in_time: datetime,
        row_filter: Optional[RowFilter] = None,
    ) -> list[LedgerRow]:
        return await self.store.query_as_of(session_id, point_in_time, row_filter)

    async def invalidate(
        self, entity_id: str, at_time: Optional[datetime] = None
    ) -> InvalidationResult:
        """Close a fact (or frame) row; conflicts are recorded, never raised."""
        result = await self.store.invalidate(entity_id, at_time or self.store.clock.now())
        self.metrics.record_conflicts(1 if result.conflict is not None else 0)
        return result

    # ------------------------------------------------------------------
    # Turn orchestration
    # ------------------------------------------------------------------

    async def run_turn(
        self,
        session_id: str,
        generator: TextGenerator,
        budget: Optional[int] = None,
    ) -> TurnResult:
        """Assemble, generate, record the action, reflect and curate.

        A rejected reflection is logged and reported on the result; it does
        not fail the turn.

        Raises:
            EmptyStackError: If the session has no current frame
        """
        context = await self.assemble(session_id, budget)
        raw = await generator.generate(context)
        output = raw if isinstance(raw, ModelOutput) else ModelOutput.model_validate(raw)

        stack = await self.stacks.get(session_id)
        if output.action:
            await stack.record_action(output.action)

        result = TurnResult(context=context, output=output)
        if output.feedback.is_empty:
            return result

        current = stack.peek().current
        trace = InteractionTrace.from_frame(current)
        try:
            result.deltas = await self.reflect(trace, output.feedback)
            result.report = await self.curate(result.deltas)
        except MalformedDeltaError as e:
            logger.warning(f"[{session_id}] reflection discarded: {e.reason}")
            result.rejected_reason = e.reason
        return result
