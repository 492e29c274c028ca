# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""
Memory Curator: applies proposed deltas to long-term facts.

Rules:
- A reflection is validated as a whole before anything is written; one
  malformed delta discards the reflection and leaves the store untouched
- Each delta touches only its own section
- add-content that duplicates a valid fact of the same section (exact
  content hash, or similarity >= dedup threshold) is merged into it:
  counters summed, content kept or extended
- revise-content closes the prior fact and appends a replacement carrying
  its counters and lineage
- Increments resolve any fact ID of a lineage to its current member

Concurrency: one pass per section at a time (KeyedLock); sections of one
reflection are applied concurrently. Every delta is a single store write,
so cancellation leaves the store at the last fully applied delta.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from typing import Optional, Sequence

from context_stack.config import CurationConfig
from context_stack.curation.deltas import (
    COUNTER_OPERATIONS,
    AppliedDelta,
    CurationReport,
    DeltaOperation,
    ProposedDelta,
)
from context_stack.errors import DuplicateFactError, MalformedDeltaError
from context_stack.gate.scorers import SimilarityScorer, WordOverlapScorer, clamp_score, word_set
from context_stack.schemas.records import (
    LedgerRow,
    MemoryFact,
    ProvenanceTier,
    RowKind,
    content_hash,
)
from context_stack.storage.episodic import EpisodicStore, RowFilter

logger = logging.getLogger(__name__)


class KeyedLock:
    """One asyncio.Lock per key; at most one holder per key at a time."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def __call__(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()


def more_trusted(a: ProvenanceTier, b: ProvenanceTier) -> ProvenanceTier:
    return a if a.trust >= b.trust else b


def merged_content(existing: str, incoming: str) -> str:
    """Keep the existing content unless the incoming text strictly extends it."""
    existing_words = word_set(existing)
    incoming_words = word_set(incoming)
    if existing_words < incoming_words:
        return incoming
    return existing


class Curator:
    """The only component that applies deltas to the store.

    Example:
        >>> curator = Curator(store, WordOverlapScorer(), config.curation)
        >>> report = await curator.curate(deltas)
        >>> print(f"merged={report.merged} inserted={report.inserted}")
    """

    def __init__(
        self,
        store: EpisodicStore,
        scorer: Optional[SimilarityScorer] = None,
        config: Optional[CurationConfig] = None,
        locks: Optional[KeyedLock] = None,
    ) -> None:
        self.store = store
        self.scorer = scorer or WordOverlapScorer()
        self.config = config or CurationConfig()
        self.config.validate()
        self.locks = locks or KeyedLock()

    @property
    def namespace(self) -> str:
        return self.config.knowledge_namespace

    async def curate(self, deltas: Sequence[ProposedDelta]) -> CurationReport:
        """Apply a reflection's deltas.

        Args:
            deltas: Proposed deltas from one reflection

        Returns:
            CurationReport with one entry per applied delta

        Raises:
            MalformedDeltaError: If any delta names an unknown section, lacks
                its arguments, or targets a fact that cannot be resolved in
                its section. Nothing is written in that case.
        """
        start_time = time.perf_counter()
        try:
            await self.validate(deltas)
        except MalformedDeltaError as e:
            logger.warning(f"Discarding reflection of {len(deltas)} deltas: {e.reason}")
            raise

        groups: "OrderedDict[str, list[ProposedDelta]]" = OrderedDict()
        for delta in deltas:
            groups.setdefault(delta.section_id, []).append(delta)

        results = await asyncio.gather(
            *(self._apply_section(section_id, group) for section_id, group in groups.items())
        )

        report = CurationReport(
            applied=[applied for group in results for applied in group],
            sections=list(groups),
            duration_ms=(time.perf_counter() - start_time) * 1000,
        )
        if report.applied:
            logger.info(
                f"Curated {len(report.applied)} deltas across {len(groups)} sections: "
                f"{report.inserted} inserted, {report.merged} merged, "
                f"{report.revised} revised, {report.incremented} incremented"
            )
        return report

    async def validate(self, deltas: Sequence[ProposedDelta]) -> None:
        """Check every delta without writing.

        Raises:
            MalformedDeltaError: On the first invalid delta
        """
        sections = set(self.config.sections)
        for delta in deltas:
            section_id = delta.section_id
            if section_id not in sections:
                raise MalformedDeltaError(f"unknown section '{section_id}'", section_id)

            payload = delta.payload
            needs_content = delta.operation in (
                DeltaOperation.ADD_CONTENT,
                DeltaOperation.REVISE_CONTENT,
            )
            if needs_content and not (payload.content and payload.content.strip()):
                raise MalformedDeltaError(
                    f"{delta.operation.value} without content", section_id
                )
            if delta.operation in COUNTER_OPERATIONS and payload.amount < 1:
                raise MalformedDeltaError(
                    f"{delta.operation.value} amount must be >= 1", section_id
                )
            if payload.helpful < 0 or payload.harmful < 0:
                raise MalformedDeltaError("negative counters", section_id)

            if delta.operation == DeltaOperation.ADD_CONTENT:
                continue
            if not payload.fact_id:
                raise MalformedDeltaError(
                    f"{delta.operation.value} without a target fact", section_id
                )
            current = await self.resolve(payload.fact_id)
            if current is None:
                raise MalformedDeltaError(
                    f"fact '{payload.fact_id}' has no valid version", section_id
                )
            if current.status_or_section != section_id:
                raise MalformedDeltaError(
                    f"fact '{payload.fact_id}' belongs to section "
                    f"'{current.status_or_section}'",
                    section_id,
                )

    async def resolve(self, fact_id: str) -> Optional[LedgerRow]:
        """Current member of the lineage ``fact_id`` belongs to, if any."""
        row = await self.store.get_current(fact_id)
        if row is not None:
            return row if row.kind == RowKind.FACT else None

        versions = await self.store.history(fact_id)
        if not versions or versions[-1].kind != RowKind.FACT:
            return None
        last = versions[-1]
        members = await self.store.query_current(
            last.session_id,
            RowFilter(
                kind=RowKind.FACT,
                status_or_section=last.status_or_section,
                lineage_id=last.lineage_id,
            ),
        )
        return members[-1] if members else None

    async def _apply_section(
        self, section_id: str, deltas: list[ProposedDelta]
    ) -> list[AppliedDelta]:
        async with self.locks(section_id):
            applied = []
            for delta in deltas:
                applied.append(await self._apply(delta))
            return applied

    async def _apply(self, delta: ProposedDelta) -> AppliedDelta:
        if delta.operation == DeltaOperation.ADD_CONTENT:
            return await self._add_content(delta)
        if delta.operation == DeltaOperation.REVISE_CONTENT:
            return await self._revise_content(delta)
        return await self._increment(delta)

    async def _increment(self, delta: ProposedDelta) -> AppliedDelta:
        target = delta.payload.fact_id or ""
        current = await self.resolve(target)
        if current is None:
            logger.warning(f"Skipping {delta.operation.value}: fact {target} retired meanwhile")
            return AppliedDelta(delta=delta, outcome="unchanged", fact_id=target)

        fact = MemoryFact.from_row(current)
        if delta.operation == DeltaOperation.INCREMENT_HELPFUL:
            updated = fact.evolve(helpful=fact.helpful + delta.payload.amount)
        else:
            updated = fact.evolve(harmful=fact.harmful + delta.payload.amount)
        await self.store.append(updated)
        logger.debug(f"{delta.operation.value} on {fact.id} (requested {target})")
        return AppliedDelta(delta=delta, outcome="incremented", fact_id=fact.id)

    async def _add_content(self, delta: ProposedDelta) -> AppliedDelta:
        payload = delta.payload
        content = (payload.content or "").strip()

        match, similarity = await self._find_match(delta.section_id, content)
        if match is None:
            fact = MemoryFact(
                namespace=self.namespace,
                section_id=delta.section_id,
                content=content,
                helpful=payload.helpful,
                harmful=payload.harmful,
                tier=payload.tier,
                event_time=self.store.clock.now(),
                source_frame_id=payload.source_frame_id,
            )
            await self.store.append(fact)
            logger.debug(f"Inserted {fact.id} into {delta.section_id}")
            return AppliedDelta(delta=delta, outcome="inserted", fact_id=fact.id)

        existing = MemoryFact.from_row(match)
        new_content = merged_content(existing.content, content)
        if new_content != existing.content:
            holder = await self.store.find_valid_duplicate(
                self.namespace, delta.section_id, content_hash(new_content)
            )
            if holder is not None and holder.id != existing.id:
                new_content = existing.content

        merged = existing.evolve(
            content=new_content,
            helpful=existing.helpful + payload.helpful,
            harmful=existing.harmful + payload.harmful,
            tier=more_trusted(existing.tier, payload.tier),
        )
        await self.store.append(merged)
        logger.debug(
            f"Merged add-content into {existing.id} in {delta.section_id} "
            f"(similarity {similarity:.2f})"
        )
        return AppliedDelta(
            delta=delta,
            outcome="merged",
            fact_id=existing.id,
            merged_into=existing.id,
            similarity=similarity,
        )

    async def _find_match(
        self, section_id: str, content: str
    ) -> tuple[Optional[LedgerRow], float]:
        exact = await self.store.find_valid_duplicate(
            self.namespace, section_id, content_hash(content)
        )
        if exact is not None:
            return exact, 1.0

        candidates = await self.store.query_current(
            self.namespace,
            RowFilter(kind=RowKind.FACT, status_or_section=section_id),
        )
        if not candidates:
            return None, 0.0

        scores = await asyncio.gather(
            *(self.scorer.score(content, row.content) for row in candidates)
        )
        best: Optional[LedgerRow] = None
        best_score = 0.0
        for row, raw in zip(candidates, scores):
            score = clamp_score(raw)
            if score < self.config.dedup_threshold:
                continue
            if best is None or score > best_score or (score == best_score and row.id < best.id):
                best, best_score = row, score
        return best, best_score

    async def _revise_content(self, delta: ProposedDelta) -> AppliedDelta:
        payload = delta.payload
        target = payload.fact_id or ""
        content = (payload.content or "").strip()

        current = await self.resolve(target)
        if current is None:
            logger.warning(f"Skipping revise-content: fact {target} retired meanwhile")
            return AppliedDelta(delta=delta, outcome="unchanged", fact_id=target)
        if current.content_hash == content_hash(content):
            return AppliedDelta(delta=delta, outcome="unchanged", fact_id=current.id)

        prior = MemoryFact.from_row(current)
        revision = MemoryFact(
            namespace=prior.namespace,
            section_id=prior.section_id,
            content=content,
            helpful=prior.helpful,
            harmful=prior.harmful,
            tier=payload.tier,
            event_time=self.store.clock.now(),
            lineage_id=prior.lineage_id or prior.id,
            supersedes=prior.id,
            source_frame_id=payload.source_frame_id,
        )
        try:
            await self.store.supersede(prior.id, revision)
        except DuplicateFactError as e:
            logger.warning(
                f"Skipping revision of {prior.id}: content already held by {e.existing_fact_id}"
            )
            return AppliedDelta(
                delta=delta,
                outcome="unchanged",
                fact_id=prior.id,
                merged_into=e.existing_fact_id,
            )
        logger.debug(f"Revised {prior.id} -> {revision.id} in {prior.section_id}")
        return AppliedDelta(delta=delta, outcome="revised", fact_id=revision.id)
