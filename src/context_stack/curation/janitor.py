# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Fact janitor.

Periodic cleanup of long-term facts:
- Retention: retires facts whose event time is older than ``retention_days``
- Harmful: retires facts with ``harmful - helpful >= harmful_margin``
- Deduplication: merges near-duplicate valid facts within a section into
  the highest-scoring one (counters summed)

Retirement is always invalidation; no row is ever deleted. The janitor
shares the Curator's section locks, so it never races a curation pass.
"""

import logging
import time
from datetime import timedelta
from typing import Any, Dict, List, Optional

from context_stack.config import CurationConfig
from context_stack.curation.curator import KeyedLock, more_trusted
from context_stack.curation.scoring import score_fact
from context_stack.gate.scorers import SimilarityScorer, WordOverlapScorer, clamp_score
from context_stack.schemas.records import MemoryFact, RowKind
from context_stack.storage.episodic import EpisodicStore, RowFilter

logger = logging.getLogger(__name__)


class FactJanitor:
    """Retires stale, harmful and duplicate facts.

    Example:
        >>> janitor = FactJanitor(store, config=config.curation, locks=curator.locks)
        >>> result = await janitor.run(dry_run=True)
        >>> print(result["would_invalidate"])
    """

    def __init__(
        self,
        store: EpisodicStore,
        scorer: Optional[SimilarityScorer] = None,
        config: Optional[CurationConfig] = None,
        locks: Optional[KeyedLock] = None,
    ):
        """Initialize the janitor.

        Args:
            store: Episodic store holding the facts.
            scorer: Similarity scorer for deduplication (word overlap by default).
            config: Curation settings (threshold, margin, retention, half-life).
            locks: Section locks shared with the Curator.
        """
        self.store = store
        self.scorer = scorer or WordOverlapScorer()
        self.config = config or CurationConfig()
        self.locks = locks or KeyedLock()

    async def run(self, dry_run: bool = False) -> Dict[str, Any]:
        """Run all cleanup passes over every configured section.

        Args:
            dry_run: If True, only report what would be done.

        Returns:
            Statistics about the run.
        """
        start_time = time.perf_counter()
        stats: Dict[str, Any] = {
            "processed": 0,
            "expired": 0,
            "harmful": 0,
            "merged": 0,
            "invalidated": 0,
            "dry_run": dry_run,
            "would_invalidate": [],
        }

        for section_id in self.config.sections:
            async with self.locks(section_id):
                section_stats = await self._run_section(section_id, dry_run)
            for key in ("processed", "expired", "harmful", "merged", "invalidated"):
                stats[key] += section_stats[key]
            stats["would_invalidate"].extend(section_stats["would_invalidate"])

        stats["duration_ms"] = (time.perf_counter() - start_time) * 1000
        logger.info(
            f"Janitor {'dry run' if dry_run else 'run'}: processed {stats['processed']}, "
            f"expired {stats['expired']}, harmful {stats['harmful']}, merged {stats['merged']}"
        )
        return stats

    async def _run_section(self, section_id: str, dry_run: bool) -> Dict[str, Any]:
        rows = await self.store.query_current(
            self.config.knowledge_namespace,
            RowFilter(kind=RowKind.FACT, status_or_section=section_id),
        )
        facts = [MemoryFact.from_row(row) for row in rows]
        now = self.store.clock.now()

        expired: List[MemoryFact] = []
        harmful: List[MemoryFact] = []
        survivors: List[MemoryFact] = []
        cutoff = (
            now - timedelta(days=self.config.retention_days)
            if self.config.retention_days is not None
            else None
        )
        for fact in facts:
            if cutoff is not None and fact.event_time < cutoff:
                expired.append(fact)
            elif fact.harmful - fact.helpful >= self.config.harmful_margin:
                harmful.append(fact)
            else:
                survivors.append(fact)

        merges = await self.find_merges(survivors, now)

        would_invalidate: List[dict] = []
        for fact in expired:
            would_invalidate.append(
                {"id": fact.id, "content": fact.content[:50], "reason": "Older than retention period"}
            )
        for fact in harmful:
            would_invalidate.append(
                {
                    "id": fact.id,
                    "content": fact.content[:50],
                    "reason": f"Net harmful ({fact.harmful} harmful, {fact.helpful} helpful)",
                }
            )
        for keeper, absorbed in merges:
            for fact, similarity in absorbed:
                would_invalidate.append(
                    {
                        "id": fact.id,
                        "content": fact.content[:50],
                        "reason": f"Merged into {keeper.id} (similarity: {similarity:.2f})",
                    }
                )

        merged_count = sum(len(absorbed) for _, absorbed in merges)
        result = {
            "processed": len(facts),
            "expired": len(expired),
            "harmful": len(harmful),
            "merged": merged_count,
            "invalidated": 0,
            "would_invalidate": would_invalidate,
        }
        if dry_run:
            return result

        invalidated = 0
        for keeper, absorbed in merges:
            combined = keeper.evolve(
                helpful=keeper.helpful + sum(f.helpful for f, _ in absorbed),
                harmful=keeper.harmful + sum(f.harmful for f, _ in absorbed),
                tier=_tier_of([keeper] + [f for f, _ in absorbed]),
            )
            # Summed counters and closed duplicates land in one write
            await self.store.merge(combined, [f.id for f, _ in absorbed])
            invalidated += len(absorbed)

        for fact in expired + harmful:
            await self.store.invalidate(fact.id, self.store.clock.now())
            invalidated += 1
        result["invalidated"] = invalidated
        return result

    async def find_merges(
        self, facts: List[MemoryFact], now=None
    ) -> List[tuple[MemoryFact, List[tuple[MemoryFact, float]]]]:
        """Group near-duplicates under their highest-scoring member.

        Facts are visited by descending score; each unclaimed fact absorbs
        every later unclaimed fact at or above the dedup threshold.

        Returns:
            List of (keeper, [(absorbed, similarity), ...]) with at least
            one absorbed fact each.
        """
        if now is None:
            now = self.store.clock.now()
        half_life = self.config.decay_half_life_days
        ordered = sorted(
            facts,
            key=lambda f: (-score_fact(f, now, half_life), f.id),
        )

        claimed: set[str] = set()
        merges = []
        for i, keeper in enumerate(ordered):
            if keeper.id in claimed:
                continue
            absorbed = []
            for other in ordered[i + 1:]:
                if other.id in claimed:
                    continue
                similarity = clamp_score(await self.scorer.score(keeper.content, other.content))
                if similarity >= self.config.dedup_threshold:
                    absorbed.append((other, similarity))
                    claimed.add(other.id)
            if absorbed:
                claimed.add(keeper.id)
                merges.append((keeper, absorbed))
        return merges


def _tier_of(facts: List[MemoryFact]):
    tier = facts[0].tier
    for fact in facts[1:]:
        tier = more_trusted(tier, fact.tier)
    return tier

