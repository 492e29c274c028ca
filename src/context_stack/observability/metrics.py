# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Context stack metrics.

In-process counters and latency statistics for assembly, curation, stack
transitions and store conflicts.
"""

import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator, Optional

# Metric name prefix for all context stack metrics
METRIC_PREFIX: str = "context_stack"


@dataclass
class LatencyStats:
    """Statistics for latency measurements.

    Attributes:
        count: Number of measurements.
        total_ms: Total latency in milliseconds.
        min_ms: Minimum latency in milliseconds.
        max_ms: Maximum latency in milliseconds.
    """

    count: int = 0
    total_ms: float = 0.0
    min_ms: float = float("inf")
    max_ms: float = 0.0

    def record(self, latency_ms: float) -> None:
        self.count += 1
        self.total_ms += latency_ms
        self.min_ms = min(self.min_ms, latency_ms)
        self.max_ms = max(self.max_ms, latency_ms)

    @property
    def avg_ms(self) -> float:
        if self.count == 0:
            return 0.0
        return self.total_ms / self.count


class ContextMetrics:
    """Metrics collector for context stack operations.

    Example:
        >>> metrics = ContextMetrics()
        >>> metrics.record_assembly(context)
        >>> with metrics.timed("curate"):
        ...     report = await curator.curate(deltas)
        >>> stats = metrics.get_stats()
    """

    def __init__(self):
        self._counters: dict[str, int] = defaultdict(int)
        self._latencies: dict[str, LatencyStats] = defaultdict(LatencyStats)
        self._labels: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))

    def record_transition(self, operation: str) -> None:
        """Record a task stack transition (push, pop, block, resume)."""
        self._counters["stack_transitions"] += 1
        self._labels["stack_by_operation"][operation] += 1

    def record_assembly(self, context: Any) -> None:
        """Record one assembled context.

        Args:
            context: AssembledContext returned by the assembler.
        """
        self._counters["assemble_total"] += 1
        self._counters["assemble_segments"] += len(context.segments)
        if context.truncated:
            self._counters["assemble_truncated"] += 1
        if context.incomplete:
            self._counters["assemble_incomplete"] += 1
            self._counters["assemble_dropped_segments"] += context.dropped_count

    def record_curation(self, report: Any) -> None:
        """Record one curation pass.

        Args:
            report: CurationReport returned by the curator.
        """
        self._counters["curate_total"] += 1
        self._counters["curate_inserted"] += report.inserted
        self._counters["curate_merged"] += report.merged
        self._counters["curate_revised"] += report.revised
        self._counters["curate_incremented"] += report.incremented
        for section_id in report.sections:
            self._labels["curate_by_section"][section_id] += 1

    def record_rejected_reflection(self) -> None:
        self._counters["curate_rejected"] += 1

    def record_conflicts(self, count: int) -> None:
        """Record newly observed invalidation conflicts."""
        if count > 0:
            self._counters["store_conflicts"] += count

    def record_latency(self, operation: str, latency_ms: float) -> None:
        self._latencies[operation].record(latency_ms)

    @contextmanager
    def timed(self, operation: str) -> Iterator[None]:
        """Record the latency of the enclosed block, even if it raises."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.record_latency(operation, (time.perf_counter() - start) * 1000)

    def increment_counter(
        self,
        name: str,
        value: int = 1,
        labels: Optional[dict[str, str]] = None,
    ) -> None:
        self._counters[name] += value
        if labels:
            for label_key, label_value in labels.items():
                self._labels[f"{name}_{label_key}"][label_value] += value

    def counter(self, name: str) -> int:
        return self._counters.get(name, 0)

    def get_stats(self) -> dict[str, Any]:
        """Get all collected statistics.

        Returns:
            Dictionary containing counters, latencies and labelled counts.
        """
        latency_stats = {}
        for op, stats in self._latencies.items():
            latency_stats[op] = {
                "count": stats.count,
                "avg_ms": stats.avg_ms,
                "min_ms": stats.min_ms if stats.count > 0 else 0.0,
                "max_ms": stats.max_ms,
            }

        return {
            "counters": dict(self._counters),
            "latencies": latency_stats,
            "labels": {k: dict(v) for k, v in self._labels.items()},
        }

    def reset(self) -> None:
        """Reset all metrics (for testing)."""
        self._counters.clear()
        self._latencies.clear()
        self._labels.clear()
