# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Observability for the context stack."""

from context_stack.observability.metrics import METRIC_PREFIX, ContextMetrics, LatencyStats

__all__ = [
    "METRIC_PREFIX",
    "ContextMetrics",
    "LatencyStats",
]
