# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Storage layer: the episodic store and its read-only view."""

from context_stack.storage.episodic import (
    ANY_PARENT,
    EpisodicStore,
    InvalidationConflict,
    InvalidationResult,
    LedgerSink,
    RowFilter,
    StoreStats,
)
from context_stack.storage.ledger_file import JsonlLedgerSink, read_ledger
from context_stack.storage.reader import StoreReader

__all__ = [
    "ANY_PARENT",
    "EpisodicStore",
    "InvalidationConflict",
    "InvalidationResult",
    "JsonlLedgerSink",
    "LedgerSink",
    "RowFilter",
    "StoreReader",
    "StoreStats",
    "read_ledger",
]
