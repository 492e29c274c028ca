# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Episodic store: append-only, bi-temporal ledger.

The store is the only component allowed to write persisted rows.
Rows are immutable; closing a row's validity interval is recorded as an
invalidation marker keyed by the row's sequence number, and ``valid_to``
is materialized on read.

Design decisions:
- One global sequence counter, so appends within a session follow call order
- Appending a new version of a frame or fact closes the previous version
  at the new row's ingestion time, in the same critical section
- Each mutation runs under a short RLock section with no awaits inside,
  so a cancelled caller never leaves a half-applied write
- With a sink attached, each write is mirrored before it is applied in
  memory, so a failed mirror write leaves the store unchanged
- Indexes by (session_id, parent_id) and (session_id, status_or_section)
  back stack reconstruction and active-frame lookup
"""

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Protocol, Union

from context_stack.clock import Clock, SystemClock
from context_stack.errors import DuplicateFactError, FactNotFoundError
from context_stack.schemas.records import (
    ActionEntry,
    LedgerRow,
    MemoryFact,
    RowKind,
    TaskFrame,
)

logger = logging.getLogger(__name__)

Record = Union[TaskFrame, MemoryFact, ActionEntry]

# Sentinel for "parent_id not part of the filter" (None means root frames)
ANY_PARENT: Any = object()


LedgerEntry = Union[LedgerRow, tuple[int, datetime]]


class LedgerSink(Protocol):
    """Protocol for durable mirrors of ledger writes."""

    def write_entries(self, entries: list[LedgerEntry]) -> None:
        """Persist new rows and ``(sequence, valid_to)`` markers in one write.

        The store calls this before committing the write in memory; if it
        raises, the store is left unchanged.
        """
        ...


@dataclass
class RowFilter:
    """Filter for store queries.

    Attributes:
        kind: Only rows of this kind
        status_or_section: Frame status value or fact section ID
        parent_id: Parent frame ID; ``None`` selects roots, ANY_PARENT disables
        entity_id: Only versions of this frame/fact/action ID
        lineage_id: Only facts of this lineage
    """

    kind: Optional[RowKind] = None
    status_or_section: Optional[str] = None
    parent_id: Any = ANY_PARENT
    entity_id: Optional[str] = None
    lineage_id: Optional[str] = None

    def matches(self, row: LedgerRow) -> bool:
        if self.kind is not None and row.kind != self.kind:
            return False
        if self.status_or_section is not None and row.status_or_section != self.status_or_section:
            return False
        if self.parent_id is not ANY_PARENT and row.parent_id != self.parent_id:
            return False
        if self.entity_id is not None and row.id != self.entity_id:
            return False
        if self.lineage_id is not None and row.lineage_id != self.lineage_id:
            return False
        return True


@dataclass
class InvalidationConflict:
    """Two invalidations raced on one row; the later one was kept.

    Attributes:
        entity_id: Frame or fact ID
        sequence: Sequence number of the closed row
        kept_valid_to: The valid_to now stored
        dropped_valid_to: The losing invalidation time
    """

    entity_id: str
    sequence: int
    kept_valid_to: datetime
    dropped_valid_to: datetime


@dataclass
class InvalidationResult:
    """Outcome of an ``invalidate`` call."""

    entity_id: str
    sequence: int
    requested: datetime
    valid_to: datetime
    conflict: Optional[InvalidationConflict] = None

    @property
    def recorded(self) -> bool:
        """True unless this call lost a conflict and was dropped."""
        return self.valid_to == self.requested


@dataclass
class StoreStats:
    rows: int = 0
    markers: int = 0
    conflicts: int = 0
    by_kind: dict[str, int] = field(default_factory=dict)


class EpisodicStore:
    """Append-only, bi-temporal ledger of frames, facts and actions.

    Example:
        >>> store = EpisodicStore()
        >>> row = await store.append(fact)
        >>> await store.invalidate(fact.id, clock.now())
        >>> rows = await store.query_as_of("playbook", some_instant)
    """

    def __init__(
        self,
        clock: Optional[Clock] = None,
        sink: Optional[LedgerSink] = None,
    ) -> None:
        self._clock: Clock = clock or SystemClock()
        self._sink = sink
        self._rows: list[LedgerRow] = []
        self._markers: dict[int, datetime] = {}
        self._versions: dict[str, list[int]] = defaultdict(list)
        self._current: dict[str, int] = {}
        self._by_session: dict[str, list[int]] = defaultdict(list)
        self._by_session_parent: dict[tuple[str, Optional[str]], list[int]] = defaultdict(list)
        self._by_session_status: dict[tuple[str, str], list[int]] = defaultdict(list)
        self._valid_by_hash: dict[tuple[str, str, str], str] = {}
        self._lock = threading.RLock()
        self.conflicts: list[InvalidationConflict] = []

    @property
    def clock(self) -> Clock:
        return self._clock

    def __len__(self) -> int:
        return len(self._rows)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def append(self, record: Record) -> LedgerRow:
        """Append a frame snapshot, fact version or action entry.

        Assigns the next sequence number and an ingestion timestamp. If the
        record's ID already has a valid row, that row is closed at the new
        row's ingestion time.

        Raises:
            DuplicateFactError: If a different fact with the same content is
                currently valid in the same section
        """
        with self._lock:
            return self._append_locked(record)

    async def append_many(self, records: list[Record]) -> list[LedgerRow]:
        """Append several records in one critical section, in order.

        Either every record is appended or, if one is rejected, none are.
        A sink failure stops the batch at the failing record; the records
        before it stay appended, in memory and in the mirror alike.
        """
        with self._lock:
            batch_keys: dict[tuple[str, str, str], str] = {}
            for record in records:
                if isinstance(record, MemoryFact):
                    draft = record.to_row(0, record.event_time)
                    self._check_duplicate(draft)
                    key = self._hash_key(draft)
                    if batch_keys.setdefault(key, draft.id) != draft.id:
                        raise DuplicateFactError(draft.status_or_section, batch_keys[key])
            return [self._append_locked(record) for record in records]

    async def supersede(self, old_id: str, record: Record) -> LedgerRow:
        """Close ``old_id``'s valid row and append ``record`` atomically.

        Used for revisions, where the replacement carries a new ID.

        Raises:
            FactNotFoundError: If ``old_id`` has no valid row
        """
        with self._lock:
            if old_id not in self._current:
                raise FactNotFoundError(old_id)
            return self._append_locked(record, closes=(old_id,))

    async def merge(self, record: Record, absorbed_ids: list[str]) -> LedgerRow:
        """Append ``record`` and close every absorbed ID in one write.

        The absorbed rows are closed at the new row's ingestion time, so no
        instant sees both the merged version and an absorbed row as valid.

        Raises:
            FactNotFoundError: If an absorbed ID has no valid row
        """
        with self._lock:
            for absorbed_id in absorbed_ids:
                if absorbed_id not in self._current:
                    raise FactNotFoundError(absorbed_id)
            return self._append_locked(record, closes=tuple(absorbed_ids))

    async def invalidate(self, entity_id: str, at_time: datetime) -> InvalidationResult:
        """Close the latest row of ``entity_id`` at ``at_time``.

        If that row is already closed, the invalidation with the later time
        wins; the other is dropped and the conflict is logged and recorded
        in ``conflicts``. Conflicts never raise.

        Raises:
            FactNotFoundError: If the ID was never appended
            ValueError: If ``at_time`` precedes the row's ``valid_from``
        """
        with self._lock:
            versions = self._versions.get(entity_id)
            if not versions:
                raise FactNotFoundError(entity_id)
            sequence = versions[-1]
            row = self._rows[sequence]
            if at_time < row.valid_from:
                raise ValueError(
                    f"Cannot invalidate '{entity_id}' at {at_time.isoformat()}: "
                    f"before valid_from {row.valid_from.isoformat()}"
                )

            existing = self._markers.get(sequence)
            if existing is None:
                self._persist([(sequence, at_time)])
                self._close(sequence, at_time)
                logger.debug(f"Invalidated {entity_id} (seq {sequence}) at {at_time.isoformat()}")
                return InvalidationResult(
                    entity_id=entity_id,
                    sequence=sequence,
                    requested=at_time,
                    valid_to=at_time,
                )

            if at_time > existing:
                kept, dropped = at_time, existing
                self._persist([(sequence, at_time)])
                self._markers[sequence] = at_time
            else:
                kept, dropped = existing, at_time

            conflict = InvalidationConflict(
                entity_id=entity_id,
                sequence=sequence,
                kept_valid_to=kept,
                dropped_valid_to=dropped,
            )
            self.conflicts.append(conflict)
            logger.warning(
                f"Invalidation conflict on {entity_id} (seq {sequence}): "
                f"kept valid_to={kept.isoformat()}, dropped {dropped.isoformat()}"
            )
            return InvalidationResult(
                entity_id=entity_id,
                sequence=sequence,
                requested=at_time,
                valid_to=kept,
                conflict=conflict,
            )

    def _append_locked(self, record: Record, closes: tuple[str, ...] = ()) -> LedgerRow:
        sequence = len(self._rows)
        ingested_at = self._clock.now()
        row = record.to_row(sequence, ingested_at)

        if row.kind == RowKind.FACT:
            self._check_duplicate(row, closes)

        to_close = [self._current[entity_id] for entity_id in closes]
        previous = self._current.get(row.id)
        if previous is not None:
            to_close.append(previous)

        # Mirror first; memory is only touched once the sink accepted the write
        self._persist([(seq, ingested_at) for seq in to_close] + [row])

        for seq in to_close:
            self._close(seq, ingested_at)
        self._index(row)
        return row

    def _persist(self, entries: list[LedgerEntry]) -> None:
        if self._sink is not None:
            self._sink.write_entries(entries)

    def _index(self, row: LedgerRow) -> None:
        self._rows.append(row)
        self._versions[row.id].append(row.sequence)
        self._current[row.id] = row.sequence
        self._by_session[row.session_id].append(row.sequence)
        self._by_session_parent[(row.session_id, row.parent_id)].append(row.sequence)
        self._by_session_status[(row.session_id, row.status_or_section)].append(row.sequence)
        if row.kind == RowKind.FACT:
            self._valid_by_hash[self._hash_key(row)] = row.id

    def _check_duplicate(self, row: LedgerRow, closes: tuple[str, ...] = ()) -> None:
        holder = self._valid_by_hash.get(self._hash_key(row))
        if holder is not None and holder != row.id and holder not in closes:
            raise DuplicateFactError(row.status_or_section, holder)

    def _close(self, sequence: int, at_time: datetime) -> None:
        row = self._rows[sequence]
        self._markers[sequence] = at_time
        if self._current.get(row.id) == sequence:
            del self._current[row.id]
        if row.kind == RowKind.FACT:
            key = self._hash_key(row)
            if self._valid_by_hash.get(key) == row.id:
                del self._valid_by_hash[key]

    @staticmethod
    def _hash_key(row: LedgerRow) -> tuple[str, str, str]:
        return (row.session_id, row.status_or_section, row.content_hash or "")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def query_current(
        self, session_id: str, row_filter: Optional[RowFilter] = None
    ) -> list[LedgerRow]:
        """Rows of ``session_id`` whose ``valid_to`` is null, in sequence order."""
        with self._lock:
            return [
                self._materialize(seq)
                for seq in self._candidates(session_id, row_filter)
                if seq not in self._markers and self._accepts(seq, row_filter)
            ]

    async def query_as_of(
        self,
        session_id: str,
        point_in_time: datetime,
        row_filter: Optional[RowFilter] = None,
    ) -> list[LedgerRow]:
        """Rows valid at ``point_in_time``: ``valid_from <= t < valid_to``."""
        with self._lock:
            results = []
            for seq in self._candidates(session_id, row_filter):
                row = self._materialize(seq)
                if row.is_valid_at(point_in_time) and self._accepts(seq, row_filter):
                    results.append(row)
            return results

    async def get_current(self, entity_id: str) -> Optional[LedgerRow]:
        """The valid row for an ID, or None if it has none."""
        with self._lock:
            sequence = self._current.get(entity_id)
            return None if sequence is None else self._materialize(sequence)

    async def history(self, entity_id: str) -> list[LedgerRow]:
        """All versions of an ID, oldest first."""
        with self._lock:
            return [self._materialize(seq) for seq in self._versions.get(entity_id, [])]

    async def find_valid_duplicate(
        self, namespace: str, section_id: str, hash_value: str
    ) -> Optional[LedgerRow]:
        """The valid fact in a section holding content with this hash."""
        with self._lock:
            fact_id = self._valid_by_hash.get((namespace, section_id, hash_value))
            if fact_id is None:
                return None
            return self._materialize(self._current[fact_id])

    async def latest_instant(self) -> Optional[datetime]:
        """Ingestion time of the most recent row (None when empty)."""
        with self._lock:
            return self._rows[-1].ingested_at if self._rows else None

    def stats(self) -> StoreStats:
        with self._lock:
            by_kind: dict[str, int] = defaultdict(int)
            for row in self._rows:
                by_kind[row.kind.value] += 1
            return StoreStats(
                rows=len(self._rows),
                markers=len(self._markers),
                conflicts=len(self.conflicts),
                by_kind=dict(by_kind),
            )

    def reader(self) -> "StoreReader":
        """Read-only capability over this store."""
        from context_stack.storage.reader import StoreReader

        return StoreReader(self)

    def _candidates(self, session_id: str, row_filter: Optional[RowFilter]) -> list[int]:
        if row_filter is not None and row_filter.parent_id is not ANY_PARENT:
            return self._by_session_parent.get((session_id, row_filter.parent_id), [])
        if row_filter is not None and row_filter.status_or_section is not None:
            return self._by_session_status.get((session_id, row_filter.status_or_section), [])
        return self._by_session.get(session_id, [])

    def _accepts(self, sequence: int, row_filter: Optional[RowFilter]) -> bool:
        return row_filter is None or row_filter.matches(self._rows[sequence])

    def _materialize(self, sequence: int) -> LedgerRow:
        row = self._rows[sequence]
        valid_to = self._markers.get(sequence)
        if valid_to is None:
            return row
        return row.model_copy(update={"valid_to": valid_to})

    # ------------------------------------------------------------------
    # Replay
    # ------------------------------------------------------------------

    @classmethod
    def replay(
        cls,
        path: Path,
        clock: Optional[Clock] = None,
        sink: Optional[LedgerSink] = None,
    ) -> "EpisodicStore":
        """Rebuild a store from a JSON-lines ledger file.

        Rows and markers are restored in file order; recorded conflicts are
        not replayed, only their final resolution.
        """
        from context_stack.storage.ledger_file import read_ledger

        store = cls(clock=clock, sink=None)
        for entry in read_ledger(path):
            if isinstance(entry, LedgerRow):
                if entry.sequence != len(store._rows):
                    raise ValueError(
                        f"Ledger out of order: expected sequence {len(store._rows)}, "
                        f"got {entry.sequence}"
                    )
                store._index(entry)
            else:
                sequence, valid_to = entry
                store._close(sequence, valid_to)
        store._sink = sink
        logger.info(f"Replayed {len(store)} rows from {path}")
        return store
