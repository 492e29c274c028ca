# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Tests for the JSON-lines ledger sink and store replay."""

import pytest

from context_stack.schemas.records import LedgerRow, MemoryFact, TaskFrame
from context_stack.storage.episodic import EpisodicStore
from context_stack.storage.ledger_file import JsonlLedgerSink, read_ledger


@pytest.fixture
def ledger_path(tmp_path):
    return tmp_path / "ledger" / "context.jsonl"


class TestJsonlLedgerSink:
    """Tests for mirroring writes to disk."""

    @pytest.mark.asyncio
    async def test_rows_and_markers_are_written(self, clock, ledger_path):
        """Every append and invalidation should produce one line."""
        store = EpisodicStore(clock=clock, sink=JsonlLedgerSink(ledger_path))
        fact = MemoryFact(
            namespace="playbook", section_id="pitfalls", content="x", event_time=clock.peek()
        )
        await store.append(fact)
        await store.invalidate(fact.id, clock.now())

        entries = list(read_ledger(ledger_path))
        assert isinstance(entries[0], LedgerRow)
        assert entries[0].id == fact.id
        assert entries[1][0] == 0

    def test_bad_line_reports_line_number(self, ledger_path):
        """A corrupt line should raise ValueError naming its line."""
        ledger_path.parent.mkdir(parents=True)
        ledger_path.write_text('\n{"type": "row", "row": {}}\n')
        with pytest.raises(ValueError, match=":2:"):
            list(read_ledger(ledger_path))


class TestReplay:
    """Tests for rebuilding a store from its ledger."""

    @pytest.mark.asyncio
    async def test_replay_restores_current_and_history(self, clock, ledger_path):
        """A replayed store should answer the same queries as the original."""
        store = EpisodicStore(clock=clock, sink=JsonlLedgerSink(ledger_path))
        root = TaskFrame(session_id="s1", goal="build feature", created_at=clock.peek())
        await store.append(root)
        fact = MemoryFact(
            namespace="playbook", section_id="pitfalls", content="x", event_time=clock.peek()
        )
        await store.append(fact)
        await store.append(fact.evolve(helpful=2))
        checkpoint = clock.now()
        await store.invalidate(fact.id, clock.now())

        replayed = EpisodicStore.replay(ledger_path, clock=clock)

        assert len(replayed) == len(store)
        assert [r.id for r in await replayed.query_current("s1")] == [root.id]
        assert await replayed.query_current("playbook") == []
        as_of = await replayed.query_as_of("playbook", checkpoint)
        assert [(r.id, r.helpful) for r in as_of] == [(fact.id, 2)]

    @pytest.mark.asyncio
    async def test_replayed_store_keeps_duplicate_index(self, clock, ledger_path):
        """Duplicate detection should survive a replay."""
        store = EpisodicStore(clock=clock, sink=JsonlLedgerSink(ledger_path))
        fact = MemoryFact(
            namespace="playbook", section_id="pitfalls", content="x", event_time=clock.peek()
        )
        await store.append(fact)

        replayed = EpisodicStore.replay(ledger_path, clock=clock)
        holder = await replayed.find_valid_duplicate("playbook", "pitfalls", fact.content_hash)
        assert holder is not None
        assert holder.id == fact.id


class FlakySink(JsonlLedgerSink):
    """Ledger sink whose next write can be made to fail."""

    def __init__(self, path):
        super().__init__(path)
        self.fail_next = False

    def write_entries(self, entries):
        if self.fail_next:
            self.fail_next = False
            raise OSError("No space left on device")
        super().write_entries(entries)


class TestSinkFailure:
    """Tests for writes whose mirror fails."""

    @pytest.mark.asyncio
    async def test_failed_write_leaves_store_and_file_in_step(self, clock, ledger_path):
        """A failed mirror write should not be applied in memory; replay still works."""
        sink = FlakySink(ledger_path)
        store = EpisodicStore(clock=clock, sink=sink)
        kept = MemoryFact(
            namespace="playbook", section_id="pitfalls", content="x", event_time=clock.peek()
        )
        lost = MemoryFact(
            namespace="playbook", section_id="pitfalls", content="y", event_time=clock.peek()
        )
        await store.append(kept)

        sink.fail_next = True
        with pytest.raises(OSError):
            await store.append(lost)
        sink.fail_next = True
        with pytest.raises(OSError):
            await store.invalidate(kept.id, clock.now())

        assert len(store) == 1
        assert await store.get_current(lost.id) is None
        assert await store.get_current(kept.id) is not None

        later = MemoryFact(
            namespace="playbook", section_id="pitfalls", content="z", event_time=clock.peek()
        )
        await store.append(later)

        replayed = EpisodicStore.replay(ledger_path, clock=clock)
        assert [r.id for r in await replayed.query_current("playbook")] == [kept.id, later.id]
        assert await replayed.history(lost.id) == []

    @pytest.mark.asyncio
    async def test_entries_of_one_write_share_a_block(self, clock, ledger_path):
        """A new version and the marker closing the old one are written together."""
        store = EpisodicStore(clock=clock, sink=JsonlLedgerSink(ledger_path))
        fact = MemoryFact(
            namespace="playbook", section_id="pitfalls", content="x", event_time=clock.peek()
        )
        await store.append(fact)
        row = await store.append(fact.evolve(helpful=1))

        entries = list(read_ledger(ledger_path))
        assert entries[1] == (0, row.ingested_at)
        assert entries[2].sequence == row.sequence
