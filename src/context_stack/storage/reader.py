# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Read-only capability over the episodic store.

The Reflector must never write, so it is handed a StoreReader instead of
the store itself.
"""

from datetime import datetime
from typing import TYPE_CHECKING, Optional

from context_stack.schemas.records import LedgerRow

if TYPE_CHECKING:
    from context_stack.storage.episodic import EpisodicStore, RowFilter


class StoreReader:
    """Exposes only the query side of an EpisodicStore."""

    __slots__ = ("_store",)

    def __init__(self, store: "EpisodicStore") -> None:
        self._store = store

    async def query_current(
        self, session_id: str, row_filter: Optional["RowFilter"] = None
    ) -> list[LedgerRow]:
        return await self._store.query_current(session_id, row_filter)

    async def query_as_of(
        self,
        session_id: str,
        point_in_time: datetime,
        row_filter: Optional["RowFilter"] = None,
    ) -> list[LedgerRow]:
        return await self._store.query_as_of(session_id, point_in_time, row_filter)

    async def get_current(self, entity_id: str) -> Optional[LedgerRow]:
        return await self._store.get_current(entity_id)

    async def history(self, entity_id: str) -> list[LedgerRow]:
        return await self._store.history(entity_id)

    async def find_valid_duplicate(
        self, namespace: str, section_id: str, hash_value: str
    ) -> Optional[LedgerRow]:
        return await self._store.find_valid_duplicate(namespace, section_id, hash_value)

    async def latest_instant(self) -> Optional[datetime]:
        return await self._store.latest_instant()
