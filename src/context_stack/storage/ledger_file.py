# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""JSON-lines mirror of ledger writes.

Every appended row and every marker change is written as one line, so
the file itself is append-only. ``EpisodicStore.replay`` rebuilds a store
from it.

Line formats:
    {"type": "row", "row": {...LedgerRow...}}
    {"type": "marker", "sequence": 12, "valid_to": "2025-01-01T00:00:00+00:00"}
"""

import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Iterator, Union

from pydantic import ValidationError

from context_stack.schemas.records import LedgerRow

logger = logging.getLogger(__name__)


class JsonlLedgerSink:
    """Appends ledger writes to a JSON-lines file.

    Example:
        >>> sink = JsonlLedgerSink(Path(".agent/ledger.jsonl"))
        >>> store = EpisodicStore(sink=sink)
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def write_entries(self, entries: list[Union[LedgerRow, tuple[int, datetime]]]) -> None:
        """Append rows and markers as one block of lines.

        Everything is serialized before the file is opened, so a bad entry
        writes nothing.
        """
        lines = []
        for entry in entries:
            if isinstance(entry, LedgerRow):
                payload = {"type": "row", "row": entry.model_dump(mode="json")}
            else:
                sequence, valid_to = entry
                payload = {"type": "marker", "sequence": sequence, "valid_to": valid_to.isoformat()}
            lines.append(json.dumps(payload, sort_keys=True) + "\n")
        with self._lock:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write("".join(lines))


def read_ledger(path: Path) -> Iterator[Union[LedgerRow, tuple[int, datetime]]]:
    """Yield rows and ``(sequence, valid_to)`` markers in file order.

    Blank lines are skipped. A line that fails to parse raises ValueError
    with its line number; the ledger is not silently truncated.
    """
    with open(path, "r", encoding="utf-8") as f:
        for line_number, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                entry = json.loads(line)
                if entry["type"] == "row":
                    yield LedgerRow.model_validate(entry["row"])
                elif entry["type"] == "marker":
                    yield int(entry["sequence"]), datetime.fromisoformat(entry["valid_to"])
                else:
                    raise ValueError(f"unknown entry type {entry['type']!r}")
            except (json.JSONDecodeError, KeyError, ValidationError, ValueError) as e:
                raise ValueError(f"{path}:{line_number}: invalid ledger entry: {e}") from e
