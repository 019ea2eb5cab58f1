"""Boundary to the external record store (products, inventory, POs, ...).

Business entities are opaque dictionaries here; their schemas and
consistency model belong to the record store, not to the orchestrator.
"""

from __future__ import annotations

import copy
import itertools
from typing import Any, Callable, Dict, List, Optional, Protocol

import yaml

Record = Dict[str, Any]


class RecordStore(Protocol):
    async def create(self, kind: str, data: Record) -> Record:
        """Create a record and return it with its assigned ``id``."""

    async def get(self, kind: str, record_id: Any) -> Optional[Record]:
        """Return a record or ``None``."""

    async def update(self, kind: str, record_id: Any, changes: Record) -> Record:
        """Apply ``changes`` and return the updated record."""

    async def query(
        self, kind: str, where: Optional[Callable[[Record], bool]] = None
    ) -> List[Record]:
        """Return records of ``kind`` matching ``where``."""


class InMemoryRecordStore:
    """Dictionary-backed record store for tests, demos and the CLI."""

    def __init__(self, seed: Optional[Dict[str, List[Record]]] = None) -> None:
        self._tables: Dict[str, Dict[Any, Record]] = {}
        self._ids = itertools.count(1)
        for kind, rows in (seed or {}).items():
            for row in rows:
                self._insert(kind, row)

    def _insert(self, kind: str, data: Record) -> Record:
        record = copy.deepcopy(data)
        record.setdefault("id", next(self._ids))
        self._tables.setdefault(kind, {})[record["id"]] = record
        return copy.deepcopy(record)

    async def create(self, kind: str, data: Record) -> Record:
        return self._insert(kind, data)

    async def get(self, kind: str, record_id: Any) -> Optional[Record]:
        record = self._tables.get(kind, {}).get(record_id)
        return copy.deepcopy(record) if record is not None else None

    async def update(self, kind: str, record_id: Any, changes: Record) -> Record:
        table = self._tables.get(kind, {})
        if record_id not in table:
            raise KeyError(f"{kind} {record_id} does not exist")
        table[record_id].update(copy.deepcopy(changes))
        return copy.deepcopy(table[record_id])

    async def query(
        self, kind: str, where: Optional[Callable[[Record], bool]] = None
    ) -> List[Record]:
        rows = self._tables.get(kind, {}).values()
        return [copy.deepcopy(r) for r in rows if where is None or where(r)]

    def count(self, kind: str) -> int:
        return len(self._tables.get(kind, {}))

    @classmethod
    def from_file(cls, path: str) -> "InMemoryRecordStore":
        """Seed from a YAML or JSON file mapping record kinds to lists of rows."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{path} must map record kinds to lists of records")
        return cls(data)
