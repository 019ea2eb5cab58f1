"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import copy
from typing import Any, Dict

from .documents import DocumentRepository


class InMemoryWorkflowRepository(DocumentRepository):
    """Store orchestration state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._collections: Dict[str, Dict[str, dict[str, Any]]] = {}

    # ------------------------------------------------------------------
    async def _put(self, collection: str, key: str, document: dict[str, Any]) -> None:
        # dicts keep insertion order, and reassigning an existing key keeps its slot
        self._collections.setdefault(collection, {})[key] = copy.deepcopy(document)

    async def _get(self, collection: str, key: str) -> dict[str, Any] | None:
        document = self._collections.get(collection, {}).get(key)
        return copy.deepcopy(document) if document is not None else None

    async def _all(self, collection: str) -> list[dict[str, Any]]:
        return [copy.deepcopy(d) for d in self._collections.get(collection, {}).values()]
