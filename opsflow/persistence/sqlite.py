"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from pathlib import Path
from typing import Any

from .documents import DocumentRepository


class SQLiteWorkflowRepository(DocumentRepository):
    """Persist orchestration state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS documents (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                collection TEXT NOT NULL,
                key TEXT NOT NULL,
                body TEXT NOT NULL,
                UNIQUE (collection, key)
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS documents_collection ON documents (collection, seq)"
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Storage primitives
    async def _put(self, collection: str, key: str, document: dict[str, Any]) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO documents (collection, key, body) VALUES (?, ?, ?)
            ON CONFLICT (collection, key) DO UPDATE SET body = excluded.body
            """,
            collection,
            key,
            json.dumps(document),
        )

    async def _get(self, collection: str, key: str) -> dict[str, Any] | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT body FROM documents WHERE collection = ? AND key = ?",
            collection,
            key,
        )
        if not row:
            return None
        return json.loads(row["body"])

    async def _all(self, collection: str) -> list[dict[str, Any]]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT body FROM documents WHERE collection = ? ORDER BY seq",
            collection,
        )
        return [json.loads(r["body"]) for r in rows]
