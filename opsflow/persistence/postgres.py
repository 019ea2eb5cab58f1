"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

import json
from typing import Any

import asyncpg

from .documents import DocumentRepository


class PostgresWorkflowRepository(DocumentRepository):
    """Persist orchestration state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS opsflow_documents (
                seq BIGSERIAL PRIMARY KEY,
                collection TEXT NOT NULL,
                key TEXT NOT NULL,
                body JSONB NOT NULL,
                UNIQUE (collection, key)
            )
            """
        )

    # ------------------------------------------------------------------
    async def _put(self, collection: str, key: str, document: dict[str, Any]) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO opsflow_documents (collection, key, body) VALUES ($1, $2, $3)
                ON CONFLICT (collection, key) DO UPDATE SET body = EXCLUDED.body
                """,
                collection,
                key,
                json.dumps(document),
            )
        finally:
            await conn.close()

    async def _get(self, collection: str, key: str) -> dict[str, Any] | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT body FROM opsflow_documents WHERE collection = $1 AND key = $2",
                collection,
                key,
            )
        finally:
            await conn.close()
        if not row:
            return None
        return json.loads(row["body"])

    async def _all(self, collection: str) -> list[dict[str, Any]]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT body FROM opsflow_documents WHERE collection = $1 ORDER BY seq",
                collection,
            )
        finally:
            await conn.close()
        return [json.loads(r["body"]) for r in rows]
