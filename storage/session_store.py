# storage/session_store.py
"""SQLite persistence for generation session snapshots."""

from __future__ import annotations

import os
import sqlite3

import aiosqlite
import structlog
from config import SESSION_DB_PATH

from models import GenerationSession

logger = structlog.get_logger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS generation_sessions (
    session_id TEXT PRIMARY KEY,
    blueprint_id TEXT NOT NULL,
    blueprint_title TEXT,
    status TEXT NOT NULL,
    snapshot TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
)
"""


class SessionStore:
    """Save and load ``GenerationSession`` snapshots as JSON rows."""

    def __init__(self, db_path: str = SESSION_DB_PATH) -> None:
        self.db_path = db_path
        self._initialized = False

    async def _connect(self) -> aiosqlite.Connection:
        if not self._initialized:
            db_dir = os.path.dirname(self.db_path)
            if db_dir:
                os.makedirs(db_dir, exist_ok=True)
        conn = await aiosqlite.connect(self.db_path, timeout=10.0)
        conn.row_factory = aiosqlite.Row
        if not self._initialized:
            await conn.execute(_SCHEMA)
            await conn.commit()
            self._initialized = True
        return conn

    async def save(self, session: GenerationSession) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO generation_sessions
                    (session_id, blueprint_id, blueprint_title, status, snapshot,
                     created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(session_id) DO UPDATE SET
                    status = excluded.status,
                    snapshot = excluded.snapshot,
                    updated_at = excluded.updated_at
                """,
                (
                    session.id,
                    session.blueprint_id,
                    session.blueprint_title,
                    session.status.value,
                    session.model_dump_json(),
                    session.created_at.isoformat(),
                    session.last_activity_at.isoformat(),
                ),
            )
            await conn.commit()
        except sqlite3.Error as e:
            logger.error(
                "Failed to save session snapshot", session_id=session.id, error=str(e)
            )
            raise
        finally:
            await conn.close()

    async def load(self, session_id: str) -> GenerationSession | None:
        conn = await self._connect()
        try:
            async with conn.execute(
                "SELECT snapshot FROM generation_sessions WHERE session_id = ?",
                (session_id,),
            ) as cursor:
                row = await cursor.fetchone()
        finally:
            await conn.close()
        if row is None:
            return None
        return GenerationSession.model_validate_json(row["snapshot"])

    async def list_sessions(self) -> list[dict[str, str]]:
        """Return id, blueprint, title, status and update time for every session."""
        conn = await self._connect()
        try:
            async with conn.execute(
                """
                SELECT session_id, blueprint_id, blueprint_title, status, updated_at
                FROM generation_sessions ORDER BY updated_at DESC
                """
            ) as cursor:
                rows = await cursor.fetchall()
        finally:
            await conn.close()
        return [dict(row) for row in rows]

    async def delete(self, session_id: str) -> bool:
        conn = await self._connect()
        try:
            cursor = await conn.execute(
                "DELETE FROM generation_sessions WHERE session_id = ?", (session_id,)
            )
            await conn.commit()
            return cursor.rowcount > 0
        finally:
            await conn.close()
