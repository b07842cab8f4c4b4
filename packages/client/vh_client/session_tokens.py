"""
SQLite persistence for the signed-in session's tokens.

Stores a single row per client so ``restore_session`` can resolve the
identity after a restart.
"""

from __future__ import annotations

import os
from datetime import datetime, timezone

import aiosqlite

from .models import SessionTokens

_SCHEMA = """
CREATE TABLE IF NOT EXISTS session_tokens (
    slot          TEXT PRIMARY KEY,
    user_id       TEXT NOT NULL,
    access_token  TEXT NOT NULL,
    refresh_token TEXT NOT NULL DEFAULT '',
    updated_at    TEXT NOT NULL
);
"""

_SLOT = "current"


class TokenStore:
    """Async SQLite store for the persisted session."""

    def __init__(self, db_path: str):
        self._db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def open(self) -> None:
        if self._db_path != ":memory:":
            os.makedirs(os.path.dirname(self._db_path) or ".", exist_ok=True)
        self._db = await aiosqlite.connect(self._db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(_SCHEMA)
        await self._db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    async def load(self) -> SessionTokens | None:
        assert self._db
        cursor = await self._db.execute(
            "SELECT user_id, access_token, refresh_token FROM session_tokens WHERE slot = ?",
            (_SLOT,),
        )
        row = await cursor.fetchone()
        if not row:
            return None
        return SessionTokens(
            user_id=row["user_id"],
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
        )

    async def save(self, tokens: SessionTokens) -> None:
        assert self._db
        now = datetime.now(timezone.utc).isoformat()
        await self._db.execute(
            """INSERT INTO session_tokens (slot, user_id, access_token, refresh_token, updated_at)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(slot) DO UPDATE SET
                   user_id=excluded.user_id,
                   access_token=excluded.access_token,
                   refresh_token=excluded.refresh_token,
                   updated_at=excluded.updated_at""",
            (_SLOT, tokens.user_id, tokens.access_token, tokens.refresh_token, now),
        )
        await self._db.commit()

    async def clear(self) -> None:
        assert self._db
        await self._db.execute("DELETE FROM session_tokens WHERE slot = ?", (_SLOT,))
        await self._db.commit()
