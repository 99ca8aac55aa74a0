"""Layout repository: per-client tile placement of sessions.

Older clients name the session key `runId`; it is the same identifier as
`sessionId` and both are folded into `session_id` before storage.
"""

from __future__ import annotations

from typing import Mapping, Optional

from loguru import logger

from dispatchhub.core.db import Db
from dispatchhub.core.errors import BadRequest
from dispatchhub.core.models import now_iso

SESSION_KEY_ALIASES = ("session_id", "sessionId", "run_id", "runId")


def normalize_session_key(params: Mapping[str, object]) -> str:
    """Resolve the canonical session id from any of its accepted names.

    Raises:
        BadRequest: no key given, or two names disagree
    """
    found: Optional[str] = None
    for name in SESSION_KEY_ALIASES:
        value = params.get(name)
        if value is None or value == "":
            continue
        if not isinstance(value, str):
            raise BadRequest(f"{name} must be a string")
        if found is not None and value != found:
            raise BadRequest("sessionId and runId refer to different sessions")
        found = value
    if found is None:
        raise BadRequest("sessionId (or runId) is required")
    return found


class LayoutRepository:
    """CRUD over the workspace_layout table."""

    def __init__(self, db: Db) -> None:
        self.db = db

    async def get(self, client_id: str) -> dict[str, str]:
        cursor = await self.db.conn.execute(
            "SELECT session_id, tile_id FROM workspace_layout WHERE client_id = ? ORDER BY updated_at",
            (client_id,),
        )
        rows = await cursor.fetchall()
        return {row["session_id"]: row["tile_id"] for row in rows}

    async def set(self, session_id: str, client_id: str, tile_id: str) -> None:
        """Place a session in a tile for one client (upsert)."""
        if not session_id or not client_id or not tile_id:
            raise BadRequest("sessionId, clientId and tileId are required")
        await self.db.conn.execute(
            """
            INSERT INTO workspace_layout (session_id, client_id, tile_id, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(session_id, client_id) DO UPDATE SET
                tile_id = excluded.tile_id,
                updated_at = excluded.updated_at
            """,
            (session_id, client_id, tile_id, now_iso()),
        )
        await self.db.conn.commit()
        logger.debug("Layout set: {} -> {} for client {}", session_id[:8], tile_id, client_id)

    async def remove(self, session_id: str, client_id: str) -> bool:
        cursor = await self.db.conn.execute(
            "DELETE FROM workspace_layout WHERE session_id = ? AND client_id = ?",
            (session_id, client_id),
        )
        await self.db.conn.commit()
        return cursor.rowcount > 0

    async def remove_session(self, session_id: str) -> int:
        """Drop a session's placement for every client."""
        cursor = await self.db.conn.execute("DELETE FROM workspace_layout WHERE session_id = ?", (session_id,))
        await self.db.conn.commit()
        return cursor.rowcount
