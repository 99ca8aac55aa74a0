"""Database manager for dispatchhub - session records and workspace layout."""

from pathlib import Path
from typing import Optional

import aiosqlite
from loguru import logger

from .models import Session, SessionStatus, now_iso


class Db:
    """Database interface for session records.

    Only metadata lives here; event logs are JSON-lines files owned by
    HistoryStore and layout rows are managed through LayoutRepository.
    """

    def __init__(self, db_path: str) -> None:
        """Initialize database.

        Args:
            db_path: Path to SQLite database file (":memory:" for tests)
        """
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None

    async def initialize(self) -> None:
        """Connect and create tables."""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row

        schema_path = Path(__file__).parent / "schema.sql"
        with open(schema_path, "r", encoding="utf-8") as f:
            schema_sql = f.read()

        await self._db.executescript(schema_sql)
        await self._db.commit()

    @property
    def conn(self) -> aiosqlite.Connection:
        """Get database connection, asserting it's initialized.

        Raises:
            RuntimeError: If database not initialized
        """
        if self._db is None:
            raise RuntimeError("Database not initialized - call initialize() first")
        return self._db

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    async def upsert_session(self, session: Session) -> None:
        data = session.to_dict()
        await self.conn.execute(
            """
            INSERT INTO sessions (
                session_id, session_type, working_directory, status,
                created_at, closed_at, options
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(session_id) DO UPDATE SET
                status = excluded.status,
                closed_at = excluded.closed_at
            """,
            (
                data["session_id"],
                data["session_type"],
                data["working_directory"],
                data["status"],
                data["created_at"],
                data["closed_at"],
                data["options"],
            ),
        )
        await self.conn.commit()

    async def update_session_status(self, session_id: str, status: SessionStatus) -> None:
        """Persist a status change; terminal states also stamp closed_at."""
        closed_at = now_iso() if status.is_terminal else None
        await self.conn.execute(
            "UPDATE sessions SET status = ?, closed_at = COALESCE(?, closed_at) WHERE session_id = ?",
            (status.value, closed_at, session_id),
        )
        await self.conn.commit()

    async def get_session(self, session_id: str) -> Optional[Session]:
        """Get session by ID.

        Returns:
            Session object or None if not found
        """
        cursor = await self.conn.execute("SELECT * FROM sessions WHERE session_id = ?", (session_id,))
        row = await cursor.fetchone()
        if not row:
            return None
        return Session.from_dict(dict(row))

    async def list_sessions(self, status: Optional[SessionStatus] = None) -> list[Session]:
        query = "SELECT * FROM sessions"
        params: list[object] = []
        if status is not None:
            query += " WHERE status = ?"
            params.append(status.value)
        query += " ORDER BY created_at DESC"
        cursor = await self.conn.execute(query, params)
        rows = await cursor.fetchall()
        return [Session.from_dict(dict(row)) for row in rows]

    async def delete_session(self, session_id: str) -> None:
        await self.conn.execute("DELETE FROM sessions WHERE session_id = ?", (session_id,))
        await self.conn.commit()
        logger.debug("Deleted session {} from database", session_id[:8])

    async def mark_orphaned_sessions(self) -> int:
        """Mark sessions left non-terminal by a previous daemon run as errored.

        Their backends died with the old process, so they can never be resumed.

        Returns:
            Number of sessions updated
        """
        cursor = await self.conn.execute(
            "UPDATE sessions SET status = ?, closed_at = ? WHERE status NOT IN (?, ?)",
            (
                SessionStatus.ERRORED.value,
                now_iso(),
                SessionStatus.CLOSED.value,
                SessionStatus.ERRORED.value,
            ),
        )
        await self.conn.commit()
        updated = cursor.rowcount
        if updated > 0:
            logger.info("Marked {} orphaned session(s) as errored", updated)
        return updated
