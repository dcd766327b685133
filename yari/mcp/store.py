"""SQLite store for external sessions and tool usage records."""

import sqlite3
from contextlib import contextmanager
from pathlib import Path

from loguru import logger

from yari.mcp.models import ExternalSession, SessionStatus, ToolUsageRecord


class SessionStore:
    """
    Durable mirror of the broker's session table.

    Each session is stored as one row holding the full serialized session
    next to a few indexed columns. Every write is a single upsert inside its
    own transaction, so a reader sees either the old row or the new one.
    """

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        """Initialize database tables."""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS external_sessions (
                    session_id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    server_url TEXT NOT NULL,
                    status TEXT NOT NULL,
                    data TEXT NOT NULL,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL
                )
            """)

            # Audit log of every tool call routed through the broker
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tool_usage (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    tool_name TEXT NOT NULL,
                    success INTEGER NOT NULL,
                    error TEXT,
                    timestamp INTEGER NOT NULL
                )
            """)

            conn.execute("CREATE INDEX IF NOT EXISTS idx_sessions_user ON external_sessions(user_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_sessions_updated ON external_sessions(updated_at)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_usage_session ON tool_usage(session_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_usage_timestamp ON tool_usage(timestamp)")

            conn.commit()

    @contextmanager
    def _get_connection(self):
        """Get database connection with proper cleanup."""
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def save(self, session: ExternalSession) -> None:
        """Insert or replace a session in one transaction."""
        with self._get_connection() as conn:
            with conn:
                conn.execute(
                    """INSERT INTO external_sessions
                       (session_id, user_id, server_url, status, data, created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?)
                       ON CONFLICT(session_id) DO UPDATE SET
                           user_id = excluded.user_id,
                           server_url = excluded.server_url,
                           status = excluded.status,
                           data = excluded.data,
                           updated_at = excluded.updated_at""",
                    (session.session_id, session.user_id, session.server_url, session.status.value,
                     session.model_dump_json(), session.created_at, session.updated_at),
                )

    def get(self, session_id: str) -> ExternalSession | None:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT data FROM external_sessions WHERE session_id = ?", (session_id,)
            ).fetchone()
        return ExternalSession.model_validate_json(row["data"]) if row else None

    def list_sessions(self, user_id: str | None = None, status: SessionStatus | None = None) -> list[ExternalSession]:
        query = "SELECT data FROM external_sessions WHERE 1 = 1"
        params: list = []
        if user_id:
            query += " AND user_id = ?"
            params.append(user_id)
        if status:
            query += " AND status = ?"
            params.append(status.value)
        query += " ORDER BY updated_at DESC"

        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [ExternalSession.model_validate_json(row["data"]) for row in rows]

    def delete(self, session_id: str) -> bool:
        with self._get_connection() as conn:
            with conn:
                cursor = conn.execute("DELETE FROM external_sessions WHERE session_id = ?", (session_id,))
        return cursor.rowcount > 0

    def stale_session_ids(self, cutoff_ms: int) -> list[str]:
        """Ids of sessions last updated before `cutoff_ms`."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT session_id FROM external_sessions WHERE updated_at < ?", (cutoff_ms,)
            ).fetchall()
        return [row["session_id"] for row in rows]

    def delete_if_older(self, session_id: str, cutoff_ms: int) -> bool:
        """Delete a session only if it was last updated before `cutoff_ms`."""
        with self._get_connection() as conn:
            with conn:
                cursor = conn.execute(
                    "DELETE FROM external_sessions WHERE session_id = ? AND updated_at < ?",
                    (session_id, cutoff_ms),
                )
        return cursor.rowcount > 0

    def record_usage(self, record: ToolUsageRecord) -> None:
        with self._get_connection() as conn:
            with conn:
                conn.execute(
                    """INSERT INTO tool_usage
                       (session_id, user_id, tool_name, success, error, timestamp)
                       VALUES (?, ?, ?, ?, ?, ?)""",
                    (record.session_id, record.user_id, record.tool_name,
                     int(record.success), record.error, record.timestamp),
                )

    def get_usage(self, session_id: str | None = None, limit: int = 100) -> list[ToolUsageRecord]:
        query = "SELECT * FROM tool_usage"
        params: list = []
        if session_id:
            query += " WHERE session_id = ?"
            params.append(session_id)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            ToolUsageRecord(
                session_id=row["session_id"],
                user_id=row["user_id"],
                tool_name=row["tool_name"],
                success=bool(row["success"]),
                error=row["error"],
                timestamp=row["timestamp"],
            )
            for row in rows
        ]

    def delete_usage_older_than(self, cutoff_ms: int) -> int:
        """Prune usage records written before `cutoff_ms`. Returns how many were removed."""
        with self._get_connection() as conn:
            with conn:
                cursor = conn.execute("DELETE FROM tool_usage WHERE timestamp < ?", (cutoff_ms,))
        if cursor.rowcount:
            logger.info(f"Pruned {cursor.rowcount} usage records from {self.db_path}")
        return cursor.rowcount
