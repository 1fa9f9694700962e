"""Persisted chat turns with SQLite storage."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

import aiosqlite

from steerline.config import get_config
from steerline.logging import get_logger

log = get_logger(__name__)


def _utcnow_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(UTC).isoformat()


@dataclass
class ChatTurn:
    """A single user or assistant turn."""

    role: str  # "user", "assistant"
    content: str
    created_at: str = field(default_factory=_utcnow_iso)


class ChatHistory:
    """Append-only chat log keyed by session key."""

    def __init__(self, db_path: Path | str | None = None):
        """Initialize chat history.

        Args:
            db_path: Optional database path override
        """
        if db_path is None:
            config = get_config()
            self.db_path = Path(config.history.path).expanduser()
        else:
            self.db_path = Path(db_path).expanduser()

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._db: aiosqlite.Connection | None = None

    async def _ensure_db(self) -> aiosqlite.Connection:
        """Ensure database is initialized."""
        if self._db is None:
            self._db = await aiosqlite.connect(str(self.db_path))
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS chat_turns (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_key TEXT NOT NULL,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)
            await self._db.execute(
                "CREATE INDEX IF NOT EXISTS idx_chat_turns_session ON chat_turns(session_key, id DESC)"
            )
            await self._db.commit()
        return self._db

    async def append(self, session_key: str, role: str, content: str) -> None:
        text = str(content or "").strip()
        if not text:
            return
        db = await self._ensure_db()
        await db.execute(
            "INSERT INTO chat_turns (session_key, role, content, created_at) VALUES (?, ?, ?, ?)",
            (session_key, role, text, _utcnow_iso()),
        )
        await db.commit()

    async def recent(self, session_key: str, limit: int = 10) -> list[ChatTurn]:
        """Return up to ``limit`` most recent turns, oldest first."""
        db = await self._ensure_db()
        async with db.execute(
            """
            SELECT role, content, created_at
            FROM chat_turns
            WHERE session_key = ?
            ORDER BY id DESC
            LIMIT ?
            """,
            (session_key, max(0, int(limit))),
        ) as cursor:
            rows = await cursor.fetchall()
        return [ChatTurn(role=row[0], content=row[1], created_at=row[2]) for row in reversed(rows)]

    async def clear(self, session_key: str) -> int:
        db = await self._ensure_db()
        cursor = await db.execute("DELETE FROM chat_turns WHERE session_key = ?", (session_key,))
        await db.commit()
        log.info("Cleared chat history", session_key=session_key, removed=cursor.rowcount)
        return cursor.rowcount

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None
