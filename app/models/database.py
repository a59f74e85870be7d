import json
from pathlib import Path
import aiosqlite


async def init_db(db_path: str):
    """Create tables if they don't exist. Called once on app startup."""
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    async with aiosqlite.connect(db_path) as db:
        await db.executescript("""
            CREATE TABLE IF NOT EXISTS sessions (
                id          TEXT PRIMARY KEY,
                created_at  TEXT NOT NULL DEFAULT (datetime('now')),
                updated_at  TEXT NOT NULL DEFAULT (datetime('now')),
                phase       TEXT NOT NULL,
                state       TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS messages (
                id          INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id  TEXT NOT NULL,
                role        TEXT NOT NULL,
                content     TEXT NOT NULL,
                created_at  TEXT NOT NULL DEFAULT (datetime('now'))
            );

            CREATE INDEX IF NOT EXISTS idx_messages_session
                ON messages(session_id, id);

            CREATE TABLE IF NOT EXISTS events (
                id          INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id  TEXT NOT NULL,
                event_type  TEXT NOT NULL,
                event_data  TEXT,
                created_at  TEXT NOT NULL DEFAULT (datetime('now'))
            );

            CREATE INDEX IF NOT EXISTS idx_events_session
                ON events(session_id);

            CREATE INDEX IF NOT EXISTS idx_events_type
                ON events(event_type, created_at);
        """)
        await db.commit()


# --- Conversation state rows ---

async def get_state_row(db_path: str, session_id: str) -> dict | None:
    """Fetch the stored state row for a session. Returns None if not found."""
    async with aiosqlite.connect(db_path) as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute(
            "SELECT * FROM sessions WHERE id = ?",
            (session_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return dict(row)


async def upsert_state_row(db_path: str, session_id: str, phase: str, state_json: str):
    """Insert or replace the serialized state of a session."""
    async with aiosqlite.connect(db_path) as db:
        await db.execute(
            """
            INSERT INTO sessions (id, phase, state) VALUES (?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                phase = excluded.phase,
                state = excluded.state,
                updated_at = datetime('now')
            """,
            (session_id, phase, state_json),
        )
        await db.commit()


async def list_sessions(db_path: str, limit: int = 20, offset: int = 0) -> list[dict]:
    """List sessions with their message counts, most recent first."""
    async with aiosqlite.connect(db_path) as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute(
            """
            SELECT s.id, s.created_at, s.updated_at, s.phase,
                   (SELECT COUNT(*) FROM messages m WHERE m.session_id = s.id) AS message_count
            FROM sessions s
            ORDER BY s.updated_at DESC, s.id
            LIMIT ? OFFSET ?
            """,
            (limit, offset),
        )
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]


# --- Message CRUD ---

async def save_message(db_path: str, session_id: str, role: str, content: str) -> int | None:
    """Save a transcript line. Returns the message id."""
    async with aiosqlite.connect(db_path) as db:
        cursor = await db.execute(
            "INSERT INTO messages (session_id, role, content) VALUES (?, ?, ?)",
            (session_id, role, content),
        )
        await db.commit()
        return cursor.lastrowid


async def get_messages(db_path: str, session_id: str) -> list[dict]:
    """Load the transcript of a session, oldest first."""
    async with aiosqlite.connect(db_path) as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute(
            "SELECT * FROM messages WHERE session_id = ? ORDER BY id ASC",
            (session_id,),
        )
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]


# --- Event Logging ---

async def log_event(
    db_path: str,
    session_id: str,
    event_type: str,
    event_data: dict | None = None,
):
    """Log an analytics event (product_created, generation_failed, etc.)."""
    async with aiosqlite.connect(db_path) as db:
        await db.execute(
            "INSERT INTO events (session_id, event_type, event_data) VALUES (?, ?, ?)",
            (session_id, event_type, json.dumps(event_data) if event_data else None),
        )
        await db.commit()


async def get_events(db_path: str, session_id: str) -> list[dict]:
    async with aiosqlite.connect(db_path) as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute(
            "SELECT * FROM events WHERE session_id = ? ORDER BY id ASC",
            (session_id,),
        )
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]
