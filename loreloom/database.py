"""
LoreLoom Database Module
SQLite storage for world books, their entries, character links, and
per-session temporal (sticky/cooldown) state.
"""

import sqlite3
import json
import logging
import os
import threading
import time
from typing import List, Dict, Any, Optional
from contextlib import contextmanager

from loreloom.config_loader import CONFIG, resolve_path
from loreloom.models import WorldBook, WorldBookEntry

logger = logging.getLogger(__name__)

# Global database path
DB_PATH = resolve_path(CONFIG["storage"]["db_path"])

# Thread-local storage for connections
_thread_local = threading.local()

# Entry fields stored in dedicated columns; everything else goes to metadata
_ENTRY_COLUMNS = ("id", "title", "content", "strategy", "enabled", "primary_keys", "secondary_keys")

CORE_TABLES = ("worldbooks", "worldbook_entries", "worldbook_characters", "worldbook_temporal_state")


def set_db_path(path: str) -> None:
    """Point the module at a different database file (closes this thread's connection)."""
    global DB_PATH
    close_connection()
    DB_PATH = path


def close_connection() -> None:
    connection = getattr(_thread_local, 'connection', None)
    if connection is not None:
        connection.close()
    _thread_local.connection = None
    _thread_local.path = None


@contextmanager
def get_connection():
    """Get a thread-safe database connection with context manager."""
    if getattr(_thread_local, 'connection', None) is None or getattr(_thread_local, 'path', None) != DB_PATH:
        close_connection()
        directory = os.path.dirname(DB_PATH)
        if directory:
            os.makedirs(directory, exist_ok=True)

        _thread_local.connection = sqlite3.connect(DB_PATH, check_same_thread=False)
        _thread_local.connection.row_factory = sqlite3.Row
        _thread_local.path = DB_PATH

        _thread_local.connection.execute("PRAGMA synchronous = FULL")
        _thread_local.connection.execute("PRAGMA journal_mode = WAL")
        _thread_local.connection.execute("PRAGMA foreign_keys = ON")

    try:
        yield _thread_local.connection
    except Exception:
        _thread_local.connection.rollback()
        raise


def init_db():
    """Initialize database tables if they don't exist."""
    with get_connection() as conn:
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS worldbooks (
                id TEXT PRIMARY KEY,
                name TEXT,
                description TEXT,
                enabled BOOLEAN DEFAULT 1,
                settings TEXT,
                created_at INTEGER,
                updated_at INTEGER
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS worldbook_entries (
                world_book_id TEXT NOT NULL,
                id TEXT NOT NULL,
                sort_index INTEGER,
                title TEXT,
                content TEXT,
                strategy TEXT,
                enabled BOOLEAN,
                primary_keys TEXT,
                secondary_keys TEXT,
                metadata TEXT,
                updated_at INTEGER,
                PRIMARY KEY (world_book_id, id),
                FOREIGN KEY (world_book_id) REFERENCES worldbooks (id) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS worldbook_characters (
                world_book_id TEXT NOT NULL,
                character_id TEXT NOT NULL,
                PRIMARY KEY (world_book_id, character_id),
                FOREIGN KEY (world_book_id) REFERENCES worldbooks (id) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS worldbook_temporal_state (
                world_book_id TEXT NOT NULL,
                session_id TEXT NOT NULL,
                entry_id TEXT NOT NULL,
                sticky_remaining INTEGER DEFAULT 0,
                cooldown_remaining INTEGER DEFAULT 0,
                updated_at INTEGER,
                PRIMARY KEY (world_book_id, session_id, entry_id),
                FOREIGN KEY (world_book_id) REFERENCES worldbooks (id) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_worldbook_characters_character
            ON worldbook_characters (character_id)
        """)

        conn.commit()


def verify_database_health() -> bool:
    """Run on startup to catch corruption early.

    Performs SQLite integrity check and verifies core tables exist.
    Returns True if healthy, False if issues detected.
    """
    try:
        with get_connection() as conn:
            result = conn.execute("PRAGMA integrity_check").fetchone()
            if result[0] != "ok":
                logger.error(f"[DB] Database corruption detected: {result[0]}")
                return False

            placeholders = ", ".join("?" for _ in CORE_TABLES)
            cursor = conn.execute(f"""
                SELECT COUNT(*) FROM sqlite_master
                WHERE type='table' AND name IN ({placeholders})
            """, CORE_TABLES)
            table_count = cursor.fetchone()[0]
            if table_count != len(CORE_TABLES):
                logger.error(f"[DB] Missing core tables ({table_count}/{len(CORE_TABLES)} found)")
                return False

            logger.info("[DB] Database integrity verified")
            return True
    except Exception as e:
        logger.error(f"[DB] Database health check failed: {e}")
        return False


# ============================================================================
# WORLD BOOK OPERATIONS
# ============================================================================

def _entry_from_row(row: sqlite3.Row) -> WorldBookEntry:
    metadata = json.loads(row['metadata']) if row['metadata'] else {}
    return WorldBookEntry.model_validate({
        **metadata,
        'id': row['id'],
        'title': row['title'] or "",
        'content': row['content'] or "",
        'strategy': row['strategy'],
        'enabled': bool(row['enabled']),
        'primary_keys': json.loads(row['primary_keys']) if row['primary_keys'] else [],
        'secondary_keys': json.loads(row['secondary_keys']) if row['secondary_keys'] else [],
    })


def _load_world_book(cursor: sqlite3.Cursor, row: sqlite3.Row) -> WorldBook:
    world_book_id = row['id']

    cursor.execute("""
        SELECT id, title, content, strategy, enabled, primary_keys, secondary_keys, metadata
        FROM worldbook_entries
        WHERE world_book_id = ?
        ORDER BY sort_index
    """, (world_book_id,))
    entries = [_entry_from_row(entry_row) for entry_row in cursor.fetchall()]

    cursor.execute("""
        SELECT character_id FROM worldbook_characters
        WHERE world_book_id = ?
        ORDER BY rowid
    """, (world_book_id,))
    character_ids = [link_row['character_id'] for link_row in cursor.fetchall()]

    settings = json.loads(row['settings']) if row['settings'] else {}

    return WorldBook.model_validate({
        'id': world_book_id,
        'name': row['name'] or "",
        'description': row['description'] or "",
        'enabled': bool(row['enabled']),
        'settings': settings,
        'entries': entries,
        'character_ids': character_ids,
    })


def db_get_all_world_books() -> List[WorldBook]:
    """Get all world books including entries."""
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute("SELECT id, name, description, enabled, settings FROM worldbooks ORDER BY name, id")
        rows = cursor.fetchall()
        return [_load_world_book(cursor, row) for row in rows]


def db_get_world_book(world_book_id: str) -> Optional[WorldBook]:
    """Get a specific world book by id."""
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute("SELECT id, name, description, enabled, settings FROM worldbooks WHERE id = ?", (world_book_id,))
        row = cursor.fetchone()
        if not row:
            return None
        return _load_world_book(cursor, row)


def db_get_world_book_by_name(name: str) -> Optional[WorldBook]:
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute("SELECT id, name, description, enabled, settings FROM worldbooks WHERE name = ? ORDER BY id LIMIT 1", (name,))
        row = cursor.fetchone()
        if not row:
            return None
        return _load_world_book(cursor, row)


def db_save_world_book(world_book: WorldBook) -> bool:
    """Save or update a world book with all its entries and character links.

    Entries and links are deleted and re-inserted, so the stored entry order
    always matches ``world_book.entries``.
    """
    try:
        now = int(time.time())
        with get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                INSERT INTO worldbooks (id, name, description, enabled, settings, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    description = excluded.description,
                    enabled = excluded.enabled,
                    settings = excluded.settings,
                    updated_at = excluded.updated_at
            """, (world_book.id, world_book.name, world_book.description, world_book.enabled,
                  json.dumps(world_book.settings.model_dump(), ensure_ascii=False), now, now))

            cursor.execute("DELETE FROM worldbook_entries WHERE world_book_id = ?", (world_book.id,))
            for sort_index, entry in enumerate(world_book.entries):
                data = entry.model_dump()
                metadata = {k: v for k, v in data.items() if k not in _ENTRY_COLUMNS}
                cursor.execute("""
                    INSERT INTO worldbook_entries
                    (world_book_id, id, sort_index, title, content, strategy, enabled,
                     primary_keys, secondary_keys, metadata, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (world_book.id, entry.id, sort_index, entry.title, entry.content, entry.strategy,
                      entry.enabled, json.dumps(entry.primary_keys, ensure_ascii=False),
                      json.dumps(entry.secondary_keys, ensure_ascii=False),
                      json.dumps(metadata, ensure_ascii=False), now))

            cursor.execute("DELETE FROM worldbook_characters WHERE world_book_id = ?", (world_book.id,))
            for character_id in dict.fromkeys(world_book.character_ids):
                cursor.execute("""
                    INSERT INTO worldbook_characters (world_book_id, character_id) VALUES (?, ?)
                """, (world_book.id, character_id))

            conn.commit()
            return True
    except Exception as e:
        logger.error(f"[DB] Error saving world book {world_book.id}: {e}")
        return False


def db_delete_world_book(world_book_id: str) -> bool:
    """Delete a world book with its entries, links and temporal state."""
    try:
        with get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("DELETE FROM worldbooks WHERE id = ?", (world_book_id,))
            conn.commit()
            return cursor.rowcount > 0
    except Exception as e:
        logger.error(f"[DB] Error deleting world book {world_book_id}: {e}")
        return False


def db_link_character(world_book_id: str, character_id: str) -> bool:
    try:
        with get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT 1 FROM worldbooks WHERE id = ?", (world_book_id,))
            if not cursor.fetchone():
                return False
            cursor.execute("""
                INSERT OR IGNORE INTO worldbook_characters (world_book_id, character_id) VALUES (?, ?)
            """, (world_book_id, character_id))
            conn.commit()
            return True
    except Exception as e:
        logger.error(f"[DB] Error linking character {character_id} to {world_book_id}: {e}")
        return False


def db_unlink_character(world_book_id: str, character_id: str) -> bool:
    try:
        with get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                DELETE FROM worldbook_characters WHERE world_book_id = ? AND character_id = ?
            """, (world_book_id, character_id))
            conn.commit()
            return cursor.rowcount > 0
    except Exception as e:
        logger.error(f"[DB] Error unlinking character {character_id} from {world_book_id}: {e}")
        return False


def db_get_world_books_for_character(character_id: str) -> List[WorldBook]:
    """World books linked to a character, in the order they were linked."""
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute("""
            SELECT w.id, w.name, w.description, w.enabled, w.settings
            FROM worldbook_characters c
            JOIN worldbooks w ON w.id = c.world_book_id
            WHERE c.character_id = ?
            ORDER BY c.rowid
        """, (character_id,))
        rows = cursor.fetchall()
        return [_load_world_book(cursor, row) for row in rows]


# ============================================================================
# TEMPORAL STATE OPERATIONS
# ============================================================================

def db_get_temporal_state(world_book_id: str, session_id: str) -> Dict[str, Dict[str, int]]:
    """Get {"sticky": {entry_id: n}, "cooldown": {entry_id: n}} for a book and session."""
    state = {"sticky": {}, "cooldown": {}}
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute("""
            SELECT entry_id, sticky_remaining, cooldown_remaining
            FROM worldbook_temporal_state
            WHERE world_book_id = ? AND session_id = ?
        """, (world_book_id, session_id))
        for row in cursor.fetchall():
            if row['sticky_remaining'] > 0:
                state["sticky"][row['entry_id']] = row['sticky_remaining']
            if row['cooldown_remaining'] > 0:
                state["cooldown"][row['entry_id']] = row['cooldown_remaining']
    return state


def db_save_temporal_state(world_book_id: str, session_id: str,
                           sticky: Dict[str, int], cooldown: Dict[str, int]) -> bool:
    """Replace the stored counters for a book and session."""
    try:
        now = int(time.time())
        with get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                DELETE FROM worldbook_temporal_state WHERE world_book_id = ? AND session_id = ?
            """, (world_book_id, session_id))
            for entry_id in dict.fromkeys(list(sticky) + list(cooldown)):
                cursor.execute("""
                    INSERT INTO worldbook_temporal_state
                    (world_book_id, session_id, entry_id, sticky_remaining, cooldown_remaining, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                """, (world_book_id, session_id, entry_id,
                      max(sticky.get(entry_id, 0), 0), max(cooldown.get(entry_id, 0), 0), now))
            conn.commit()
            return True
    except Exception as e:
        logger.error(f"[DB] Error saving temporal state for {world_book_id}/{session_id}: {e}")
        return False


def db_clear_temporal_state(world_book_id: Optional[str] = None, session_id: Optional[str] = None) -> int:
    """Delete temporal state rows, optionally filtered by book and/or session.

    Returns the number of (book, session) slots cleared.
    """
    clauses = []
    params: List[Any] = []
    if world_book_id is not None:
        clauses.append("world_book_id = ?")
        params.append(world_book_id)
    if session_id is not None:
        clauses.append("session_id = ?")
        params.append(session_id)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

    try:
        with get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(f"""
                SELECT COUNT(*) FROM (
                    SELECT DISTINCT world_book_id, session_id FROM worldbook_temporal_state {where}
                )
            """, params)
            slots = cursor.fetchone()[0]
            cursor.execute(f"DELETE FROM worldbook_temporal_state {where}", params)
            conn.commit()
            return slots
    except Exception as e:
        logger.error(f"[DB] Error clearing temporal state: {e}")
        return 0
