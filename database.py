import logging
import sqlite3
from contextlib import contextmanager
from typing import Iterator, Optional

from config import settings

logger = logging.getLogger(__name__)


def _py_lower(value: Optional[str]) -> Optional[str]:
    # SQLite's built-in lower() only folds ASCII
    return value.casefold() if isinstance(value, str) else value


def get_db_connection(db_file: Optional[str] = None) -> sqlite3.Connection:
    """Open a connection to the album database.

    Connections run in autocommit mode; writes that must be atomic go through
    `write_transaction`.
    """
    conn = sqlite3.connect(db_file or settings.database_file, timeout=settings.db_timeout, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.create_function("py_lower", 1, _py_lower, deterministic=True)
    return conn


@contextmanager
def write_transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run a block under SQLite's write lock.

    BEGIN IMMEDIATE takes the reserved lock up front, so a max(local_id) read
    followed by an insert cannot interleave with another writer.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    else:
        conn.execute("COMMIT")


def create_tables(db_file: Optional[str] = None) -> None:
    """Create the tables if they don't exist and migrate older album tables."""
    conn = get_db_connection(db_file)
    try:
        cursor = conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS albums (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                local_id INTEGER NOT NULL DEFAULT 0,
                artist TEXT NOT NULL,
                title TEXT NOT NULL,
                release_year INTEGER NOT NULL DEFAULT 0,
                owner TEXT NOT NULL DEFAULT '',
                cover_file_name TEXT,
                lent_to TEXT
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                username TEXT NOT NULL,
                normalized_username TEXT NOT NULL UNIQUE,
                email TEXT NOT NULL,
                normalized_email TEXT NOT NULL UNIQUE,
                password_hash TEXT NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        # Albums tables created before per-owner numbering and loans lack these columns
        cursor.execute("PRAGMA table_info(albums)")
        columns = [column[1] for column in cursor.fetchall()]

        if 'owner' not in columns:
            cursor.execute("ALTER TABLE albums ADD COLUMN owner TEXT NOT NULL DEFAULT ''")
        else:
            cursor.execute("UPDATE albums SET owner = '' WHERE owner IS NULL")
        if 'lent_to' not in columns:
            cursor.execute("ALTER TABLE albums ADD COLUMN lent_to TEXT")
        if 'local_id' not in columns:
            cursor.execute("ALTER TABLE albums ADD COLUMN local_id INTEGER NOT NULL DEFAULT 0")

        # Not unique: migrated rows all share local_id 0
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_albums_owner_local_id ON albums(owner, local_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_albums_lent_to ON albums(lent_to)")

        cursor.execute("SELECT COUNT(*) FROM albums WHERE local_id = 0")
        unnumbered = cursor.fetchone()[0]
        if unnumbered:
            logger.warning(
                f"{unnumbered} album(s) have no per-owner local id (local_id = 0); "
                "they were created before numbering existed and are left as-is"
            )
    finally:
        conn.close()


def initialize_database(db_file: Optional[str] = None) -> None:
    """Initialize the database, creating and migrating tables as needed."""
    create_tables(db_file)
