import logging
import sqlite3
from contextlib import contextmanager
from typing import Iterator, Optional

from circulation.config import settings
from circulation.exceptions import StorageError, TransientStorageError

logger = logging.getLogger(__name__)


def get_db_connection(db_file: Optional[str] = None) -> sqlite3.Connection:
    """Open a connection to the circulation database.

    Connections run in autocommit mode; multi-statement work goes through
    ``transaction()`` so that the write lock is taken up front.
    """
    path = db_file or settings.database_file
    conn = sqlite3.connect(
        path,
        timeout=settings.db_timeout,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    # WAL lets readers proceed while a borrow/return transaction holds the write lock
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn


_TRANSIENT_MARKERS = ("locked", "busy", "disk i/o", "unable to open")


def _is_transient(exc: BaseException) -> bool:
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    message = str(exc).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run a block inside ``BEGIN IMMEDIATE`` ... ``COMMIT``.

    Any exception rolls the whole block back. SQLite errors are translated:
    lock waits and I/O problems become ``TransientStorageError`` (safe to
    retry), everything else ``StorageError``.
    """
    try:
        conn.execute("BEGIN IMMEDIATE")
    except sqlite3.OperationalError as e:
        if _is_transient(e):
            raise TransientStorageError(f"Could not start transaction: {e}") from e
        raise StorageError(str(e)) from e
    try:
        yield conn
        conn.execute("COMMIT")
    except BaseException as exc:
        try:
            conn.execute("ROLLBACK")
        except sqlite3.Error as rollback_error:
            logger.error(f"Rollback failed: {rollback_error}")
        if _is_transient(exc):
            raise TransientStorageError(str(exc)) from exc
        if isinstance(exc, sqlite3.Error):
            raise StorageError(str(exc)) from exc
        raise


def create_tables(db_file: Optional[str] = None) -> None:
    """Create the catalog and loan tables if they do not exist yet."""
    conn = get_db_connection(db_file)
    try:
        cursor = conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS catalog_items (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL DEFAULT '',
                total_copies INTEGER NOT NULL CHECK(total_copies >= 0),
                copies_on_loan INTEGER NOT NULL DEFAULT 0,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                CHECK(copies_on_loan >= 0 AND copies_on_loan <= total_copies)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS loans (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                item_id TEXT NOT NULL,
                borrower_id TEXT NOT NULL,
                borrowed_at TEXT NOT NULL,
                due_at TEXT NOT NULL,
                returned_at TEXT,
                status TEXT NOT NULL CHECK(status IN ('active', 'pending_return', 'overdue', 'returned')),
                fine_amount TEXT NOT NULL DEFAULT '0.00',
                FOREIGN KEY (item_id) REFERENCES catalog_items(id)
            )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_item_id ON loans(item_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_borrower_id ON loans(borrower_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_status_due_at ON loans(status, due_at)")
    finally:
        conn.close()


def initialize_database(db_file: Optional[str] = None) -> None:
    """Make sure the database file and its tables exist."""
    try:
        create_tables(db_file)
    except sqlite3.Error as e:
        raise StorageError(f"Could not initialize database: {e}") from e
