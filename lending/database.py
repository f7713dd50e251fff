import logging
import os
import queue
import sqlite3
import tempfile
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from lending.config import settings
from lending.errors import StoreError

logger = logging.getLogger(__name__)

# Default database file.
# Priority:
# 1) LIBRARY_DB_FILE (explicit override)
# 2) Per-process temp file
DATABASE_FILE = settings.database_file or os.path.join(
    tempfile.gettempdir(), f"library_lending_{os.getpid()}.db"
)

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS authors (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        first_name TEXT NOT NULL,
        last_name TEXT NOT NULL,
        UNIQUE (first_name, last_name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS books (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        title TEXT NOT NULL,
        availability_status TEXT NOT NULL DEFAULT 'available'
            CHECK (availability_status IN ('available', 'unavailable')),
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS book_authors (
        book_id INTEGER NOT NULL,
        author_id INTEGER NOT NULL,
        position INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (book_id, author_id),
        FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE CASCADE,
        FOREIGN KEY (author_id) REFERENCES authors(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS genres (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL UNIQUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS book_genres (
        book_id INTEGER NOT NULL,
        genre_id INTEGER NOT NULL,
        PRIMARY KEY (book_id, genre_id),
        FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE CASCADE,
        FOREIGN KEY (genre_id) REFERENCES genres(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        surname TEXT NOT NULL,
        email TEXT UNIQUE,
        avatar_url TEXT,
        is_admin INTEGER NOT NULL DEFAULT 0,
        current_borrowed INTEGER NOT NULL DEFAULT 0 CHECK (current_borrowed >= 0),
        numbers_of_books_checked_out INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS borrowed_books (
        id TEXT PRIMARY KEY,
        book_id INTEGER REFERENCES books(id) ON DELETE SET NULL,
        book_title TEXT NOT NULL,
        author_first_name TEXT NOT NULL,
        author_last_name TEXT NOT NULL,
        user_id TEXT REFERENCES users(id) ON DELETE SET NULL,
        user_first_name TEXT NOT NULL,
        user_last_name TEXT NOT NULL,
        status TEXT NOT NULL CHECK (status IN ('borrowed', 'returned')),
        borrowed_at TEXT NOT NULL,
        due_date TEXT NOT NULL,
        returned_at TEXT
    )
    """,
    # At most one active loan per book
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_borrowed_books_active_book "
    "ON borrowed_books(book_id) WHERE status = 'borrowed'",
    "CREATE INDEX IF NOT EXISTS idx_borrowed_books_user_status ON borrowed_books(user_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_borrowed_books_user_borrowed_at ON borrowed_books(user_id, borrowed_at)",
    "CREATE INDEX IF NOT EXISTS idx_book_authors_book ON book_authors(book_id, position)",
    "CREATE INDEX IF NOT EXISTS idx_books_title ON books(title, id)",
)


class ConnectionPool:
    """Fixed-size pool of SQLite connections shared by the whole process."""

    def __init__(self, db_file: str, size: int = 5, busy_timeout: float = 10.0) -> None:
        self.db_file = db_file
        self.size = size
        self.busy_timeout = busy_timeout
        self._idle: "queue.Queue[sqlite3.Connection]" = queue.Queue(maxsize=size)
        self._closed = False
        for _ in range(size):
            self._idle.put(self._connect())

    def _connect(self) -> sqlite3.Connection:
        # Transactions are opened explicitly with BEGIN, never implicitly
        conn = sqlite3.connect(
            self.db_file,
            timeout=self.busy_timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA foreign_keys=ON;")
        return conn

    @property
    def closed(self) -> bool:
        return self._closed

    def acquire(self) -> sqlite3.Connection:
        if self._closed:
            raise StoreError("Connection pool is closed.")
        try:
            return self._idle.get_nowait()
        except queue.Empty:
            # Pool exhausted: hand out an overflow connection that is closed on release
            return self._connect()

    def release(self, conn: sqlite3.Connection) -> None:
        if conn.in_transaction:
            conn.rollback()
        if self._closed:
            conn.close()
            return
        try:
            self._idle.put_nowait(conn)
        except queue.Full:
            conn.close()

    def close(self) -> None:
        self._closed = True
        while True:
            try:
                self._idle.get_nowait().close()
            except queue.Empty:
                break


_pool: Optional[ConnectionPool] = None
_pool_lock = threading.Lock()


def init_pool(db_file: Optional[str] = None, size: Optional[int] = None) -> ConnectionPool:
    """Create the process-wide pool and make sure the schema exists.

    Re-initialising with a different file closes the previous pool first.
    """
    global _pool, DATABASE_FILE
    with _pool_lock:
        target = db_file or DATABASE_FILE
        if _pool is not None and not _pool.closed and _pool.db_file == target:
            return _pool
        if _pool is not None:
            _pool.close()
        DATABASE_FILE = target
        _pool = ConnectionPool(
            target,
            size=size or settings.database_pool_size,
            busy_timeout=settings.database_busy_timeout,
        )
        logger.info(f"Connection pool initialised: file={target}, size={_pool.size}")
    create_tables()
    return _pool


def close_pool() -> None:
    """Tear down the process-wide pool."""
    global _pool
    with _pool_lock:
        if _pool is not None:
            _pool.close()
            logger.info(f"Connection pool closed: file={_pool.db_file}")
        _pool = None


def get_pool() -> ConnectionPool:
    if _pool is None or _pool.closed:
        return init_pool()
    return _pool


def return_connection_to_pool(conn: sqlite3.Connection, pool: Optional[ConnectionPool] = None) -> None:
    """Give a connection back to the pool it came from."""
    pool = pool or _pool
    if pool is None:
        conn.close()
        return
    pool.release(conn)


@contextmanager
def connection() -> Iterator[sqlite3.Connection]:
    """Scoped read connection; only committed data is visible."""
    pool = get_pool()
    conn = pool.acquire()
    try:
        yield conn
    except sqlite3.Error as e:
        logger.exception(f"Read query failed on {pool.db_file}")
        raise StoreError() from e
    finally:
        return_connection_to_pool(conn, pool)


@contextmanager
def transaction() -> Iterator[sqlite3.Connection]:
    """Scoped write transaction on a dedicated pooled connection.

    ``BEGIN IMMEDIATE`` takes the write lock up front so concurrent borrow and
    return transactions are serialised. Commits on success, rolls back on any
    exception, and always returns the connection to the pool.
    """
    pool = get_pool()
    conn = pool.acquire()
    try:
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            logger.exception("Could not open write transaction")
            raise StoreError() from e
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            logger.exception("Transaction rolled back after store failure")
            raise StoreError() from e
        except BaseException:
            conn.rollback()
            raise
    finally:
        return_connection_to_pool(conn, pool)


def create_tables() -> None:
    """Create the tables and indexes if they do not exist yet."""
    with transaction() as conn:
        for statement in SCHEMA:
            conn.execute(statement)