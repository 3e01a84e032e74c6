"""SQLite cache storage: named Cache Stores of request/response pairs."""

import json
import sqlite3
import threading
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path

from .models import CachedResponse, FetchRequest


class StoreError(Exception):
    """Raised when a cache storage operation fails."""

    pass


# Global lock for thread-safe storage access.
# SQLite allows concurrent reads but only one writer at a time, and request
# handlers plus background cache writes share one connection.
_store_lock = threading.Lock()


def init_store(db_path: str) -> sqlite3.Connection:
    """Initialize the cache storage and create tables if they don't exist.

    Args:
        db_path: Path to the SQLite database file.

    Returns:
        Database connection with WAL mode enabled.

    Raises:
        StoreError: If storage initialization fails.
    """
    try:
        parent_dir = Path(db_path).parent
        if not parent_dir.exists():
            parent_dir.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row

        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")

        conn.execute("""
            CREATE TABLE IF NOT EXISTS caches (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL UNIQUE,
                created_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS entries (
                cache_name TEXT NOT NULL,
                method TEXT NOT NULL,
                url TEXT NOT NULL,
                response_url TEXT NOT NULL,
                status INTEGER NOT NULL,
                status_text TEXT NOT NULL,
                headers TEXT NOT NULL,
                body BLOB NOT NULL,
                response_type TEXT NOT NULL,
                stored_at TEXT NOT NULL,
                PRIMARY KEY (cache_name, method, url)
            )
        """)

        conn.commit()
        return conn

    except sqlite3.Error as e:
        raise StoreError(f"Failed to initialize cache storage: {e}")
    except OSError as e:
        raise StoreError(f"Failed to create storage directory: {e}")


def _ensure_cache(conn: sqlite3.Connection, name: str) -> None:
    """Create the named store if missing. Caller holds the lock."""
    conn.execute(
        "INSERT OR IGNORE INTO caches (name, created_at) VALUES (?, ?)",
        (name, datetime.now(UTC).isoformat()),
    )


def _entry_params(name: str, request: FetchRequest, response: CachedResponse) -> tuple:
    method, url = request.cache_key
    return (
        name,
        method,
        url,
        response.url,
        response.status,
        response.status_text,
        json.dumps(response.headers),
        response.body,
        response.type,
        datetime.now(UTC).isoformat(),
    )


_UPSERT_ENTRY = """
    INSERT OR REPLACE INTO entries
    (cache_name, method, url, response_url, status, status_text, headers, body, response_type, stored_at)
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""


def open_cache(conn: sqlite3.Connection, name: str) -> None:
    """Open (or create) the named store.

    Raises:
        StoreError: If the store cannot be created.
    """
    try:
        with _store_lock:
            _ensure_cache(conn, name)
            conn.commit()
    except sqlite3.Error as e:
        raise StoreError(f"Failed to open cache '{name}': {e}")


def has_cache(conn: sqlite3.Connection, name: str) -> bool:
    """Check whether the named store exists."""
    try:
        with _store_lock:
            row = conn.execute("SELECT 1 FROM caches WHERE name = ?", (name,)).fetchone()
        return row is not None
    except sqlite3.Error as e:
        raise StoreError(f"Failed to look up cache '{name}': {e}")


def cache_keys(conn: sqlite3.Connection) -> list[str]:
    """Return the names of all stores in creation order."""
    try:
        with _store_lock:
            rows = conn.execute("SELECT name FROM caches ORDER BY id").fetchall()
        return [row["name"] for row in rows]
    except sqlite3.Error as e:
        raise StoreError(f"Failed to list caches: {e}")


def delete_cache(conn: sqlite3.Connection, name: str) -> bool:
    """Delete the named store and all of its entries.

    Returns:
        True if the store existed, False otherwise.
    """
    try:
        with _store_lock:
            conn.execute("DELETE FROM entries WHERE cache_name = ?", (name,))
            cursor = conn.execute("DELETE FROM caches WHERE name = ?", (name,))
            deleted = cursor.rowcount > 0
            conn.commit()
        return deleted
    except sqlite3.Error as e:
        raise StoreError(f"Failed to delete cache '{name}': {e}")


def match(conn: sqlite3.Connection, name: str, request: FetchRequest) -> CachedResponse | None:
    """Look up the stored response for a request in the named store.

    Returns:
        The stored response, or None if there is no entry.
    """
    method, url = request.cache_key
    try:
        with _store_lock:
            row = conn.execute(
                """
                SELECT response_url, status, status_text, headers, body, response_type
                FROM entries
                WHERE cache_name = ? AND method = ? AND url = ?
                """,
                (name, method, url),
            ).fetchone()
    except sqlite3.Error as e:
        raise StoreError(f"Failed to match {method} {url} in cache '{name}': {e}")

    if row is None:
        return None

    return CachedResponse(
        url=row["response_url"],
        status=row["status"],
        status_text=row["status_text"],
        headers=json.loads(row["headers"]),
        body=bytes(row["body"]),
        type=row["response_type"],
    )


def put(conn: sqlite3.Connection, name: str, request: FetchRequest, response: CachedResponse) -> None:
    """Store a response for a request, replacing any previous entry.

    Concurrent puts for the same key are last-write-wins.
    """
    try:
        with _store_lock:
            _ensure_cache(conn, name)
            conn.execute(_UPSERT_ENTRY, _entry_params(name, request, response))
            conn.commit()
    except sqlite3.Error as e:
        raise StoreError(f"Failed to store {request.url} in cache '{name}': {e}")


def put_all(
    conn: sqlite3.Connection,
    name: str,
    pairs: Iterable[tuple[FetchRequest, CachedResponse]],
) -> int:
    """Store several responses in a single transaction.

    Either every pair is stored or none is.

    Returns:
        Number of stored entries.
    """
    params = [_entry_params(name, request, response) for request, response in pairs]
    try:
        with _store_lock:
            try:
                _ensure_cache(conn, name)
                conn.executemany(_UPSERT_ENTRY, params)
                conn.commit()
            except sqlite3.Error:
                conn.rollback()
                raise
        return len(params)
    except sqlite3.Error as e:
        raise StoreError(f"Failed to populate cache '{name}': {e}")


def entry_count(conn: sqlite3.Connection, name: str) -> int:
    """Count the entries in the named store."""
    try:
        with _store_lock:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM entries WHERE cache_name = ?",
                (name,),
            ).fetchone()
        return int(row["total"])
    except sqlite3.Error as e:
        raise StoreError(f"Failed to count entries in cache '{name}': {e}")


def cache_urls(conn: sqlite3.Connection, name: str) -> list[str]:
    """Return the request URLs stored in the named store, sorted."""
    try:
        with _store_lock:
            rows = conn.execute(
                "SELECT url FROM entries WHERE cache_name = ? ORDER BY url",
                (name,),
            ).fetchall()
        return [row["url"] for row in rows]
    except sqlite3.Error as e:
        raise StoreError(f"Failed to list entries in cache '{name}': {e}")
