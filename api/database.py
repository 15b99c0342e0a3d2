"""
Database connection management for the API.

Provides a get_db() dependency that opens a per-request SQLite connection and
closes it after the response is sent.  The database path is resolved once at
import from the APP_DB_PATH environment variable (default: rgap.sqlite) and
can be overridden by ``create_app(db_path=...)``.
"""

import os
import sqlite3
from collections.abc import Generator
from pathlib import Path

from fastapi import HTTPException

from utils.database import connect

_DB_PATH: Path = Path(os.getenv("APP_DB_PATH", "rgap.sqlite"))


def get_db_path() -> Path:
    """Return the configured database path."""
    return _DB_PATH


def set_db_path(db_path: Path) -> None:
    global _DB_PATH
    _DB_PATH = Path(db_path)


def get_db() -> Generator[sqlite3.Connection, None, None]:
    """FastAPI dependency: yield a SQLite connection, close on exit.

    Connections use WAL mode, foreign keys and a busy timeout. Raises HTTP 503
    with a readable message if the database file is missing instead of
    letting SQLite create an empty one.

    Usage in a route::

        @router.get("/example")
        def example(conn: sqlite3.Connection = Depends(get_db)):
            ...
    """
    db_path = _DB_PATH
    if not db_path.exists():
        raise HTTPException(
            status_code=503,
            detail=(
                f"Database not found at '{db_path}'. "
                "Run 'python build_grants_db.py' to build it."
            ),
        )
    conn = connect(db_path)
    try:
        yield conn
    finally:
        conn.close()
