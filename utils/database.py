"""Database utilities for RGAP.

Provides reusable functions for:
- Connection pragmas (WAL, foreign keys, busy timeout)
- Transactions and row counts
- Row-to-dict query helpers with slow-query tracking
"""

import logging
import sqlite3
import threading
import time
from collections import deque
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Dict, Any

logger = logging.getLogger(__name__)

SLOW_QUERY_MS = 100.0
_SLOW_QUERY_LOG_SIZE = 50

_query_lock = threading.Lock()
_slow_queries: deque = deque(maxlen=_SLOW_QUERY_LOG_SIZE)
_query_stats: Dict[str, float] = {
    "query_count": 0,
    "total_time_ms": 0.0,
    "slow_query_count": 0,
}


def init_pragmas(conn: sqlite3.Connection) -> None:
    """Apply the standard connection pragmas.

    - WAL mode for concurrent readers during writes
    - NORMAL synchronous for speed without losing committed data
    - foreign_keys so bookmark and session rows cascade with their user
    """
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute("PRAGMA busy_timeout=5000")


def _casefold(value: Any) -> Any:
    return value.casefold() if isinstance(value, str) else value


def connect(db_path: Path) -> sqlite3.Connection:
    """Open a read/write connection with ``sqlite3.Row`` rows and pragmas.

    Registers ``casefold(text)`` so substring searches ignore case for
    accented letters too (SQLite LIKE only folds ASCII).
    """
    conn = sqlite3.connect(str(db_path), check_same_thread=False, timeout=10)
    conn.row_factory = sqlite3.Row
    init_pragmas(conn)
    conn.create_function("casefold", 1, _casefold, deterministic=True)
    return conn


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Commit on success, roll back and re-raise on error."""
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def get_table_count(conn: sqlite3.Connection, table: str) -> int:
    """Row count for *table* (name must come from code, not user input)."""
    result = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()
    return result[0] if result else 0


# ── Query timing ──────────────────────────────────────────────────────────────

def record_query(sql: str, duration_ms: float, params: Any = None) -> None:
    """Record a query duration; statements over SLOW_QUERY_MS are kept."""
    with _query_lock:
        _query_stats["query_count"] += 1
        _query_stats["total_time_ms"] += duration_ms
        if duration_ms < SLOW_QUERY_MS:
            return
        _query_stats["slow_query_count"] += 1
        _slow_queries.append({
            "sql": " ".join(sql.split())[:500],
            "params": [str(p)[:100] for p in (params or ())],
            "duration_ms": round(duration_ms, 2),
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S"),
        })
    logger.warning("slow_query duration_ms=%.1f sql=%s",
                   duration_ms, " ".join(sql.split())[:200])


def get_slow_queries() -> List[Dict[str, Any]]:
    """Return the most recent slow queries, newest first."""
    with _query_lock:
        return list(reversed(_slow_queries))


def get_query_stats() -> Dict[str, Any]:
    """Return aggregate query timing counters."""
    with _query_lock:
        count = int(_query_stats["query_count"])
        total = _query_stats["total_time_ms"]
        return {
            "query_count": count,
            "slow_query_count": int(_query_stats["slow_query_count"]),
            "avg_query_time_ms": round(total / count, 2) if count else 0.0,
        }


def reset_query_stats() -> None:
    with _query_lock:
        _slow_queries.clear()
        _query_stats["query_count"] = 0
        _query_stats["total_time_ms"] = 0.0
        _query_stats["slow_query_count"] = 0


def query_to_dicts(conn: sqlite3.Connection, query: str,
                   params: tuple | list = ()) -> List[Dict[str, Any]]:
    """Execute *query* and return the rows as dicts (timed)."""
    start = time.perf_counter()
    rows = conn.execute(query, params).fetchall()
    record_query(query, (time.perf_counter() - start) * 1000, params)
    return [dict(row) for row in rows]


def query_one(conn: sqlite3.Connection, query: str,
              params: tuple | list = ()) -> Dict[str, Any] | None:
    """Execute *query* and return the first row as a dict, or None."""
    start = time.perf_counter()
    row = conn.execute(query, params).fetchone()
    record_query(query, (time.perf_counter() - start) * 1000, params)
    return dict(row) if row is not None else None


def query_scalar(conn: sqlite3.Connection, query: str,
                 params: tuple | list = (), default: Any = 0) -> Any:
    """Execute *query* and return the first column of the first row."""
    start = time.perf_counter()
    row = conn.execute(query, params).fetchone()
    record_query(query, (time.perf_counter() - start) * 1000, params)
    if row is None or row[0] is None:
        return default
    return row[0]
