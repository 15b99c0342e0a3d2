"""
Search history endpoints.

POST   /api/history               record a search (anonymous allowed)
GET    /api/history               the caller's history, newest first
DELETE /api/history/{search_id}   remove one of the caller's entries
GET    /api/history/popular       most frequent terms per category

``search_query`` holds the JSON-encoded search terms and ``filters`` the
JSON-encoded filter object, exactly as the search page submitted them.
"""

import json
import logging
import sqlite3
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query

from api.auth import get_current_user, require_user
from api.database import get_db
from api.models import (
    HistorySaveOut,
    HistorySaveRequest,
    PopularSearchOut,
    SearchHistoryPage,
)
from api.routes.analytics import analytics_cache
from utils.config import HISTORY_PAGE_SIZE, MAX_PAGE
from utils.database import query_scalar, query_to_dicts, transaction
from utils.query import build_pagination, clamp_pagination

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/history", tags=["history"])

POPULAR_CATEGORIES = ("grant", "recipient", "institute")
_POPULAR_TTL = 3600


def decode_search_row(row: dict[str, Any]) -> dict[str, Any]:
    """Replace the stored JSON columns with ``search_terms`` / ``filters`` dicts."""
    raw_terms = row.pop("search_query", None)
    raw_filters = row.get("filters")
    try:
        row["search_terms"] = json.loads(raw_terms) if raw_terms else {}
        row["filters"] = json.loads(raw_filters) if raw_filters else {}
    except json.JSONDecodeError:
        logger.warning("Malformed stored search %s", row.get("search_id"))
        row["search_terms"] = {}
        row["filters"] = {}
    return row


def save_search(
    conn: sqlite3.Connection, body: HistorySaveRequest, user_id: int | None
) -> int | None:
    """Insert a history row when the search had any term or active filter."""
    terms = body.searchTerms.model_dump()
    has_terms = any((v or "").strip() for v in terms.values())
    if not has_terms and not body.filters.is_active():
        return None
    with transaction(conn):
        cur = conn.execute(
            "INSERT INTO search_history (user_id, search_query, filters, result_count) "
            "VALUES (?, ?, ?, ?)",
            (
                user_id,
                json.dumps({k: (v or "").strip() for k, v in terms.items()}),
                json.dumps(body.filters.model_dump(by_alias=True)),
                body.resultCount,
            ),
        )
    analytics_cache.invalidate_tag("analytics")
    return cur.lastrowid


def popular_searches(
    conn: sqlite3.Connection, category: str, limit: int
) -> list[dict[str, Any]]:
    if category not in POPULAR_CATEGORIES:
        raise ValueError(f"Unknown category '{category}'")
    term = f"TRIM(COALESCE(json_extract(search_query, '$.{category}'), ''))"
    rows = query_to_dicts(
        conn,
        f"SELECT MIN({term}) AS text, COUNT(*) AS count "
        "FROM search_history "
        f"WHERE json_valid(search_query) AND {term} != '' "
        f"GROUP BY LOWER({term}) ORDER BY count DESC, text ASC LIMIT ?",
        (limit,),
    )
    return [{**r, "category": category} for r in rows]


@router.post("", response_model=HistorySaveOut, summary="Record a search")
def save_history(
    body: HistorySaveRequest,
    conn: sqlite3.Connection = Depends(get_db),
    user: dict[str, Any] | None = Depends(get_current_user),
):
    search_id = save_search(conn, body, user["id"] if user else None)
    return {"saved": search_id is not None, "search_id": search_id}


@router.get("", response_model=SearchHistoryPage,
            summary="List the caller's search history")
def list_history(
    page: int = Query(1, ge=1, le=MAX_PAGE),
    conn: sqlite3.Connection = Depends(get_db),
    user: dict[str, Any] = Depends(require_user),
) -> dict[str, Any]:
    page, limit, offset = clamp_pagination(page, HISTORY_PAGE_SIZE, HISTORY_PAGE_SIZE)
    total = query_scalar(
        conn, "SELECT COUNT(*) FROM search_history WHERE user_id = ?", (user["id"],)
    )
    rows = query_to_dicts(
        conn,
        "SELECT sh.search_id, sh.search_query, sh.filters, sh.result_count, "
        "sh.searched_at, b.notes, "
        "CASE WHEN b.bookmark_id IS NULL THEN 0 ELSE 1 END AS is_bookmarked "
        "FROM search_history sh "
        "LEFT JOIN bookmarked_searches b "
        "ON b.search_id = sh.search_id AND b.user_id = sh.user_id "
        "WHERE sh.user_id = ? "
        "ORDER BY sh.searched_at DESC, sh.search_id DESC LIMIT ? OFFSET ?",
        (user["id"], limit, offset),
    )
    return {
        "data": [decode_search_row(r) for r in rows],
        "pagination": build_pagination(total, page, limit),
    }


@router.get("/popular", response_model=list[PopularSearchOut],
            summary="Most frequent search terms")
def get_popular(
    category: str = Query("grant", pattern="^(grant|recipient|institute)$"),
    limit: int = Query(5, ge=1, le=50),
    conn: sqlite3.Connection = Depends(get_db),
):
    """Most-used terms for one category, cached for an hour."""
    key = ("popular", category, limit)
    cached = analytics_cache.get(key)
    if cached is not None:
        return cached
    rows = popular_searches(conn, category, limit)
    analytics_cache.set(key, rows, tags={"analytics"}, ttl_seconds=_POPULAR_TTL)
    return rows


@router.delete("/{search_id}", summary="Delete a history entry")
def delete_history(
    search_id: int,
    conn: sqlite3.Connection = Depends(get_db),
    user: dict[str, Any] = Depends(require_user),
) -> dict[str, bool]:
    with transaction(conn):
        cur = conn.execute(
            "DELETE FROM search_history WHERE search_id = ? AND user_id = ?",
            (search_id, user["id"]),
        )
    if cur.rowcount == 0:
        raise HTTPException(status_code=404, detail="Search not found")
    analytics_cache.invalidate_tag("analytics")
    return {"success": True}
