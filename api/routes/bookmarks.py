"""
Bookmark endpoints for grants, recipients, institutes and saved searches.

All routes act on the session user only. Each bookmark table carries
UNIQUE(user_id, <entity>_id), so there is at most one bookmark per
(user, entity) and toggling twice restores the original state.

POST   /api/bookmarks/{type}/{id}/toggle   flip state -> {success, isBookmarked}
PUT    /api/bookmarks/{type}/{id}          add (idempotent)
DELETE /api/bookmarks/{type}/{id}          remove (idempotent)
GET    /api/bookmarks/{type}/{id}          current state + note
PATCH  /api/bookmarks/{type}/{id}/note     set or clear the note
GET    /api/bookmarks                      everything the user has saved
"""

import logging
import sqlite3
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query

from api.auth import require_user
from api.database import get_db
from api.models import BookmarkToggleOut, NoteOut, NoteUpdate
from api.routes.entities import ENTITY_QUERIES, STATS_COLUMNS, decorate_entity
from api.routes.grants import GRANT_COLUMNS, GRANT_DETAIL_JOINS
from api.routes.history import decode_search_row
from utils.amendments import attach_amendments
from utils.database import query_one, query_to_dicts, transaction
from utils.query import build_order_clause
from utils.validation import clean_note

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bookmarks", tags=["bookmarks"])

# type -> (bookmark table, id column, entity table)
BOOKMARK_TYPES: dict[str, tuple[str, str, str]] = {
    "grant": ("bookmarked_grants", "grant_id", "grants"),
    "recipient": ("bookmarked_recipients", "recipient_id", "recipients"),
    "institute": ("bookmarked_institutes", "institute_id", "institutes"),
    "search": ("bookmarked_searches", "search_id", "search_history"),
}

_LIST_SORTS = {
    "grant": {"bookmarked_at", "agreement_value", "agreement_start_date",
              "agreement_title_en"},
    "recipient": {"bookmarked_at", "total_funding", "grant_count", "legal_name"},
    "institute": {"bookmarked_at", "total_funding", "grant_count", "name"},
    "search": {"bookmarked_at", "searched_at", "result_count"},
}


def _table(kind: str) -> tuple[str, str, str]:
    try:
        return BOOKMARK_TYPES[kind]
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown bookmark type '{kind}'")


def _ensure_entity(conn: sqlite3.Connection, kind: str, entity_id: int,
                   user_id: int) -> None:
    """404 unless the entity exists (and, for searches, belongs to the user)."""
    _, column, entity_table = _table(kind)
    sql = f"SELECT 1 FROM {entity_table} WHERE {column} = ?"
    params: list[Any] = [entity_id]
    if kind == "search":
        sql += " AND user_id = ?"
        params.append(user_id)
    if conn.execute(sql, params).fetchone() is None:
        raise HTTPException(
            status_code=404, detail=f"{kind.capitalize()} {entity_id} not found"
        )


def get_bookmark(conn: sqlite3.Connection, kind: str, user_id: int,
                 entity_id: int) -> dict[str, Any] | None:
    table, column, _ = _table(kind)
    return query_one(
        conn,
        f"SELECT bookmark_id, bookmarked_at, notes FROM {table} "
        f"WHERE user_id = ? AND {column} = ?",
        (user_id, entity_id),
    )


def add_bookmark(conn: sqlite3.Connection, kind: str, user_id: int,
                 entity_id: int) -> None:
    table, column, _ = _table(kind)
    conn.execute(
        f"INSERT OR IGNORE INTO {table} (user_id, {column}) VALUES (?, ?)",
        (user_id, entity_id),
    )


def remove_bookmark(conn: sqlite3.Connection, kind: str, user_id: int,
                    entity_id: int) -> None:
    table, column, _ = _table(kind)
    conn.execute(
        f"DELETE FROM {table} WHERE user_id = ? AND {column} = ?",
        (user_id, entity_id),
    )


def toggle_bookmark(conn: sqlite3.Connection, kind: str, user_id: int,
                    entity_id: int) -> bool:
    """Flip the bookmark for (user, entity). Returns the new state."""
    with transaction(conn):
        if get_bookmark(conn, kind, user_id, entity_id):
            remove_bookmark(conn, kind, user_id, entity_id)
            return False
        add_bookmark(conn, kind, user_id, entity_id)
        return True


# ── Listing ───────────────────────────────────────────────────────────────────

def _list_grants(conn, user_id: int, order: str) -> list[dict[str, Any]]:
    rows = query_to_dicts(
        conn,
        f"SELECT {GRANT_COLUMNS}, 1 AS is_bookmarked, "
        "b.bookmark_id, b.bookmarked_at, b.notes "
        f"{GRANT_DETAIL_JOINS} "
        "JOIN bookmarked_grants b ON b.grant_id = g.grant_id "
        f"WHERE b.user_id = ? {order}",
        (user_id,),
    )
    return [attach_amendments(r) for r in rows]


def _list_entities(conn, kind: str, user_id: int, order: str) -> list[dict[str, Any]]:
    entity_sql = ENTITY_QUERIES[kind]
    table, column, _ = BOOKMARK_TYPES[kind]
    rows = query_to_dicts(
        conn,
        f"SELECT {entity_sql['select']}, {STATS_COLUMNS}, 1 AS is_bookmarked, "
        "b.bookmark_id, b.bookmarked_at, b.notes "
        f"{entity_sql['from']} "
        f"JOIN {table} b ON b.{column} = {entity_sql['id']} AND b.user_id = ? "
        f"{entity_sql['stats_join']} GROUP BY {entity_sql['id']} {order}",
        (user_id,),
    )
    return [decorate_entity(kind, r) for r in rows]


def _list_searches(conn, user_id: int, order: str) -> list[dict[str, Any]]:
    rows = query_to_dicts(
        conn,
        "SELECT sh.search_id, sh.search_query, sh.filters, sh.result_count, "
        "sh.searched_at, 1 AS is_bookmarked, b.bookmark_id, b.bookmarked_at, "
        "b.notes FROM bookmarked_searches b "
        "JOIN search_history sh ON sh.search_id = b.search_id "
        f"WHERE b.user_id = ? {order}",
        (user_id,),
    )
    return [decode_search_row(r) for r in rows]


@router.get("", summary="List the user's bookmarks")
def list_bookmarks(
    sort: str = Query("bookmarked_at", description="Column to sort each list by; unknown columns fall back to bookmarked_at"),
    direction: str = Query("desc", alias="dir", pattern="^(asc|desc)$"),
    conn: sqlite3.Connection = Depends(get_db),
    user: dict[str, Any] = Depends(require_user),
) -> dict[str, list[dict[str, Any]]]:
    """Return bookmarked grants, recipients, institutes and searches."""
    def order(kind: str) -> str:
        return build_order_clause(
            sort, direction, _LIST_SORTS[kind], "bookmarked_at",
            tiebreaker="b.bookmark_id",
        )

    return {
        "grants": _list_grants(conn, user["id"], order("grant")),
        "recipients": _list_entities(conn, "recipient", user["id"], order("recipient")),
        "institutes": _list_entities(conn, "institute", user["id"], order("institute")),
        "searches": _list_searches(conn, user["id"], order("search")),
    }


# ── Single bookmark ───────────────────────────────────────────────────────────

@router.get("/{entity_type}/{entity_id}", summary="Bookmark state for one entity")
def bookmark_status(
    entity_type: str,
    entity_id: int,
    conn: sqlite3.Connection = Depends(get_db),
    user: dict[str, Any] = Depends(require_user),
):
    _ensure_entity(conn, entity_type, entity_id, user["id"])
    bookmark = get_bookmark(conn, entity_type, user["id"], entity_id)
    return {
        "isBookmarked": bookmark is not None,
        "bookmarked_at": bookmark["bookmarked_at"] if bookmark else None,
        "notes": bookmark["notes"] if bookmark else None,
    }


@router.post("/{entity_type}/{entity_id}/toggle", response_model=BookmarkToggleOut,
             summary="Toggle a bookmark")
def toggle(
    entity_type: str,
    entity_id: int,
    conn: sqlite3.Connection = Depends(get_db),
    user: dict[str, Any] = Depends(require_user),
):
    _ensure_entity(conn, entity_type, entity_id, user["id"])
    state = toggle_bookmark(conn, entity_type, user["id"], entity_id)
    logger.info("bookmark user=%s %s=%s bookmarked=%s",
                user["id"], entity_type, entity_id, state)
    return {"success": True, "isBookmarked": state}


@router.put("/{entity_type}/{entity_id}", response_model=BookmarkToggleOut,
            summary="Add a bookmark")
def put_bookmark(
    entity_type: str,
    entity_id: int,
    conn: sqlite3.Connection = Depends(get_db),
    user: dict[str, Any] = Depends(require_user),
):
    _ensure_entity(conn, entity_type, entity_id, user["id"])
    with transaction(conn):
        add_bookmark(conn, entity_type, user["id"], entity_id)
    return {"success": True, "isBookmarked": True}


@router.delete("/{entity_type}/{entity_id}", response_model=BookmarkToggleOut,
               summary="Remove a bookmark")
def delete_bookmark(
    entity_type: str,
    entity_id: int,
    conn: sqlite3.Connection = Depends(get_db),
    user: dict[str, Any] = Depends(require_user),
):
    _ensure_entity(conn, entity_type, entity_id, user["id"])
    with transaction(conn):
        remove_bookmark(conn, entity_type, user["id"], entity_id)
    return {"success": True, "isBookmarked": False}


@router.patch("/{entity_type}/{entity_id}/note", response_model=NoteOut,
              summary="Update a bookmark note")
def update_note(
    entity_type: str,
    entity_id: int,
    body: NoteUpdate,
    conn: sqlite3.Connection = Depends(get_db),
    user: dict[str, Any] = Depends(require_user),
):
    """Store a trimmed note on an existing bookmark; blank clears it."""
    table, column, _ = _table(entity_type)
    try:
        note = clean_note(body.note)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    with transaction(conn):
        cur = conn.execute(
            f"UPDATE {table} SET notes = ? WHERE user_id = ? AND {column} = ?",
            (note, user["id"], entity_id),
        )
    if cur.rowcount == 0:
        raise HTTPException(status_code=404, detail="Bookmark not found")
    return {"success": True, "notes": note}
