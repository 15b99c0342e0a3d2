"""
Recipient and institute endpoints.

GET /api/recipients                      list with funding stats
GET /api/recipients/{id}                 profile with stats
GET /api/recipients/{id}/grants          latest grants (max 100)
GET /api/recipients/{id}/analytics       growth / specialization / duration
GET /api/institutes ...                  same shape for host institutes,
                                         plus recipient_count and concentration
"""

import logging
import sqlite3
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query

from api.auth import get_current_user
from api.database import get_db
from api.models import (
    GrantOut,
    InstituteListResponse,
    InstituteOut,
    RecipientListResponse,
    RecipientOut,
)
from api.routes.grants import GRANT_COLUMNS, GRANT_DETAIL_JOINS, bookmark_join
from utils.amendments import attach_amendments
from utils.analytics import entity_summary
from utils.config import (
    DEFAULT_ITEM_PER_PAGE,
    ENTITY_GRANTS_LIMIT,
    MAX_PAGE,
    MAX_PAGE_SIZE,
    get_recipient_type_label,
)
from utils.database import query_one, query_scalar, query_to_dicts
from utils.query import build_order_clause, build_pagination, clamp_pagination, contains_match

logger = logging.getLogger(__name__)

router = APIRouter(tags=["entities"])

STATS_COLUMNS = """
    COUNT(DISTINCT g.grant_id) AS grant_count,
    COALESCE(SUM(g.agreement_value), 0) AS total_funding,
    COALESCE(AVG(g.agreement_value), 0) AS avg_funding,
    MIN(g.agreement_start_date) AS first_grant_date,
    MAX(g.agreement_start_date) AS latest_grant_date,
    COUNT(DISTINCT g.org) AS funding_agencies_count
"""

# Per-entity SQL fragments shared by the list, profile and bookmark queries.
ENTITY_QUERIES: dict[str, dict[str, Any]] = {
    "recipient": {
        "select": (
            "r.recipient_id, r.legal_name, r.operating_name, r.type, "
            "r.institute_id, i.name AS research_organization_name, "
            "i.city, i.province, i.country"
        ),
        "from": (
            "FROM recipients r "
            "LEFT JOIN institutes i ON r.institute_id = i.institute_id"
        ),
        "stats_join": "LEFT JOIN grants g ON g.recipient_id = r.recipient_id",
        "id": "r.recipient_id",
        "name": "r.legal_name",
        "bookmark": ("bookmarked_recipients", "recipient_id"),
        "sorts": {"total_funding", "grant_count", "latest_grant_date",
                  "avg_funding", "legal_name"},
        "grant_filter": "r.recipient_id",
    },
    "institute": {
        "select": (
            "i.institute_id, i.name, i.city, i.province, i.country, "
            "i.postal_code, COUNT(DISTINCT r.recipient_id) AS recipient_count"
        ),
        "from": "FROM institutes i",
        "stats_join": (
            "LEFT JOIN recipients r ON r.institute_id = i.institute_id "
            "LEFT JOIN grants g ON g.recipient_id = r.recipient_id"
        ),
        "id": "i.institute_id",
        "name": "i.name",
        "bookmark": ("bookmarked_institutes", "institute_id"),
        "sorts": {"total_funding", "grant_count", "latest_grant_date",
                  "avg_funding", "recipient_count", "name"},
        "grant_filter": "i.institute_id",
    },
}


def _bookmark_select(kind: str, user: dict[str, Any] | None) -> tuple[str, list[Any]]:
    if user is None:
        return "0 AS is_bookmarked", []
    table, column = ENTITY_QUERIES[kind]["bookmark"]
    alias = ENTITY_QUERIES[kind]["id"]
    return (
        f"EXISTS(SELECT 1 FROM {table} b WHERE b.{column} = {alias} "
        "AND b.user_id = ?) AS is_bookmarked",
        [user["id"]],
    )


def decorate_entity(kind: str, row: dict[str, Any]) -> dict[str, Any]:
    if kind == "recipient":
        row["recipient_type_label"] = get_recipient_type_label(row.get("type"))
    return row


def list_entities(
    conn: sqlite3.Connection,
    kind: str,
    user: dict[str, Any] | None,
    q: str | None,
    sort: str | None,
    direction: str | None,
    page: int,
    limit: int,
) -> tuple[list[dict[str, Any]], int]:
    """Page through recipients or institutes with their funding stats."""
    entity_sql = ENTITY_QUERIES[kind]
    where, params = "", []
    term = (q or "").strip()
    if term:
        condition, param = contains_match(entity_sql["name"], term)
        where, params = f"WHERE {condition}", [param]

    total = query_scalar(conn, f"SELECT COUNT(*) {entity_sql['from']} {where}", params)

    bm_select, bm_params = _bookmark_select(kind, user)
    order = build_order_clause(
        sort, direction, entity_sql["sorts"], "total_funding", tiebreaker=entity_sql["id"]
    )
    _, limit, offset = clamp_pagination(page, limit, DEFAULT_ITEM_PER_PAGE)
    rows = query_to_dicts(
        conn,
        f"SELECT {entity_sql['select']}, {STATS_COLUMNS}, {bm_select} "
        f"{entity_sql['from']} {entity_sql['stats_join']} {where} "
        f"GROUP BY {entity_sql['id']} {order} LIMIT ? OFFSET ?",
        bm_params + params + [limit, offset],
    )
    return [decorate_entity(kind, r) for r in rows], total


def fetch_entity(
    conn: sqlite3.Connection, kind: str, entity_id: int,
    user: dict[str, Any] | None = None,
) -> dict[str, Any] | None:
    entity_sql = ENTITY_QUERIES[kind]
    bm_select, bm_params = _bookmark_select(kind, user)
    row = query_one(
        conn,
        f"SELECT {entity_sql['select']}, {STATS_COLUMNS}, {bm_select} "
        f"{entity_sql['from']} {entity_sql['stats_join']} "
        f"WHERE {entity_sql['id']} = ? GROUP BY {entity_sql['id']}",
        bm_params + [entity_id],
    )
    return decorate_entity(kind, row) if row else None


def fetch_entity_grants(
    conn: sqlite3.Connection, kind: str, entity_id: int,
    user: dict[str, Any] | None = None, limit: int = ENTITY_GRANTS_LIMIT,
) -> list[dict[str, Any]]:
    """Most recent grants for a recipient or institute."""
    bm_select, bm_join, bm_params = bookmark_join(user)
    rows = query_to_dicts(
        conn,
        f"SELECT {GRANT_COLUMNS}, {bm_select} {GRANT_DETAIL_JOINS}{bm_join} "
        f"WHERE {ENTITY_QUERIES[kind]['grant_filter']} = ? "
        "ORDER BY g.agreement_start_date DESC, g.grant_id DESC LIMIT ?",
        bm_params + [entity_id, limit],
    )
    return [attach_amendments(r) for r in rows]


def _require_entity(conn, kind: str, entity_id: int, user) -> dict[str, Any]:
    entity = fetch_entity(conn, kind, entity_id, user)
    if entity is None:
        raise HTTPException(
            status_code=404, detail=f"{kind.capitalize()} {entity_id} not found"
        )
    return entity


# ── Recipients ────────────────────────────────────────────────────────────────

@router.get("/recipients", response_model=RecipientListResponse, summary="List recipients")
def list_recipients(
    q: str | None = Query(None, max_length=200, description="Substring of the legal name"),
    sort: str = Query("total_funding", description="total_funding | grant_count | latest_grant_date | avg_funding | legal_name"),
    direction: str = Query("desc", alias="dir", pattern="^(asc|desc)$"),
    page: int = Query(1, ge=1, le=MAX_PAGE),
    limit: int = Query(DEFAULT_ITEM_PER_PAGE, ge=1, le=MAX_PAGE_SIZE),
    conn: sqlite3.Connection = Depends(get_db),
    user: dict[str, Any] | None = Depends(get_current_user),
):
    rows, total = list_entities(conn, "recipient", user, q, sort, direction, page, limit)
    return {"data": rows, "pagination": build_pagination(total, page, limit)}


@router.get("/recipients/{recipient_id}", response_model=RecipientOut, summary="Get a recipient")
def get_recipient(
    recipient_id: int,
    conn: sqlite3.Connection = Depends(get_db),
    user: dict[str, Any] | None = Depends(get_current_user),
):
    return _require_entity(conn, "recipient", recipient_id, user)


@router.get("/recipients/{recipient_id}/grants", response_model=list[GrantOut],
            summary="Grants awarded to a recipient")
def get_recipient_grants(
    recipient_id: int,
    conn: sqlite3.Connection = Depends(get_db),
    user: dict[str, Any] | None = Depends(get_current_user),
):
    _require_entity(conn, "recipient", recipient_id, user)
    return fetch_entity_grants(conn, "recipient", recipient_id, user)


@router.get("/recipients/{recipient_id}/analytics", summary="Recipient funding indicators")
def get_recipient_analytics(
    recipient_id: int,
    conn: sqlite3.Connection = Depends(get_db),
):
    _require_entity(conn, "recipient", recipient_id, None)
    grants = fetch_entity_grants(conn, "recipient", recipient_id, limit=10_000)
    return entity_summary(grants)


# ── Institutes ────────────────────────────────────────────────────────────────

@router.get("/institutes", response_model=InstituteListResponse, summary="List institutes")
def list_institutes(
    q: str | None = Query(None, max_length=200, description="Substring of the institute name"),
    sort: str = Query("total_funding", description="total_funding | grant_count | latest_grant_date | avg_funding | recipient_count | name"),
    direction: str = Query("desc", alias="dir", pattern="^(asc|desc)$"),
    page: int = Query(1, ge=1, le=MAX_PAGE),
    limit: int = Query(DEFAULT_ITEM_PER_PAGE, ge=1, le=MAX_PAGE_SIZE),
    conn: sqlite3.Connection = Depends(get_db),
    user: dict[str, Any] | None = Depends(get_current_user),
):
    rows, total = list_entities(conn, "institute", user, q, sort, direction, page, limit)
    return {"data": rows, "pagination": build_pagination(total, page, limit)}


@router.get("/institutes/{institute_id}", response_model=InstituteOut, summary="Get an institute")
def get_institute(
    institute_id: int,
    conn: sqlite3.Connection = Depends(get_db),
    user: dict[str, Any] | None = Depends(get_current_user),
):
    return _require_entity(conn, "institute", institute_id, user)


@router.get("/institutes/{institute_id}/grants", response_model=list[GrantOut],
            summary="Grants held at an institute")
def get_institute_grants(
    institute_id: int,
    conn: sqlite3.Connection = Depends(get_db),
    user: dict[str, Any] | None = Depends(get_current_user),
):
    _require_entity(conn, "institute", institute_id, user)
    return fetch_entity_grants(conn, "institute", institute_id, user)


@router.get("/institutes/{institute_id}/recipients", response_model=list[RecipientOut],
            summary="Recipients at an institute")
def get_institute_recipients(
    institute_id: int,
    conn: sqlite3.Connection = Depends(get_db),
    user: dict[str, Any] | None = Depends(get_current_user),
):
    _require_entity(conn, "institute", institute_id, user)
    return _institute_recipients(conn, institute_id, user)


def _institute_recipients(conn, institute_id: int, user=None) -> list[dict[str, Any]]:
    entity_sql = ENTITY_QUERIES["recipient"]
    bm_select, bm_params = _bookmark_select("recipient", user)
    rows = query_to_dicts(
        conn,
        f"SELECT {entity_sql['select']}, {STATS_COLUMNS}, {bm_select} "
        f"{entity_sql['from']} {entity_sql['stats_join']} WHERE r.institute_id = ? "
        "GROUP BY r.recipient_id ORDER BY total_funding DESC, r.recipient_id "
        "LIMIT ?",
        bm_params + [institute_id, ENTITY_GRANTS_LIMIT],
    )
    return [decorate_entity("recipient", r) for r in rows]


@router.get("/institutes/{institute_id}/analytics", summary="Institute funding indicators")
def get_institute_analytics(
    institute_id: int,
    conn: sqlite3.Connection = Depends(get_db),
):
    institute = _require_entity(conn, "institute", institute_id, None)
    grants = fetch_entity_grants(conn, "institute", institute_id, limit=10_000)
    recipients = _institute_recipients(conn, institute_id)
    summary = entity_summary(grants, recipients, institute["total_funding"])
    summary["top_recipients"] = [
        {"recipient_id": r["recipient_id"], "legal_name": r["legal_name"],
         "total_funding": r["total_funding"], "grant_count": r["grant_count"]}
        for r in recipients[:5]
    ]
    return summary
