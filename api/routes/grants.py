"""
Grant search endpoints.

POST /api/grants            parametric search (full rows or chart rows)
GET  /api/grants/search     single-box search across titles and names
GET  /api/grants/{grant_id} one grant with its amendment history

The parametric search runs two statements over the same joins and WHERE
clause: a COUNT(*) for the pagination envelope, then the sorted page. All
joins are LEFT joins so the count always matches the rows that can be paged.
"""

import logging
import sqlite3
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query

from api.auth import get_current_user
from api.database import get_db
from api.models import (
    ErrorResponse,
    GrantOut,
    GrantSearchRequest,
    GrantSearchResponse,
    VisualizationResponse,
)
from utils.amendments import attach_amendments
from utils.config import AppConfig, DEFAULT_PAGE_SIZE, MAX_PAGE, MAX_PAGE_SIZE
from utils.database import query_one, query_scalar, query_to_dicts
from utils.query import (
    GRANT_BASE_JOINS,
    build_grant_order_clause,
    build_grant_where_clause,
    build_pagination,
    clamp_pagination,
    contains_match,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/grants", tags=["grants"])

_cfg = AppConfig.from_env()

GRANT_DETAIL_JOINS = (
    GRANT_BASE_JOINS
    + " LEFT JOIN programs p ON g.prog_id = p.prog_id"
    + " LEFT JOIN organizations o ON g.org = o.org"
)

GRANT_COLUMNS = """
    g.grant_id, g.ref_number, g.latest_amendment_number, g.amendment_date,
    g.agreement_type, g.agreement_number, g.agreement_value,
    g.foreign_currency_type, g.foreign_currency_value,
    g.agreement_start_date, g.agreement_end_date, g.agreement_title_en,
    g.description_en, g.expected_results_en, g.additional_information_en,
    g.org, o.org_title_en, g.amendments_history,
    r.recipient_id, r.legal_name, r.operating_name, r.type AS recipient_type,
    i.institute_id, i.name AS research_organization_name,
    i.city, i.province, i.country,
    p.prog_id, p.prog_title_en, p.prog_purpose_en
"""

_VISUALIZATION_COLUMNS = """
    g.grant_id, g.agreement_value, g.agreement_start_date,
    g.agreement_end_date, g.org, p.prog_title_en, r.legal_name,
    r.type AS recipient_type, i.name AS research_organization_name,
    i.city, i.province, i.country
"""


def bookmark_join(user: dict[str, Any] | None) -> tuple[str, str, list[Any]]:
    """SELECT fragment, JOIN fragment and params for per-user bookmark state."""
    if user is None:
        return "0 AS is_bookmarked", "", []
    return (
        "CASE WHEN bg.bookmark_id IS NULL THEN 0 ELSE 1 END AS is_bookmarked",
        " LEFT JOIN bookmarked_grants bg"
        " ON bg.grant_id = g.grant_id AND bg.user_id = ?",
        [user["id"]],
    )


def where_from_request(body: GrantSearchRequest) -> tuple[str, list[Any]]:
    terms, filters = body.searchTerms, body.filters
    return build_grant_where_clause(
        recipient=terms.recipient,
        institute=terms.institute,
        grant=terms.grant,
        date_from=filters.dateRange.date_from,
        date_to=filters.dateRange.date_to,
        value_min=filters.valueRange.min,
        value_max=filters.valueRange.max,
        agencies=filters.agencies,
        countries=filters.countries,
        provinces=filters.provinces,
        cities=filters.cities,
    )


def run_search(
    conn: sqlite3.Connection,
    body: GrantSearchRequest,
    user: dict[str, Any] | None = None,
) -> tuple[list[dict[str, Any]], int]:
    """Execute a full-format grant search.

    Returns:
        Tuple of (grant rows with amendments attached, total matching rows).
    """
    where, params = where_from_request(body)
    page, limit, offset = clamp_pagination(body.pagination.page, body.pagination.limit)
    order = build_grant_order_clause(body.sortConfig.field, body.sortConfig.direction)

    total = query_scalar(
        conn, f"SELECT COUNT(*) {GRANT_BASE_JOINS} {where}", params
    )

    bm_select, bm_join, bm_params = bookmark_join(user)
    rows = query_to_dicts(
        conn,
        f"SELECT {GRANT_COLUMNS}, {bm_select} "
        f"{GRANT_DETAIL_JOINS}{bm_join} {where} {order} LIMIT ? OFFSET ?",
        bm_params + params + [limit, offset],
    )
    return [attach_amendments(r) for r in rows], total


def run_visualization(
    conn: sqlite3.Connection, body: GrantSearchRequest
) -> list[dict[str, Any]]:
    """Flat rows for charts: every match up to the configured row cap."""
    where, params = where_from_request(body)
    return query_to_dicts(
        conn,
        f"SELECT {_VISUALIZATION_COLUMNS} {GRANT_DETAIL_JOINS} {where} "
        "ORDER BY g.agreement_start_date ASC, g.grant_id ASC LIMIT ?",
        params + [_cfg.visualization_row_limit],
    )


@router.post(
    "",
    summary="Search grants",
    response_model=None,
    responses={
        200: {
            "description": (
                "Paginated grant rows (format=full) or flat chart rows "
                "(format=visualization)"
            ),
            "model": GrantSearchResponse,
        },
        400: {"description": "Request body failed validation", "model": ErrorResponse},
        500: {"description": "Database failure"},
    },
)
def search_grants(
    body: GrantSearchRequest,
    conn: sqlite3.Connection = Depends(get_db),
    user: dict[str, Any] | None = Depends(get_current_user),
) -> GrantSearchResponse | VisualizationResponse:
    """Search grants by recipient, institute and title terms plus filters.

    Sort fields outside agreement_start_date / agreement_value /
    agreement_title_en fall back to agreement_start_date. The response's
    ``pagination.totalPages`` is ``ceil(total / limit)``.
    """
    try:
        if body.format == "visualization":
            return VisualizationResponse(data=run_visualization(conn, body))
        rows, total = run_search(conn, body, user)
    except sqlite3.Error:
        logger.exception("Grant search failed")
        raise HTTPException(status_code=500, detail="Failed to search grants")

    page, limit, _ = clamp_pagination(body.pagination.page, body.pagination.limit)
    return GrantSearchResponse(
        data=rows,
        pagination=build_pagination(total, page, limit),
    )


@router.get("/search", response_model=GrantSearchResponse, summary="Quick search")
def quick_search(
    q: str = Query("", max_length=200, description="Matched against title, description, recipient and program"),
    page: int = Query(1, ge=1, le=MAX_PAGE),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    conn: sqlite3.Connection = Depends(get_db),
    user: dict[str, Any] | None = Depends(get_current_user),
) -> GrantSearchResponse:
    """Single-box search ordered by agreement value, largest first."""
    where, params = "", []
    term = q.strip()
    if term:
        matches = [
            contains_match(column, term)
            for column in ("g.agreement_title_en", "g.description_en",
                           "r.legal_name", "p.prog_title_en")
        ]
        where = "WHERE (" + " OR ".join(sql for sql, _ in matches) + ")"
        params = [param for _, param in matches]

    page, limit, offset = clamp_pagination(page, limit)
    try:
        total = query_scalar(
            conn, f"SELECT COUNT(*) {GRANT_DETAIL_JOINS} {where}", params
        )
        bm_select, bm_join, bm_params = bookmark_join(user)
        rows = query_to_dicts(
            conn,
            f"SELECT {GRANT_COLUMNS}, {bm_select} "
            f"{GRANT_DETAIL_JOINS}{bm_join} {where} "
            "ORDER BY g.agreement_value IS NULL, g.agreement_value DESC, "
            "g.grant_id DESC LIMIT ? OFFSET ?",
            bm_params + params + [limit, offset],
        )
    except sqlite3.Error:
        logger.exception("Quick search failed for q=%r", term)
        raise HTTPException(status_code=500, detail="Failed to search grants")

    return GrantSearchResponse(
        data=[attach_amendments(r) for r in rows],
        pagination=build_pagination(total, page, limit),
    )


def fetch_grant(
    conn: sqlite3.Connection, grant_id: int, user: dict[str, Any] | None = None
) -> dict[str, Any] | None:
    bm_select, bm_join, bm_params = bookmark_join(user)
    row = query_one(
        conn,
        f"SELECT {GRANT_COLUMNS}, {bm_select} "
        f"{GRANT_DETAIL_JOINS}{bm_join} WHERE g.grant_id = ?",
        bm_params + [grant_id],
    )
    return attach_amendments(row) if row else None


@router.get("/{grant_id}", response_model=GrantOut, summary="Get a grant")
def get_grant(
    grant_id: int,
    conn: sqlite3.Connection = Depends(get_db),
    user: dict[str, Any] | None = Depends(get_current_user),
) -> GrantOut:
    """Return one grant with joined details and its amendment versions."""
    grant = fetch_grant(conn, grant_id, user)
    if grant is None:
        raise HTTPException(status_code=404, detail=f"Grant {grant_id} not found")
    return grant
