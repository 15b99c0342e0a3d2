"""
Reference data endpoints.

GET /api/reference/filters        → options for the search filter panel
GET /api/reference/organizations  → funding agencies

Both change only when the database is rebuilt, so responses carry a one-hour
Cache-Control header and are kept in a process-local TTL cache.
"""

import sqlite3
from typing import Any

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from api.database import get_db
from utils.cache import TTLCache
from utils.config import FILTER_LIMITS, ORG_COLORS, get_org_title
from utils.database import query_to_dicts

router = APIRouter(prefix="/reference", tags=["reference"])

_CACHE_HEADER = {"Cache-Control": "public, max-age=3600"}

_reference_cache: TTLCache = TTLCache(maxsize=8, ttl_seconds=3600)


def _distinct(conn: sqlite3.Connection, column: str) -> list[str]:
    rows = conn.execute(
        f"SELECT DISTINCT {column} AS v FROM institutes "
        f"WHERE {column} IS NOT NULL AND TRIM({column}) != '' ORDER BY {column}"
    ).fetchall()
    return [r["v"] for r in rows]


def load_organizations(conn: sqlite3.Connection) -> list[dict[str, Any]]:
    rows = query_to_dicts(
        conn,
        "SELECT org, org_fr, org_title_en, org_title_fr FROM organizations ORDER BY org",
    )
    for row in rows:
        row["color"] = ORG_COLORS.get(row["org"])
    return rows


def load_filter_options(conn: sqlite3.Connection) -> dict[str, Any]:
    """Agencies, locations and numeric limits for the search form."""
    agencies = [
        r["org"] for r in conn.execute(
            "SELECT DISTINCT org FROM grants WHERE org IS NOT NULL ORDER BY org"
        ).fetchall()
    ]
    return {
        "agencies": [
            {"code": code, "title": get_org_title(code) or code} for code in agencies
        ],
        "countries": _distinct(conn, "country"),
        "provinces": _distinct(conn, "province"),
        "cities": _distinct(conn, "city"),
        "limits": dict(FILTER_LIMITS),
    }


@router.get("/filters", summary="Search filter options")
def filter_options(conn: sqlite3.Connection = Depends(get_db)) -> JSONResponse:
    data = _reference_cache.get_or_set("filters", lambda: load_filter_options(conn))
    return JSONResponse(content=data, headers=_CACHE_HEADER)


@router.get("/organizations", summary="List funding agencies")
def organizations(conn: sqlite3.Connection = Depends(get_db)) -> JSONResponse:
    data = _reference_cache.get_or_set("organizations", lambda: load_organizations(conn))
    return JSONResponse(content=data, headers=_CACHE_HEADER)


def clear_reference_cache() -> None:
    _reference_cache.clear()
