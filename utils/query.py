"""Shared SQL query builder utilities for RGAP API routes.

Provides the WHERE clause, ORDER BY and pagination helpers used by the grant
search endpoint, the entity listings and the server-rendered search page.
All user input reaches SQL through ``?`` placeholders; column names only
ever come from the whitelists below.
"""

import math
from typing import Any

from utils.config import DEFAULT_PAGE_SIZE, FILTER_LIMITS, MAX_PAGE, MAX_PAGE_SIZE


GRANT_SORT_FIELDS = {
    "agreement_start_date",
    "agreement_value",
    "agreement_title_en",
}
DEFAULT_GRANT_SORT = "agreement_start_date"

# Multi-value filter name -> qualified column
GRANT_IN_FILTERS = {
    "agencies": "g.org",
    "countries": "i.country",
    "provinces": "i.province",
    "cities": "i.city",
}

# Base joins shared by the COUNT and data queries
GRANT_BASE_JOINS = (
    "FROM grants g "
    "LEFT JOIN recipients r ON g.recipient_id = r.recipient_id "
    "LEFT JOIN institutes i ON r.institute_id = i.institute_id"
)


def escape_like(term: str) -> str:
    """Escape LIKE wildcards so *term* matches literally.

    Pair the result with ``ESCAPE '\\'`` in the SQL.
    """
    return (
        term.replace("\\", "\\\\")
        .replace("%", "\\%")
        .replace("_", "\\_")
    )


def contains_match(column: str, term: str) -> tuple[str, str]:
    """Case-insensitive substring predicate for *column* and its parameter.

    Both sides go through the ``casefold`` SQL function registered by
    ``utils.database.connect``, so "école" matches "École Polytechnique".
    """
    return (
        f"casefold({column}) LIKE ? ESCAPE '\\'",
        f"%{escape_like(term.casefold())}%",
    )


def _clean(term: str | None) -> str | None:
    if term is None:
        return None
    term = term.strip()
    return term or None


def build_grant_where_clause(
    recipient: str | None = None,
    institute: str | None = None,
    grant: str | None = None,
    date_from: str | None = None,
    date_to: str | None = None,
    value_min: float | None = None,
    value_max: float | None = None,
    agencies: list[str] | None = None,
    countries: list[str] | None = None,
    provinces: list[str] | None = None,
    cities: list[str] | None = None,
) -> tuple[str, list[Any]]:
    """Build the conjunctive WHERE clause for a grant search.

    Column aliases assume ``GRANT_BASE_JOINS`` (g = grants, r = recipients,
    i = institutes).

    Args:
        recipient: Substring matched against the recipient legal name.
        institute: Substring matched against the institute name.
        grant: Substring matched against the agreement title.
        date_from: Inclusive lower bound on agreement_start_date (ISO date).
        date_to: Inclusive upper bound on agreement_start_date (ISO date).
        value_min: Lower bound on agreement_value, ignored unless > 0.
        value_max: Upper bound on agreement_value, ignored at or above
            the filter ceiling.
        agencies: Funding agency codes (g.org IN ...).
        countries: Institute countries.
        provinces: Institute provinces.
        cities: Institute cities.

    Returns:
        Tuple of (where_clause_string, params_list). The where_clause_string
        starts with "WHERE " if any conditions exist, or is "" if none.
    """
    conditions: list[str] = []
    params: list[Any] = []

    for column, term in (
        ("r.legal_name", recipient),
        ("i.name", institute),
        ("g.agreement_title_en", grant),
    ):
        term = _clean(term)
        if term:
            condition, param = contains_match(column, term)
            conditions.append(condition)
            params.append(param)

    date_from = _clean(date_from)
    if date_from:
        conditions.append("g.agreement_start_date >= ?")
        params.append(date_from)

    date_to = _clean(date_to)
    if date_to:
        conditions.append("g.agreement_start_date <= ?")
        params.append(date_to)

    if value_min is not None and value_min > 0:
        conditions.append("g.agreement_value >= ?")
        params.append(value_min)

    if value_max is not None and value_max < FILTER_LIMITS["value_max"]:
        conditions.append("g.agreement_value <= ?")
        params.append(value_max)

    for name, values in (
        ("agencies", agencies),
        ("countries", countries),
        ("provinces", provinces),
        ("cities", cities),
    ):
        values = [v for v in (values or []) if v]
        if values:
            placeholders = ",".join("?" * len(values))
            conditions.append(f"{GRANT_IN_FILTERS[name]} IN ({placeholders})")
            params.extend(values)

    where = "WHERE " + " AND ".join(conditions) if conditions else ""
    return where, params


def build_order_clause(
    sort_by: str | None,
    sort_dir: str | None,
    allowed_sorts: set[str],
    default_sort: str,
    default_dir: str = "desc",
    prefix: str = "",
    tiebreaker: str | None = None,
) -> str:
    """Build a safe SQL ORDER BY clause.

    Unknown sort columns silently fall back to ``default_sort``; a direction
    other than 'asc'/'desc' (case-insensitive) falls back to ``default_dir``.

    Args:
        sort_by: Requested column name.
        sort_dir: Requested direction.
        allowed_sorts: Whitelist of sortable column names.
        default_sort: Column used when sort_by is not whitelisted.
        default_dir: Direction used when sort_dir is not recognised.
        prefix: Table alias prepended to the column (e.g. "g.").
        tiebreaker: Extra column appended so paging order is stable.

    Returns:
        ORDER BY clause string, e.g. "ORDER BY g.agreement_value DESC".
    """
    col = sort_by if sort_by in allowed_sorts else default_sort
    requested = (sort_dir or "").lower()
    if requested not in ("asc", "desc"):
        requested = default_dir.lower()
    direction = "ASC" if requested == "asc" else "DESC"
    clause = f"ORDER BY {prefix}{col} {direction}"
    if tiebreaker:
        clause += f", {tiebreaker} {direction}"
    return clause


def build_grant_order_clause(sort_by: str | None, sort_dir: str | None) -> str:
    """ORDER BY for grant searches: whitelist fallback, 'asc' or else DESC."""
    direction = "asc" if (sort_dir or "").lower() == "asc" else "desc"
    return build_order_clause(
        sort_by,
        direction,
        GRANT_SORT_FIELDS,
        DEFAULT_GRANT_SORT,
        prefix="g.",
        tiebreaker="g.grant_id",
    )


def clamp_pagination(
    page: int | None,
    limit: int | None,
    default_limit: int = DEFAULT_PAGE_SIZE,
    max_limit: int = MAX_PAGE_SIZE,
) -> tuple[int, int, int]:
    """Normalise page/limit and compute the row offset.

    Returns:
        Tuple of (page, limit, offset) where offset = (page - 1) * limit.
    """
    page = min(page, MAX_PAGE) if page and page > 0 else 1
    limit = limit if limit and limit > 0 else default_limit
    limit = min(limit, max_limit)
    return page, limit, (page - 1) * limit


def build_pagination(total: int, page: int, limit: int) -> dict[str, int]:
    """Return the pagination envelope for a result page."""
    return {
        "total": total,
        "page": page,
        "limit": limit,
        "totalPages": math.ceil(total / limit) if limit else 0,
    }
