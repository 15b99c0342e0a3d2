"""
Chart data endpoints.

GET /api/analytics/trends   yearly funding or grant-count series grouped by
                            agency, location, program or recipient type

Series rows come back pivoted (``{"year": 2020, "NSERC": 1.2e6, ...}``) so a
client can feed them straight into a stacked chart. Results are cached per
parameter set under the ``analytics`` tag.
"""

import logging
import sqlite3
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query

from api.database import get_db
from utils.analytics import pivot_yearly
from utils.cache import TTLCache
from utils.database import query_to_dicts

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/analytics", tags=["analytics"])

analytics_cache: TTLCache = TTLCache(maxsize=256, ttl_seconds=300)

# group_by name -> SQL expression
TREND_GROUPS = {
    "org": "g.org",
    "province": "i.province",
    "city": "i.city",
    "country": "i.country",
    "program": "p.prog_title_en",
    "recipient_type": "r.type",
}

_TREND_METRICS = {
    "funding": "COALESCE(SUM(g.agreement_value), 0)",
    "counts": "COUNT(*)",
}


def yearly_trends(
    conn: sqlite3.Connection,
    metric: str,
    group_by: str,
    recipient_id: int | None = None,
    institute_id: int | None = None,
) -> dict[str, Any]:
    """Aggregate grants per start year and category.

    Raises:
        ValueError: if *metric* or *group_by* is not recognised.
    """
    if group_by not in TREND_GROUPS:
        raise ValueError(f"Unsupported group_by '{group_by}'")
    if metric not in _TREND_METRICS:
        raise ValueError(f"Unsupported metric '{metric}'")

    conditions = ["g.agreement_start_date IS NOT NULL"]
    params: list[Any] = []
    if recipient_id is not None:
        conditions.append("g.recipient_id = ?")
        params.append(recipient_id)
    if institute_id is not None:
        conditions.append("r.institute_id = ?")
        params.append(institute_id)

    rows = query_to_dicts(
        conn,
        "SELECT CAST(strftime('%Y', g.agreement_start_date) AS INTEGER) AS year, "
        f"COALESCE({TREND_GROUPS[group_by]}, 'Unknown') AS category, "
        f"{_TREND_METRICS[metric]} AS value "
        "FROM grants g "
        "LEFT JOIN recipients r ON g.recipient_id = r.recipient_id "
        "LEFT JOIN institutes i ON r.institute_id = i.institute_id "
        "LEFT JOIN programs p ON g.prog_id = p.prog_id "
        f"WHERE {' AND '.join(conditions)} "
        "GROUP BY year, category ORDER BY year",
        params,
    )
    points, categories = pivot_yearly(rows, "category", "value")
    return {
        "metric": metric,
        "group_by": group_by,
        "categories": categories,
        "data": points,
    }


@router.get("/trends", summary="Yearly funding trends")
def trends(
    metric: str = Query("funding", pattern="^(funding|counts)$"),
    group_by: str = Query("org", description="org, province, city, country, program or recipient_type"),
    recipient_id: int | None = Query(None),
    institute_id: int | None = Query(None),
    conn: sqlite3.Connection = Depends(get_db),
) -> dict[str, Any]:
    if group_by not in TREND_GROUPS:
        raise HTTPException(
            status_code=400,
            detail=f"group_by must be one of: {', '.join(sorted(TREND_GROUPS))}",
        )
    key = ("trends", metric, group_by, recipient_id, institute_id)
    return analytics_cache.get_or_set(
        key,
        lambda: yearly_trends(conn, metric, group_by, recipient_id, institute_id),
        tags={"analytics"},
    )
