"""Chart data shaping and entity-level funding indicators.

The trend endpoint aggregates in SQL and uses :func:`pivot_yearly` to turn
``(year, category, value)`` rows into one point per year. The remaining
helpers summarise a recipient's or institute's grant list for its profile.
"""

from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional, Tuple

from utils.formatting import parse_date


def pivot_yearly(
    rows: Iterable[Dict[str, Any]],
    category_key: str = "category",
    value_key: str = "value",
) -> Tuple[List[Dict[str, Any]], List[str]]:
    """Pivot long-form yearly rows into chart points.

    ``[{"year": 2020, "category": "NSERC", "value": 5}, ...]`` becomes
    ``[{"year": 2020, "NSERC": 5, ...}, ...]`` sorted by year, together with
    the category names ordered by their overall total (largest first).
    Rows with no year are skipped; a missing category is "Unknown".
    """
    points: Dict[int, Dict[str, Any]] = {}
    totals: Dict[str, float] = defaultdict(float)
    for row in rows:
        year = row.get("year")
        if year is None or year == "":
            continue
        year = int(year)
        category = str(row.get(category_key) or "Unknown")
        value = row.get(value_key) or 0
        point = points.setdefault(year, {"year": year})
        point[category] = point.get(category, 0) + value
        totals[category] += value
    categories = sorted(totals, key=lambda c: (-totals[c], c))
    return [points[y] for y in sorted(points)], categories


def _year(grant: Dict[str, Any]) -> Optional[int]:
    d = parse_date(grant.get("agreement_start_date"))
    return d.year if d else None


def _value(grant: Dict[str, Any]) -> float:
    try:
        return float(grant.get("agreement_value") or 0)
    except (TypeError, ValueError):
        return 0.0


def funding_growth(grants: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Percent change in funding between the first and last active year."""
    years = [y for y in (_year(g) for g in grants) if y is not None]
    if not years:
        return {"percent_change": 0.0, "years_span": 0}
    first, last = min(years), max(years)
    span = last - first
    if span == 0:
        return {"percent_change": 0.0, "years_span": 0}
    first_total = sum(_value(g) for g in grants if _year(g) == first)
    last_total = sum(_value(g) for g in grants if _year(g) == last)
    if first_total == 0:
        return {"percent_change": 0.0, "years_span": span}
    change = (last_total - first_total) / first_total * 100
    return {"percent_change": round(change, 2), "years_span": span}


def agency_specialization(grants: List[Dict[str, Any]]) -> Dict[str, Any]:
    """How concentrated funding is in a single agency."""
    funding: Dict[str, float] = defaultdict(float)
    for g in grants:
        funding[g.get("org") or "Unknown"] += _value(g)
    total = sum(funding.values())
    if not funding or total == 0:
        return {"specialization": "Unknown", "top_agency": None,
                "top_percentage": 0.0}
    top_agency, top_funding = max(funding.items(), key=lambda kv: kv[1])
    pct = top_funding / total * 100
    if pct > 80:
        label = "Highly Specialized"
    elif pct > 50:
        label = "Specialized"
    elif len(funding) == 1:
        label = "Single Agency"
    else:
        label = "Diversified"
    return {"specialization": label, "top_agency": top_agency,
            "top_percentage": round(pct, 2)}


def recipient_concentration(recipients: List[Dict[str, Any]],
                            total_funding: float) -> Dict[str, Any]:
    """Share of an institute's funding held by its top three recipients."""
    if not recipients or not total_funding:
        return {"rating": "No data", "concentration": 0.0}
    ranked = sorted(
        (float(r.get("total_funding") or 0) for r in recipients), reverse=True
    )
    concentration = sum(ranked[:3]) / float(total_funding) * 100
    if concentration > 70:
        rating = "Highly Concentrated"
    elif concentration > 40:
        rating = "Moderately Concentrated"
    else:
        rating = "Well Distributed"
    return {"rating": rating, "concentration": round(concentration, 2)}


def average_duration(grants: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Mean agreement length over grants that have both dates."""
    spans = []
    for g in grants:
        start = parse_date(g.get("agreement_start_date"))
        end = parse_date(g.get("agreement_end_date"))
        if start and end:
            spans.append(max((end - start).days / 30, 0))
    if not spans:
        return {"text": "N/A", "months": 0.0}
    avg = sum(spans) / len(spans)
    years, months = int(avg // 12), round(avg % 12)
    if months == 12:
        years, months = years + 1, 0
    month_text = f"{months} month{'' if months == 1 else 's'}"
    if years:
        text = f"{years} year{'' if years == 1 else 's'} {month_text}"
    else:
        text = month_text
    return {"text": text, "months": round(avg, 2)}


def entity_summary(grants: List[Dict[str, Any]],
                   recipients: Optional[List[Dict[str, Any]]] = None,
                   total_funding: Optional[float] = None) -> Dict[str, Any]:
    """Bundle the profile indicators for one recipient or institute."""
    summary = {
        "funding_growth": funding_growth(grants),
        "agency_specialization": agency_specialization(grants),
        "average_duration": average_duration(grants),
    }
    if recipients is not None:
        if total_funding is None:
            total_funding = sum(float(r.get("total_funding") or 0) for r in recipients)
        summary["recipient_concentration"] = recipient_concentration(
            recipients, total_funding
        )
    return summary
