"""Amendment history reconstruction for grant records.

A grant row stores its latest agreement values in ordinary columns and the
earlier versions in ``amendments_history`` (a JSON array). The version list
shown to users is rebuilt from both: the grant's own fields are appended as
an amendment unless that amendment number is already present, and the list
is ordered newest first.
"""

import json
import logging
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

AMENDMENT_FIELDS = (
    "amendment_number",
    "amendment_date",
    "agreement_value",
    "agreement_start_date",
    "agreement_end_date",
    "additional_information_en",
)


def _as_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_history(raw: Any) -> List[Dict[str, Any]]:
    """Decode a stored ``amendments_history`` value into a list of dicts.

    Accepts the JSON text stored in SQLite, an already-decoded list, or
    None. Malformed JSON is logged and treated as an empty history.
    """
    if raw is None or raw == "":
        return []
    if isinstance(raw, (bytes, str)):
        try:
            raw = json.loads(raw)
        except ValueError:
            logger.warning("Ignoring malformed amendments_history: %.80r", raw)
            return []
    if not isinstance(raw, list):
        return []
    history = []
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        item = {k: entry.get(k) for k in AMENDMENT_FIELDS}
        item["amendment_number"] = _as_int(item["amendment_number"])
        if item["amendment_number"] is None:
            continue
        history.append(item)
    return history


def current_version(grant: Dict[str, Any]) -> Dict[str, Any]:
    """The grant's own latest fields expressed as an amendment entry."""
    return {
        "amendment_number": _as_int(grant.get("latest_amendment_number")),
        "amendment_date": grant.get("amendment_date")
        or grant.get("agreement_start_date"),
        "agreement_value": grant.get("agreement_value"),
        "agreement_start_date": grant.get("agreement_start_date"),
        "agreement_end_date": grant.get("agreement_end_date"),
        "additional_information_en": grant.get("additional_information_en"),
    }


def build_amendment_list(grant: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Return the grant's versions sorted by amendment number, newest first.

    Grants without any stored history have no version list (an empty list),
    matching how a never-amended agreement is displayed. When history exists
    and the grant has a latest amendment number, the current version is
    added unless an entry with that number is already in the history.
    """
    amendments = parse_history(grant.get("amendments_history"))
    if not amendments:
        return []

    latest = _as_int(grant.get("latest_amendment_number"))
    if latest is not None:
        known = {a["amendment_number"] for a in amendments}
        if latest not in known:
            amendments.append(current_version(grant))

    amendments.sort(key=lambda a: a["amendment_number"], reverse=True)
    return amendments


def value_change(amendments: List[Dict[str, Any]],
                 amendment_number: Optional[int]) -> Optional[Dict[str, Any]]:
    """Value delta between an amendment and the version right before it.

    Args:
        amendments: Output of :func:`build_amendment_list` (newest first).
        amendment_number: Amendment to compare against its predecessor.

    Returns:
        ``{"previous_value", "change", "percent_change"}`` or None when there
        is no earlier version or either value is missing.
    """
    if amendment_number is None:
        return None
    for idx, entry in enumerate(amendments):
        if entry["amendment_number"] != amendment_number:
            continue
        if idx + 1 >= len(amendments):
            return None
        current = entry.get("agreement_value")
        previous = amendments[idx + 1].get("agreement_value")
        if current is None or previous is None:
            return None
        change = float(current) - float(previous)
        percent = (change / float(previous) * 100) if previous else None
        return {
            "previous_value": previous,
            "change": change,
            "percent_change": round(percent, 2) if percent is not None else None,
        }
    return None


def attach_amendments(grant: Dict[str, Any]) -> Dict[str, Any]:
    """Replace the raw history column with the rebuilt ``amendments`` list.

    Each entry carries its ``value_change`` against the version before it.
    """
    amendments = build_amendment_list(grant)
    for entry in amendments:
        entry["value_change"] = value_change(amendments, entry["amendment_number"])
    grant["amendments"] = amendments
    grant.pop("amendments_history", None)
    return grant
