"""
RGAP grants database builder.

Loads the federal "Grants and Contributions" open-data CSV export into the
normalized RGAP schema. Only rows owned by the three research granting
councils (NSERC, CIHR, SSHRC) are kept.

Each agreement appears in the export once per amendment. Rows are grouped by
``ref_number``; the highest amendment number becomes the grant row and the
earlier versions are stored, oldest first, in ``grants.amendments_history``.

Usage:
    python build_grants_db.py --csv grants.csv                 # Build or update
    python build_grants_db.py --csv grants.csv --rebuild       # Start from scratch
    python build_grants_db.py --csv grants.csv --db my.sqlite  # Custom database path
"""

import argparse
import csv
import json
import logging
import sqlite3
import time
from collections import defaultdict
from pathlib import Path
from typing import Any, Iterable

from schema_design import check_database_integrity, create_schema
from utils.amendments import AMENDMENT_FIELDS
from utils.database import get_table_count, transaction
from utils.formatting import parse_date

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path("rgap.sqlite")

# owner_org prefix in the export -> agency code
ORG_CODES = {
    "nserc": "NSERC",
    "cihr": "CIHR",
    "sshrc": "SSHRC",
}

REQUIRED_COLUMNS = (
    "ref_number",
    "amendment_number",
    "recipient_legal_name",
    "agreement_value",
    "agreement_start_date",
    "owner_org",
)


# ── Row cleaning ──────────────────────────────────────────────────────────────

def _text(value: Any) -> str | None:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def parse_money(value: Any) -> float | None:
    """Parse "$1,234.50" / "1234.5" / "" into a float (None when blank or bad)."""
    text = _text(value)
    if text is None:
        return None
    text = text.replace("$", "").replace(",", "").replace(" ", "")
    try:
        return float(text)
    except ValueError:
        return None


def parse_amendment(value: Any) -> int:
    """Amendment numbers are small integers; blanks and "current" mean 0."""
    text = _text(value)
    if text is None:
        return 0
    try:
        return int(float(text))
    except ValueError:
        return 0


def iso_date(value: Any) -> str | None:
    d = parse_date(_text(value))
    return d.isoformat() if d else None


def org_code(owner_org: Any) -> str | None:
    """'nserc-crsng' -> 'NSERC'; None for any other department."""
    text = (_text(owner_org) or "").lower()
    return ORG_CODES.get(text.split("-")[0])


def clean_row(raw: dict[str, Any]) -> dict[str, Any] | None:
    """Normalise one CSV row, or None if it is not a council grant."""
    org = org_code(raw.get("owner_org"))
    ref_number = _text(raw.get("ref_number"))
    legal_name = _text(raw.get("recipient_legal_name"))
    if org is None or ref_number is None or legal_name is None:
        return None
    return {
        "org": org,
        "ref_number": ref_number,
        "amendment_number": parse_amendment(raw.get("amendment_number")),
        "amendment_date": iso_date(raw.get("amendment_date")),
        "agreement_type": _text(raw.get("agreement_type")),
        "agreement_number": _text(raw.get("agreement_number")),
        "agreement_value": parse_money(raw.get("agreement_value")),
        "foreign_currency_type": _text(raw.get("foreign_currency_type")),
        "foreign_currency_value": parse_money(raw.get("foreign_currency_value")),
        "agreement_start_date": iso_date(raw.get("agreement_start_date")),
        "agreement_end_date": iso_date(raw.get("agreement_end_date")),
        "agreement_title_en": _text(raw.get("agreement_title_en")),
        "description_en": _text(raw.get("description_en")),
        "expected_results_en": _text(raw.get("expected_results_en")),
        "additional_information_en": _text(raw.get("additional_information_en")),
        "recipient_type": _text(raw.get("recipient_type")),
        "business_number": _text(raw.get("recipient_business_number")),
        "legal_name": legal_name,
        "operating_name": _text(raw.get("recipient_operating_name")),
        "research_organization_name": _text(raw.get("research_organization_name")),
        "country": _text(raw.get("recipient_country")),
        "province": _text(raw.get("recipient_province")),
        "city": _text(raw.get("recipient_city")),
        "postal_code": _text(raw.get("recipient_postal_code")),
        "federal_riding_name_en": _text(raw.get("federal_riding_name_en")),
        "federal_riding_number": _text(raw.get("federal_riding_number")),
        "prog_name_en": _text(raw.get("prog_name_en")),
        "prog_purpose_en": _text(raw.get("prog_purpose_en")),
    }


def read_csv(csv_path: Path) -> tuple[list[dict[str, Any]], int]:
    """Read and clean the export. Returns (kept rows, skipped row count).

    Raises:
        ValueError: if a required column is missing from the header.
    """
    kept: list[dict[str, Any]] = []
    skipped = 0
    with open(csv_path, newline="", encoding="utf-8-sig") as fh:
        reader = csv.DictReader(fh)
        missing = [c for c in REQUIRED_COLUMNS if c not in (reader.fieldnames or [])]
        if missing:
            raise ValueError(f"{csv_path} is missing columns: {', '.join(missing)}")
        for raw in reader:
            row = clean_row(raw)
            if row is None:
                skipped += 1
            else:
                kept.append(row)
    return kept, skipped


def group_amendments(rows: Iterable[dict[str, Any]]) -> list[tuple[dict[str, Any], list[dict[str, Any]]]]:
    """Group rows by ref_number.

    Returns:
        ``[(latest_row, earlier_versions), ...]`` where earlier_versions are
        amendment dicts ordered by amendment number, oldest first. Duplicate
        amendment numbers keep the last row seen.
    """
    by_ref: dict[str, dict[int, dict[str, Any]]] = defaultdict(dict)
    for row in rows:
        by_ref[row["ref_number"]][row["amendment_number"]] = row

    grouped = []
    for versions in by_ref.values():
        numbers = sorted(versions)
        latest = versions[numbers[-1]]
        history = [
            {field: versions[n][field] for field in AMENDMENT_FIELDS}
            for n in numbers[:-1]
        ]
        grouped.append((latest, history))
    return grouped


# ── Upserts ───────────────────────────────────────────────────────────────────

def _get_or_create(conn: sqlite3.Connection, cache: dict, key: tuple,
                   select_sql: str, insert_sql: str, insert_params: tuple) -> int:
    if key in cache:
        return cache[key]
    row = conn.execute(select_sql, key).fetchone()
    if row is None:
        cur = conn.execute(insert_sql, insert_params)
        row_id = cur.lastrowid
    else:
        row_id = row[0]
    cache[key] = row_id
    return row_id


def load_grants(conn: sqlite3.Connection, grouped) -> dict[str, int]:
    """Upsert programs, institutes, recipients and grants. Returns counts."""
    programs: dict = {}
    institutes: dict = {}
    recipients: dict = {}
    stats = {"grants": 0, "amended": 0}

    with transaction(conn):
        for latest, history in grouped:
            prog_id = None
            if latest["prog_name_en"]:
                prog_id = _get_or_create(
                    conn, programs, (latest["prog_name_en"], latest["org"]),
                    "SELECT prog_id FROM programs WHERE prog_title_en = ? AND org = ?",
                    "INSERT INTO programs (prog_name_en, prog_title_en, prog_purpose_en, org) "
                    "VALUES (?, ?, ?, ?)",
                    (latest["prog_name_en"], latest["prog_name_en"],
                     latest["prog_purpose_en"], latest["org"]),
                )

            institute_id = None
            if latest["research_organization_name"]:
                key = (latest["research_organization_name"], latest["city"],
                       latest["country"])
                institute_id = _get_or_create(
                    conn, institutes, key,
                    "SELECT institute_id FROM institutes WHERE name = ? "
                    "AND city IS ? AND country IS ?",
                    "INSERT INTO institutes (name, city, country, province, postal_code, "
                    "federal_riding_name_en, federal_riding_number) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    key + (latest["province"], latest["postal_code"],
                           latest["federal_riding_name_en"], latest["federal_riding_number"]),
                )

            recipient_id = _get_or_create(
                conn, recipients, (latest["legal_name"], institute_id),
                "SELECT recipient_id FROM recipients WHERE legal_name = ? "
                "AND institute_id IS ?",
                "INSERT INTO recipients (legal_name, operating_name, type, "
                "business_number, institute_id) VALUES (?, ?, ?, ?, ?)",
                (latest["legal_name"], latest["operating_name"], latest["recipient_type"],
                 latest["business_number"], institute_id),
            )

            conn.execute(
                "INSERT INTO grants (ref_number, latest_amendment_number, amendment_date, "
                "agreement_type, agreement_number, agreement_value, foreign_currency_type, "
                "foreign_currency_value, agreement_start_date, agreement_end_date, "
                "agreement_title_en, description_en, expected_results_en, "
                "additional_information_en, org, recipient_id, prog_id, amendments_history) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(ref_number) DO UPDATE SET "
                "latest_amendment_number = excluded.latest_amendment_number, "
                "amendment_date = excluded.amendment_date, "
                "agreement_type = excluded.agreement_type, "
                "agreement_number = excluded.agreement_number, "
                "agreement_value = excluded.agreement_value, "
                "foreign_currency_type = excluded.foreign_currency_type, "
                "foreign_currency_value = excluded.foreign_currency_value, "
                "agreement_start_date = excluded.agreement_start_date, "
                "agreement_end_date = excluded.agreement_end_date, "
                "agreement_title_en = excluded.agreement_title_en, "
                "description_en = excluded.description_en, "
                "expected_results_en = excluded.expected_results_en, "
                "additional_information_en = excluded.additional_information_en, "
                "org = excluded.org, recipient_id = excluded.recipient_id, "
                "prog_id = excluded.prog_id, "
                "amendments_history = excluded.amendments_history",
                (
                    latest["ref_number"], latest["amendment_number"],
                    latest["amendment_date"], latest["agreement_type"],
                    latest["agreement_number"], latest["agreement_value"],
                    latest["foreign_currency_type"], latest["foreign_currency_value"],
                    latest["agreement_start_date"], latest["agreement_end_date"],
                    latest["agreement_title_en"], latest["description_en"],
                    latest["expected_results_en"], latest["additional_information_en"],
                    latest["org"], recipient_id, prog_id,
                    json.dumps(history) if history else None,
                ),
            )
            stats["grants"] += 1
            if history:
                stats["amended"] += 1
    return stats


def build_database(csv_path: Path, db_path: Path, rebuild: bool = False) -> dict[str, Any]:
    """Create or update *db_path* from *csv_path*. Returns a summary dict."""
    start = time.monotonic()
    if rebuild and db_path.exists():
        logger.info("Removing existing database %s", db_path)
        db_path.unlink()
        for suffix in ("-wal", "-shm"):
            Path(f"{db_path}{suffix}").unlink(missing_ok=True)

    rows, skipped = read_csv(csv_path)
    grouped = group_amendments(rows)
    logger.info("Read %d council rows (%d skipped) forming %d agreements",
                len(rows), skipped, len(grouped))

    conn = create_schema(db_path)
    try:
        stats = load_grants(conn, grouped)
        summary = {
            "rows_read": len(rows),
            "rows_skipped": skipped,
            "grants_loaded": stats["grants"],
            "grants_amended": stats["amended"],
            "recipients": get_table_count(conn, "recipients"),
            "institutes": get_table_count(conn, "institutes"),
            "programs": get_table_count(conn, "programs"),
            "integrity_ok": check_database_integrity(conn)["ok"],
            "elapsed_seconds": round(time.monotonic() - start, 2),
        }
    finally:
        conn.close()
    logger.info(
        "Loaded %(grants_loaded)d grants (%(grants_amended)d amended), "
        "%(recipients)d recipients, %(institutes)d institutes in %(elapsed_seconds)ss",
        summary,
    )
    return summary


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Build the RGAP grants database")
    parser.add_argument("--csv", type=Path, required=True,
                        help="Grants and Contributions CSV export")
    parser.add_argument("--db", type=Path, default=DEFAULT_DB_PATH,
                        help="SQLite database path (default: rgap.sqlite)")
    parser.add_argument("--rebuild", action="store_true",
                        help="Delete the database before loading")
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO,
                        format="%(asctime)s %(levelname)s %(name)s %(message)s")

    if not args.csv.exists():
        logger.error("CSV file not found: %s", args.csv)
        return 1
    try:
        build_database(args.csv, args.db, rebuild=args.rebuild)
    except (ValueError, sqlite3.Error) as exc:
        logger.error("Build failed: %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
