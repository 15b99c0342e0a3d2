"""Tests for build_grants_db.py: CSV export to normalized schema."""
import csv
import json
import sqlite3

import pytest

from build_grants_db import (
    build_database,
    clean_row,
    group_amendments,
    main,
    org_code,
    parse_amendment,
    parse_money,
    read_csv,
)

COLUMNS = [
    "ref_number", "amendment_number", "amendment_date", "agreement_type",
    "recipient_type", "recipient_business_number", "recipient_legal_name",
    "recipient_operating_name", "research_organization_name",
    "recipient_country", "recipient_province", "recipient_city",
    "recipient_postal_code", "federal_riding_name_en", "federal_riding_number",
    "prog_name_en", "prog_purpose_en", "agreement_title_en", "agreement_number",
    "agreement_value", "foreign_currency_type", "foreign_currency_value",
    "agreement_start_date", "agreement_end_date", "description_en",
    "expected_results_en", "additional_information_en", "owner_org",
]


def _row(**values):
    base = {c: "" for c in COLUMNS}
    base.update({
        "recipient_type": "S",
        "recipient_country": "CA",
        "agreement_type": "G",
        "agreement_start_date": "2019-04-01",
        "agreement_end_date": "2024-03-31",
    })
    base.update(values)
    return base


ROWS = [
    _row(ref_number="A-1", amendment_number="0", owner_org="nserc-crsng",
         agreement_value="$100,000.00", recipient_legal_name="Jane Smith",
         research_organization_name="University of Toronto",
         recipient_city="Toronto", recipient_province="ON",
         prog_name_en="Discovery Grants", agreement_title_en="Quantum materials"),
    _row(ref_number="A-1", amendment_number="1", amendment_date="2020-05-01",
         owner_org="nserc-crsng", agreement_value="120000",
         recipient_legal_name="Jane Smith",
         research_organization_name="University of Toronto",
         recipient_city="Toronto", recipient_province="ON",
         federal_riding_name_en="University--Rosedale", federal_riding_number="35113",
         prog_name_en="Discovery Grants", agreement_title_en="Quantum materials"),
    _row(ref_number="B-2", amendment_number="0", owner_org="cihr-irsc",
         agreement_value="250000", recipient_legal_name="John Doe",
         research_organization_name="McGill University",
         recipient_city="Montreal", recipient_province="QC",
         prog_name_en="Project Grant", agreement_start_date="2020-06-01"),
    _row(ref_number="C-3", amendment_number="0", owner_org="ised-isde",
         agreement_value="9000", recipient_legal_name="Widget Co"),
    _row(ref_number="D-4", amendment_number="0", owner_org="nserc-crsng",
         agreement_value="50000", recipient_legal_name="Jane Smith",
         research_organization_name="University of Toronto",
         recipient_city="Toronto", recipient_province="ON",
         prog_name_en="Discovery Grants", agreement_start_date="2021-01-15"),
]


def _write_csv(path, rows, columns=COLUMNS):
    with open(path, "w", newline="", encoding="utf-8") as fh:
        writer = csv.DictWriter(fh, fieldnames=columns, extrasaction="ignore")
        writer.writeheader()
        writer.writerows(rows)
    return path


@pytest.fixture()
def export_csv(tmp_path):
    return _write_csv(tmp_path / "grants.csv", ROWS)


class TestParsers:
    def test_parse_money(self):
        assert parse_money("$1,234.50") == 1234.5
        assert parse_money("1234.5") == 1234.5
        assert parse_money("") is None
        assert parse_money("n/a") is None

    def test_parse_amendment(self):
        assert parse_amendment("3") == 3
        assert parse_amendment("2.0") == 2
        assert parse_amendment("") == 0
        assert parse_amendment("current") == 0

    def test_org_code(self):
        assert org_code("nserc-crsng") == "NSERC"
        assert org_code("SSHRC-CRSH") == "SSHRC"
        assert org_code("cihr-irsc") == "CIHR"
        assert org_code("ised-isde") is None
        assert org_code(None) is None

    def test_clean_row_skips_other_departments(self):
        assert clean_row(ROWS[3]) is None

    def test_clean_row_dates_normalised(self):
        row = clean_row(_row(ref_number="X", owner_org="nserc-crsng",
                             recipient_legal_name="Z",
                             agreement_start_date="2019-04-01 00:00:00"))
        assert row["agreement_start_date"] == "2019-04-01"


class TestReadAndGroup:
    def test_read_csv_counts(self, export_csv):
        rows, skipped = read_csv(export_csv)
        assert len(rows) == 4
        assert skipped == 1

    def test_missing_columns(self, tmp_path):
        path = _write_csv(tmp_path / "bad.csv", ROWS, columns=["ref_number"])
        with pytest.raises(ValueError, match="missing columns"):
            read_csv(path)

    def test_group_keeps_latest_amendment(self, export_csv):
        rows, _ = read_csv(export_csv)
        grouped = {latest["ref_number"]: (latest, history)
                   for latest, history in group_amendments(rows)}
        latest, history = grouped["A-1"]
        assert latest["amendment_number"] == 1
        assert latest["agreement_value"] == 120000.0
        assert [h["amendment_number"] for h in history] == [0]
        assert history[0]["agreement_value"] == 100000.0
        assert grouped["B-2"][1] == []


class TestBuildDatabase:
    def test_summary(self, export_csv, tmp_path):
        summary = build_database(export_csv, tmp_path / "out.sqlite")
        assert summary["rows_read"] == 4
        assert summary["rows_skipped"] == 1
        assert summary["grants_loaded"] == 3
        assert summary["grants_amended"] == 1
        assert summary["recipients"] == 2
        assert summary["institutes"] == 2
        assert summary["programs"] == 2
        assert summary["integrity_ok"] is True

    def test_amendment_history_stored(self, export_csv, tmp_path):
        db_path = tmp_path / "out.sqlite"
        build_database(export_csv, db_path)
        conn = sqlite3.connect(str(db_path))
        row = conn.execute(
            "SELECT latest_amendment_number, agreement_value, org, amendments_history "
            "FROM grants WHERE ref_number = 'A-1'"
        ).fetchone()
        conn.close()
        assert row[0] == 1
        assert row[1] == 120000.0
        assert row[2] == "NSERC"
        history = json.loads(row[3])
        assert len(history) == 1
        assert history[0]["amendment_number"] == 0

    def test_institute_riding_stored(self, export_csv, tmp_path):
        db_path = tmp_path / "out.sqlite"
        build_database(export_csv, db_path)
        conn = sqlite3.connect(str(db_path))
        row = conn.execute(
            "SELECT province, federal_riding_name_en, federal_riding_number "
            "FROM institutes WHERE name = 'University of Toronto'"
        ).fetchone()
        conn.close()
        assert row == ("ON", "University--Rosedale", "35113")

    def test_reload_updates_in_place(self, export_csv, tmp_path):
        db_path = tmp_path / "out.sqlite"
        build_database(export_csv, db_path)
        summary = build_database(export_csv, db_path)
        assert summary["recipients"] == 2
        conn = sqlite3.connect(str(db_path))
        assert conn.execute("SELECT COUNT(*) FROM grants").fetchone()[0] == 3
        conn.close()

    def test_rebuild_drops_extra_rows(self, export_csv, tmp_path):
        db_path = tmp_path / "out.sqlite"
        build_database(export_csv, db_path)
        smaller = _write_csv(tmp_path / "small.csv", ROWS[2:3])
        build_database(smaller, db_path, rebuild=True)
        conn = sqlite3.connect(str(db_path))
        assert conn.execute("SELECT COUNT(*) FROM grants").fetchone()[0] == 1
        conn.close()

    def test_loaded_database_serves_api(self, export_csv, tmp_path):
        from fastapi.testclient import TestClient

        from api.app import create_app

        db_path = tmp_path / "out.sqlite"
        build_database(export_csv, db_path)
        client = TestClient(create_app(db_path=db_path))
        resp = client.post("/api/grants", json={"searchTerms": {"recipient": "jane"}})
        assert resp.status_code == 200
        data = resp.json()
        assert data["pagination"]["total"] == 2
        amended = [g for g in data["data"] if g["ref_number"] == "A-1"][0]
        assert [a["amendment_number"] for a in amended["amendments"]] == [1, 0]


class TestMain:
    def test_missing_csv(self, tmp_path):
        assert main(["--csv", str(tmp_path / "nope.csv"),
                     "--db", str(tmp_path / "x.sqlite")]) == 1

    def test_success(self, export_csv, tmp_path):
        db_path = tmp_path / "cli.sqlite"
        assert main(["--csv", str(export_csv), "--db", str(db_path)]) == 0
        assert db_path.exists()
