"""
Pytest fixtures for RGAP tests.

Provides a seeded SQLite database (three institutes, four recipients, six
grants across the three agencies), a TestClient bound to it, and helpers for
signing in as one of the two pre-verified users.

Seed grants (id: org, recipient, start, value):
    1: NSERC  Jane Smith      2019-04-01  100,000   Quantum materials ...
    2: CIHR   John Doe        2020-06-01  250,000   amendments 0, 1, 2
    3: SSHRC  Jane Smith      2021-01-15   50,000
    4: NSERC  Acme Research   2021-09-01  500,000   Quantum computing ...
    5: NSERC  Alice 50%_Lab   2022-05-01   75,000   100% renewable_grid ...
    6: CIHR   John Doe        2018-03-01     NULL
"""

import json
import sqlite3
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import api.app as app_module  # noqa: E402
from api.auth import hash_password  # noqa: E402
from api.routes import analytics, reference  # noqa: E402
from schema_design import create_schema  # noqa: E402
from utils import mailer  # noqa: E402

PASSWORD = "Password1"
ALICE = "alice@example.com"
BOB = "bob@example.com"


_SEED_SQL = """
INSERT INTO institutes (institute_id, name, country, province, city) VALUES
    (1, 'University of Toronto', 'CA', 'ON', 'Toronto'),
    (2, 'McGill University', 'CA', 'QC', 'Montreal'),
    (3, 'University of British Columbia', 'CA', 'BC', 'Vancouver');

INSERT INTO recipients (recipient_id, legal_name, type, institute_id) VALUES
    (1, 'Jane Smith', 'S', 1),
    (2, 'John Doe', 'S', 2),
    (3, 'Acme Research Inc', 'F', 3),
    (4, 'Alice 50%_Lab', 'N', 1);

INSERT INTO programs (prog_id, prog_name_en, prog_title_en, org) VALUES
    (1, 'DG', 'Discovery Grants', 'NSERC'),
    (2, 'PJT', 'Project Grant', 'CIHR'),
    (3, 'IG', 'Insight Grants', 'SSHRC');
"""

_GRANTS = [
    # ref, org, recipient, prog, value, start, end, title, latest, history
    ("R-001", "NSERC", 1, 1, 100000.0, "2019-04-01", "2024-03-31",
     "Quantum materials for energy storage", 0, None),
    ("R-002", "CIHR", 2, 2, 250000.0, "2020-06-01", "2023-05-31",
     "Cancer immunotherapy trial", 2,
     [
         {"amendment_number": 0, "amendment_date": "2020-06-01",
          "agreement_value": 150000.0, "agreement_start_date": "2020-06-01",
          "agreement_end_date": "2022-05-31"},
         {"amendment_number": 1, "amendment_date": "2021-02-01",
          "agreement_value": 200000.0, "agreement_start_date": "2020-06-01",
          "agreement_end_date": "2022-05-31"},
     ]),
    ("R-003", "SSHRC", 1, 3, 50000.0, "2021-01-15", "2022-01-14",
     "Indigenous language revitalization", 0, None),
    ("R-004", "NSERC", 3, 1, 500000.0, "2021-09-01", "2026-08-31",
     "Quantum computing hardware", 0, None),
    ("R-005", "NSERC", 4, 1, 75000.0, "2022-05-01", "2025-04-30",
     "100% renewable_grid study", 0, None),
    ("R-006", "CIHR", 2, 2, None, "2018-03-01", None,
     "Pilot study on sleep", 0, None),
]


def seed_grants(conn: sqlite3.Connection) -> None:
    conn.executescript(_SEED_SQL)
    conn.executemany(
        "INSERT INTO grants (ref_number, org, recipient_id, prog_id, "
        "agreement_value, agreement_start_date, agreement_end_date, "
        "agreement_title_en, latest_amendment_number, amendment_date, "
        "amendments_history) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
        [
            (ref, org, rid, pid, value, start, end, title, latest,
             "2022-01-01" if history else None,
             json.dumps(history) if history else None)
            for ref, org, rid, pid, value, start, end, title, latest, history
            in _GRANTS
        ],
    )
    conn.commit()


def seed_users(conn: sqlite3.Connection, password_hash: str) -> None:
    conn.executemany(
        "INSERT INTO users (name, email, password_hash, email_verified_at) "
        "VALUES (?, ?, ?, datetime('now'))",
        [("Alice", ALICE, password_hash), ("Bob", BOB, password_hash)],
    )
    conn.commit()


def login(client, email: str = ALICE, password: str = PASSWORD,
          remember_me: bool = False):
    resp = client.post(
        "/api/auth/login",
        json={"email": email, "password": password, "rememberMe": remember_me},
    )
    assert resp.status_code == 200, resp.text
    return resp


# ── Fixtures ──────────────────────────────────────────────────────────────────

@pytest.fixture(scope="session")
def password_hash():
    """bcrypt is slow on purpose; hash the shared test password once."""
    return hash_password(PASSWORD)


@pytest.fixture()
def db_path(tmp_path, password_hash):
    path = tmp_path / "rgap_test.sqlite"
    conn = create_schema(path)
    seed_grants(conn)
    seed_users(conn, password_hash)
    conn.close()
    return path


@pytest.fixture()
def db(db_path):
    """Direct connection for assertions against stored rows."""
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    yield conn
    conn.close()


@pytest.fixture()
def app(db_path):
    return app_module.create_app(db_path=db_path)


@pytest.fixture()
def client(app):
    from fastapi.testclient import TestClient
    return TestClient(app, raise_server_exceptions=False)


@pytest.fixture()
def make_client(app):
    """Factory for extra clients with their own cookie jars."""
    from fastapi.testclient import TestClient

    def _make():
        return TestClient(app, raise_server_exceptions=False)
    return _make


@pytest.fixture()
def alice(client):
    login(client, ALICE)
    return client


@pytest.fixture()
def bob(make_client):
    c = make_client()
    login(c, BOB)
    return c


@pytest.fixture(autouse=True)
def reset_state():
    """Rate-limit counters, caches and the mail outbox are module globals."""
    app_module._rate_counters.clear()
    analytics.analytics_cache.clear()
    reference.clear_reference_cache()
    mailer.outbox.clear()
    yield
    app_module._rate_counters.clear()
    mailer.outbox.clear()
