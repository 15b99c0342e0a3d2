"""
Relational schema for the RGAP grants database.

Tables fall into three groups, each applied as a numbered migration:

    001  reference + fact tables: organizations, programs, institutes,
         recipients, grants (with amendments_history as JSON text)
    002  accounts: users, sessions, user_audit_logs, verification_tokens,
         password_reset_tokens
    003  per-user data: bookmarked_grants / _recipients / _institutes /
         _searches and search_history

Timestamps are stored as UTC text in SQLite's ``datetime('now')`` format
(``YYYY-MM-DD HH:MM:SS``) so they compare correctly with ``datetime()``
expressions in queries. Dates on grants are ISO ``YYYY-MM-DD``.

Usage:
    python schema_design.py --db rgap.sqlite
"""

import argparse
import logging
import sqlite3
from pathlib import Path

from utils.database import init_pragmas

logger = logging.getLogger(__name__)


_DDL_001_CORE = """
-- ── Reference tables ─────────────────────────────────────────────────────────

CREATE TABLE IF NOT EXISTS organizations (
    org           TEXT PRIMARY KEY,        -- agency code, e.g. "NSERC"
    org_fr        TEXT,                    -- French acronym, e.g. "CRSNG"
    org_title_en  TEXT NOT NULL,
    org_title_fr  TEXT
);

CREATE TABLE IF NOT EXISTS programs (
    prog_id          INTEGER PRIMARY KEY AUTOINCREMENT,
    prog_name_en     TEXT,                 -- program code/short name
    prog_title_en    TEXT NOT NULL,
    prog_purpose_en  TEXT,
    org              TEXT REFERENCES organizations(org),
    UNIQUE (prog_title_en, org)
);

CREATE TABLE IF NOT EXISTS institutes (
    institute_id            INTEGER PRIMARY KEY AUTOINCREMENT,
    name                    TEXT NOT NULL,
    country                 TEXT,
    province                TEXT,
    city                    TEXT,
    postal_code             TEXT,
    federal_riding_name_en  TEXT,
    federal_riding_number   TEXT,
    UNIQUE (name, city, country)
);

CREATE TABLE IF NOT EXISTS recipients (
    recipient_id     INTEGER PRIMARY KEY AUTOINCREMENT,
    legal_name       TEXT NOT NULL,
    operating_name   TEXT,
    type             TEXT,                 -- single-letter recipient type code
    business_number  TEXT,
    institute_id     INTEGER REFERENCES institutes(institute_id),
    UNIQUE (legal_name, institute_id)
);

-- ── Fact table ───────────────────────────────────────────────────────────────

CREATE TABLE IF NOT EXISTS grants (
    grant_id                   INTEGER PRIMARY KEY AUTOINCREMENT,
    ref_number                 TEXT NOT NULL UNIQUE,
    latest_amendment_number    INTEGER,
    amendment_date             TEXT,
    agreement_type             TEXT,
    agreement_number           TEXT,
    agreement_value            REAL,
    foreign_currency_type      TEXT,
    foreign_currency_value     REAL,
    agreement_start_date       TEXT,
    agreement_end_date         TEXT,
    agreement_title_en         TEXT,
    description_en             TEXT,
    expected_results_en        TEXT,
    additional_information_en  TEXT,
    org                        TEXT REFERENCES organizations(org),
    recipient_id               INTEGER REFERENCES recipients(recipient_id),
    prog_id                    INTEGER REFERENCES programs(prog_id),
    amendments_history         TEXT        -- JSON array of prior versions
);

CREATE INDEX IF NOT EXISTS idx_grants_start_date ON grants(agreement_start_date);
CREATE INDEX IF NOT EXISTS idx_grants_value ON grants(agreement_value);
CREATE INDEX IF NOT EXISTS idx_grants_org ON grants(org);
CREATE INDEX IF NOT EXISTS idx_grants_recipient ON grants(recipient_id);
CREATE INDEX IF NOT EXISTS idx_grants_prog ON grants(prog_id);
CREATE INDEX IF NOT EXISTS idx_recipients_institute ON recipients(institute_id);
CREATE INDEX IF NOT EXISTS idx_institutes_location
    ON institutes(country, province, city);
"""

_DDL_001_SEEDS = """
INSERT OR IGNORE INTO organizations (org, org_fr, org_title_en, org_title_fr) VALUES
    ('NSERC', 'CRSNG',
     'Natural Sciences and Engineering Research Council of Canada',
     'Conseil de recherches en sciences naturelles et en génie du Canada'),
    ('CIHR', 'IRSC',
     'Canadian Institutes of Health Research',
     'Instituts de recherche en santé du Canada'),
    ('SSHRC', 'CRSH',
     'Social Sciences and Humanities Research Council of Canada',
     'Conseil de recherches en sciences humaines du Canada');
"""

_DDL_002_ACCOUNTS = """
CREATE TABLE IF NOT EXISTS users (
    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
    name               TEXT NOT NULL,
    email              TEXT NOT NULL UNIQUE COLLATE NOCASE,
    password_hash      TEXT NOT NULL,
    email_verified_at  TEXT,
    pending_email      TEXT,
    created_at         TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at         TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS sessions (
    session_id      TEXT PRIMARY KEY,      -- opaque token stored in the cookie
    user_id         INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    user_agent      TEXT,
    ip_address      TEXT,
    location        TEXT,
    created_at      TEXT NOT NULL DEFAULT (datetime('now')),
    last_active_at  TEXT NOT NULL DEFAULT (datetime('now')),
    expires_at      TEXT NOT NULL,
    is_revoked      INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_sessions_user ON sessions(user_id);

CREATE TABLE IF NOT EXISTS user_audit_logs (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id     INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    event_type  TEXT NOT NULL,
    old_value   TEXT,
    new_value   TEXT,
    created_at  TEXT NOT NULL DEFAULT (datetime('now'))
);
CREATE INDEX IF NOT EXISTS idx_audit_user ON user_audit_logs(user_id);

CREATE TABLE IF NOT EXISTS verification_tokens (
    token       TEXT PRIMARY KEY,
    identifier  TEXT NOT NULL,             -- email address being verified
    expires     TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS password_reset_tokens (
    token       TEXT PRIMARY KEY,
    email       TEXT NOT NULL COLLATE NOCASE,
    expires_at  TEXT NOT NULL
);
"""

_DDL_003_USER_DATA = """
CREATE TABLE IF NOT EXISTS search_history (
    search_id     INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id       INTEGER REFERENCES users(id) ON DELETE CASCADE,
    search_query  TEXT,
    filters       TEXT,                    -- JSON object
    result_count  INTEGER NOT NULL DEFAULT 0,
    searched_at   TEXT NOT NULL DEFAULT (datetime('now'))
);
CREATE INDEX IF NOT EXISTS idx_history_user ON search_history(user_id, searched_at);

CREATE TABLE IF NOT EXISTS bookmarked_grants (
    bookmark_id    INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id        INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    grant_id       INTEGER NOT NULL REFERENCES grants(grant_id) ON DELETE CASCADE,
    bookmarked_at  TEXT NOT NULL DEFAULT (datetime('now')),
    notes          TEXT,
    UNIQUE (user_id, grant_id)
);

CREATE TABLE IF NOT EXISTS bookmarked_recipients (
    bookmark_id    INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id        INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    recipient_id   INTEGER NOT NULL REFERENCES recipients(recipient_id) ON DELETE CASCADE,
    bookmarked_at  TEXT NOT NULL DEFAULT (datetime('now')),
    notes          TEXT,
    UNIQUE (user_id, recipient_id)
);

CREATE TABLE IF NOT EXISTS bookmarked_institutes (
    bookmark_id    INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id        INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    institute_id   INTEGER NOT NULL REFERENCES institutes(institute_id) ON DELETE CASCADE,
    bookmarked_at  TEXT NOT NULL DEFAULT (datetime('now')),
    notes          TEXT,
    UNIQUE (user_id, institute_id)
);

CREATE TABLE IF NOT EXISTS bookmarked_searches (
    bookmark_id    INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id        INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    search_id      INTEGER NOT NULL REFERENCES search_history(search_id) ON DELETE CASCADE,
    bookmarked_at  TEXT NOT NULL DEFAULT (datetime('now')),
    notes          TEXT,
    UNIQUE (user_id, search_id)
);
"""

_DDL_SCHEMA_VERSION = """
CREATE TABLE IF NOT EXISTS schema_version (
    version     INTEGER NOT NULL,
    description TEXT,
    applied_at  TEXT    DEFAULT (datetime('now'))
);
"""

# (version, description, sql), applied in order
_MIGRATIONS = [
    (1, "001_core_tables: reference tables + grants", _DDL_001_CORE + _DDL_001_SEEDS),
    (2, "002_accounts: users, sessions, audit log, tokens", _DDL_002_ACCOUNTS),
    (3, "003_user_data: bookmarks + search history", _DDL_003_USER_DATA),
]

SCHEMA_VERSION = _MIGRATIONS[-1][0]

EXPECTED_TABLES = (
    "organizations", "programs", "institutes", "recipients", "grants",
    "users", "sessions", "user_audit_logs", "verification_tokens",
    "password_reset_tokens", "search_history", "bookmarked_grants",
    "bookmarked_recipients", "bookmarked_institutes", "bookmarked_searches",
)


def _current_version(conn: sqlite3.Connection) -> int:
    """Return the highest applied migration version (0 if none applied)."""
    try:
        row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
        return row[0] or 0
    except sqlite3.OperationalError:
        return 0


def migrate(conn: sqlite3.Connection) -> int:
    """Apply all pending migrations in order.

    Idempotent: already-applied migrations are skipped.

    Returns:
        Number of migrations applied in this call (0 if already up to date).
    """
    conn.execute(_DDL_SCHEMA_VERSION)
    conn.commit()

    current = _current_version(conn)
    applied = 0
    for version, description, sql in _MIGRATIONS:
        if version <= current:
            continue
        conn.executescript(sql)
        conn.execute(
            "INSERT INTO schema_version (version, description) VALUES (?, ?)",
            (version, description),
        )
        conn.commit()
        logger.info("Applied migration %s", description)
        applied += 1
    return applied


def create_schema(db_path: Path) -> sqlite3.Connection:
    """Open (or create) the database at *db_path* and bring it up to date.

    Returns:
        An open connection with ``sqlite3.Row`` rows and standard pragmas.
    """
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    init_pragmas(conn)
    migrate(conn)
    return conn


def check_database_integrity(conn: sqlite3.Connection) -> dict:
    """Report missing tables and SQLite integrity/foreign-key problems."""
    present = {
        r[0] for r in conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table'"
        ).fetchall()
    }
    missing = [t for t in EXPECTED_TABLES if t not in present]
    integrity = conn.execute("PRAGMA integrity_check").fetchone()[0]
    fk_violations = conn.execute("PRAGMA foreign_key_check").fetchall()
    return {
        "ok": not missing and integrity == "ok" and not fk_violations,
        "schema_version": _current_version(conn),
        "missing_tables": missing,
        "integrity_check": integrity,
        "foreign_key_violations": len(fk_violations),
    }


def main() -> None:
    parser = argparse.ArgumentParser(description="Create or migrate the RGAP database")
    parser.add_argument("--db", type=Path, default=Path("rgap.sqlite"),
                        help="SQLite database path (default: rgap.sqlite)")
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    conn = create_schema(args.db)
    report = check_database_integrity(conn)
    conn.close()
    logger.info("Schema version %d at %s (ok=%s)",
                report["schema_version"], args.db, report["ok"])


if __name__ == "__main__":
    main()
