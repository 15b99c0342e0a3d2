"""Configuration management for RGAP.

Provides:
- Domain constants (funding agencies, recipient types, filter limits)
- ``AppConfig``: application settings loaded from environment variables
"""

from pathlib import Path
from typing import Dict, Optional, Any
import os as _os


# ── Funding agencies ──────────────────────────────────────────────────────────

ORG_NAMES: Dict[str, str] = {
    "NSERC": "Natural Sciences and Engineering Research Council of Canada",
    "CIHR": "Canadian Institutes of Health Research",
    "SSHRC": "Social Sciences and Humanities Research Council of Canada",
}

ORG_COLORS: Dict[str, str] = {
    "NSERC": "#2563eb",
    "CIHR": "#dc2626",
    "SSHRC": "#16a34a",
}

# ── Recipient types (single-letter codes from the federal G&C export) ────────

RECIPIENT_TYPE_LABELS: Dict[str, str] = {
    "A": "Indigenous recipients",
    "F": "For-profit organizations",
    "G": "Government",
    "I": "International (non-government)",
    "N": "Not-for-profit organizations and charities",
    "O": "Other",
    "P": "Individual or sole proprietorships",
    "S": "Academia",
}

# ── Search filter limits ──────────────────────────────────────────────────────

FILTER_LIMITS: Dict[str, Any] = {
    "date_min": "2010-01-01",
    "date_max": "2026-12-31",
    "value_min": 0,
    "value_max": 200_000_000,
}

DEFAULT_PAGE_SIZE = 20
DEFAULT_ITEM_PER_PAGE = 30
MAX_PAGE_SIZE = 100
MAX_PAGE = 10_000
HISTORY_PAGE_SIZE = 15
ENTITY_GRANTS_LIMIT = 100
MAX_NOTE_LENGTH = 2000

VERIFICATION_TOKEN_HOURS = 24
RESET_TOKEN_HOURS = 1
REMEMBER_ME_DAYS = 30


def get_org_title(org: str) -> Optional[str]:
    """Return the English title for an agency code, or None if unknown."""
    return ORG_NAMES.get((org or "").upper())


def get_recipient_type_label(code: Optional[str]) -> str:
    """Return a human label for a recipient type code."""
    if not code:
        return "Unknown"
    return RECIPIENT_TYPE_LABELS.get(code.upper(), "Unknown")


def _env_bool(name: str, default: bool) -> bool:
    raw = _os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: str = "") -> list[str]:
    raw = _os.getenv(name, default)
    return [p.strip() for p in raw.split(",") if p.strip()]


class AppConfig:
    """Application-level configuration loaded from environment variables.

    All env vars have defaults so the application works out of the box.

    Environment variables:
        APP_DB_PATH: Path to the SQLite database file (default: rgap.sqlite)
        APP_PORT / APP_HOST: Server bind settings (default: 127.0.0.1:8000)
        APP_LOG_FORMAT: "text" or "json" (default: text)
        APP_CORS_ORIGINS: Comma-separated allowed origins (default: *)
        APP_URL: Public base URL used in email links
        RATE_LIMIT_SEARCH / RATE_LIMIT_AUTH / RATE_LIMIT_DEFAULT: req/min per IP
        TRUSTED_PROXIES: Comma-separated proxy IPs to trust for X-Forwarded-For
        SESSION_COOKIE_NAME: Cookie carrying the session token
        SESSION_TTL_HOURS: Session lifetime without "remember me" (default: 24)
        SESSION_COOKIE_SECURE: Send the cookie over HTTPS only (default: false)
        VISUALIZATION_ROW_LIMIT: Max rows returned for chart data (default: 5000)
        SMTP_HOST / SMTP_PORT / SMTP_USER / SMTP_PASSWORD / MAIL_SENDER:
            Outgoing mail; when SMTP_HOST is unset emails are only logged.
    """

    def __init__(self) -> None:
        self.db_path = Path(_os.getenv("APP_DB_PATH", "rgap.sqlite"))
        self.api_port = int(_os.getenv("APP_PORT", "8000"))
        self.api_host = _os.getenv("APP_HOST", "127.0.0.1")
        self.log_format = _os.getenv("APP_LOG_FORMAT", "text")
        raw_origins = _os.getenv("APP_CORS_ORIGINS", "*")
        self.cors_origins: list[str] = (
            ["*"] if raw_origins == "*" else _env_list("APP_CORS_ORIGINS")
        )
        self.app_url = _os.getenv("APP_URL", "http://localhost:8000").rstrip("/")
        self.rate_limit_search = int(_os.getenv("RATE_LIMIT_SEARCH", "60"))
        self.rate_limit_auth = int(_os.getenv("RATE_LIMIT_AUTH", "20"))
        self.rate_limit_default = int(_os.getenv("RATE_LIMIT_DEFAULT", "120"))
        self.trusted_proxies: set[str] = set(_env_list("TRUSTED_PROXIES"))
        self.session_cookie_name = _os.getenv("SESSION_COOKIE_NAME", "session_token")
        self.session_ttl_hours = int(_os.getenv("SESSION_TTL_HOURS", "24"))
        self.session_cookie_secure = _env_bool("SESSION_COOKIE_SECURE", False)
        self.visualization_row_limit = int(
            _os.getenv("VISUALIZATION_ROW_LIMIT", "5000")
        )
        self.smtp_host = _os.getenv("SMTP_HOST", "")
        self.smtp_port = int(_os.getenv("SMTP_PORT", "587"))
        self.smtp_user = _os.getenv("SMTP_USER", "")
        self.smtp_password = _os.getenv("SMTP_PASSWORD", "")
        self.mail_sender = _os.getenv("MAIL_SENDER", "RGAP <no-reply@rgap.local>")

    @classmethod
    def from_env(cls) -> "AppConfig":
        """Create an AppConfig instance populated from environment variables."""
        return cls()
