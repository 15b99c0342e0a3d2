"""
Authentication helpers and FastAPI dependencies.

Passwords are hashed with bcrypt. A successful login creates a row in
``sessions`` keyed by a random token which is handed to the browser in an
httponly cookie; every request resolves the cookie back to a user.
Revoked or expired sessions resolve to an anonymous caller.

Dependencies:
    get_current_user  -> dict | None   (never raises)
    require_user      -> dict          (401 when anonymous)
"""

import ipaddress
import logging
import secrets
import sqlite3
from typing import Any

import bcrypt
from fastapi import Depends, HTTPException, Request, Response

from api.database import get_db
from utils.config import AppConfig, REMEMBER_ME_DAYS

logger = logging.getLogger(__name__)

_cfg = AppConfig.from_env()

_USER_COLUMNS = (
    "u.id, u.name, u.email, u.email_verified_at, u.pending_email, u.created_at"
)


# ── Passwords ─────────────────────────────────────────────────────────────────

def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, password_hash: str | None) -> bool:
    """Check *password* against a stored bcrypt hash (False on bad hashes)."""
    if not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        logger.warning("Stored password hash is not a valid bcrypt hash")
        return False


def new_token() -> str:
    return secrets.token_urlsafe(32)


# ── Sessions ──────────────────────────────────────────────────────────────────

def estimate_location(ip: str | None) -> str:
    """Coarse label for where a session came from.

    Loopback and private-range addresses are labelled as the local network;
    anything else is "Unknown" (no external geolocation lookup is made).
    """
    if not ip:
        return "Unknown"
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return "Unknown"
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped:
        addr = addr.ipv4_mapped
    if addr.is_loopback or addr.is_private:
        return "Local Network (Dev)"
    return "Unknown"


def create_session(
    conn: sqlite3.Connection,
    user_id: int,
    user_agent: str | None,
    ip_address: str | None,
    remember_me: bool = False,
) -> tuple[str, int]:
    """Insert a session row and return ``(token, max_age_seconds)``."""
    token = new_token()
    max_age = (
        REMEMBER_ME_DAYS * 86400 if remember_me else _cfg.session_ttl_hours * 3600
    )
    conn.execute(
        "INSERT INTO sessions (session_id, user_id, user_agent, ip_address, "
        "location, expires_at) "
        "VALUES (?, ?, ?, ?, ?, datetime('now', ?))",
        (
            token, user_id, (user_agent or "")[:500] or None, ip_address,
            estimate_location(ip_address), f"+{max_age} seconds",
        ),
    )
    conn.commit()
    logger.info("Created session for user %s (remember_me=%s)", user_id, remember_me)
    return token, max_age


def set_session_cookie(response: Response, token: str, max_age: int) -> None:
    response.set_cookie(
        key=_cfg.session_cookie_name,
        value=token,
        max_age=max_age,
        httponly=True,
        secure=_cfg.session_cookie_secure,
        samesite="lax",
        path="/",
    )


def clear_session_cookie(response: Response) -> None:
    response.delete_cookie(key=_cfg.session_cookie_name, path="/")


def session_token(request: Request) -> str | None:
    return request.cookies.get(_cfg.session_cookie_name)


def revoke_session(conn: sqlite3.Connection, token: str) -> bool:
    cur = conn.execute(
        "UPDATE sessions SET is_revoked = 1 WHERE session_id = ? AND is_revoked = 0",
        (token,),
    )
    conn.commit()
    return cur.rowcount > 0


def client_ip(request: Request) -> str | None:
    """Client IP honouring X-Forwarded-For from trusted proxies."""
    direct_ip = request.client.host if request.client else None
    if direct_ip and direct_ip in _cfg.trusted_proxies:
        forwarded = request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
        if forwarded:
            return forwarded
    return direct_ip


def load_user(conn: sqlite3.Connection, token: str | None) -> dict[str, Any] | None:
    """Resolve a session token to its user, refreshing last_active_at."""
    if not token:
        return None
    row = conn.execute(
        f"SELECT {_USER_COLUMNS}, s.session_id "
        "FROM sessions s JOIN users u ON u.id = s.user_id "
        "WHERE s.session_id = ? AND s.is_revoked = 0 "
        "AND s.expires_at > datetime('now')",
        (token,),
    ).fetchone()
    if row is None:
        return None
    conn.execute(
        "UPDATE sessions SET last_active_at = datetime('now') WHERE session_id = ?",
        (token,),
    )
    conn.commit()
    return dict(row)


# ── Dependencies ──────────────────────────────────────────────────────────────

def get_current_user(
    request: Request,
    conn: sqlite3.Connection = Depends(get_db),
) -> dict[str, Any] | None:
    """FastAPI dependency: the logged-in user as a dict, or None."""
    return load_user(conn, session_token(request))


def require_user(
    user: dict[str, Any] | None = Depends(get_current_user),
) -> dict[str, Any]:
    """FastAPI dependency: the logged-in user, or HTTP 401."""
    if user is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return user


def log_audit(
    conn: sqlite3.Connection,
    user_id: int,
    event_type: str,
    old_value: str | None = None,
    new_value: str | None = None,
) -> None:
    """Append an account event (caller commits)."""
    conn.execute(
        "INSERT INTO user_audit_logs (user_id, event_type, old_value, new_value) "
        "VALUES (?, ?, ?, ?)",
        (user_id, event_type, old_value, new_value),
    )
