"""
Account endpoints.

POST   /api/auth/register               create an account, email a verification link
GET    /api/auth/verify?token=          confirm registration or an email change
POST   /api/auth/login                  start a cookie session
POST   /api/auth/logout                 revoke the current session
GET    /api/auth/check                  {authenticated, user}
PATCH  /api/auth/profile                change name / request email change
POST   /api/auth/password               change password
POST   /api/auth/forgot-password        email a reset link
POST   /api/auth/reset-password         set a new password from a reset link
GET    /api/auth/sessions               active sessions for the caller
POST   /api/auth/sessions/{id}/revoke   sign out one session
GET    /api/auth/audit-log              account events, newest first
DELETE /api/auth/account                delete the account and all saved data

Tokens (verification and reset) are random URL-safe strings with an expiry
timestamp computed in SQL, so comparisons use SQLite's own clock.
"""

import logging
import sqlite3
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status

from api.auth import (
    clear_session_cookie,
    client_ip,
    create_session,
    get_current_user,
    hash_password,
    log_audit,
    new_token,
    require_user,
    revoke_session,
    session_token,
    set_session_cookie,
    verify_password,
)
from api.database import get_db
from api.models import (
    DeleteAccountRequest,
    ForgotPasswordRequest,
    LoginRequest,
    MessageOut,
    PasswordChange,
    ProfileUpdate,
    RegisterRequest,
    ResetPasswordRequest,
    SessionOut,
    UserOut,
)
from utils.config import RESET_TOKEN_HOURS, VERIFICATION_TOKEN_HOURS
from utils.database import query_one, query_to_dicts, transaction
from utils.mailer import (
    send_goodbye_email,
    send_password_reset_email,
    send_verification_email,
)
from utils.validation import (
    DELETE_CONFIRMATION,
    is_valid_email,
    normalize_email,
    validate_new_password,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

_FORGOT_MESSAGE = (
    "If an account exists for that email, a password reset link has been sent."
)
_AUDIT_LOG_LIMIT = 50


def _user_by_email(conn: sqlite3.Connection, email: str) -> dict[str, Any] | None:
    return query_one(
        conn,
        "SELECT id, name, email, password_hash, email_verified_at, pending_email, "
        "created_at FROM users WHERE email = ?",
        (email,),
    )


def _public(user: dict[str, Any]) -> dict[str, Any]:
    return UserOut.model_validate(user).model_dump()


def _issue_verification(conn: sqlite3.Connection, email: str) -> str:
    token = new_token()
    conn.execute("DELETE FROM verification_tokens WHERE identifier = ?", (email,))
    conn.execute(
        "INSERT INTO verification_tokens (token, identifier, expires) "
        "VALUES (?, ?, datetime('now', ?))",
        (token, email, f"+{VERIFICATION_TOKEN_HOURS} hours"),
    )
    return token


def _bad_request(message: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=message)


# ── Registration and verification ─────────────────────────────────────────────

@router.post("/register", response_model=MessageOut,
             status_code=status.HTTP_201_CREATED, summary="Create an account")
def register(body: RegisterRequest, conn: sqlite3.Connection = Depends(get_db)):
    email = normalize_email(body.email)
    if not is_valid_email(email):
        raise _bad_request("Please enter a valid email address.")
    name = body.name.strip()
    if not name:
        raise _bad_request("Name is required.")
    problem = validate_new_password(body.password, body.confirmPassword)
    if problem:
        raise _bad_request(problem)
    if _user_by_email(conn, email):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="An account with this email already exists.",
        )

    with transaction(conn):
        conn.execute(
            "INSERT INTO users (name, email, password_hash) VALUES (?, ?, ?)",
            (name, email, hash_password(body.password)),
        )
        token = _issue_verification(conn, email)
    send_verification_email(email, name, token)
    logger.info("Registered user %s", email)
    return {
        "success": True,
        "message": "Account created. Check your email to verify your address.",
    }


@router.get("/verify", response_model=MessageOut, summary="Verify an email address")
def verify_email(
    request: Request,
    response: Response,
    token: str = Query(..., min_length=1),
    conn: sqlite3.Connection = Depends(get_db),
):
    """Complete a registration (and sign in) or commit a pending email change."""
    row = query_one(
        conn,
        "SELECT identifier FROM verification_tokens "
        "WHERE token = ? AND expires > datetime('now')",
        (token,),
    )
    if row is None:
        raise _bad_request("Invalid or expired verification link.")
    email = row["identifier"]

    new_user = query_one(
        conn,
        "SELECT id FROM users WHERE email = ? AND email_verified_at IS NULL",
        (email,),
    )
    if new_user:
        with transaction(conn):
            conn.execute(
                "UPDATE users SET email_verified_at = datetime('now'), "
                "updated_at = datetime('now') WHERE id = ?",
                (new_user["id"],),
            )
            conn.execute("DELETE FROM verification_tokens WHERE token = ?", (token,))
            log_audit(conn, new_user["id"], "email_verified", None, email)
        session, max_age = create_session(
            conn, new_user["id"], request.headers.get("user-agent"), client_ip(request)
        )
        set_session_cookie(response, session, max_age)
        return {"success": True, "message": "Email verified. You are now signed in."}

    changing = query_one(
        conn, "SELECT id, email FROM users WHERE pending_email = ?", (email,)
    )
    if changing is None:
        raise _bad_request("Invalid or expired verification link.")
    taken = query_one(
        conn, "SELECT id FROM users WHERE email = ? AND id != ?", (email, changing["id"])
    )
    if taken:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="This email address is already in use.",
        )
    with transaction(conn):
        conn.execute(
            "UPDATE users SET email = pending_email, pending_email = NULL, "
            "updated_at = datetime('now') WHERE id = ?",
            (changing["id"],),
        )
        conn.execute("DELETE FROM verification_tokens WHERE token = ?", (token,))
        log_audit(conn, changing["id"], "email_change", changing["email"], email)
    return {"success": True, "message": "Your email address has been updated."}


# ── Sessions ──────────────────────────────────────────────────────────────────

@router.post("/login", summary="Sign in")
def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    conn: sqlite3.Connection = Depends(get_db),
) -> dict[str, Any]:
    user = _user_by_email(conn, normalize_email(body.email))
    if user is None or not verify_password(body.password, user["password_hash"]):
        logger.info("Failed login for %s", normalize_email(body.email))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password.",
        )
    if not user["email_verified_at"]:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Please verify your email before signing in.",
        )
    token, max_age = create_session(
        conn, user["id"], request.headers.get("user-agent"), client_ip(request),
        remember_me=body.rememberMe,
    )
    set_session_cookie(response, token, max_age)
    return {"success": True, "user": _public(user)}


@router.post("/logout", response_model=MessageOut, summary="Sign out")
def logout(
    request: Request,
    response: Response,
    conn: sqlite3.Connection = Depends(get_db),
):
    token = session_token(request)
    if token:
        revoke_session(conn, token)
    clear_session_cookie(response)
    return {"success": True, "message": "Signed out."}


@router.get("/check", summary="Current authentication state")
def check(user: dict[str, Any] | None = Depends(get_current_user)) -> dict[str, Any]:
    return {"authenticated": user is not None, "user": _public(user) if user else None}


@router.get("/sessions", response_model=list[SessionOut], summary="List active sessions")
def list_sessions(
    conn: sqlite3.Connection = Depends(get_db),
    user: dict[str, Any] = Depends(require_user),
):
    rows = query_to_dicts(
        conn,
        "SELECT rowid AS id, session_id, user_agent, ip_address, location, "
        "created_at, last_active_at, expires_at FROM sessions "
        "WHERE user_id = ? AND is_revoked = 0 AND expires_at > datetime('now') "
        "ORDER BY last_active_at DESC",
        (user["id"],),
    )
    for row in rows:
        row["is_current"] = row.pop("session_id") == user["session_id"]
    return rows


@router.post("/sessions/{session_row}/revoke", response_model=MessageOut,
             summary="Revoke a session")
def revoke(
    session_row: int,
    response: Response,
    conn: sqlite3.Connection = Depends(get_db),
    user: dict[str, Any] = Depends(require_user),
):
    row = query_one(
        conn,
        "SELECT session_id FROM sessions WHERE rowid = ? AND user_id = ? "
        "AND is_revoked = 0",
        (session_row, user["id"]),
    )
    if row is None:
        raise HTTPException(status_code=404, detail="Session not found")
    revoke_session(conn, row["session_id"])
    if row["session_id"] == user["session_id"]:
        clear_session_cookie(response)
    return {"success": True, "message": "Session revoked."}


# ── Profile and password ──────────────────────────────────────────────────────

@router.patch("/profile", summary="Update name or email")
def update_profile(
    body: ProfileUpdate,
    conn: sqlite3.Connection = Depends(get_db),
    user: dict[str, Any] = Depends(require_user),
) -> dict[str, Any]:
    """Name changes apply immediately; a new email waits for verification."""
    messages = []
    name = (body.name or "").strip()
    email = normalize_email(body.email) if body.email else ""

    if email and email != normalize_email(user["email"]):
        if not is_valid_email(email):
            raise _bad_request("Please enter a valid email address.")
        if _user_by_email(conn, email):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="This email address is already in use.",
            )

    with transaction(conn):
        if name and name != user["name"]:
            conn.execute(
                "UPDATE users SET name = ?, updated_at = datetime('now') WHERE id = ?",
                (name, user["id"]),
            )
            log_audit(conn, user["id"], "name_change", user["name"], name)
            messages.append("Name updated.")
        token = None
        if email and email != normalize_email(user["email"]):
            conn.execute(
                "UPDATE users SET pending_email = ?, updated_at = datetime('now') "
                "WHERE id = ?",
                (email, user["id"]),
            )
            token = _issue_verification(conn, email)
            log_audit(conn, user["id"], "email_change_requested", user["email"], email)
            messages.append("Check your new email address to confirm the change.")
    if token:
        send_verification_email(email, name or user["name"], token)

    updated = query_one(
        conn,
        "SELECT id, name, email, email_verified_at, pending_email, created_at "
        "FROM users WHERE id = ?",
        (user["id"],),
    )
    return {
        "success": True,
        "message": " ".join(messages) or "No changes.",
        "user": updated,
    }


@router.post("/password", response_model=MessageOut, summary="Change password")
def change_password(
    body: PasswordChange,
    conn: sqlite3.Connection = Depends(get_db),
    user: dict[str, Any] = Depends(require_user),
):
    current = query_one(
        conn, "SELECT password_hash FROM users WHERE id = ?", (user["id"],)
    )
    if not verify_password(body.currentPassword, current["password_hash"]):
        raise _bad_request("Current password is incorrect.")
    problem = validate_new_password(body.newPassword, body.confirmPassword)
    if problem:
        raise _bad_request(problem)
    with transaction(conn):
        conn.execute(
            "UPDATE users SET password_hash = ?, updated_at = datetime('now') "
            "WHERE id = ?",
            (hash_password(body.newPassword), user["id"]),
        )
        log_audit(conn, user["id"], "password_change")
    return {"success": True, "message": "Password updated."}


@router.post("/forgot-password", response_model=MessageOut,
             summary="Request a password reset link")
def forgot_password(
    body: ForgotPasswordRequest, conn: sqlite3.Connection = Depends(get_db)
):
    """Same response whether or not the account exists."""
    email = normalize_email(body.email)
    if is_valid_email(email) and _user_by_email(conn, email):
        token = new_token()
        with transaction(conn):
            conn.execute("DELETE FROM password_reset_tokens WHERE email = ?", (email,))
            conn.execute(
                "INSERT INTO password_reset_tokens (token, email, expires_at) "
                "VALUES (?, ?, datetime('now', ?))",
                (token, email, f"+{RESET_TOKEN_HOURS} hours"),
            )
        send_password_reset_email(email, token)
    return {"success": True, "message": _FORGOT_MESSAGE}


@router.post("/reset-password", response_model=MessageOut,
             summary="Set a new password from a reset link")
def reset_password(
    body: ResetPasswordRequest, conn: sqlite3.Connection = Depends(get_db)
):
    problem = validate_new_password(body.password, body.confirmPassword)
    if problem:
        raise _bad_request(problem)
    row = query_one(
        conn,
        "SELECT email FROM password_reset_tokens "
        "WHERE token = ? AND expires_at > datetime('now')",
        (body.token,),
    )
    user = _user_by_email(conn, row["email"]) if row else None
    if user is None:
        raise _bad_request("Invalid or expired reset link.")
    with transaction(conn):
        conn.execute(
            "UPDATE users SET password_hash = ?, updated_at = datetime('now') "
            "WHERE id = ?",
            (hash_password(body.password), user["id"]),
        )
        conn.execute("DELETE FROM password_reset_tokens WHERE email = ?", (row["email"],))
        conn.execute(
            "UPDATE sessions SET is_revoked = 1 WHERE user_id = ?", (user["id"],)
        )
        log_audit(conn, user["id"], "password_reset")
    return {"success": True, "message": "Password has been reset. Please sign in."}


# ── Audit log and deletion ────────────────────────────────────────────────────

@router.get("/audit-log", summary="Account events")
def audit_log(
    conn: sqlite3.Connection = Depends(get_db),
    user: dict[str, Any] = Depends(require_user),
) -> list[dict[str, Any]]:
    return query_to_dicts(
        conn,
        "SELECT id, event_type, old_value, new_value, created_at "
        "FROM user_audit_logs WHERE user_id = ? "
        "ORDER BY created_at DESC, id DESC LIMIT ?",
        (user["id"], _AUDIT_LOG_LIMIT),
    )


@router.delete("/account", response_model=MessageOut, summary="Delete account")
def delete_account(
    body: DeleteAccountRequest,
    response: Response,
    conn: sqlite3.Connection = Depends(get_db),
    user: dict[str, Any] = Depends(require_user),
):
    """Remove the user; sessions, bookmarks and history cascade with it."""
    if body.confirmation != DELETE_CONFIRMATION:
        raise _bad_request(f"Type '{DELETE_CONFIRMATION}' to confirm.")
    if normalize_email(body.email) != normalize_email(user["email"]):
        raise _bad_request("Email does not match this account.")
    current = query_one(
        conn, "SELECT password_hash FROM users WHERE id = ?", (user["id"],)
    )
    if not verify_password(body.password, current["password_hash"]):
        raise _bad_request("Incorrect password.")

    with transaction(conn):
        conn.execute("DELETE FROM users WHERE id = ?", (user["id"],))
    clear_session_cookie(response)
    send_goodbye_email(user["email"], user["name"])
    logger.info("Deleted account %s", user["id"])
    return {"success": True, "message": "Your account has been deleted."}
