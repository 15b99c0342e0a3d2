"""Input validation rules for RGAP accounts and bookmarks.

Validators return an error message (``str``) or ``None`` when the input is
acceptable, so routes can surface the message directly in a 400 response.
"""

import re
from typing import Optional

from utils.config import MAX_NOTE_LENGTH

PASSWORD_MIN_LENGTH = 8
DELETE_CONFIRMATION = "I AGREE"

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_UPPER_RE = re.compile(r"[A-Z]")
_DIGIT_RE = re.compile(r"[0-9]")


def validate_password(password: str) -> Optional[str]:
    """Check the password rules: length, an uppercase letter, a digit."""
    if len(password or "") < PASSWORD_MIN_LENGTH:
        return f"Password must be at least {PASSWORD_MIN_LENGTH} characters long."
    if not _UPPER_RE.search(password):
        return "Password must contain at least one uppercase letter."
    if not _DIGIT_RE.search(password):
        return "Password must contain at least one number."
    return None


def validate_new_password(password: str, confirm: str) -> Optional[str]:
    """Password rules plus the confirmation match."""
    if password != confirm:
        return "Passwords do not match."
    return validate_password(password)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def is_valid_email(email: str) -> bool:
    return bool(_EMAIL_RE.match(normalize_email(email)))


def clean_note(note: Optional[str]) -> Optional[str]:
    """Trim a bookmark note; blank notes become None.

    Raises:
        ValueError: If the trimmed note exceeds MAX_NOTE_LENGTH characters.
    """
    if note is None:
        return None
    note = note.strip()
    if not note:
        return None
    if len(note) > MAX_NOTE_LENGTH:
        raise ValueError(
            f"Note must be at most {MAX_NOTE_LENGTH} characters "
            f"(got {len(note)})."
        )
    return note
