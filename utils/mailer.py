"""Transactional email for account flows.

Messages go out over SMTP when ``SMTP_HOST`` is configured. Otherwise they
are written to the log (and kept in ``outbox`` for inspection), which is the
normal mode for local development and tests.
"""

import logging
import smtplib
from email.message import EmailMessage

from utils.config import AppConfig

logger = logging.getLogger(__name__)

# Messages "sent" while SMTP is not configured, newest last.
outbox: list[EmailMessage] = []
_OUTBOX_LIMIT = 100


def _build(cfg: AppConfig, to: str, subject: str, body: str) -> EmailMessage:
    msg = EmailMessage()
    msg["From"] = cfg.mail_sender
    msg["To"] = to
    msg["Subject"] = subject
    msg.set_content(body)
    return msg


def send_mail(to: str, subject: str, body: str,
              cfg: AppConfig | None = None) -> bool:
    """Send one plain-text email. Returns True if the message was handed off.

    SMTP failures are logged and reported as False so that an outage never
    blocks registration or password changes.
    """
    cfg = cfg or AppConfig.from_env()
    msg = _build(cfg, to, subject, body)

    if not cfg.smtp_host:
        outbox.append(msg)
        del outbox[:-_OUTBOX_LIMIT]
        logger.info("email (not sent, SMTP disabled) to=%s subject=%r", to, subject)
        logger.debug("email body:\n%s", body)
        return True

    try:
        with smtplib.SMTP(cfg.smtp_host, cfg.smtp_port, timeout=15) as smtp:
            smtp.starttls()
            if cfg.smtp_user:
                smtp.login(cfg.smtp_user, cfg.smtp_password)
            smtp.send_message(msg)
    except (smtplib.SMTPException, OSError):
        logger.exception("email delivery failed to=%s subject=%r", to, subject)
        return False
    logger.info("email sent to=%s subject=%r", to, subject)
    return True


def send_verification_email(to: str, name: str, token: str,
                            cfg: AppConfig | None = None) -> bool:
    cfg = cfg or AppConfig.from_env()
    link = f"{cfg.app_url}/api/auth/verify?token={token}"
    body = (
        f"Hello {name},\n\n"
        "Confirm your email address for RGAP by opening the link below.\n"
        "The link expires in 24 hours.\n\n"
        f"{link}\n"
    )
    return send_mail(to, "Verify your RGAP email address", body, cfg)


def send_password_reset_email(to: str, token: str,
                              cfg: AppConfig | None = None) -> bool:
    cfg = cfg or AppConfig.from_env()
    link = f"{cfg.app_url}/reset-password?token={token}"
    body = (
        "A password reset was requested for your RGAP account.\n"
        "The link below is valid for one hour. If you did not request it, "
        "ignore this message.\n\n"
        f"{link}\n"
    )
    return send_mail(to, "Reset your RGAP password", body, cfg)


def send_goodbye_email(to: str, name: str,
                       cfg: AppConfig | None = None) -> bool:
    body = (
        f"Hello {name},\n\n"
        "Your RGAP account and all saved bookmarks have been deleted.\n"
    )
    return send_mail(to, "Your RGAP account has been deleted", body, cfg)
