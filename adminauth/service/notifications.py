"""Out-of-band security notices sent to administrators.

Notices are best effort: a notifier reports failure by returning ``False``
and the auth engine carries on with the operation that triggered it.
"""

from __future__ import annotations

import html
import smtplib
import ssl
from contextlib import contextmanager
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Any, Dict, Iterator, List, Optional, Protocol, Tuple

from adminauth.logging import get_logger

logger = get_logger(__name__)

ACCOUNT_LOCKED = "account_locked"
MFA_ENABLED = "mfa_enabled"
MFA_DISABLED = "mfa_disabled"
PASSWORD_CHANGED = "password_changed"
BACKUP_CODES_REGENERATED = "backup_codes_regenerated"
PASSWORD_RESET = "password_reset"
INVITATION = "invitation"

# kinds whose rendered body carries a usable token
_CARRIES_TOKEN = frozenset({PASSWORD_RESET, INVITATION})

SMTP_TIMEOUT_SECONDS = 30


class Notifier(Protocol):
    def send(self, kind: str, recipient: str, payload: Dict[str, Any]) -> bool: ...


def _redact_email(address: str) -> str:
    user, sep, host = address.partition("@")
    if not sep:
        return "redacted"
    return f"{user[:2]}***@{host}"


_TEMPLATES: Dict[str, Tuple[str, str]] = {
    ACCOUNT_LOCKED: (
        "Your administrator account was locked",
        "Too many failed sign-in attempts were made on your account.\n"
        "Sign-in is blocked until {unlock_at}.\n"
        "If this was not you, contact another administrator immediately.",
    ),
    MFA_ENABLED: (
        "Two-factor authentication enabled",
        "Two-factor authentication has been enabled on your administrator account.\n"
        "You will now need a code from your authenticator app when signing in.",
    ),
    MFA_DISABLED: (
        "Two-factor authentication disabled",
        "Two-factor authentication has been disabled on your administrator account.\n"
        "If you did not make this change, contact another administrator immediately.",
    ),
    PASSWORD_CHANGED: (
        "Your password was changed",
        "The password of your administrator account was changed and your other\n"
        "sessions were signed out.",
    ),
    BACKUP_CODES_REGENERATED: (
        "New backup codes generated",
        "A new set of backup codes was generated for your account. Previous codes\n"
        "no longer work.",
    ),
    PASSWORD_RESET: (
        "Reset your administrator password",
        "A password reset was requested for your administrator account.\n"
        "Use this token to choose a new password before {expires_at}:\n\n"
        "{token}\n\n"
        "The token works once. If you did not ask for a reset, ignore this message.",
    ),
    INVITATION: (
        "You have been invited to the Avigate admin panel",
        "An administrator account with the {role} role was created for you.\n"
        "Use this token to set your password before {expires_at}:\n\n"
        "{token}\n\n"
        "The token works once.",
    ),
}


def render(kind: str, payload: Dict[str, Any]) -> Tuple[str, str]:
    subject, body = _TEMPLATES.get(
        kind, ("Security notice", "A security-relevant change was made to your account.")
    )
    try:
        body = body.format(**payload)
    except (KeyError, IndexError):
        logger.warning("notification_template_missing_field", kind=kind)
    return subject, body


class LoggingNotifier:
    """Records notifications in the log and in memory instead of sending them."""

    def __init__(self) -> None:
        self.sent: List[Tuple[str, str, Dict[str, Any]]] = []

    def send(self, kind: str, recipient: str, payload: Dict[str, Any]) -> bool:
        self.sent.append((kind, recipient, dict(payload)))
        logger.info("notification_logged", kind=kind, to=_redact_email(recipient))
        return True


@dataclass(frozen=True)
class SmtpRelay:
    host: Optional[str]
    port: int
    user: Optional[str]
    password: Optional[str]
    starttls: bool
    sender: Optional[str]
    sender_name: str

    @property
    def usable(self) -> bool:
        return bool(self.host and self.sender)

    @property
    def from_header(self) -> str:
        return f"{self.sender_name} <{self.sender}>"


class EmailNotifier:
    """Sends security notifications over SMTP.

    Without an SMTP host and sender address the rendered notice is only
    logged, which is how local and test deployments run.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Avigate Admin",
    ) -> None:
        self.relay = SmtpRelay(
            host=smtp_host,
            port=smtp_port,
            user=smtp_user,
            password=smtp_password,
            starttls=smtp_use_tls,
            sender=from_email or smtp_user,
            sender_name=from_name,
        )

    @property
    def is_configured(self) -> bool:
        return self.relay.usable

    def send(self, kind: str, recipient: str, payload: Dict[str, Any]) -> bool:
        subject, text = render(kind, payload)
        masked = _redact_email(recipient)
        if not self.is_configured:
            logger.info(
                "notification_not_sent_smtp_unconfigured",
                kind=kind,
                to=masked,
                subject=subject,
                preview=None if kind in _CARRIES_TOKEN else text[:200],
            )
            return True

        message = self._compose(recipient, subject, text)
        try:
            with self._connection() as smtp:
                smtp.send_message(message)
        except smtplib.SMTPException as exc:
            logger.error(
                "notification_smtp_rejected",
                kind=kind,
                to=masked,
                host=self.relay.host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        except OSError as exc:
            # ssl.SSLError is an OSError as well
            logger.error(
                "notification_smtp_unreachable",
                kind=kind,
                to=masked,
                host=self.relay.host,
                port=self.relay.port,
                error=str(exc),
            )
            return False

        logger.info("notification_sent", kind=kind, to=masked)
        return True

    def _compose(self, recipient: str, subject: str, text: str) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = self.relay.from_header
        message["To"] = recipient
        message.set_content(text)
        message.add_alternative(
            "<p>" + html.escape(text).replace("\n", "<br>") + "</p>", subtype="html"
        )
        return message

    @contextmanager
    def _connection(self) -> Iterator[smtplib.SMTP]:
        relay = self.relay
        tls = ssl.create_default_context()
        if relay.starttls:
            smtp: smtplib.SMTP = smtplib.SMTP(
                relay.host, relay.port, timeout=SMTP_TIMEOUT_SECONDS
            )
        else:
            smtp = smtplib.SMTP_SSL(
                relay.host, relay.port, context=tls, timeout=SMTP_TIMEOUT_SECONDS
            )
        with smtp:
            if relay.starttls:
                smtp.starttls(context=tls)
            if relay.user and relay.password:
                smtp.login(relay.user, relay.password)
            yield smtp
