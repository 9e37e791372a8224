"""
LifeSignal notifications: what gets sent, and SMTP-based email delivery.

Dev mode: prints to stdout when no SMTP host configured.
"""

from __future__ import annotations

import smtplib
from dataclasses import dataclass, field
from email.message import EmailMessage
from enum import Enum
from typing import Optional

from lifesignal.errors import Unavailable
from lifesignal.models import Timestamp, UserRecord


class NotificationKind(str, Enum):
    CHECK_IN_REMINDER = "check_in_reminder"
    NON_RESPONSIVE = "non_responsive"
    CHECKED_IN = "checked_in"
    MANUAL_ALERT = "manual_alert"
    ALERT_CANCELLED = "alert_cancelled"
    PING_RECEIVED = "ping_received"
    PING_RESPONDED = "ping_responded"
    PING_CLEARED = "ping_cleared"
    CONTACT_ADDED = "contact_added"
    CONTACT_REMOVED = "contact_removed"
    CONTACT_ROLE_CHANGED = "contact_role_changed"


@dataclass(frozen=True)
class Notification:
    """One message for one recipient. subject_id is the user it is about."""
    kind: NotificationKind
    recipient_id: str
    subject_id: Optional[str]
    title: str
    body: str
    created_at: Timestamp
    data: dict = field(default_factory=dict)

    def as_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "recipient_id": self.recipient_id,
            "subject_id": self.subject_id,
            "title": self.title,
            "body": self.body,
            "created_at": self.created_at,
            "data": self.data,
        }


@dataclass(frozen=True)
class SMTPConfig:
    """SMTP configuration. Set host=None for dev mode (print-only)."""
    host: Optional[str]
    port: int
    user: Optional[str]
    password: Optional[str]
    from_email: str


class EmailChannel:
    """Email delivery using stdlib smtplib. Skips recipients without an address."""

    name = "email"

    def __init__(self, smtp: SMTPConfig) -> None:
        self.smtp = smtp

    def deliver(self, notification: Notification, recipient: Optional[UserRecord]) -> None:
        if recipient is None or not recipient.email:
            return
        self.send_email(recipient.email, f"[lifesignal] {notification.title}", notification.body)

    def send_email(self, to_email: str, subject: str, body: str) -> None:
        """Send an email. In dev mode (no host), prints instead."""
        if not self.smtp.host:
            print(f"--- EMAIL to={to_email}\nSUBJ: {subject}\n\n{body}\n---")
            return

        msg = EmailMessage()
        msg["From"] = self.smtp.from_email
        msg["To"] = to_email
        msg["Subject"] = subject
        msg.set_content(body)

        try:
            with smtplib.SMTP(self.smtp.host, self.smtp.port, timeout=20) as s:
                s.ehlo()
                try:
                    s.starttls()
                    s.ehlo()
                except smtplib.SMTPNotSupportedError:
                    pass
                if self.smtp.user and self.smtp.password:
                    s.login(self.smtp.user, self.smtp.password)
                s.send_message(msg)
        except (OSError, smtplib.SMTPException) as e:
            raise Unavailable(f"smtp delivery to {to_email} failed: {e}") from e
