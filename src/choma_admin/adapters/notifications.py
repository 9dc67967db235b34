"""ABOUTME: Notification bridge implementations for high-risk two-factor security events
ABOUTME: Supports console logging and plain-text alert e-mails over SMTP"""

import logging
import smtplib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from email.mime.text import MIMEText
from email.utils import formataddr
from typing import Any

from choma_admin.domain.value_objects import AuditAction, RiskLevel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SecurityEvent:
    account_id: str
    action: AuditAction
    success: bool
    risk_level: RiskLevel
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "account_id": self.account_id,
            "action": self.action.value,
            "success": self.success,
            "risk_level": self.risk_level.value,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SecurityEvent":
        return cls(
            account_id=data["account_id"],
            action=AuditAction(data["action"]),
            success=data["success"],
            risk_level=RiskLevel(data["risk_level"]),
            details=data.get("details") or {},
        )

    @property
    def subject(self) -> str:
        outcome = "succeeded" if self.success else "failed"
        return f"[{self.risk_level.value.upper()}] 2FA {self.action.value.replace('_', ' ')} {outcome} for {self.account_id}"


class NotificationBridge(ABC):
    """Abstract base class for security alert delivery."""

    @abstractmethod
    def notify(self, event: SecurityEvent) -> bool:
        """Deliver a security alert.

        Returns:
            True if the alert was handed over successfully, False otherwise
        """
        pass


def format_event_body(event: SecurityEvent) -> str:
    lines = [
        "A two-factor authentication event needs review.",
        "",
        f"Account: {event.account_id}",
        f"Action: {event.action.value}",
        f"Success: {'yes' if event.success else 'no'}",
        f"Risk level: {event.risk_level.value}",
    ]
    if event.details:
        lines.append("")
        lines.append("Details:")
        lines.extend(f"  {key}: {value}" for key, value in sorted(event.details.items()))
    return "\n".join(lines)


class LoggingNotificationBridge(NotificationBridge):
    """Logs alerts instead of sending them.

    Useful for development and testing environments.
    """

    def notify(self, event: SecurityEvent) -> bool:
        logger.warning(
            "SECURITY ALERT (Console):\n"
            f"  Subject: {event.subject}\n"
            f"  Body:\n{format_event_body(event)}"
        )
        return True


class SMTPNotificationBridge(NotificationBridge):
    """Sends each alert as a plain-text e-mail to the security recipients."""

    def __init__(
        self,
        host: str,
        port: int,
        recipients: list[str],
        from_address: str,
        username: str = "",
        password: str = "",
        use_tls: bool = False,
        from_name: str = "Choma Security",
    ):
        self.host = host
        self.port = port
        self.recipients = recipients
        self.from_address = from_address
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.from_name = from_name

    def notify(self, event: SecurityEvent) -> bool:
        if not self.recipients:
            logger.warning(f"No security alert recipients configured, dropping alert: {event.subject}")
            return False

        msg = MIMEText(format_event_body(event), "plain")
        msg["Subject"] = event.subject
        msg["From"] = formataddr((self.from_name, self.from_address))
        msg["To"] = ", ".join(self.recipients)

        try:
            with smtplib.SMTP(self.host, self.port) as server:
                if self.use_tls:
                    server.starttls()
                if self.username and self.password:
                    server.login(self.username, self.password)
                server.sendmail(self.from_address, self.recipients, msg.as_string())
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"SMTP error sending security alert: {e}")
            return False

        logger.info(f"Security alert sent to {len(self.recipients)} recipient(s)")
        return True
