"""
Outgoing mail for email one-time codes.

SmtpMailer sends through the server configured by the MAIL_* variables.
LogMailer is used when no server is configured: it records that a mail
would have been sent, without the body, so codes never reach the logs.
"""
import os
import smtplib
import logging
from email.mime.text import MIMEText
from typing import Optional, Protocol

from .secrets import get_secret

logger = logging.getLogger(__name__)


class Mailer(Protocol):
    def send(self, to: str, subject: str, body: str) -> None:
        ...


class SmtpMailer:
    def __init__(
        self,
        host: str,
        port: int = 587,
        mail_from: str = "",
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
        from_name: Optional[str] = None,
    ):
        self.host = host
        self.port = port
        self.mail_from = mail_from
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.from_name = from_name

    @classmethod
    def from_env(cls) -> Optional["SmtpMailer"]:
        """Build from MAIL_* variables; None if MAIL_SERVER or MAIL_FROM is missing."""
        host = os.getenv("MAIL_SERVER", "").strip()
        mail_from = os.getenv("MAIL_FROM", "").strip()
        if not host or not mail_from:
            return None

        try:
            port = int(os.getenv("MAIL_PORT", "587").strip() or "587")
        except ValueError:
            port = 587

        return cls(
            host=host,
            port=port,
            mail_from=mail_from,
            username=os.getenv("MAIL_USERNAME", "").strip() or None,
            password=get_secret("MAIL_PASSWORD"),
            use_tls=os.getenv("MAIL_USE_TLS", "true").strip().lower() in ("1", "true", "yes"),
            from_name=os.getenv("MAIL_FROM_NAME", "").strip() or None,
        )

    def send(self, to: str, subject: str, body: str) -> None:
        from_header = f"{self.from_name} <{self.mail_from}>" if self.from_name else self.mail_from

        msg = MIMEText(body, "plain", "utf-8")
        msg["Subject"] = subject
        msg["From"] = from_header
        msg["To"] = to

        with smtplib.SMTP(self.host, self.port, timeout=20) as server:
            server.ehlo()
            if self.use_tls:
                server.starttls()
                server.ehlo()
            if self.username and self.password:
                server.login(self.username, self.password)
            server.sendmail(self.mail_from, [to], msg.as_string())

        logger.info(f"Sent '{subject}' to {to}")


class LogMailer:
    """Development mailer: logs the recipient and subject, never the body. Nothing is kept."""

    def send(self, to: str, subject: str, body: str) -> None:
        logger.info(f"Mail delivery disabled; would send '{subject}' to {to}")


def get_mailer() -> Mailer:
    return SmtpMailer.from_env() or LogMailer()


def email_otp_message(code: str, ttl_minutes: int) -> str:
    return (
        f"Your SecureAuth verification code is: {code}\n\n"
        f"The code expires in {ttl_minutes} minutes and can be used once.\n"
        f"If you did not try to sign in, change your password."
    )
