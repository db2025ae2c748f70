from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import List, Optional, Sequence

from stepflow.logging import get_logger

logger = get_logger(__name__)

# most specific first; the first matching class names the log event
_SMTP_FAILURES = (
    (smtplib.SMTPAuthenticationError, "email_auth_failed"),
    (smtplib.SMTPRecipientsRefused, "email_recipient_refused"),
    (smtplib.SMTPException, "email_smtp_error"),
    (ssl.SSLError, "email_ssl_error"),
    (OSError, "email_connect_failed"),
)


class EmailService:
    """SMTP sender for workflow notification emails.

    Supports STARTTLS (``smtp_use_tls=True``) and implicit TLS. When SMTP is
    not configured nothing is sent and ``send_notification`` reports failure,
    so the email channel of a notification node shows up as failed rather
    than silently succeeding.
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
        from_name: str = "Stepflow",
        timeout_seconds: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.timeout_seconds = timeout_seconds

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _build_message(self, recipients: Sequence[str], subject: str, content: str) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = ", ".join(recipients)
        msg.attach(MIMEText(content, "plain"))
        body = html.escape(content).replace("\n", "<br>\n")
        msg.attach(
            MIMEText(
                f"<!DOCTYPE html><html><body><h2>{html.escape(subject)}</h2>"
                f"<div>{body}</div></body></html>",
                "html",
            )
        )
        return msg

    def _connect(self) -> smtplib.SMTP:
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout_seconds)
            server.starttls(context=context)
        else:
            server = smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=self.timeout_seconds
            )
        if self.smtp_user and self.smtp_password:
            server.login(self.smtp_user, self.smtp_password)
        return server

    def send_notification(self, recipients: Sequence[str], subject: str, content: str) -> bool:
        """Send one message to every recipient. Returns True if the server accepted it.

        Blocking; the notification service calls it from a worker thread.
        """
        to: List[str] = [r for r in recipients if r]
        redacted = [self._redact_email(r) for r in to]
        if not to:
            logger.warning("email_no_recipients", subject=subject)
            return False
        if not self.is_configured:
            logger.info("email_not_configured", recipients=redacted, subject=subject)
            return False

        message = self._build_message(to, subject, content).as_string()
        logger.debug(
            "email_connecting",
            host=self.smtp_host,
            port=self.smtp_port,
            use_tls=self.smtp_use_tls,
            recipients=redacted,
        )
        try:
            with self._connect() as server:
                server.sendmail(self.from_email, to, message)
        except Exception as exc:
            for exc_type, event in _SMTP_FAILURES:
                if isinstance(exc, exc_type):
                    logger.error(
                        event,
                        host=self.smtp_host,
                        port=self.smtp_port,
                        recipients=redacted,
                        error_type=type(exc).__name__,
                        error=str(exc),
                    )
                    return False
            raise
        logger.info("email_sent", recipients=redacted, subject=subject)
        return True
