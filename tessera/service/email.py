from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Mapping, Optional

from tessera.logging import get_logger

logger = get_logger(__name__)

PASSWORD_RESET = "password_reset"
EMAIL_VERIFICATION = "email_verification"
NOTIFICATION = "notification"

TEMPLATE_KINDS = (PASSWORD_RESET, EMAIL_VERIFICATION, NOTIFICATION)


class EmailService:
    """Transactional email sender.

    ``send`` is fire-and-forget: delivery failures are logged and swallowed so
    they never fail the auth operation that triggered them. Without SMTP
    configuration messages are logged instead of sent (dev mode).
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
        from_name: str = "Tessera",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")

    @classmethod
    def from_settings(cls, settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def render(self, template_kind: str, data: Mapping[str, Any]) -> tuple[str, str]:
        """Return ``(subject, text_body)`` for a template kind."""
        if template_kind == PASSWORD_RESET:
            url = f"{self.base_url}/reset-password?token={data['token']}"
            minutes = data.get("expires_minutes", 60)
            return (
                f"Reset your {self.from_name} password",
                "We received a request to reset your password. "
                f"Visit the link below to choose a new one:\n\n{url}\n\n"
                f"This link will expire in {minutes} minutes.\n"
                "If you didn't request this, you can safely ignore this email.",
            )
        if template_kind == EMAIL_VERIFICATION:
            url = f"{self.base_url}/verify-email?token={data['token']}"
            hours = data.get("expires_hours", 24)
            return (
                f"Verify your {self.from_name} email",
                "Please verify your email address by visiting the link below:\n\n"
                f"{url}\n\nThis link will expire in {hours} hours.",
            )
        if template_kind == NOTIFICATION:
            return (
                data.get("subject") or f"{self.from_name} account notice",
                data.get("message") or "",
            )
        raise ValueError(f"unknown email template: {template_kind}")

    def send(
        self, address: str, template_kind: str, data: Optional[Mapping[str, Any]] = None
    ) -> None:
        try:
            subject, text_body = self.render(template_kind, data or {})
        except (KeyError, ValueError) as exc:
            logger.error(
                "email_render_failed",
                to=self._redact_email(address),
                template=template_kind,
                error=str(exc),
            )
            return
        self._send_email(address, subject, text_body)

    def _send_email(self, to_email: str, subject: str, text_body: str) -> bool:
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            msg.attach(MIMEText(text_body, "plain"))

            context = ssl.create_default_context()
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_transport_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False


class RecordingEmailService(EmailService):
    """Keeps sent messages in memory instead of delivering them."""

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.outbox: list[dict[str, Any]] = []

    def send(
        self, address: str, template_kind: str, data: Optional[Mapping[str, Any]] = None
    ) -> None:
        self.outbox.append(
            {"address": address, "kind": template_kind, "data": dict(data or {})}
        )

    def last(self, kind: Optional[str] = None) -> Optional[dict[str, Any]]:
        for message in reversed(self.outbox):
            if kind is None or message["kind"] == kind:
                return message
        return None
