from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import List, Optional, Protocol, Sequence

from authcore.logging import get_logger

logger = get_logger(__name__)


class Notifier(Protocol):
    """Outbound user notifications. Implementations report delivery as a bool."""

    def send_password_reset(self, to_email: str, code: str, expires_minutes: int) -> bool:
        ...

    def send_mfa_backup_codes(self, to_email: str, codes: Sequence[str]) -> bool:
        ...

    def send_welcome(self, to_email: str, name: Optional[str]) -> bool:
        ...


class EmailService:
    """SMTP notifier.

    When SMTP is not configured the message is logged (without its secret
    content) instead of sent, which keeps development setups working.
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
        from_name: str = "AuthCore",
        base_url: Optional[str] = None,
        timeout: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_email(email: str) -> str:
        """Redact an email address for logging."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _build_message(
        self, to_email: str, subject: str, html_body: str, text_body: str
    ) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
        return msg

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> bool:
        """Send an email via SMTP. Returns True if sent (or logged in dev mode)."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
            )
            return True

        msg = self._build_message(to_email, subject, html_body, text_body)
        context = ssl.create_default_context()
        logger.debug(
            "email_connecting",
            host=self.smtp_host,
            port=self.smtp_port,
            use_tls=self.smtp_use_tls,
            to=self._redact_email(to_email),
        )
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(
                    self.smtp_host, self.smtp_port, timeout=self.timeout
                ) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
                smtp_code=getattr(e, "smtp_code", None),
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
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except OSError as e:
            # connection refused, DNS failure, socket timeout
            logger.error(
                "email_connect_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
        return True

    def send_password_reset(self, to_email: str, code: str, expires_minutes: int) -> bool:
        reset_url = f"{self.base_url}/reset-password?code={code}"
        subject = f"Reset your {self.from_name} password"
        html_body = f"""
<!DOCTYPE html>
<html>
<body>
    <h1>Reset your password</h1>
    <p>We received a request to reset your password. Use the link below to choose a new one:</p>
    <p><a href="{html.escape(reset_url)}">Reset Password</a></p>
    <p>This link will expire in {expires_minutes} minutes.</p>
    <p>If you didn't request this, you can safely ignore this email.</p>
</body>
</html>
"""
        text_body = f"""Reset your {self.from_name} password

We received a request to reset your password. Visit the link below to choose a new one:

{reset_url}

This link will expire in {expires_minutes} minutes.

If you didn't request this, you can safely ignore this email.
"""
        return self._send_email(to_email, subject, html_body, text_body)

    def send_mfa_backup_codes(self, to_email: str, codes: Sequence[str]) -> bool:
        subject = f"Your {self.from_name} backup codes"
        items = "".join(f"<li><code>{html.escape(c)}</code></li>" for c in codes)
        html_body = f"""
<!DOCTYPE html>
<html>
<body>
    <h1>Two-factor backup codes</h1>
    <p>Each code can be used once if you lose access to your authenticator app.</p>
    <ul>{items}</ul>
</body>
</html>
"""
        lines: List[str] = [f"  {c}" for c in codes]
        text_body = (
            "Two-factor backup codes\n\n"
            "Each code can be used once if you lose access to your authenticator app.\n\n"
            + "\n".join(lines)
            + "\n"
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_welcome(self, to_email: str, name: Optional[str]) -> bool:
        greeting = f"Welcome, {name}!" if name else "Welcome!"
        subject = f"Welcome to {self.from_name}"
        html_body = f"""
<!DOCTYPE html>
<html>
<body>
    <h1>{html.escape(greeting)}</h1>
    <p>Your account has been created. You can sign in at <a href="{html.escape(self.base_url)}">{html.escape(self.base_url)}</a>.</p>
</body>
</html>
"""
        text_body = f"{greeting}\n\nYour account has been created. You can sign in at {self.base_url}.\n"
        return self._send_email(to_email, subject, html_body, text_body)
