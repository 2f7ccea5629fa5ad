from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional
from urllib.parse import quote

from inkwell.logging import get_logger

logger = get_logger(__name__)

_HTML_SHELL = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #2b59c3; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
{content}
        <div class="footer"><p>{product}</p></div>
    </div>
</body>
</html>
"""


class EmailService:
    """Transactional mail over SMTP.

    When no SMTP host is configured the message is logged instead of sent and
    the call reports success, so local development needs no mail server.
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
        from_name: str = "Inkwell",
        frontend_url: Optional[str] = None,
        reset_ttl_minutes: int = 60,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.frontend_url = (frontend_url or "http://localhost:3000").rstrip("/")
        self.reset_ttl_minutes = reset_ttl_minutes

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def send(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send one message. Returns True if it was handed to the SMTP server."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200] if text_body else html_body[:200],
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

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
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def reset_link(self, token: str) -> str:
        return f"{self.frontend_url}/reset-password?token={quote(token)}"

    def send_password_reset(self, to_email: str, token: str, first_name: str = "") -> bool:
        reset_url = self.reset_link(token)
        greeting = f"Hi {first_name}," if first_name else "Hi,"
        subject = "Reset your Inkwell password"
        content = f"""
        <h1>Reset your password</h1>
        <p>{html.escape(greeting)}</p>
        <p>We received a request to reset your password. Click the button below to choose a new one:</p>
        <p style="margin: 30px 0;"><a href="{html.escape(reset_url)}" class="button">Reset Password</a></p>
        <p>This link will expire in {self.reset_ttl_minutes} minutes.</p>
        <p>If you didn't request this, you can safely ignore this email.</p>
        <p>If the button doesn't work, copy and paste this URL: {html.escape(reset_url)}</p>
"""
        text_body = f"""{greeting}

We received a request to reset your Inkwell password. Visit the link below to choose a new one:

{reset_url}

This link will expire in {self.reset_ttl_minutes} minutes.

If you didn't request this, you can safely ignore this email.
"""
        html_body = _HTML_SHELL.format(content=content, product=html.escape(self.from_name))
        return self.send(to_email, subject, html_body, text_body)

    def send_welcome(self, to_email: str, first_name: str = "") -> bool:
        greeting = f"Welcome, {first_name}!" if first_name else "Welcome!"
        subject = "Welcome to Inkwell"
        content = f"""
        <h1>{html.escape(greeting)}</h1>
        <p>Your account is ready. Start writing at <a href="{html.escape(self.frontend_url)}">{html.escape(self.frontend_url)}</a>.</p>
"""
        text_body = f"""{greeting}

Your account is ready. Start writing at {self.frontend_url}.
"""
        html_body = _HTML_SHELL.format(content=content, product=html.escape(self.from_name))
        return self.send(to_email, subject, html_body, text_body)
