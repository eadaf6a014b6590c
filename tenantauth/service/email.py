from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from tenantauth.logging import get_logger

logger = get_logger(__name__)

_HTML_TEMPLATE = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #2563eb; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        <p>{greeting}</p>
        <p>{intro}</p>
        {action}
        <p>{closing}</p>
        <div class="footer">
            <p>{product}</p>
            {fallback}
        </div>
    </div>
</body>
</html>
"""


class EmailService:
    """Transactional email over SMTP.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Email verification, password reset and welcome messages
    - Logging instead of sending when SMTP is not configured (dev mode)

    Every send returns True on success and False on failure; callers decide
    whether to retry.
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
        from_name: str = "TenantAuth",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:3000").rstrip("/")

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

    def _deliver(self, msg: MIMEMultipart, to_email: str) -> None:
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

    def send(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200] if text_body else html_body[:200],
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        try:
            self._deliver(msg, to_email)
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(exc),
                smtp_code=getattr(exc, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as exc:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(exc),
            )
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
        return True

    def _compose(
        self,
        *,
        title: str,
        display_name: Optional[str],
        intro: str,
        closing: str,
        button_label: Optional[str] = None,
        url: Optional[str] = None,
    ) -> tuple[str, str]:
        greeting = f"Hi {display_name}," if display_name else "Hi there,"
        action = ""
        fallback = ""
        if url and button_label:
            safe_url = html.escape(url, quote=True)
            action = f'<p style="margin: 30px 0;"><a href="{safe_url}" class="button">{button_label}</a></p>'
            fallback = f"<p>If the button doesn't work, copy and paste this URL: {safe_url}</p>"
        html_body = _HTML_TEMPLATE.format(
            title=title,
            greeting=html.escape(greeting),
            intro=intro,
            action=action,
            closing=closing,
            product=html.escape(self.from_name),
            fallback=fallback,
        )
        text_parts = [title, "", greeting, "", intro]
        if url:
            text_parts += ["", url]
        text_parts += ["", closing, "", "---", self.from_name]
        return html_body, "\n".join(text_parts) + "\n"

    def send_verification_email(
        self, to_email: str, token: str, display_name: Optional[str] = None
    ) -> bool:
        verify_url = f"{self.base_url}/auth/verify-email?token={token}"
        html_body, text_body = self._compose(
            title="Verify your email address",
            display_name=display_name,
            intro="Thanks for signing up! Please verify your email address using the link below.",
            closing="This link will expire in 24 hours.",
            button_label="Verify Email",
            url=verify_url,
        )
        return self.send(to_email, "Verify your email address", html_body, text_body)

    def send_password_reset_email(
        self, to_email: str, token: str, display_name: Optional[str] = None
    ) -> bool:
        reset_url = f"{self.base_url}/auth/reset-password?token={token}"
        html_body, text_body = self._compose(
            title="Reset your password",
            display_name=display_name,
            intro="We received a request to reset your password. Use the link below to choose a new one.",
            closing="This link will expire in 1 hour. If you didn't request this, you can safely ignore this email.",
            button_label="Reset Password",
            url=reset_url,
        )
        return self.send(to_email, "Reset your password", html_body, text_body)

    def send_welcome_email(self, to_email: str, display_name: Optional[str] = None) -> bool:
        html_body, text_body = self._compose(
            title=f"Welcome to {self.from_name}!",
            display_name=display_name,
            intro="Your email address is verified and your account is ready to use.",
            closing="We're excited to have you on board.",
        )
        return self.send(to_email, f"Welcome to {self.from_name}!", html_body, text_body)
