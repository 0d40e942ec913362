from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional
from urllib.parse import quote

from tripgate.logging import get_logger, redact_email

logger = get_logger(__name__)

_STYLE = """
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #2563eb; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
"""

_HTML_TEMPLATE = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{style}</style>
</head>
<body>
    <div class="container">
        <h1>{heading}</h1>
        <p>{intro}</p>
        <p style="margin: 30px 0;">
            <a href="{url}" class="button">{button}</a>
        </p>
        <p>{expiry}</p>
        {extra}
        <div class="footer">
            <p>{from_name}</p>
            <p>If the button doesn't work, copy and paste this URL: {url}</p>
        </div>
    </div>
</body>
</html>
"""


class EmailService:
    """Transactional email for verification and password reset links.

    Sends through SMTP with STARTTLS or implicit TLS. When no SMTP host is
    configured the message is logged instead of sent, which is how local
    development and the test suite run.
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
        from_name: str = "Trip Planner",
        frontend_url: str = "http://localhost:3000",
        verification_ttl_hours: int = 24,
        reset_ttl_minutes: int = 60,
        timeout: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.frontend_url = frontend_url.rstrip("/")
        self.verification_ttl_hours = verification_ttl_hours
        self.reset_ttl_minutes = reset_ttl_minutes
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def verification_url(self, token: str) -> str:
        return f"{self.frontend_url}/verify-email?token={quote(token)}"

    def reset_url(self, token: str) -> str:
        return f"{self.frontend_url}/reset-password?token={quote(token)}"

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent (or logged in dev mode), False otherwise.
        """
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
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
            logger.debug(
                "email_connecting",
                host=self.smtp_host,
                port=self.smtp_port,
                use_tls=self.smtp_use_tls,
                to=redact_email(to_email),
            )

            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
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

            logger.info("email_sent", to=redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
                smtp_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except OSError as e:
            # Covers refused connections, DNS failures and socket timeouts
            logger.error(
                "email_connect_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def _render(
        self,
        *,
        heading: str,
        intro: str,
        url: str,
        button: str,
        expiry: str,
        extra: str = "",
    ) -> tuple[str, str]:
        html_body = _HTML_TEMPLATE.format(
            style=_STYLE.format(),
            heading=heading,
            intro=intro,
            url=url,
            button=button,
            expiry=expiry,
            extra=f"<p>{extra}</p>" if extra else "",
            from_name=self.from_name,
        )
        text_lines = [heading, "", intro, "", url, "", expiry]
        if extra:
            text_lines += ["", extra]
        text_lines += ["", "---", self.from_name, ""]
        return html_body, "\n".join(text_lines)

    def send_verification_email(self, to_email: str, token: str) -> bool:
        html_body, text_body = self._render(
            heading="Verify your email",
            intro="Thanks for signing up! Please verify your email address using the link below:",
            url=self.verification_url(token),
            button="Verify Email",
            expiry=f"This link will expire in {self.verification_ttl_hours} hours.",
        )
        return self._send_email(
            to_email, f"Verify your {self.from_name} email", html_body, text_body
        )

    def send_password_reset_email(self, to_email: str, token: str) -> bool:
        html_body, text_body = self._render(
            heading="Reset your password",
            intro="We received a request to reset your password. Use the link below to choose a new one:",
            url=self.reset_url(token),
            button="Reset Password",
            expiry=f"This link will expire in {self.reset_ttl_minutes} minutes.",
            extra="If you didn't request this, you can safely ignore this email.",
        )
        return self._send_email(
            to_email, f"Reset your {self.from_name} password", html_body, text_body
        )
