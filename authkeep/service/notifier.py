from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from authkeep.logging import get_logger

logger = get_logger(__name__)

_STYLE = (
    "body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, "
    "sans-serif; line-height: 1.6; color: #1f2933; } "
    ".code { font-size: 28px; letter-spacing: 6px; font-weight: 600; } "
    ".button { display: inline-block; padding: 10px 18px; background: #2563eb; "
    "color: #ffffff; border-radius: 6px; text-decoration: none; }"
)


def _html_page(title: str, body: str) -> str:
    return f"""<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <title>{html.escape(title)}</title>
    <style>{_STYLE}</style>
</head>
<body>
{body}
</body>
</html>
"""


class EmailNotifier:
    """Transactional email over SMTP.

    Sends:
    - verification messages carrying both a one-time code and a link
    - password reset links
    - welcome messages after first verification

    Without an SMTP host the message is logged instead (dev mode). Every
    ``send_*`` method reports delivery as a bool and never raises for SMTP
    failures.
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
        from_name: str = "Authkeep",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP. Returns True if it was handed to the server."""
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
                smtp_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPConnectError as e:
            logger.error(
                "email_connect_failed",
                host=self.smtp_host,
                port=self.smtp_port,
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
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error", host=self.smtp_host, port=self.smtp_port, error=str(e)
            )
            return False
        except OSError as e:
            # Covers socket timeouts and refused connections
            logger.error(
                "email_network_error",
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def send_verification(self, to_email: str, name: str, code: str, link: str) -> bool:
        """Send the 6-digit code and the verification link in one message."""
        subject = "Verify your email address"
        safe_name = html.escape(name or "there")
        html_body = _html_page(
            subject,
            f"""
<p>Hi {safe_name},</p>
<p>Enter this code to confirm your email address. It expires in 10 minutes.</p>
<p class="code">{html.escape(code)}</p>
<p>Or click the button below. The link stays valid for 24 hours.</p>
<p><a class="button" href="{html.escape(link, quote=True)}">Verify email</a></p>
<p>If you did not create an account you can ignore this message.</p>
""",
        )
        text_body = (
            f"Hi {name or 'there'},\n\n"
            f"Your verification code is {code} (valid for 10 minutes).\n\n"
            f"Or open this link within 24 hours:\n{link}\n\n"
            "If you did not create an account you can ignore this message.\n"
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_password_reset(self, to_email: str, name: str, link: str) -> bool:
        subject = "Reset your password"
        safe_name = html.escape(name or "there")
        html_body = _html_page(
            subject,
            f"""
<p>Hi {safe_name},</p>
<p>We received a request to reset your password. The link below expires in one hour.</p>
<p><a class="button" href="{html.escape(link, quote=True)}">Reset password</a></p>
<p>If you did not ask for this, no action is needed; your password is unchanged.</p>
""",
        )
        text_body = (
            f"Hi {name or 'there'},\n\n"
            "Reset your password within one hour using this link:\n"
            f"{link}\n\n"
            "If you did not ask for this, no action is needed.\n"
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_welcome(self, to_email: str, name: str) -> bool:
        subject = f"Welcome to {self.from_name}"
        safe_name = html.escape(name or "there")
        html_body = _html_page(
            subject,
            f"""
<p>Hi {safe_name},</p>
<p>Your email address is confirmed and your account is ready to use.</p>
""",
        )
        text_body = (
            f"Hi {name or 'there'},\n\n"
            "Your email address is confirmed and your account is ready to use.\n"
        )
        return self._send_email(to_email, subject, html_body, text_body)
