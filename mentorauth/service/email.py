from __future__ import annotations

import html
import smtplib
import ssl
from contextlib import contextmanager
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Iterator, List, Optional, Tuple

from mentorauth.logging import get_logger, mask_identifier

logger = get_logger(__name__)

_SMTP_TIMEOUT_SECONDS = 30

_STYLE = (
    "body{font-family:-apple-system,'Segoe UI',Roboto,sans-serif;line-height:1.6;color:#1f2933}"
    ".container{max-width:600px;margin:0 auto;padding:40px 20px}"
    ".code{font-size:32px;letter-spacing:8px;font-weight:700;margin:30px 0}"
    ".footer{margin-top:40px;font-size:12px;color:#5b6470}"
)

# event name logged for each SMTP failure class, most specific first
_SMTP_FAILURES: List[Tuple[type, str]] = [
    (smtplib.SMTPAuthenticationError, "email_auth_failed"),
    (smtplib.SMTPRecipientsRefused, "email_recipient_refused"),
    (smtplib.SMTPException, "email_smtp_error"),
    (ssl.SSLError, "email_connection_error"),
    (OSError, "email_connection_error"),
]


def _render(
    sender: str, heading: str, paragraphs: List[str], code: Optional[str] = None
) -> Tuple[str, str]:
    """Build the (html, text) bodies of a message from the same paragraphs."""
    html_parts = [f"<h1>{html.escape(heading)}</h1>"]
    text_parts = [heading, ""]
    if code:
        html_parts.append(f'<p class="code">{html.escape(code)}</p>')
        text_parts += [f"Your verification code is: {code}", ""]
    for paragraph in paragraphs:
        html_parts.append(f"<p>{html.escape(paragraph)}</p>")
        text_parts.append(paragraph)
    html_body = (
        '<!DOCTYPE html><html><head><meta charset="utf-8">'
        f"<style>{_STYLE}</style></head><body><div class=\"container\">"
        + "".join(html_parts)
        + f'<div class="footer"><p>{html.escape(sender)}</p></div></div></body></html>'
    )
    text_body = "\n".join(text_parts + ["", "---", sender]) + "\n"
    return html_body, text_body


class EmailService:
    """SMTP sender for verification codes and welcome mail.

    Logs instead of sending when no SMTP host or sender is configured.
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
        from_name: str = "Mentor Platform",
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

    @contextmanager
    def _connection(self) -> Iterator[smtplib.SMTP]:
        """Authenticated SMTP session: STARTTLS on the submission port, else implicit TLS."""
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            server = smtplib.SMTP(
                self.smtp_host, self.smtp_port, timeout=_SMTP_TIMEOUT_SECONDS
            )
        else:
            server = smtplib.SMTP_SSL(
                self.smtp_host,
                self.smtp_port,
                context=context,
                timeout=_SMTP_TIMEOUT_SECONDS,
            )
        with server:
            if self.smtp_use_tls:
                server.starttls(context=context)
            if self.smtp_user and self.smtp_password:
                server.login(self.smtp_user, self.smtp_password)
            yield server

    def _send_email(self, to_email: str, subject: str, html_body: str, text_body: str) -> bool:
        """Send one message; False when SMTP refuses it. Never raises for delivery failures."""
        if not self.is_configured:
            logger.info("email_dev_mode", to=mask_identifier(to_email), subject=subject)
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        try:
            with self._connection() as server:
                server.sendmail(self.from_email, to_email, msg.as_string())
        except (smtplib.SMTPException, OSError) as exc:
            event = next(name for kind, name in _SMTP_FAILURES if isinstance(exc, kind))
            logger.error(
                event,
                to=mask_identifier(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
                smtp_code=getattr(exc, "smtp_code", None),
            )
            return False

        logger.info("email_sent", to=mask_identifier(to_email), subject=subject)
        return True

    def send_otp(self, to_email: str, code: str, expiry_minutes: int) -> bool:
        html_body, text_body = _render(
            self.from_name,
            "Your verification code",
            [
                f"This code will expire in {expiry_minutes} minutes.",
                "Do not share this code with anyone. If you didn't request it, "
                "you can ignore this email.",
            ],
            code=code,
        )
        subject = f"Your verification code for {self.from_name}"
        return self._send_email(to_email, subject, html_body, text_body)

    def send_welcome(self, to_email: str, first_name: str, role: str) -> bool:
        html_body, text_body = _render(
            self.from_name,
            f"Welcome, {first_name}!",
            [
                f"Your account is ready. You joined as a {role.lower()}.",
                "Your email address and mobile number are both verified, "
                "so you can sign in right away.",
            ],
        )
        subject = f"Welcome to {self.from_name}, {first_name}!"
        return self._send_email(to_email, subject, html_body, text_body)
