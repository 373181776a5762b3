"""
Outgoing e-mail over SMTP.

Configured from SMTP_HOST / SMTP_PORT / SMTP_USER / SMTP_PASS. Links in
messages point at CLIENT_URL, the storefront front end.
"""

import logging
import os
import smtplib
from email.message import EmailMessage
from email.utils import formataddr

from errors import MailDeliveryError

logger = logging.getLogger(__name__)

SMTP_HOST = os.getenv("SMTP_HOST", "")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER", "")
SMTP_PASS = os.getenv("SMTP_PASS", "")
EMAIL_FROM_NAME = os.getenv("EMAIL_FROM_NAME", "Storefront")
CLIENT_URL = os.getenv("CLIENT_URL", "http://localhost:3000")

RESET_EMAIL_HTML = """\
<html>
  <body style="font-family: Arial, sans-serif; color: #333;">
    <h1>Password Reset Request</h1>
    <p>We received a request to reset your password. Click the link below to set a new password:</p>
    <p><a href="{link}">Reset Your Password</a></p>
    <p>This link expires in {minutes} minutes.</p>
    <p>If you didn't request a password reset, please ignore this email.</p>
  </body>
</html>
"""


class EmailService:
    def __init__(self, host: str = SMTP_HOST, port: int = SMTP_PORT, user: str = SMTP_USER,
                 password: str = SMTP_PASS, from_name: str = EMAIL_FROM_NAME, client_url: str = CLIENT_URL):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.from_name = from_name
        self.client_url = client_url.rstrip("/")

    def send_email(self, to: str, subject: str, body_html: str, body_text: str) -> None:
        if not self.host:
            raise MailDeliveryError("Email service not configured")
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = formataddr((self.from_name, self.user or f"no-reply@{self.host}"))
        msg["To"] = to
        msg.set_content(body_text)
        msg.add_alternative(body_html, subtype="html")
        try:
            with smtplib.SMTP(self.host, self.port, timeout=10) as smtp:
                smtp.starttls()
                if self.user:
                    smtp.login(self.user, self.password)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Sending %r to %s failed: %s", subject, to, e)
            raise MailDeliveryError()
        logger.info("Sent %r to %s", subject, to)

    def send_password_reset(self, to: str, token: str, expires_minutes: int) -> None:
        link = f"{self.client_url}/reset-password?token={token}"
        self.send_email(
            to,
            "Password Reset Request",
            RESET_EMAIL_HTML.format(link=link, minutes=expires_minutes),
            f"Reset your password within {expires_minutes} minutes: {link}\n"
            "If you didn't request a password reset, please ignore this email.",
        )
