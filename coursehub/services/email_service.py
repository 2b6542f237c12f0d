"""Service for sending subscription lifecycle emails."""

import logging
import os
import smtplib
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Optional

logger = logging.getLogger(__name__)


class EmailService:
    """Service for sending emails via SMTP."""

    def __init__(
        self,
        smtp_host: Optional[str] = None,
        smtp_port: Optional[int] = None,
        smtp_username: Optional[str] = None,
        smtp_password: Optional[str] = None,
        from_email: Optional[str] = None,
        from_name: str = "CourseHub",
    ):
        self.smtp_host = smtp_host or os.getenv("SMTP_HOST", "")
        self.smtp_port = smtp_port or int(os.getenv("SMTP_PORT", "587"))
        self.smtp_username = smtp_username or os.getenv("SMTP_USERNAME", "")
        self.smtp_password = smtp_password or os.getenv("SMTP_PASSWORD", "")
        self.from_email = from_email or os.getenv("SMTP_FROM_EMAIL", "")
        self.from_name = from_name
        self.enabled = bool(self.smtp_host and self.smtp_username and self.from_email)

    def send_activation(self, email: str, name: str) -> bool:
        """
        Tell the user their payment was received and access is open.

        Args:
            email: Recipient email
            name: Recipient display name

        Returns:
            True if sent (or logged while SMTP is disabled), False otherwise
        """
        return self._send_notification(
            email,
            subject="Your subscription is active",
            heading="Subscription activated",
            lines=[
                f"Hello, {name}!",
                "We received your payment and your subscription is now active.",
                "Thank you for learning with us.",
            ],
        )

    def send_cancellation(self, email: str, name: str, reason: str, immediate: bool) -> bool:
        """
        Confirm a cancellation.

        Args:
            email: Recipient email
            name: Recipient display name
            reason: Cancellation reason shown to the user
            immediate: Whether access ended right away or lasts until the period end

        Returns:
            True if sent (or logged while SMTP is disabled), False otherwise
        """
        timing = (
            "Access has ended immediately."
            if immediate
            else "You keep access until the end of the current period."
        )
        return self._send_notification(
            email,
            subject="Your subscription was cancelled",
            heading="Subscription cancelled",
            lines=[
                f"Hello, {name}!",
                f"Your subscription was cancelled. {timing}",
                f"Reason: {reason}",
                "If you have questions, please contact support.",
            ],
        )

    def send_expiration(self, email: str, name: str) -> bool:
        return self._send_notification(
            email,
            subject="Your subscription has expired",
            heading="Subscription expired",
            lines=[
                f"Hello, {name}!",
                "Your subscription has expired.",
                "Renew it to keep learning with us.",
            ],
        )

    def send_expiring_soon(self, email: str, name: str, end_date: datetime) -> bool:
        return self._send_notification(
            email,
            subject="Your subscription expires soon",
            heading="Subscription expires soon",
            lines=[
                f"Hello, {name}!",
                f"Your subscription expires on {end_date.date().isoformat()}.",
                "Renew it in time to keep your access.",
            ],
        )

    def _send_notification(self, to_email: str, subject: str, heading: str, lines: list[str]) -> bool:
        if not self.enabled:
            logger.info("[EMAIL] SMTP disabled; %r for %s not sent", subject, to_email)
            return True

        paragraphs = "\n".join(f"<p>{escape(line)}</p>" for line in lines)
        html_body = f"""
        <html>
            <body style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
                <h2 style="color: #1e293b;">{escape(heading)}</h2>
                {paragraphs}
                <hr style="border: none; border-top: 1px solid #e2e8f0; margin: 30px 0;">
                <p style="color: #94a3b8; font-size: 12px;">{escape(self.from_name)}</p>
            </body>
        </html>
        """
        text_body = "\n\n".join([heading, *lines, self.from_name])
        return self._send_email(to_email, subject, html_body, text_body)

    def _send_email(self, to_email: str, subject: str, html_body: str, text_body: str) -> bool:
        """
        Send an email via SMTP.

        Args:
            to_email: Recipient email
            subject: Email subject
            html_body: HTML body
            text_body: Plain text body

        Returns:
            True if sent successfully, False otherwise
        """
        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email

            part1 = MIMEText(text_body, "plain", "utf-8")
            part2 = MIMEText(html_body, "html", "utf-8")

            msg.attach(part1)
            msg.attach(part2)

            with smtplib.SMTP(self.smtp_host, self.smtp_port) as server:
                server.starttls()
                server.login(self.smtp_username, self.smtp_password)
                server.send_message(msg)

            logger.info("Sent %r to %s", subject, to_email)
            return True

        except (smtplib.SMTPException, OSError) as e:
            logger.error("Failed to send email to %s: %s", to_email, e)
            return False
