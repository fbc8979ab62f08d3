"""
Email Service

Sends commit notifications to users who opted in. Delivery is best
effort: every public method returns a bool and never raises, so a broken
SMTP relay can never fail a commit.
"""

import smtplib
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Optional
from core.config import settings
import logging

logger = logging.getLogger(__name__)


class EmailService:
    """Service for sending emails"""

    def __init__(self):
        self.smtp_server = settings.SMTP_SERVER
        self.smtp_port = settings.SMTP_PORT
        self.smtp_username = settings.SMTP_USERNAME
        self.smtp_password = settings.SMTP_PASSWORD
        self.from_email = settings.FROM_EMAIL
        self.from_name = settings.FROM_NAME
        self.enabled = settings.EMAIL_ENABLED

    def send_email(
        self,
        to_email: str,
        subject: str,
        html_content: str,
        text_content: Optional[str] = None
    ) -> bool:
        """
        Send an email.

        Returns True if sent successfully, False otherwise.
        """
        if not self.enabled:
            logger.info(f"Email disabled, would send to {to_email}: {subject}")
            return False

        try:
            msg = MIMEMultipart('alternative')
            msg['Subject'] = subject
            msg['From'] = f"{self.from_name} <{self.from_email}>"
            msg['To'] = to_email

            if text_content:
                msg.attach(MIMEText(text_content, 'plain'))
            msg.attach(MIMEText(html_content, 'html'))

            if self.smtp_username and self.smtp_password:
                with smtplib.SMTP(self.smtp_server, self.smtp_port, timeout=settings.EXTERNAL_API_TIMEOUT) as server:
                    server.starttls()
                    server.login(self.smtp_username, self.smtp_password)
                    server.send_message(msg)
            else:
                # Local development - just log
                logger.info(f"Would send email to {to_email}: {subject}")

            return True

        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Error sending email to {to_email}: {str(e)}")
            return False

    def send_commit_notification(self, user, record, result) -> bool:
        """Tell the user a commit landed in their repository."""
        if not user.email:
            return False

        name = user.first_name or user.github_username or "there"
        repo = record.repository_full_name
        url = getattr(result, "url", None) or record.remote_url
        streak = user.current_streak or 0

        subject = f"Commit pushed to {repo}"
        html_content = "\n".join([
            f"<h2>Hey {name},</h2>",
            f"<p>Your commit <strong>{record.message}</strong> was pushed to <strong>{repo}</strong>.</p>",
            f"<p><a href=\"{url}\">View the commit</a></p>" if url else "",
            f"<p>Current streak: {streak} day{'s' if streak != 1 else ''}.</p>",
            "<p>- CommitPulse</p>",
        ])
        text_content = "\n".join([
            f"Hey {name},",
            f"Your commit \"{record.message}\" was pushed to {repo}.",
            f"View it: {url}" if url else "",
            f"Current streak: {streak} day{'s' if streak != 1 else ''}.",
            "- CommitPulse",
        ])
        return self.send_email(user.email, subject, html_content, text_content)


# Singleton instance
email_service = EmailService()
