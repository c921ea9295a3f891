import smtplib
import ssl
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from pathlib import Path
from typing import Optional
import logging

from jinja2 import Environment, FileSystemLoader, select_autoescape
from app.core.config import settings

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).parent.parent / "templates" / "emails"


class EmailService:
    """SMTP delivery for subscription notifications."""

    def __init__(self):
        self.smtp_host = settings.SMTP_HOST
        self.smtp_port = settings.SMTP_PORT
        self.smtp_user = settings.SMTP_USER
        self.smtp_password = settings.SMTP_PASSWORD
        self.from_email = settings.SMTP_FROM_EMAIL or settings.SMTP_USER
        self.from_name = settings.SMTP_FROM_NAME
        self.frontend_url = settings.FRONTEND_URL
        self._env = Environment(
            loader=FileSystemLoader(str(TEMPLATES_DIR)),
            autoescape=select_autoescape(["html"]),
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_user and self.smtp_password)

    def _render_template(self, template_name: str, context: dict) -> str:
        return self._env.get_template(template_name).render(**context)

    def _send_email(
        self,
        to: str,
        subject: str,
        html_content: str,
        text_content: Optional[str] = None
    ) -> bool:
        """Send one message over SMTP; returns False instead of raising on SMTP errors."""
        if not self.is_configured:
            logger.error("SMTP credentials not configured")
            return False

        message = MIMEMultipart("alternative")
        message["Subject"] = subject
        message["From"] = f"{self.from_name} <{self.from_email}>"
        message["To"] = to

        if text_content:
            message.attach(MIMEText(text_content, "plain", "utf-8"))
        message.attach(MIMEText(html_content, "html", "utf-8"))

        try:
            context = ssl.create_default_context()
            with smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=context) as server:
                server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, [to], message.as_string())
        except smtplib.SMTPException as e:
            logger.error(f"SMTP error sending email to {to}: {e}")
            return False

        logger.info(f"Email sent to {to}: {subject}")
        return True

    def send_notification_email(
        self,
        to: str,
        user_name: Optional[str],
        title: str,
        message: str,
    ) -> bool:
        html_content = self._render_template(
            "notification.html",
            {
                "title": title,
                "message": message,
                "user_name": user_name or "there",
                "action_url": f"{self.frontend_url}/billing",
                "from_name": self.from_name,
            },
        )
        text_content = f"Hi {user_name or 'there'},\n\n{message}\n\n{self.from_name}\n"
        return self._send_email(to=to, subject=title, html_content=html_content, text_content=text_content)
