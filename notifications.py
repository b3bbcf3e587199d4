"""
Outgoing mail. Sending is fire-and-forget: callers schedule ``Mailer.send``
as a background task and a failed delivery is only logged.
"""

import smtplib
from email.message import EmailMessage

import structlog

import settings

logger = structlog.get_logger(__name__)


class Mailer:
    def __init__(self, host=None, port=587, user=None, password=None, sender=None):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender

    def send(self, to: str, subject: str, body: str):
        if not self.host:
            logger.info("Mail transport not configured, skipping", to=to, subject=subject)
            return
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = to
        message["Subject"] = subject
        message.set_content(body)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=10) as smtp:
                smtp.starttls()
                if self.user:
                    smtp.login(self.user, self.password)
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as e:
            logger.warning("Mail delivery failed", to=to, subject=subject, error=str(e))
            return
        logger.info("Mail sent", to=to, subject=subject)


def get_mailer() -> Mailer:
    return Mailer(
        host=settings.MAIL_HOST,
        port=settings.MAIL_PORT,
        user=settings.MAIL_USER,
        password=settings.MAIL_PASS,
        sender=settings.MAIL_FROM,
    )
