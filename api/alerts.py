import logging
import smtplib
from email.message import EmailMessage

from config import Settings

logger = logging.getLogger(__name__)


def send_alert(settings: Settings, subject: str, body: str) -> bool:
    """Send an operator alert via SMTP. No-op if SMTP is not configured."""
    if not settings.smtp_host:
        return False
    if not (settings.alert_from and settings.alert_to):
        return False

    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = settings.alert_from
    msg["To"] = settings.alert_to
    msg.set_content(body)

    try:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port) as smtp:
            smtp.starttls()
            if settings.smtp_user and settings.smtp_pass:
                smtp.login(settings.smtp_user, settings.smtp_pass)
            smtp.send_message(msg)
        logger.info(f"Alert sent: {subject}")
        return True
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send alert email: {e}")
        return False
