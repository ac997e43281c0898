"""
Alert sinks for threshold notifications

The ingestion pipeline calls ``notify(subject, body)`` at most once per batch.
- EmailAlertSink: plain-text email over SMTP
- LogAlertSink: writes the alert to the operational log only
"""
import logging
import smtplib
from dataclasses import dataclass
from datetime import datetime
from email.mime.text import MIMEText
from typing import Optional, Protocol

from dmarc_digest.config import Settings, get_settings

logger = logging.getLogger(__name__)


class AlertSink(Protocol):
    def notify(self, subject: str, body: str) -> None:
        ...


@dataclass
class SMTPConfig:
    """SMTP configuration container"""
    host: str
    port: int
    user: Optional[str]
    password: Optional[str]
    from_address: str
    to_address: str
    use_tls: bool


class EmailAlertSink:
    """Send alert notifications by email"""

    def __init__(self, config: SMTPConfig):
        self.config = config

    def notify(self, subject: str, body: str) -> None:
        msg = MIMEText(body, 'plain', 'utf-8')
        msg['Subject'] = subject
        msg['From'] = self.config.from_address
        msg['To'] = self.config.to_address
        msg['Date'] = datetime.utcnow().strftime('%a, %d %b %Y %H:%M:%S +0000')

        with smtplib.SMTP(self.config.host, self.config.port, timeout=30) as server:
            if self.config.use_tls:
                server.starttls()
            if self.config.user and self.config.password:
                server.login(self.config.user, self.config.password)
            server.send_message(msg)

        logger.info(f"Alert email sent to {self.config.to_address}: {subject}")


class LogAlertSink:
    """Fallback sink when no SMTP server is configured"""

    def notify(self, subject: str, body: str) -> None:
        logger.warning(f"{subject}\n{body}")


def _is_email_configured(settings: Settings) -> bool:
    return bool(settings.smtp_host and settings.smtp_from and settings.alert_email_to)


def get_alert_sink(settings: Optional[Settings] = None) -> AlertSink:
    """Email sink when SMTP is configured, log sink otherwise"""
    settings = settings or get_settings()

    if not _is_email_configured(settings):
        logger.info("SMTP not configured, alerts go to the log only")
        return LogAlertSink()

    return EmailAlertSink(SMTPConfig(
        host=settings.smtp_host,
        port=settings.smtp_port,
        user=settings.smtp_user or None,
        password=settings.smtp_password or None,
        from_address=settings.smtp_from,
        to_address=settings.alert_email_to,
        use_tls=settings.smtp_use_tls,
    ))
