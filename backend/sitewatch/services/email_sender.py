"""Email sender service - sends alerts via SMTP."""
import asyncio
import logging
import smtplib
import ssl
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import List
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass
class EmailConfig:
    """SMTP configuration for sending emails."""
    host: str
    port: int
    username: str = ""
    password: str = ""
    use_tls: bool = True
    from_address: str = ""

    @classmethod
    def from_settings(cls, settings) -> "EmailConfig":
        return cls(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_username,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
            from_address=settings.alert_email_from,
        )


def parse_recipients(to_address: str) -> List[str]:
    """Parse comma-separated email addresses into a list."""
    if not to_address:
        return []
    return [addr.strip() for addr in to_address.split(",") if addr.strip()]


class EmailSenderService:
    """Sends alert emails; the blocking SMTP session runs in the thread pool."""

    def __init__(self, config: EmailConfig):
        self.config = config

    async def send_email(self, to_address: str, subject: str, body: str) -> bool:
        """Send an email. Returns True on success, False on failure."""
        if not self.config.host:
            logger.warning("Email not configured - missing SMTP host")
            return False

        recipients = parse_recipients(to_address)
        if not recipients:
            logger.warning(f"No valid recipients in '{to_address}'")
            return False

        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._send_blocking, recipients, subject, body)

    def _send_blocking(self, recipients: List[str], subject: str, body: str) -> bool:
        config = self.config
        from_addr = config.from_address or config.username

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = from_addr
        msg["To"] = ", ".join(recipients)
        msg.attach(MIMEText(body, "plain"))

        try:
            with smtplib.SMTP(config.host, config.port, timeout=30) as server:
                if config.use_tls:
                    server.starttls(context=ssl.create_default_context())
                if config.username and config.password:
                    server.login(config.username, config.password)
                server.sendmail(from_addr, recipients, msg.as_string())
            logger.info(f"Email sent to {len(recipients)} recipient(s): {subject}")
            return True
        except smtplib.SMTPAuthenticationError as e:
            logger.error(f"SMTP authentication failed for user '{config.username}': {e}")
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(f"Recipients refused by server: {e}")
            return False
        except smtplib.SMTPException as e:
            logger.error(f"SMTP error: {type(e).__name__}: {e}")
            return False
        except OSError as e:
            # Connection refused, DNS failure, timeouts
            logger.error(f"Could not reach SMTP server {config.host}:{config.port}: {e}")
            return False
