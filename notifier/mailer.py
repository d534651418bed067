# notifier/mailer.py
import logging
import smtplib
from email.header import Header
from email.mime.text import MIMEText
from email.utils import formataddr

from notifier.config import MailerConfig
from notifier.exceptions import DeliveryError
from shared.models.common import EmailMessage

logger = logging.getLogger(__name__)

class Mailer:
    """
    Sends plain-text emails through SMTP from a single configured sender.
    A fresh connection is opened for every message; the instance holds only
    its immutable configuration.
    """

    def __init__(self, mailer_config: MailerConfig):
        self.config = mailer_config

    def _create_smtp_connection(self) -> smtplib.SMTP:
        """Create and configure SMTP connection."""
        if self.config.use_ssl:
            smtp = smtplib.SMTP_SSL(self.config.host, self.config.port)
        else:
            smtp = smtplib.SMTP(self.config.host, self.config.port)
            if self.config.use_tls:
                smtp.starttls()

        if self.config.username and self.config.password:
            smtp.login(self.config.username, self.config.password)

        return smtp

    def _build_mime(self, message: EmailMessage) -> MIMEText:
        mime = MIMEText(message.text, 'plain', 'utf-8')
        mime['Subject'] = Header(message.subject, 'utf-8')
        if self.config.from_name:
            mime['From'] = formataddr((self.config.from_name, message.from_address))
        else:
            mime['From'] = message.from_address
        mime['To'] = message.to
        return mime

    def send(self, to: str, subject: str, body: str) -> None:
        """
        Send one email synchronously.

        Args:
            to: Recipient address (not format-checked)
            subject: Subject line
            body: Plain-text body, sent unchanged

        Raises:
            ValueError: If the recipient is empty
            DeliveryError: If the SMTP exchange fails
        """
        if not to:
            raise ValueError("Recipient address must not be empty")

        message = EmailMessage(
            from_address=self.config.from_email,
            to=to,
            subject=subject,
            text=body
        )
        logger.info(f"Sending {message}")

        try:
            with self._create_smtp_connection() as smtp:
                smtp.send_message(self._build_mime(message), to_addrs=[message.to])
        except (smtplib.SMTPException, OSError) as e:
            raise DeliveryError(f"Failed to send '{subject}' to {to}: {e}") from e

        logger.debug(f"Email '{subject}' delivered to SMTP server for {to}")

    def test_connection(self) -> bool:
        """
        Test SMTP connection.

        Returns:
            True if connection successful, False otherwise
        """
        try:
            with self._create_smtp_connection():
                logger.info(f"SMTP connection test successful ({self.config.host}:{self.config.port})")
                return True
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"SMTP connection test failed: {e}")
            return False
