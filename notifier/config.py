# notifier/config.py
import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

load_dotenv()

# Kafka Configuration
KAFKA_BOOTSTRAP_SERVERS = os.getenv("KAFKA_BOOTSTRAP_SERVERS", "localhost:9092")
KAFKA_CONSUMER_GROUP_ID = os.getenv("KAFKA_CONSUMER_GROUP_ID", "notification_group")
KAFKA_AUTO_OFFSET_RESET = os.getenv("KAFKA_AUTO_OFFSET_RESET", "earliest")
KAFKA_PRODUCT_UPDATES_TOPIC = os.getenv("KAFKA_PRODUCT_UPDATES_TOPIC", "product_updates")
KAFKA_SIGN_UP_TOPIC = os.getenv("KAFKA_SIGN_UP_TOPIC", "signUp_Update_toUser")
KAFKA_LOW_STOCK_TOPIC = os.getenv("KAFKA_LOW_STOCK_TOPIC", "low_stock_alerts")
# Times a message whose handler raised is redelivered before it is skipped
KAFKA_MAX_REDELIVERIES = int(os.getenv("KAFKA_MAX_REDELIVERIES", "9"))

# SMTP Configuration
SMTP_HOST = os.getenv("SMTP_HOST", "localhost")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USERNAME = os.getenv("SMTP_USERNAME", "")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
SMTP_USE_TLS = os.getenv("SMTP_USE_TLS", "true").lower() == "true"
SMTP_USE_SSL = os.getenv("SMTP_USE_SSL", "false").lower() == "true"
# The sender identity defaults to the account we authenticate with
SMTP_FROM_EMAIL = os.getenv("SMTP_FROM_EMAIL", SMTP_USERNAME)
SMTP_FROM_NAME = os.getenv("SMTP_FROM_NAME", "")
SMTP_CHECK_ON_STARTUP = os.getenv("SMTP_CHECK_ON_STARTUP", "true").lower() in ('true', 'yes', '1')

# Recipients
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@example.com")
LOW_STOCK_ALERT_EMAIL = os.getenv("LOW_STOCK_ALERT_EMAIL", "inventory@example.com")

# What to do with a payload that cannot be converted: 'drop' or 'raise'
SIGN_UP_ERROR_POLICY = os.getenv("SIGN_UP_ERROR_POLICY", "drop").lower()
LOW_STOCK_ERROR_POLICY = os.getenv("LOW_STOCK_ERROR_POLICY", "raise").lower()

# Service Configuration
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
SERVICE_NAME = "notifier"


class MailerConfig(BaseModel):
    """SMTP endpoint, credentials and sender identity used by the Mailer."""
    model_config = ConfigDict(frozen=True)

    host: str = "localhost"
    port: int = 587
    username: str = ""
    password: str = ""
    use_tls: bool = True
    use_ssl: bool = False
    from_email: str = Field(..., min_length=1)
    from_name: Optional[str] = None


def load_mailer_config() -> MailerConfig:
    """
    Build the mailer configuration from the environment-derived settings.

    Raises:
        ValueError: If no sender address is configured
    """
    if not SMTP_FROM_EMAIL:
        raise ValueError("No sender address configured: set SMTP_FROM_EMAIL or SMTP_USERNAME")

    return MailerConfig(
        host=SMTP_HOST,
        port=SMTP_PORT,
        username=SMTP_USERNAME,
        password=SMTP_PASSWORD,
        use_tls=SMTP_USE_TLS,
        use_ssl=SMTP_USE_SSL,
        from_email=SMTP_FROM_EMAIL,
        from_name=SMTP_FROM_NAME or None,
    )
