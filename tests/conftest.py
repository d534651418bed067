"""
Shared fixtures for the notifier tests.
"""

from unittest.mock import MagicMock

import pytest

from notifier.config import MailerConfig
from notifier.event_listener import EventListener
from notifier.mailer import Mailer


@pytest.fixture
def mailer_config():
    """SMTP settings pointing at a fake server."""
    return MailerConfig(
        host="smtp.example.com",
        port=587,
        username="user",
        password="pass",
        use_tls=True,
        from_email="shop@example.com",
    )


@pytest.fixture
def mailer():
    """A Mailer stand-in recording every send."""
    return MagicMock(spec=Mailer)


@pytest.fixture
def listener(mailer):
    """Event listener with the default error policies."""
    return EventListener(
        mailer,
        admin_email="admin@example.com",
        low_stock_email="inventory@example.com",
    )
