"""
Tests for loading the mailer configuration.
"""

import pytest
from pydantic import ValidationError

from notifier import config


def test_load_mailer_config(monkeypatch):
    monkeypatch.setattr(config, "SMTP_HOST", "smtp.example.com")
    monkeypatch.setattr(config, "SMTP_PORT", 465)
    monkeypatch.setattr(config, "SMTP_USE_SSL", True)
    monkeypatch.setattr(config, "SMTP_USERNAME", "shop@example.com")
    monkeypatch.setattr(config, "SMTP_FROM_EMAIL", "shop@example.com")
    monkeypatch.setattr(config, "SMTP_FROM_NAME", "")

    mailer_config = config.load_mailer_config()

    assert mailer_config.host == "smtp.example.com"
    assert mailer_config.port == 465
    assert mailer_config.use_ssl is True
    assert mailer_config.from_email == "shop@example.com"
    assert mailer_config.from_name is None


def test_missing_sender_is_an_error(monkeypatch):
    monkeypatch.setattr(config, "SMTP_FROM_EMAIL", "")

    with pytest.raises(ValueError):
        config.load_mailer_config()


def test_mailer_config_is_frozen():
    mailer_config = config.MailerConfig(from_email="shop@example.com")

    with pytest.raises(ValidationError):
        mailer_config.from_email = "other@example.com"
