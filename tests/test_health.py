"""
Test service lifecycle and health status.
"""

import asyncio
from unittest.mock import MagicMock

import pytest

from notifier import config
from notifier import service as service_module
from notifier.event_listener import TopicSubscription
from notifier.service import NotifierService
from shared.mq.kafka_helpers import ConsumedMessage


class FakeResilientConsumer:
    """Consumer that records its settings and idles until stopped."""

    instances = []

    def __init__(self, topic, **kwargs):
        self.topic = topic
        self.kwargs = kwargs
        self.running = False
        self.stopped = asyncio.Event()
        FakeResilientConsumer.instances.append(self)

    async def consume_messages(self, message_handler, commit_offset=True):
        self.running = True
        await self.stopped.wait()
        self.running = False

    async def stop(self):
        self.stopped.set()

    def get_statistics(self):
        return {'messages_processed': 0}


@pytest.fixture
def fake_consumers(monkeypatch):
    FakeResilientConsumer.instances = []
    monkeypatch.setattr(service_module, "AsyncResilientKafkaConsumer", FakeResilientConsumer)
    return FakeResilientConsumer.instances


def test_health_check_before_start(mailer):
    """Test health status of a service that has not started."""
    status = NotifierService(mailer=mailer).get_health_status()

    assert status["service"] == "notifier"
    assert status["status"] == "unhealthy"
    assert "timestamp" in status
    assert status["consumers"] == {}


def test_start_and_shutdown(mailer, fake_consumers, monkeypatch):
    monkeypatch.setattr(config, "SMTP_CHECK_ON_STARTUP", True)
    mailer.test_connection.return_value = True

    async def scenario():
        service = NotifierService(mailer=mailer)
        task = asyncio.create_task(service.start())
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        status = service.get_health_status()
        service.shutdown()
        return await task, status, service

    result, status, service = asyncio.run(scenario())

    assert result is True
    assert status["status"] == "healthy"
    assert set(status["consumers"]) == {"product_updates", "signUp_Update_toUser", "low_stock_alerts"}
    assert all(c.kwargs["group_id"] == config.KAFKA_CONSUMER_GROUP_ID for c in fake_consumers)
    assert all(c.stopped.is_set() for c in fake_consumers)
    assert service.running is False


def test_start_fails_when_smtp_unreachable(mailer, fake_consumers, monkeypatch):
    monkeypatch.setattr(config, "SMTP_CHECK_ON_STARTUP", True)
    mailer.test_connection.return_value = False

    result = asyncio.run(NotifierService(mailer=mailer).start())

    assert result is False
    assert fake_consumers == []


def test_start_fails_on_unknown_error_policy(mailer, fake_consumers, monkeypatch):
    monkeypatch.setattr(config, "SIGN_UP_ERROR_POLICY", "retry")

    result = asyncio.run(NotifierService(mailer=mailer).start())

    assert result is False


def test_message_handler_passes_payload_and_acknowledges():
    handler = MagicMock()
    subscription = TopicSubscription("product_updates", handler, lambda raw: raw)
    message = ConsumedMessage(MagicMock(), "Widget X restocked")

    assert NotifierService._message_handler(subscription)(message) is True
    handler.assert_called_once_with("Widget X restocked")


def test_message_handler_propagates_handler_errors():
    subscription = TopicSubscription("low_stock_alerts", MagicMock(side_effect=RuntimeError("boom")), None)

    with pytest.raises(RuntimeError):
        NotifierService._message_handler(subscription)(ConsumedMessage(MagicMock(), {}))
