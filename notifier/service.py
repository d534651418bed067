# notifier/service.py
import logging
import asyncio
import signal
import sys
import time
from typing import Dict, List, Optional

from notifier import config
from notifier.event_listener import EventListener, TopicSubscription
from notifier.mailer import Mailer
from shared.mq.kafka_helpers import AsyncResilientKafkaConsumer

# Configure logging
logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)

logger = logging.getLogger(__name__)

class NotifierService:
    """
    Runs one Kafka consumer per notification topic and feeds the messages to
    the EventListener until a shutdown signal arrives.
    """

    def __init__(self, mailer: Optional[Mailer] = None, listener: Optional[EventListener] = None):
        """
        Initialize the notifier service.

        Args:
            mailer: Mailer to use; built from the environment when omitted
            listener: EventListener to use; built around the mailer when omitted
        """
        self.mailer = mailer
        self.listener = listener
        self.consumers: Dict[str, AsyncResilientKafkaConsumer] = {}
        self._tasks: List[asyncio.Task] = []
        self.running = False
        self._shutdown_event = asyncio.Event()

    def _build_components(self):
        if self.mailer is None:
            self.mailer = Mailer(config.load_mailer_config())
        if self.listener is None:
            self.listener = EventListener(
                self.mailer,
                admin_email=config.ADMIN_EMAIL,
                low_stock_email=config.LOW_STOCK_ALERT_EMAIL,
                sign_up_policy=config.SIGN_UP_ERROR_POLICY,
                low_stock_policy=config.LOW_STOCK_ERROR_POLICY,
            )

    @staticmethod
    def topics() -> Dict[str, str]:
        return {
            'product_updates': config.KAFKA_PRODUCT_UPDATES_TOPIC,
            'sign_up': config.KAFKA_SIGN_UP_TOPIC,
            'low_stock': config.KAFKA_LOW_STOCK_TOPIC,
        }

    def _create_consumer(self, subscription: TopicSubscription) -> AsyncResilientKafkaConsumer:
        return AsyncResilientKafkaConsumer(
            topic=subscription.topic,
            group_id=config.KAFKA_CONSUMER_GROUP_ID,
            bootstrap_servers=config.KAFKA_BOOTSTRAP_SERVERS,
            auto_offset_reset=config.KAFKA_AUTO_OFFSET_RESET,
            value_deserializer=subscription.deserializer,
            max_redeliveries=config.KAFKA_MAX_REDELIVERIES,
            on_error_callback=self._on_consumer_error
        )

    @staticmethod
    def _message_handler(subscription: TopicSubscription):
        """Adapt a payload handler to the consumer's message handler contract."""
        def handle(message) -> bool:
            subscription.handler(message.parsed_value)
            return True
        return handle

    def _on_consumer_error(self, error, context):
        """Handle errors raised while processing a message."""
        topic = context.topic() if hasattr(context, 'topic') else 'unknown'
        logger.error(f"Message on '{topic}' not processed: {error!r}")

    async def start(self) -> bool:
        """Start the service and block until shutdown is requested."""
        logger.info(f"Starting {config.SERVICE_NAME}")

        try:
            self._build_components()

            if config.SMTP_CHECK_ON_STARTUP and not self.mailer.test_connection():
                logger.error("SMTP connection test failed. Please check email configuration.")
                return False

            for subscription in self.listener.subscriptions(self.topics()):
                consumer = self._create_consumer(subscription)
                self.consumers[subscription.topic] = consumer
                self._tasks.append(asyncio.create_task(
                    consumer.consume_messages(self._message_handler(subscription), commit_offset=True),
                    name=f"consume-{subscription.topic}"
                ))

            self.running = True
            logger.info(f"{config.SERVICE_NAME} started, listening on {', '.join(self.consumers)}")

            await self._shutdown_event.wait()
            return True

        except ValueError as e:
            logger.error(f"Invalid configuration for {config.SERVICE_NAME}: {e}")
            return False
        finally:
            await self.stop()

    async def stop(self):
        """Stop the consumers and wait for their tasks."""
        if not self.consumers and not self._tasks:
            return

        logger.info(f"Stopping {config.SERVICE_NAME}")
        self.running = False

        for consumer in self.consumers.values():
            await consumer.stop()

        if self._tasks:
            done, pending = await asyncio.wait(self._tasks, timeout=5.0)
            for task in pending:
                logger.warning(f"Task {task.get_name()} did not finish within timeout")
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            self._tasks.clear()

        self.consumers.clear()
        logger.info(f"{config.SERVICE_NAME} stopped")

    def shutdown(self):
        """Signal the service to shut down."""
        logger.info("Shutdown signal received")
        self._shutdown_event.set()

    def get_health_status(self) -> dict:
        """Get service health status."""
        return {
            'service': config.SERVICE_NAME,
            'status': 'healthy' if self.running else 'unhealthy',
            'timestamp': time.time(),
            'consumers': {
                topic: {
                    'running': consumer.running,
                    'statistics': consumer.get_statistics()
                }
                for topic, consumer in self.consumers.items()
            }
        }

# Global service instance
service_instance: Optional[NotifierService] = None

def signal_handler(signum, frame):
    """Handle shutdown signals."""
    logger.info(f"Received signal {signum}")
    if service_instance:
        service_instance.shutdown()

async def main():
    """Main entry point."""
    global service_instance

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    service_instance = NotifierService()

    if await service_instance.start():
        logger.info("Service completed successfully")
        sys.exit(0)
    logger.error("Service failed to start")
    sys.exit(1)
