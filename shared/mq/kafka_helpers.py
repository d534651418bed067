# shared/mq/kafka_helpers.py
import json
import logging
from confluent_kafka import Consumer, KafkaError, KafkaException, TopicPartition
import time
import socket
import asyncio
from typing import Optional, Dict, Any, Callable, Tuple

logger = logging.getLogger(__name__)
logging.getLogger("confluent_kafka").setLevel(logging.WARNING)

MAX_BACKOFF_EXPONENT = 6  # caps the reconnect delay at base_delay * 64


def backoff_delay(base_delay: float, attempt: int) -> float:
    """Exponential delay for the given 1-based attempt number."""
    return base_delay * (2 ** min(attempt - 1, MAX_BACKOFF_EXPONENT))


def text_value(raw: bytes) -> str:
    """Decode a message value as UTF-8 text."""
    return raw.decode('utf-8') if isinstance(raw, bytes) else str(raw)


def json_value(raw: bytes) -> Any:
    """Decode a message value as JSON. Raises json.JSONDecodeError on bad input."""
    return json.loads(raw.decode('utf-8') if isinstance(raw, bytes) else raw)


def validate_bootstrap_servers(bootstrap_servers: str) -> Optional[str]:
    """
    Keep only the bootstrap servers that resolve and accept TCP connections.

    Returns:
        Comma separated reachable servers, or None if none are reachable
    """
    reachable_servers = []

    for server in (s.strip() for s in bootstrap_servers.split(',')):
        if not server:
            continue
        host, _, port_str = server.partition(':')
        port = int(port_str) if port_str else 9092

        try:
            socket.gethostbyname(host)
        except socket.gaierror as e:
            logger.warning(f"DNS resolution failed for {host}: {e}")
            continue

        try:
            with socket.create_connection((host, port), timeout=5):
                reachable_servers.append(server)
                logger.debug(f"Successfully connected to {host}:{port}")
        except OSError as e:
            logger.warning(f"Cannot connect to {host}:{port}: {e}")

    if not reachable_servers:
        logger.error(f"No reachable Kafka brokers found in: {bootstrap_servers}")
        return None

    return ','.join(reachable_servers)


def get_consumer_config(group_id: str, **overrides) -> Dict[str, Any]:
    """Consumer configuration with manual offset commits."""
    config = {
        'bootstrap.servers': '',  # Will be set later
        'group.id': group_id,
        'auto.offset.reset': 'earliest',
        'enable.auto.commit': False,
        'session.timeout.ms': 30000,
        'heartbeat.interval.ms': 10000,
        'max.poll.interval.ms': 300000,
        'socket.keepalive.enable': True,
        'client.id': f'{group_id}_client',
    }
    config.update(overrides)
    return config


def create_kafka_consumer(topic, group_id, bootstrap_servers, auto_offset_reset='earliest',
                          base_delay=1, **config_overrides) -> Consumer:
    """Create a Consumer subscribed to topic, retrying with backoff until it succeeds."""
    logger.info(f"Creating Kafka consumer for topic '{topic}', group '{group_id}', servers: {bootstrap_servers}")

    servers = validate_bootstrap_servers(bootstrap_servers)
    if not servers:
        logger.warning(f"No reachable Kafka brokers found in: {bootstrap_servers}. Will keep retrying...")
        servers = bootstrap_servers

    retry_count = 0
    while True:
        try:
            config = get_consumer_config(group_id, **config_overrides)
            config['bootstrap.servers'] = servers
            config['auto.offset.reset'] = auto_offset_reset

            consumer = Consumer(config)
            consumer.subscribe([topic])
            logger.info(f"Kafka Consumer connected to {servers} for topic '{topic}', group '{group_id}'")
            return consumer

        except KafkaException as e:
            retry_count += 1
            delay = backoff_delay(base_delay, retry_count)
            logger.error(f"Kafka error creating consumer (attempt {retry_count}): {e}")
            logger.info(f"Retrying in {delay} seconds...")
            time.sleep(delay)


def safe_kafka_poll(consumer: Consumer, timeout: float = 1.0):
    """
    Poll once, hiding partition EOF events.

    Returns:
        Message or None, raises KafkaException on error
    """
    msg = consumer.poll(timeout=timeout)

    if msg is None:
        return None

    if msg.error():
        if msg.error().code() == KafkaError._PARTITION_EOF:
            logger.debug(f'Reached end of partition {msg.topic()}[{msg.partition()}] at offset {msg.offset()}')
            return None
        logger.error(f"Consumer error: {msg.error()}")
        raise KafkaException(msg.error())

    return msg


def safe_kafka_commit(consumer: Consumer, message=None, asynchronous: bool = False) -> bool:
    """
    Commit the offset of message (or all current offsets).

    Returns:
        True if commit successful, False otherwise
    """
    try:
        if message is not None:
            consumer.commit(message=message, asynchronous=asynchronous)
        else:
            consumer.commit(asynchronous=asynchronous)
        return True
    except (KafkaException, RuntimeError) as e:
        logger.error(f"Kafka commit error: {e}")
        return False


def is_consumer_healthy(consumer: Consumer) -> bool:
    """
    Check that the consumer still sees cluster metadata.

    Returns:
        True if consumer is healthy, False otherwise
    """
    try:
        metadata = consumer.list_topics(timeout=10)
    except KafkaException as e:
        logger.warning(f"Consumer health check failed: {e}")
        return False

    if metadata is None or len(metadata.topics) == 0:
        logger.warning("Consumer health check failed: no cluster metadata visible")
        return False

    logger.debug(f"Consumer health check passed: {len(metadata.topics)} topics visible")
    return True


class ConsumedMessage:
    """A polled message together with its decoded value."""

    def __init__(self, message, parsed_value):
        self.message = message
        self.parsed_value = parsed_value

    # Delegate topic(), offset(), key() ... to the original message
    def __getattr__(self, name):
        return getattr(self.message, name)


class AsyncResilientKafkaConsumer:
    """
    Consumes one topic from an asyncio task, reconnecting on Kafka errors.

    Each message value is decoded with value_deserializer and handed to the
    message handler. The offset is committed only when the handler returns a
    truthy value. A handler exception is reported to on_error_callback and the
    consumer seeks back to the message, redelivering it up to max_redeliveries
    times before giving up on it.
    """

    def __init__(self, topic, group_id, bootstrap_servers, auto_offset_reset='earliest',
                 value_deserializer: Callable[[bytes], Any] = json_value,
                 max_retries=None, max_redeliveries: int = 9, base_delay=1, on_error_callback=None,
                 idle_sleep: float = 0.1, health_check_interval: float = 10, **config_overrides):
        self.topic = topic
        self.group_id = group_id
        self.bootstrap_servers = bootstrap_servers
        self.auto_offset_reset = auto_offset_reset
        self.value_deserializer = value_deserializer
        self.max_retries = max_retries
        self.max_redeliveries = max_redeliveries
        self._delivery_attempts: Dict[Tuple[str, int, int], int] = {}
        self.base_delay = base_delay
        self.on_error_callback = on_error_callback
        self.idle_sleep = idle_sleep
        self.config_overrides = config_overrides
        self.consumer = None
        self.retry_count = 0
        self.last_error = None
        self._stop_event = asyncio.Event()
        self._last_health_check = 0.0
        self._health_check_interval = health_check_interval
        self._running = False
        self.stats = {
            'messages_processed': 0,
            'messages_failed': 0,
            'messages_skipped': 0,
            'decode_errors': 0,
            'started_at': None
        }

    @property
    def running(self) -> bool:
        return self._running

    async def _create_consumer(self) -> bool:
        """Create a new consumer instance."""
        logger.info(f"Creating new consumer for topic '{self.topic}' with group '{self.group_id}'")
        loop = asyncio.get_running_loop()
        try:
            self.consumer = await asyncio.wait_for(
                loop.run_in_executor(
                    None,
                    lambda: create_kafka_consumer(
                        self.topic,
                        self.group_id,
                        self.bootstrap_servers,
                        self.auto_offset_reset,
                        self.base_delay,
                        **self.config_overrides
                    )
                ),
                timeout=30.0
            )
        except asyncio.TimeoutError:
            self.last_error = "Consumer creation timeout"
            logger.error(f"Timeout creating consumer for topic '{self.topic}' after 30 seconds")
            return False
        except KafkaException as e:
            self.last_error = e
            logger.error(f"Failed to create consumer for topic '{self.topic}': {e}")
            return False

        # First health check is one interval after (re)connecting
        self._last_health_check = time.time()
        self.retry_count = 0
        self.last_error = None
        return True

    async def _check_consumer_health(self):
        """Periodically check consumer health."""
        now = time.time()
        if now - self._last_health_check < self._health_check_interval:
            return
        self._last_health_check = now
        if self.consumer and not is_consumer_healthy(self.consumer):
            logger.warning(f"Consumer health check failed for topic '{self.topic}', triggering reconnection")
            await self._handle_consumer_error("Health check failed")

    async def _call(self, func, *args):
        """Await coroutine functions, run plain functions in the default executor."""
        if asyncio.iscoroutinefunction(func):
            return await func(*args)
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    async def _report_error(self, error, context):
        if self.on_error_callback:
            await self._call(self.on_error_callback, error, context)

    async def _process(self, msg, message_handler, commit_offset: bool):
        raw_value = msg.value()
        try:
            parsed_value = self.value_deserializer(raw_value) if raw_value is not None else None
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            self.stats['decode_errors'] += 1
            logger.error(f"Failed to deserialize message on '{self.topic}' at offset {msg.offset()}: {e}")
            await self._report_error(e, msg)
            return

        wrapped_msg = ConsumedMessage(msg, parsed_value)
        try:
            success = await self._call(message_handler, wrapped_msg)
        except Exception as e:
            self.stats['messages_failed'] += 1
            logger.error(f"Error processing message on '{self.topic}' at offset {msg.offset()}: {e}")
            await self._report_error(e, wrapped_msg)
            self._redeliver(msg, commit_offset)
            return

        self._delivery_attempts.pop(self._message_key(msg), None)
        self.stats['messages_processed'] += 1
        if not (success and commit_offset):
            return
        if self.consumer is None:
            # stop() closed the consumer while the handler was running
            logger.info(f"Consumer for '{self.topic}' stopped, offset {msg.offset()} left uncommitted")
            return
        if not safe_kafka_commit(self.consumer, message=msg):
            logger.warning(f"Failed to commit offset {msg.offset()} on '{self.topic}'")
            await self._handle_consumer_error("Commit failure detected")

    @staticmethod
    def _message_key(msg) -> Tuple[str, int, int]:
        return msg.topic(), msg.partition(), msg.offset()

    def _redeliver(self, msg, commit_offset: bool):
        """
        Seek back to a failed message so the next poll returns it again.

        After max_redeliveries failed redeliveries the message is logged,
        counted as skipped and committed. A message that fails while the
        consumer is stopping is left uncommitted.
        """
        key = self._message_key(msg)
        if self.consumer is None or self._stop_event.is_set():
            self._delivery_attempts.pop(key, None)
            logger.info(f"Consumer for '{self.topic}' stopping, failed offset {msg.offset()} left uncommitted")
            return

        attempts = self._delivery_attempts.get(key, 0)
        if attempts < self.max_redeliveries:
            self._delivery_attempts[key] = attempts + 1
            logger.warning(f"Redelivering message on '{self.topic}' at offset {msg.offset()} "
                           f"({attempts + 1}/{self.max_redeliveries})")
            self.consumer.seek(TopicPartition(*key))
            return

        self._delivery_attempts.pop(key, None)
        self.stats['messages_skipped'] += 1
        logger.error(f"Giving up on message on '{self.topic}' at offset {msg.offset()} "
                     f"after {attempts + 1} attempts")
        if commit_offset:
            safe_kafka_commit(self.consumer, message=msg)

    async def consume_messages(self, message_handler: Callable, commit_offset: bool = True):
        """
        Consume messages with automatic reconnection on failures.

        Args:
            message_handler: Async or sync function receiving a ConsumedMessage,
                returning True when the offset may be committed
            commit_offset: Whether to commit offsets after successful processing
        """
        if not self.consumer and not await self._create_consumer():
            logger.error(f"Failed to create consumer for topic '{self.topic}'")
            return

        self._running = True
        self._stop_event.clear()
        self.stats['started_at'] = time.time()
        logger.info(f"AsyncResilientKafkaConsumer started for topic '{self.topic}'")

        while self._running and not self._stop_event.is_set():
            try:
                if not self.consumer:
                    if not await self._create_consumer():
                        logger.error(f"Failed to recreate consumer for topic '{self.topic}', sleeping before retry...")
                        await asyncio.sleep(5)
                    continue

                await self._check_consumer_health()
                if not self.consumer:
                    continue

                msg = safe_kafka_poll(self.consumer, timeout=0)
                if msg is None:
                    await asyncio.sleep(self.idle_sleep)
                    continue

                await self._process(msg, message_handler, commit_offset)

            except KafkaException as e:
                logger.error(f"Kafka error in consumer loop for topic '{self.topic}': {e}")
                await self._handle_consumer_error(str(e))

        self._running = False
        logger.info(f"AsyncResilientKafkaConsumer loop ended for topic '{self.topic}'")

    async def _handle_consumer_error(self, error):
        """Handle consumer errors with reconnection logic."""
        self.last_error = error
        self.retry_count += 1

        logger.error(f"Consumer error detected on '{self.topic}' (attempt {self.retry_count}): {error}")

        if self.max_retries and self.retry_count > self.max_retries:
            logger.error(f"Max retries ({self.max_retries}) exceeded. Stopping consumer.")
            await self.stop()
            return

        self._close_consumer()

        delay = backoff_delay(self.base_delay, self.retry_count)
        logger.info(f"Attempting consumer recreation in {delay} seconds...")
        await asyncio.sleep(delay)

        if await self._create_consumer():
            logger.info(f"Successfully recreated consumer for topic '{self.topic}'")
        else:
            logger.error(f"Failed to recreate consumer on attempt {self.retry_count}")

    def _close_consumer(self):
        if self.consumer:
            try:
                self.consumer.close()
            except (KafkaException, RuntimeError) as e:
                logger.warning(f"Error closing consumer for topic '{self.topic}': {e}")
            self.consumer = None

    async def stop(self):
        """Stop the consumer gracefully."""
        logger.info(f"Stopping AsyncResilientKafkaConsumer for topic '{self.topic}'")
        self._running = False
        self._stop_event.set()
        self._close_consumer()
        logger.info(f"AsyncResilientKafkaConsumer stopped for topic '{self.topic}'")

    def get_statistics(self) -> Dict[str, Any]:
        """Get consumer statistics."""
        stats = self.stats.copy()
        if stats['started_at']:
            stats['uptime_seconds'] = time.time() - stats['started_at']
        return stats
