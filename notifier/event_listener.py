# notifier/event_listener.py
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from notifier.exceptions import DeserializationError, NotifierError, SerializationError
from notifier.mailer import Mailer
from shared.models.common import UserProfile
from shared.mq.kafka_helpers import json_value, text_value

logger = logging.getLogger(__name__)

PRODUCT_UPDATE_SUBJECT = "Product Update"
SIGN_UP_SUBJECT = "Sign Up Email"
SIGN_UP_BODY = "Hi user, welcome to our Ecommerce App"
LOW_STOCK_SUBJECT = "Low Stock Alert"


class ErrorPolicy(str, Enum):
    """What a handler does with a payload it cannot convert."""
    DROP = "drop"    # log it and treat the message as processed
    RAISE = "raise"  # let the consumer runtime see the failure


@dataclass(frozen=True)
class TopicSubscription:
    topic: str
    handler: Callable[[Any], None]
    deserializer: Callable[[bytes], Any]


class EventListener:
    """
    Turns the events of the three notification topics into emails.
    """

    def __init__(self, mailer: Mailer, admin_email: str, low_stock_email: str,
                 sign_up_policy: ErrorPolicy = ErrorPolicy.DROP,
                 low_stock_policy: ErrorPolicy = ErrorPolicy.RAISE):
        """
        Initialize the event listener.

        Args:
            mailer: Mailer used for every outbound email
            admin_email: Recipient of product updates
            low_stock_email: Recipient of low stock alerts
            sign_up_policy: Handling of sign-up payloads that are not a valid user
            low_stock_policy: Handling of low stock payloads that cannot be serialized
        """
        self.mailer = mailer
        self.admin_email = admin_email
        self.low_stock_email = low_stock_email
        self.sign_up_policy = ErrorPolicy(sign_up_policy)
        self.low_stock_policy = ErrorPolicy(low_stock_policy)

    def subscriptions(self, topics: Dict[str, str]) -> List[TopicSubscription]:
        """
        Bind each handler to its topic.

        Args:
            topics: Topic names keyed by 'product_updates', 'sign_up' and 'low_stock'
        """
        return [
            TopicSubscription(topics['product_updates'], self.on_product_update, text_value),
            TopicSubscription(topics['sign_up'], self.on_sign_up, json_value),
            TopicSubscription(topics['low_stock'], self.on_low_stock, json_value),
        ]

    def on_product_update(self, payload: Optional[str]) -> None:
        logger.debug("Received product update")
        # A null value (tombstone) is sent as an empty body
        self.mailer.send(self.admin_email, PRODUCT_UPDATE_SUBJECT, payload if payload is not None else "")

    def on_sign_up(self, payload: Any) -> None:
        try:
            profile = self._to_user_profile(payload)
        except DeserializationError as e:
            self._apply_policy(self.sign_up_policy, e, payload)
            return

        logger.debug(f"Received sign up for {profile.email}")
        # Delivery failures are outside the policy and always propagate
        self.mailer.send(profile.email, SIGN_UP_SUBJECT, SIGN_UP_BODY)

    def on_low_stock(self, payload: Any) -> None:
        try:
            body = self._to_json_text(payload)
        except SerializationError as e:
            self._apply_policy(self.low_stock_policy, e, payload)
            return

        logger.info("Received low stock alert")
        self.mailer.send(self.low_stock_email, LOW_STOCK_SUBJECT, body)

    @staticmethod
    def _to_user_profile(payload: Any) -> UserProfile:
        try:
            return UserProfile.model_validate(payload)
        except ValidationError as e:
            raise DeserializationError(f"Payload is not a valid user profile: {e}") from e

    @staticmethod
    def _to_json_text(payload: Any) -> str:
        # Compact form, no pretty printing: the body is the record itself
        try:
            return json.dumps(payload, separators=(',', ':'), ensure_ascii=False, allow_nan=False)
        except (TypeError, ValueError) as e:
            raise SerializationError(f"Payload cannot be serialized to JSON: {e}") from e

    @staticmethod
    def _apply_policy(policy: ErrorPolicy, error: NotifierError, payload: Any) -> None:
        if policy is ErrorPolicy.RAISE:
            raise error
        logger.error(f"Dropping message: {error} (payload: {payload!r})")
