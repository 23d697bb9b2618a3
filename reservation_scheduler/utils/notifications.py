# reservation_scheduler/utils/notifications.py
"""
Notification dispatch for reservation and waitlist events.

The core hands every event to a ``NotificationDispatcher``; addressing,
formatting and delivery retries are the dispatcher's business. With a broker
configured, events go to Kafka; otherwise they are only logged.
"""

import abc
import logging
import threading
from typing import Iterable, List, Optional

from reservation_scheduler.core.config import settings
from reservation_scheduler.core.exceptions import NotificationError
from reservation_scheduler.core.kafka_producer import get_kafka_singleton
from reservation_scheduler.schemas.events import NotificationEvent

logger = logging.getLogger(__name__)


class NotificationDispatcher(abc.ABC):
    @abc.abstractmethod
    def notify(self, event: NotificationEvent) -> None:
        """Hand off one event. Raises ``NotificationError`` on failure."""


class LoggingNotificationDispatcher(NotificationDispatcher):
    def notify(self, event: NotificationEvent) -> None:
        logger.info(
            f"[{event.event_type}] requester={event.requester_id} "
            f"resource={event.resource_id} {event.interval.date} "
            f"{event.interval.start_time}-{event.interval.end_time}: {event.reason}"
        )


class RecordingNotificationDispatcher(NotificationDispatcher):
    """Keeps every event in memory. ``fail_types`` simulates delivery failures."""

    def __init__(self, fail_types: Iterable[str] = ()):
        self.events: List[NotificationEvent] = []
        self.fail_types = set(fail_types)
        self._lock = threading.Lock()

    def notify(self, event: NotificationEvent) -> None:
        if event.event_type in self.fail_types:
            raise NotificationError(f"Delivery of {event.event_type} failed")
        with self._lock:
            self.events.append(event)

    def of_type(self, event_type: str) -> List[NotificationEvent]:
        with self._lock:
            return [e for e in self.events if e.event_type == event_type]

    def clear(self) -> None:
        with self._lock:
            self.events.clear()


class KafkaNotificationDispatcher(NotificationDispatcher):
    """
    Publishes events as JSON, keyed by requester so one salesperson's events
    stay ordered within a partition.
    """

    def __init__(self, producer=None):
        self._producer = producer

    @property
    def producer(self):
        if self._producer is None:
            self._producer = get_kafka_singleton()
        return self._producer

    @staticmethod
    def topic_for(event: NotificationEvent) -> str:
        if event.event_type.startswith("waitlist."):
            return settings.KAFKA_WAITLIST_TOPIC
        return settings.KAFKA_RESERVATION_TOPIC

    def notify(self, event: NotificationEvent) -> None:
        producer = self.producer
        if producer is None:
            raise NotificationError("Kafka is not configured")
        try:
            future = producer.send(
                self.topic_for(event),
                key=event.requester_id,
                value=event.model_dump(mode="json"),
            )
            # Wait for the broker ack so a lost event surfaces as a failure
            future.get(timeout=settings.KAFKA_SEND_TIMEOUT_SECONDS)
        except Exception as e:
            raise NotificationError(
                f"Failed to publish {event.event_type} to Kafka: {e}"
            ) from e


def dispatch_safely(
    dispatcher: NotificationDispatcher,
    event: NotificationEvent,
    errors: Optional[list] = None,
) -> bool:
    """
    Notify without letting a delivery failure undo the committed transition.

    Failures are logged and, when ``errors`` is given, appended to it.
    """
    try:
        dispatcher.notify(event)
        return True
    except Exception as e:
        logger.error(
            f"Failed to dispatch {event.event_type} for {event.requester_id}: {e}",
            exc_info=True,
        )
        if errors is not None:
            errors.append(f"{event.event_type}: {e}")
        return False


def get_notification_dispatcher() -> NotificationDispatcher:
    if settings.kafka_enabled:
        return KafkaNotificationDispatcher()
    return LoggingNotificationDispatcher()
