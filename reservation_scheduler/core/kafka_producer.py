# reservation_scheduler/core/kafka_producer.py

import json
import logging
import threading
from typing import Optional

from kafka import KafkaProducer
from reservation_scheduler.core.config import settings

logger = logging.getLogger(__name__)

_producer: Optional[KafkaProducer] = None
_producer_lock = threading.Lock()


def _build_producer() -> KafkaProducer:
    return KafkaProducer(
        bootstrap_servers=settings.KAFKA_BOOTSTRAP_SERVERS,
        key_serializer=lambda k: k.encode("utf-8") if k is not None else None,
        value_serializer=lambda v: json.dumps(v, default=str).encode("utf-8"),
        # Fail fast when the broker is unreachable instead of stalling a sweep
        request_timeout_ms=5000,
    )


def get_kafka_singleton() -> Optional[KafkaProducer]:
    """
    Process-wide producer shared by the sweep and the request handlers.

    Returns None when no broker is configured. Created lazily on first use.
    """
    global _producer
    if not settings.kafka_enabled:
        return None
    with _producer_lock:
        if _producer is None:
            _producer = _build_producer()
            logger.info(
                f"Kafka producer connected to {settings.KAFKA_BOOTSTRAP_SERVERS}"
            )
        return _producer


def close_kafka_singleton() -> None:
    global _producer
    with _producer_lock:
        if _producer is not None:
            _producer.flush()
            _producer.close()
            _producer = None
