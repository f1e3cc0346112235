"""Domain events for notification and inventory consumers, published to Kafka.

Events produced inside a transaction are queued on the session and only
sent once the outermost unit of work commits, so a rolled back change
never leaks an event.
"""

import json

import structlog
from kafka import KafkaProducer
from kafka.errors import KafkaError

from orderpay.config import settings

logger = structlog.get_logger(__name__)

ORDER_TOPIC = "order.events"
PAYMENT_TOPIC = "payment.events"

_producer = None


def get_producer():
    global _producer
    if _producer is None:
        _producer = KafkaProducer(
            bootstrap_servers=[settings.KAFKA_BOOTSTRAP],
            value_serializer=lambda v: json.dumps(v).encode("utf-8"),
            key_serializer=lambda v: (v.encode("utf-8") if isinstance(v, str) else v),
            linger_ms=5,
            retries=3,
        )
    return _producer


def send(topic: str, key: str, value: dict):
    p = get_producer()
    p.send(topic, key=key, value=value)
    p.flush(5)
    logger.info("event.sent", topic=topic, key=key, type=value.get("type"))


def enqueue(db, topic: str, key: str, value: dict) -> None:
    """Queue an event on the session until its transaction commits."""
    db.info.setdefault("pending_events", []).append((topic, key, value))


def flush_pending(db) -> None:
    pending = db.info.pop("pending_events", [])
    for topic, key, value in pending:
        # The change is already committed; a broker outage must not fail the request.
        try:
            send(topic, key, value)
        except KafkaError as exc:
            logger.error("event.send_failed", topic=topic, key=key, type=value.get("type"), error=str(exc))


def discard_pending(db) -> None:
    db.info.pop("pending_events", None)
