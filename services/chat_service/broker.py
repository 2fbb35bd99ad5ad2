import json
import logging
import os
import pika

logger = logging.getLogger(__name__)

RABBITMQ_URL = os.getenv("RABBITMQ_URL")
EVENTS_QUEUE = "events"


def publish_event(event_type: str, data: dict):
    """Best-effort push to the shared events queue (notifications, analytics)."""
    if not RABBITMQ_URL:
        logger.debug("RABBITMQ_URL not set, dropping %s", event_type)
        return False
    try:
        params = pika.URLParameters(RABBITMQ_URL)
        connection = pika.BlockingConnection(params)
        try:
            channel = connection.channel()
            channel.queue_declare(queue=EVENTS_QUEUE, durable=True)
            channel.basic_publish(
                exchange="",
                routing_key=EVENTS_QUEUE,
                body=json.dumps({"type": event_type, "data": data}, default=str),
                properties=pika.BasicProperties(delivery_mode=2),
            )
        finally:
            connection.close()
        return True
    except Exception as exc:
        logger.warning("Failed to publish event %s: %s", event_type, exc)
        return False
