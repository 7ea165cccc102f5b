import json
from datetime import datetime
from typing import Optional
from uuid import uuid4

import aio_pika
from aio_pika.exceptions import AMQPError
import structlog
from tenacity import RetryError, retry, stop_after_attempt, wait_exponential

logger = structlog.get_logger(__name__)

EXCHANGE_NAME = "payment_bridge_exchange"

connection = None
channel = None


@retry(stop=stop_after_attempt(5), wait=wait_exponential(multiplier=1, min=1, max=10))
async def _connect(rabbitmq_url: str):
    return await aio_pika.connect_robust(rabbitmq_url)


async def setup_rabbitmq(rabbitmq_url: Optional[str]):
    global connection, channel
    if not rabbitmq_url:
        logger.info("rabbitmq_disabled")
        return
    try:
        connection = await _connect(rabbitmq_url)
        channel = await connection.channel()
        await channel.declare_exchange(EXCHANGE_NAME, aio_pika.ExchangeType.TOPIC, durable=True)
        logger.info("rabbitmq_ready", exchange=EXCHANGE_NAME)
    except (RetryError, AMQPError, OSError) as e:
        connection = channel = None
        logger.error("rabbitmq_setup_failed", error=str(e))


async def close_rabbitmq():
    global connection, channel
    if connection is not None:
        await connection.close()
    connection = channel = None


def build_event(event_type: str, order_id: str, correlation_ref: Optional[str], **fields) -> dict:
    return {
        "event_id": str(uuid4()),
        "event_type": event_type,
        "timestamp": datetime.utcnow().isoformat(),
        "order_id": order_id,
        "correlation_ref": correlation_ref,
        **fields,
    }


async def publish_event(routing_key: str, message_data: dict):
    """Best effort: a broker outage never changes a webhook's outcome."""
    if not channel:
        logger.debug("event_not_published", routing_key=routing_key, event_type=message_data["event_type"])
        return

    message = aio_pika.Message(
        json.dumps(message_data).encode("utf-8"),
        content_type="application/json",
        delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
    )
    try:
        exchange = await channel.get_exchange(EXCHANGE_NAME)
        await exchange.publish(message, routing_key=routing_key)
        logger.info("event_published", routing_key=routing_key, event_type=message_data["event_type"])
    except (AMQPError, OSError) as e:
        logger.error("event_publish_failed", routing_key=routing_key, error=str(e))
