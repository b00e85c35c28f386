import json
import logging
from typing import Optional

import aio_pika
from fastapi import FastAPI

from circulation.outcomes import BorrowingEvent
from circulation.settings import BORROWING_EVENTS_QUEUE, RABBIT_MQ_CONN_STR

logger = logging.getLogger(__name__)


class BorrowingEventPublisher:
    """Publishes committed borrowing operations to a durable RabbitMQ queue."""

    def __init__(self, url: str = RABBIT_MQ_CONN_STR, queue_name: str = BORROWING_EVENTS_QUEUE):
        self.url = url
        self.queue_name = queue_name
        self.connection = None
        self.channel = None

    async def connect(self):
        logger.info("Initializing RabbitMQ connection")
        try:
            self.connection = await aio_pika.connect_robust(self.url)
            self.channel = await self.connection.channel()
            await self.channel.declare_queue(self.queue_name, durable=True)
            logger.info(f"Queue '{self.queue_name}' set up successfully")
        except Exception as e:
            logger.error(f"Failed to connect to RabbitMQ: {e}")
            raise

    async def close(self):
        if self.connection:
            await self.connection.close()
            logger.info("RabbitMQ connection closed")

    async def publish(self, event: BorrowingEvent) -> bool:
        if self.channel is None:
            logger.warning(f"Publisher not connected, dropping {event.kind} event")
            return False
        body = json.dumps(event.model_dump(mode="json"))
        try:
            await self.channel.default_exchange.publish(
                aio_pika.Message(
                    body=body.encode(),
                    delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
                    content_type="application/json",
                ),
                routing_key=self.queue_name,
            )
        except Exception as e:
            # the operation is already committed, losing the event is not fatal
            logger.error(f"Failed to publish {event.kind} event: {e}")
            return False
        logger.info(f"Published {event.kind} event for request {event.request_id}")
        return True


async def setup_messaging(app: FastAPI):
    publisher = BorrowingEventPublisher()
    await publisher.connect()
    app.state.event_publisher = publisher


async def cleanup_messaging(app: FastAPI):
    publisher: Optional[BorrowingEventPublisher] = getattr(
        app.state, "event_publisher", None
    )
    if publisher is not None:
        await publisher.close()


async def publish_event(app: FastAPI, event: Optional[BorrowingEvent]):
    publisher = getattr(app.state, "event_publisher", None)
    if event is None or publisher is None:
        return
    await publisher.publish(event)
