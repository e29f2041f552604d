"""RabbitMQ job dispatcher for vote lifecycle events."""
import json
from typing import Optional
from datetime import datetime, timezone
import aio_pika
from aio_pika import connect_robust, Message, DeliveryMode
from aio_pika.abc import AbstractChannel, AbstractRobustConnection
from aio_pika.pool import Pool
import logging

from ..shared.models import VoteRecord, VoteEvent
from .config import settings

logger = logging.getLogger(__name__)


class RabbitMQPublisher:
    """Async RabbitMQ publisher with connection pooling."""

    def __init__(self, url: Optional[str] = None):
        self.url = url or settings.rabbitmq_url
        self.connection_pool: Optional[Pool] = None
        self.channel_pool: Optional[Pool] = None

    async def get_connection(self) -> AbstractRobustConnection:
        """Open a new robust connection for the pool."""
        return await connect_robust(self.url)

    async def get_channel(self) -> AbstractChannel:
        """Open a new channel for the pool."""
        async with self.connection_pool.acquire() as connection:
            return await connection.channel()

    async def initialize(self):
        """Initialize connection and channel pools."""
        try:
            self.connection_pool = Pool(
                self.get_connection,
                max_size=settings.RABBITMQ_POOL_SIZE
            )
            self.channel_pool = Pool(
                self.get_channel,
                max_size=settings.RABBITMQ_POOL_SIZE
            )

            async with self.channel_pool.acquire() as channel:
                await channel.declare_exchange(
                    settings.RABBITMQ_EXCHANGE,
                    aio_pika.ExchangeType.TOPIC,
                    durable=True
                )

            logger.info("RabbitMQ publisher initialized successfully")

        except Exception as e:
            logger.error(f"Failed to initialize RabbitMQ publisher: {e}")
            raise

    @staticmethod
    def routing_key(event: VoteEvent) -> str:
        if event == VoteEvent.CONFIRMED:
            return settings.RABBITMQ_CONFIRMED_ROUTING_KEY
        return settings.RABBITMQ_SUBMITTED_ROUTING_KEY

    @staticmethod
    def build_message(record: VoteRecord, event: VoteEvent) -> Message:
        """Serialize a vote record into a persistent JSON message."""
        body = record.to_dict()
        body["event"] = event.value
        return Message(
            body=json.dumps(body).encode(),
            delivery_mode=DeliveryMode.PERSISTENT,
            content_type="application/json",
            timestamp=datetime.now(timezone.utc)
        )

    async def submit(self, record: VoteRecord, event: VoteEvent) -> bool:
        """
        Publish a vote record for downstream processing.

        Args:
            record: Stored vote record (including email, the consumer mails it)
            event: Which lifecycle step produced the record

        Returns:
            bool: True if published successfully, False otherwise
        """
        try:
            async with self.channel_pool.acquire() as channel:
                exchange = await channel.get_exchange(settings.RABBITMQ_EXCHANGE)

                await exchange.publish(
                    self.build_message(record, event),
                    routing_key=self.routing_key(event)
                )

                logger.info(
                    f"Published vote to RabbitMQ: id={record.id}, event={event.value}"
                )
                return True

        except Exception as e:
            logger.error(f"Failed to publish vote {record.id} to RabbitMQ: {e}")
            return False

    async def check_health(self) -> bool:
        """
        Check RabbitMQ connection health.

        Returns:
            bool: True if healthy, False otherwise
        """
        try:
            async with self.channel_pool.acquire() as channel:
                await channel.get_exchange(settings.RABBITMQ_EXCHANGE)
                return True
        except Exception as e:
            logger.error(f"RabbitMQ health check failed: {e}")
            return False

    async def close(self):
        """Close all connections and channels."""
        try:
            if self.channel_pool:
                await self.channel_pool.close()
            if self.connection_pool:
                await self.connection_pool.close()
            logger.info("RabbitMQ publisher closed successfully")
        except Exception as e:
            logger.error(f"Error closing RabbitMQ publisher: {e}")
