"""RabbitMQ publisher for change notices and operational alerts."""
import json
import logging
from typing import Optional

import aio_pika
from aio_pika import connect_robust, Message, DeliveryMode
from aio_pika.abc import AbstractChannel, AbstractRobustConnection
from aio_pika.pool import Pool

from ballotbox.shared.models import ChangeNotice, utcnow

logger = logging.getLogger(__name__)


class RabbitMQPublisher:
    """
    Async RabbitMQ publisher with connection pooling.

    Change notices go to `<prefix>.<kind>` (event.tally, event.session) on a
    topic exchange so other processes can invalidate their own views. Only
    notices that originated locally are published; relayed ones already went
    through the exchange. Partial commit alerts go to a separate routing key
    for operators.
    """

    def __init__(
        self,
        url: str,
        exchange_name: str,
        notice_prefix: str = "event",
        alert_routing_key: str = "ops.partial_commit",
        pool_size: int = 10,
        origin: Optional[str] = None,
    ):
        self.url = url
        self.exchange_name = exchange_name
        self.notice_prefix = notice_prefix
        self.alert_routing_key = alert_routing_key
        self.pool_size = pool_size
        self.origin = origin
        self.connection_pool: Optional[Pool] = None
        self.channel_pool: Optional[Pool] = None

    async def get_connection(self) -> AbstractRobustConnection:
        """Get a connection from the pool."""
        return await connect_robust(self.url)

    async def get_channel(self) -> AbstractChannel:
        """Get a channel from the pool."""
        async with self.connection_pool.acquire() as connection:
            return await connection.channel()

    async def initialize(self):
        """Initialize connection and channel pools and declare the exchange."""
        try:
            self.connection_pool = Pool(self.get_connection, max_size=self.pool_size)
            self.channel_pool = Pool(self.get_channel, max_size=self.pool_size)

            async with self.channel_pool.acquire() as channel:
                await channel.declare_exchange(
                    self.exchange_name,
                    aio_pika.ExchangeType.TOPIC,
                    durable=True
                )

            logger.info("RabbitMQ publisher initialized successfully")

        except Exception as e:
            logger.error(f"Failed to initialize RabbitMQ publisher: {e}")
            raise

    def notice_routing_key(self, notice: ChangeNotice) -> str:
        return f"{self.notice_prefix}.{notice.kind.value}"

    async def _publish(self, payload: dict, routing_key: str) -> None:
        async with self.channel_pool.acquire() as channel:
            exchange = await channel.get_exchange(self.exchange_name)
            message = Message(
                body=json.dumps(payload).encode(),
                delivery_mode=DeliveryMode.PERSISTENT,
                content_type="application/json",
                timestamp=utcnow()
            )
            await exchange.publish(message, routing_key=routing_key)

    async def publish_notice(self, notice: ChangeNotice) -> None:
        """Notifier subscriber. Raises on failure so the notifier can retry."""
        if self.origin is not None and notice.origin != self.origin:
            return
        routing_key = self.notice_routing_key(notice)
        try:
            await self._publish(notice.to_dict(), routing_key)
        except Exception as e:
            logger.error(f"Failed to publish change notice to RabbitMQ ({routing_key}): {e}")
            raise
        logger.debug(f"Published {routing_key} for event {notice.event_id}")

    async def publish_alert(self, details: dict) -> None:
        """Alert channel for partial commits."""
        await self._publish(details, self.alert_routing_key)
        logger.info(f"Published partial commit alert for event {details.get('event_id')}")

    async def check_health(self) -> bool:
        """
        Check RabbitMQ connection health.

        Returns:
            bool: True if healthy, False otherwise
        """
        if self.channel_pool is None:
            return False
        try:
            async with self.channel_pool.acquire() as channel:
                await channel.get_exchange(self.exchange_name)
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
