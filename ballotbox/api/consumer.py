"""
Async RabbitMQ consumer that brings change notices from other processes
back into this one.
"""
import json
import logging
from typing import Awaitable, Callable, Optional

import aio_pika
from aio_pika import connect_robust
from aio_pika.abc import AbstractChannel, AbstractIncomingMessage, AbstractQueue, AbstractRobustConnection
from prometheus_client import Counter

from ballotbox.shared.models import ChangeNotice

logger = logging.getLogger(__name__)

notices_received = Counter(
    'change_notices_received_total',
    'Change notices received from other processes',
    ['kind']
)

NoticeHandler = Callable[[ChangeNotice], Awaitable[None]]


class RabbitMQNoticeConsumer:
    """
    Binds a private queue to `<prefix>.*` on the notice exchange.

    Every process gets its own exclusive queue, so each one sees every
    notice. Notices carrying this process's own origin were already delivered
    locally and are acknowledged without being handled again.
    """

    def __init__(
        self,
        url: str,
        exchange_name: str,
        handler: NoticeHandler,
        notice_prefix: str = "event",
        origin: Optional[str] = None,
        prefetch_count: int = 50,
    ):
        self.url = url
        self.exchange_name = exchange_name
        self.handler = handler
        self.notice_prefix = notice_prefix
        self.origin = origin
        self.prefetch_count = prefetch_count
        self.connection: Optional[AbstractRobustConnection] = None
        self.channel: Optional[AbstractChannel] = None
        self.queue: Optional[AbstractQueue] = None

    async def start(self) -> None:
        """Connect, declare the exchange and a private queue, and start consuming."""
        try:
            self.connection = await connect_robust(
                self.url,
                client_properties={'connection_name': f'ballotbox-notices-{self.origin}'}
            )
            self.channel = await self.connection.channel()
            await self.channel.set_qos(prefetch_count=self.prefetch_count)

            exchange = await self.channel.declare_exchange(
                self.exchange_name,
                aio_pika.ExchangeType.TOPIC,
                durable=True
            )
            self.queue = await self.channel.declare_queue(exclusive=True, auto_delete=True)
            await self.queue.bind(exchange, routing_key=f"{self.notice_prefix}.*")
            await self.queue.consume(self.on_message)

            logger.info(f"Consuming change notices from {self.exchange_name} ({self.notice_prefix}.*)")

        except Exception as e:
            logger.error(f"Failed to start change notice consumer: {e}")
            raise

    async def on_message(self, message: AbstractIncomingMessage) -> None:
        """Decode one notice and hand it to the handler."""
        try:
            notice = ChangeNotice.from_dict(json.loads(message.body.decode()))
        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"Discarding malformed change notice: {e}")
            await message.reject(requeue=False)
            return

        if self.origin is not None and notice.origin == self.origin:
            await message.ack()
            return

        try:
            await self.handler(notice)
        except Exception as e:
            logger.error(f"Error handling change notice for event {notice.event_id}: {e}", exc_info=True)
            await message.nack(requeue=True)
            return

        notices_received.labels(kind=notice.kind.value).inc()
        await message.ack()
        logger.debug(f"Relayed {notice.kind.value} notice for event {notice.event_id} from {notice.origin}")

    async def close(self) -> None:
        """Close the channel and connection."""
        try:
            if self.channel and not self.channel.is_closed:
                await self.channel.close()
            if self.connection and not self.connection.is_closed:
                await self.connection.close()
            logger.info("Change notice consumer closed")
        except Exception as e:
            logger.error(f"Error closing change notice consumer: {e}")
