"""
Standalone session monitor process.

Ends expired events in the shared PostgreSQL store for deployments that run
the API without its in-process monitor. When RabbitMQ is configured the
session notices it raises are published so running API processes drop their
cached event definitions.
"""
import asyncio
import logging
import signal
import sys

from prometheus_client import start_http_server

from ballotbox.api.publisher import RabbitMQPublisher
from ballotbox.engine.notifier import ChangeNotifier
from ballotbox.engine.session import SessionStateMachine
from ballotbox.monitor.config import config
from ballotbox.monitor.session_monitor import SessionMonitor
from ballotbox.storage.cache import MemoryEventCache, RedisEventCache
from ballotbox.storage.postgres import PostgresStore

logger = logging.getLogger(__name__)


class MonitorWorker:
    """Session monitor process with graceful shutdown."""

    def __init__(self):
        self.store = PostgresStore(
            config.get_postgres_dsn(),
            min_size=config.POSTGRES_MIN_POOL_SIZE,
            max_size=config.POSTGRES_MAX_POOL_SIZE,
        )
        redis_url = config.get_redis_url()
        self.cache = RedisEventCache.from_url(redis_url) if redis_url else MemoryEventCache()
        self.notifier = ChangeNotifier()
        self.publisher = None
        rabbitmq_url = config.get_rabbitmq_url()
        if rabbitmq_url:
            self.publisher = RabbitMQPublisher(
                rabbitmq_url,
                config.RABBITMQ_EXCHANGE,
                notice_prefix=config.RABBITMQ_NOTICE_ROUTING_PREFIX,
                pool_size=config.RABBITMQ_POOL_SIZE,
                origin=self.notifier.origin,
            )
            self.notifier.subscribe(self.publisher.publish_notice)
        self.sessions = SessionStateMachine(self.store, self.notifier, cache=self.cache)
        self.monitor = SessionMonitor(self.sessions, config.SESSION_POLL_INTERVAL_SECONDS)
        self.running = True

        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals."""
        logger.info(f"Received signal {signum}, initiating graceful shutdown...")
        self.running = False
        self.monitor.running = False

    async def start(self):
        logger.info(f"Starting Prometheus metrics server on port {config.METRICS_PORT}")
        start_http_server(config.METRICS_PORT)

        await self.store.initialize()
        if self.publisher is not None:
            await self.publisher.initialize()
        monitor_task = self.monitor.start()
        while self.running and not monitor_task.done():
            await asyncio.sleep(0.5)

    async def shutdown(self):
        logger.info("Shutting down session monitor...")
        await self.monitor.stop()
        await self.notifier.drain()
        if self.publisher is not None:
            await self.publisher.close()
        await self.cache.close()
        await self.store.close()
        logger.info("Session monitor shutdown complete")


async def main():
    """Main entry point."""
    logger.info("=" * 60)
    logger.info("Starting Session Monitor")
    logger.info(f"PostgreSQL: {config.POSTGRES_HOST}:{config.POSTGRES_PORT}/{config.POSTGRES_DB}")
    logger.info(f"Poll interval: {config.SESSION_POLL_INTERVAL_SECONDS}s")
    logger.info("=" * 60)

    worker = MonitorWorker()
    try:
        await worker.start()
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        raise
    finally:
        await worker.shutdown()


def run():
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )
    asyncio.run(main())


if __name__ == "__main__":
    run()
