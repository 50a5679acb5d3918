"""Configuration for the standalone session monitor."""
import os

from dotenv import load_dotenv

load_dotenv()


class Config:
    """Session monitor configuration."""

    # PostgreSQL Configuration
    POSTGRES_HOST = os.getenv('POSTGRES_HOST', 'localhost')
    POSTGRES_PORT = int(os.getenv('POSTGRES_PORT', '5432'))
    POSTGRES_DB = os.getenv('POSTGRES_DB', 'ballotbox')
    POSTGRES_USER = os.getenv('POSTGRES_USER', 'postgres')
    POSTGRES_PASSWORD = os.getenv('POSTGRES_PASSWORD', 'postgres')
    POSTGRES_MIN_POOL_SIZE = int(os.getenv('POSTGRES_MIN_POOL_SIZE', '1'))
    POSTGRES_MAX_POOL_SIZE = int(os.getenv('POSTGRES_MAX_POOL_SIZE', '2'))

    # Redis Configuration (optional: set REDIS_HOST to share the API's event cache)
    REDIS_HOST = os.getenv('REDIS_HOST', '')
    REDIS_PORT = int(os.getenv('REDIS_PORT', '6379'))
    REDIS_DB = int(os.getenv('REDIS_DB', '0'))
    REDIS_PASSWORD = os.getenv('REDIS_PASSWORD', None)

    # RabbitMQ Configuration (optional: set RABBITMQ_HOST to publish change notices)
    RABBITMQ_HOST = os.getenv('RABBITMQ_HOST', '')
    RABBITMQ_PORT = int(os.getenv('RABBITMQ_PORT', '5672'))
    RABBITMQ_USER = os.getenv('RABBITMQ_USER', 'guest')
    RABBITMQ_PASSWORD = os.getenv('RABBITMQ_PASSWORD', 'guest')
    RABBITMQ_EXCHANGE = os.getenv('RABBITMQ_EXCHANGE', 'ballotbox.exchange')
    RABBITMQ_NOTICE_ROUTING_PREFIX = os.getenv('RABBITMQ_NOTICE_ROUTING_PREFIX', 'event')
    RABBITMQ_POOL_SIZE = int(os.getenv('RABBITMQ_POOL_SIZE', '2'))

    # Monitor
    SESSION_POLL_INTERVAL_SECONDS = float(os.getenv('SESSION_POLL_INTERVAL_SECONDS', '10'))

    # Prometheus Metrics
    METRICS_PORT = int(os.getenv('METRICS_PORT', '8002'))

    # Logging Configuration
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')

    @classmethod
    def get_postgres_dsn(cls):
        """Get PostgreSQL connection DSN."""
        return (
            f"postgresql://{cls.POSTGRES_USER}:{cls.POSTGRES_PASSWORD}"
            f"@{cls.POSTGRES_HOST}:{cls.POSTGRES_PORT}/{cls.POSTGRES_DB}"
        )

    @classmethod
    def get_redis_url(cls):
        """Get Redis connection URL, or None when no cache is shared."""
        if not cls.REDIS_HOST:
            return None
        if cls.REDIS_PASSWORD:
            return f"redis://:{cls.REDIS_PASSWORD}@{cls.REDIS_HOST}:{cls.REDIS_PORT}/{cls.REDIS_DB}"
        return f"redis://{cls.REDIS_HOST}:{cls.REDIS_PORT}/{cls.REDIS_DB}"

    @classmethod
    def get_rabbitmq_url(cls):
        """Get RabbitMQ connection URL, or None when notices stay in process."""
        if not cls.RABBITMQ_HOST:
            return None
        return f"amqp://{cls.RABBITMQ_USER}:{cls.RABBITMQ_PASSWORD}@{cls.RABBITMQ_HOST}:{cls.RABBITMQ_PORT}/"


config = Config()
