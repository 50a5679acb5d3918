"""Configuration management for the voting API service."""
from typing import Literal, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Service configuration
    SERVICE_NAME: str = "ballotbox-api"
    API_VERSION: str = "v1"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Server configuration
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Store backend
    STORE_BACKEND: Literal["memory", "postgres"] = "memory"

    # PostgreSQL configuration
    POSTGRES_HOST: str = "postgres"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "ballotbox"
    POSTGRES_USER: str = "ballotbox"
    POSTGRES_PASSWORD: str = "ballotbox"
    POSTGRES_POOL_MIN_SIZE: int = 10
    POSTGRES_POOL_MAX_SIZE: int = 20
    POSTGRES_CREATE_SCHEMA: bool = True

    # Redis configuration (shared event cache across replicas)
    REDIS_ENABLED: bool = False
    REDIS_HOST: str = "redis"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: Optional[str] = None
    EVENT_CACHE_TTL_SECONDS: float = 2.0

    # RabbitMQ configuration (change notices and operational alerts)
    RABBITMQ_ENABLED: bool = False
    RABBITMQ_HOST: str = "rabbitmq"
    RABBITMQ_PORT: int = 5672
    RABBITMQ_USER: str = "guest"
    RABBITMQ_PASSWORD: str = "guest"
    RABBITMQ_EXCHANGE: str = "ballotbox.exchange"
    RABBITMQ_NOTICE_ROUTING_PREFIX: str = "event"
    RABBITMQ_ALERT_ROUTING_KEY: str = "ops.partial_commit"
    RABBITMQ_POOL_SIZE: int = 10

    # Session monitor
    RUN_SESSION_MONITOR: bool = True
    SESSION_POLL_INTERVAL_SECONDS: float = 10.0

    # External ledger
    LEDGER_URL: Optional[str] = None
    LEDGER_TIMEOUT: float = 5.0

    # Rate limiting (ballot submission)
    RATE_LIMIT: str = "1000/second"

    # Live results stream
    STREAM_HEARTBEAT_SECONDS: float = 15.0

    # CORS settings
    CORS_ORIGINS: list = ["*"]
    CORS_ALLOW_CREDENTIALS: bool = True
    CORS_ALLOW_METHODS: list = ["*"]
    CORS_ALLOW_HEADERS: list = ["*"]

    class Config:
        env_file = ".env"
        case_sensitive = True

    @property
    def postgres_dsn(self) -> str:
        """Generate PostgreSQL connection string."""
        return (
            f"postgresql://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def rabbitmq_url(self) -> str:
        """Generate RabbitMQ connection URL."""
        return (
            f"amqp://{self.RABBITMQ_USER}:{self.RABBITMQ_PASSWORD}"
            f"@{self.RABBITMQ_HOST}:{self.RABBITMQ_PORT}/"
        )

    @property
    def redis_url(self) -> str:
        """Generate Redis connection URL."""
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"


settings = Settings()
