"""Configuration management for the Vote API service."""
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # Service configuration
    SERVICE_NAME: str = "vote-api"
    API_VERSION: str = "v1"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Server configuration
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # RabbitMQ configuration
    RABBITMQ_HOST: str = "rabbitmq"
    RABBITMQ_PORT: int = 5672
    RABBITMQ_USER: str = "guest"
    RABBITMQ_PASSWORD: str = "guest"
    RABBITMQ_EXCHANGE: str = "votes.exchange"
    RABBITMQ_SUBMITTED_ROUTING_KEY: str = "vote.submitted"
    RABBITMQ_CONFIRMED_ROUTING_KEY: str = "vote.confirmed"

    # PostgreSQL configuration
    POSTGRES_HOST: str = "postgres"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "votes_db"
    POSTGRES_USER: str = "votes_user"
    POSTGRES_PASSWORD: str = "votes_pass"
    POSTGRES_COMMAND_TIMEOUT: float = 60.0

    # Rate limiting
    RATE_LIMIT: str = "10/minute"

    # CORS settings
    CORS_ORIGINS: list = ["*"]
    CORS_ALLOW_CREDENTIALS: bool = True
    CORS_ALLOW_METHODS: list = ["*"]
    CORS_ALLOW_HEADERS: list = ["*"]

    # Connection pools
    POSTGRES_POOL_MIN_SIZE: int = 2
    POSTGRES_POOL_MAX_SIZE: int = 10
    RABBITMQ_POOL_SIZE: int = 4

    # Cache refresh endpoint is disabled while unset
    REFRESH_SECRET: Optional[str] = None

    # Upper bound for a single job submission
    DISPATCH_TIMEOUT_SECONDS: float = 5.0

    # Number of entries in the "recent votes" statistic
    RECENT_VOTES_LIMIT: int = 10

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


settings = Settings()
