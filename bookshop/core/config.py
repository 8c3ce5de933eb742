from enum import Enum

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import computed_field


class ServiceRole(str, Enum):
    """Which bookshop service this process is deployed as"""

    ORDER = "order"
    PAYMENT = "payment"
    CATALOG = "catalog"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore",
    )

    PROJECT_NAME: str = "Bookshop"
    API_V1_STR: str = "/api/v1"

    # Selects routes, tables, consumers and relays for this process
    SERVICE_ROLE: ServiceRole = ServiceRole.ORDER

    POSTGRES_SERVER: str
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str
    POSTGRES_PASSWORD: str = ""
    POSTGRES_DB: str = ""

    # Redis Configuration
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: str | None = None

    # Processed-message markers (seconds)
    PROCESSED_MESSAGE_TTL: int = 604800  # 7 days

    # Kafka Configuration
    KAFKA_BOOTSTRAP_SERVERS: str = "localhost:9092"
    KAFKA_CONSUMER_GROUP_ID: str | None = None  # defaults to "<role>-service"
    KAFKA_TOPIC_PARTITIONS: int = 1
    KAFKA_REPLICATION_FACTOR: int = 1
    KAFKA_TOPIC_RETENTION_MS: int = 604800000  # 7 days

    # Consumer Host Configuration
    CONSUMER_POLL_TIMEOUT_MS: int = 1000
    CONSUMER_MAX_DELIVERY_ATTEMPTS: int = 5  # Attempts before dead-lettering
    CONSUMER_RETRY_BACKOFF_SECONDS: float = 1.0
    CONSUMER_SHUTDOWN_GRACE_SECONDS: float = 10.0
    BROKER_RECONNECT_MAX_ATTEMPTS: int = 10
    BROKER_RECONNECT_MAX_WAIT_SECONDS: int = 30

    # Outbox Relay Configuration
    OUTBOX_BATCH_SIZE: int = 100  # Maximum events to process per batch
    OUTBOX_POLL_INTERVAL_SECONDS: float = 1  # How often to check for new events
    OUTBOX_ERROR_BACKOFF_SECONDS: float = 5  # Sleep duration after errors
    OUTBOX_MAX_RETRY_ATTEMPTS: int = 5  # Max attempts before parking the event
    OUTBOX_ERROR_MESSAGE_MAX_LENGTH: int = 500  # Max characters to store in last_error field

    # External Services
    CATALOG_SERVICE_URL: str = "http://localhost:8003"
    CATALOG_REQUEST_TIMEOUT_SECONDS: float = 5.0

    # Payment Configuration
    PAYMENT_DEFAULT_METHOD: str = "paypal"

    # Metrics Configuration
    ENABLE_METRICS: bool = True
    METRICS_PORT: int = 8000  # Standalone outbox relay only

    # Logging Configuration
    LOG_LEVEL: str = "INFO"  # DEBUG, INFO, WARNING, ERROR, CRITICAL
    LOG_FORMAT: str = "json"  # json or console (console for dev, json for prod)
    ENVIRONMENT: str = "development"  # development, staging, production
    SERVICE_NAME: str = "bookshop"
    SERVICE_VERSION: str = "v1.0.0"  # Deployment version (override with git SHA in prod)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def SQLALCHEMY_DATABASE_URI(self) -> str:
        return f"postgresql+psycopg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_SERVER}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"

    @computed_field  # type: ignore[prop-decorator]
    @property
    def REDIS_URL(self) -> str:
        """Construct Redis connection URL"""
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    @computed_field  # type: ignore[prop-decorator]
    @property
    def CONSUMER_GROUP_ID(self) -> str:
        return self.KAFKA_CONSUMER_GROUP_ID or f"{self.SERVICE_ROLE.value}-service"


settings = Settings()  # type: ignore
