"""Settings for the message bus."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

THREE_DAYS_SECONDS = 3 * 24 * 60 * 60


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    transport_backend: str = Field("rabbitmq", validation_alias="MSGBUS_TRANSPORT_BACKEND")

    # Bounded wait applied to every publish before it reaches the transport.
    connection_timeout_seconds: float = Field(30.0, validation_alias="MSGBUS_CONNECTION_TIMEOUT_SECONDS")
    readiness_poll_interval_seconds: float = Field(0.05, validation_alias="MSGBUS_READINESS_POLL_INTERVAL_SECONDS")

    default_exchange_name: str = Field("messages-exchange", validation_alias="MSGBUS_DEFAULT_EXCHANGE_NAME")
    default_port: int = Field(5672, validation_alias="MSGBUS_DEFAULT_PORT")

    # Unacked deliveries the broker may push per channel.
    prefetch_count: int = Field(10, validation_alias="MSGBUS_PREFETCH_COUNT", ge=1)

    # Base connection profile; caller overrides in setup() win field-by-field.
    connection_name: str = Field("default", validation_alias="MSGBUS_CONNECTION_NAME")
    reply_queue: bool = Field(False, validation_alias="MSGBUS_REPLY_QUEUE")
    fail_after_seconds: float = Field(THREE_DAYS_SECONDS, validation_alias="MSGBUS_FAIL_AFTER_SECONDS")
    retry_limit: int = Field(999_999_999, validation_alias="MSGBUS_RETRY_LIMIT")
    wait_min_ms: int = Field(2 * 1000, validation_alias="MSGBUS_WAIT_MIN_MS")
    wait_max_ms: int = Field(2 * 60 * 1000, validation_alias="MSGBUS_WAIT_MAX_MS")
    wait_increment_ms: int = Field(100, validation_alias="MSGBUS_WAIT_INCREMENT_MS")
    connect_timeout_ms: int = Field(THREE_DAYS_SECONDS * 1000, validation_alias="MSGBUS_CONNECT_TIMEOUT_MS")
    heartbeat_seconds: int = Field(30, validation_alias="MSGBUS_HEARTBEAT_SECONDS")
