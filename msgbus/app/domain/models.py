"""Domain models."""
from __future__ import annotations

from dataclasses import dataclass

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from msgbus.app.constants import ExchangeType


class _ConfigModel(BaseModel):
    """Accepts snake_case or camelCase keys (autoDelete == auto_delete)."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )


class ExchangeConfig(_ConfigModel):
    name: str = Field(..., min_length=1)
    type: ExchangeType = ExchangeType.DIRECT
    auto_delete: bool = False
    persistent: bool = True


class QueueConfig(_ConfigModel):
    name: str = Field(..., min_length=1)
    auto_delete: bool = False
    subscribe: bool = True
    durable: bool = True


class BindingConfig(_ConfigModel):
    """Exchange -> queue binding, handed to the transport untouched."""

    exchange: str = Field(..., min_length=1)
    target: str = Field(..., min_length=1)
    keys: tuple[str, ...] = ()

    @field_validator("keys", mode="before")
    @classmethod
    def _single_key(cls, value: object) -> object:
        if isinstance(value, str):
            return (value,)
        return value


class ConnectionConfig(_ConfigModel):
    """Broker connection profile.

    Units follow the option names of the setup() call: fail_after and heartbeat
    are seconds; wait_min, wait_max, wait_increment and timeout are milliseconds.
    """

    name: str = "default"
    host: str = "localhost"
    port: int = 5672
    user: str = "guest"
    password: str = Field("guest", repr=False, validation_alias=AliasChoices("password", "pass"))
    vhost: str = "/"
    ssl: bool = False
    reply_queue: bool = False
    fail_after: float = 3 * 24 * 60 * 60
    retry_limit: int = 999_999_999
    wait_min: int = 2 * 1000
    wait_max: int = 2 * 60 * 1000
    wait_increment: int = 100
    timeout: int = 3 * 24 * 60 * 60 * 1000
    heartbeat: int = 30

    @property
    def wait_min_seconds(self) -> float:
        return self.wait_min / 1000

    @property
    def wait_max_seconds(self) -> float:
        return self.wait_max / 1000

    @property
    def wait_increment_seconds(self) -> float:
        return self.wait_increment / 1000

    @property
    def timeout_seconds(self) -> float:
        return self.timeout / 1000


@dataclass(frozen=True)
class ResolvedConfig:
    """Complete exchange/queue/connection configuration produced by setup()."""

    connection: ConnectionConfig
    exchanges: tuple[ExchangeConfig, ...] = ()
    queues: tuple[QueueConfig, ...] = ()
    bindings: tuple[BindingConfig, ...] = ()

    def exchange(self, name: str) -> ExchangeConfig | None:
        return next((e for e in self.exchanges if e.name == name), None)

    def queue(self, name: str) -> QueueConfig | None:
        return next((q for q in self.queues if q.name == name), None)


@dataclass
class Defaults:
    """Exchange/queue picked when a caller omits the name. Recorded once per setup()."""

    default_exchange_name: str | None = None
    default_queue_name: str | None = None

    def clear(self) -> None:
        self.default_exchange_name = None
        self.default_queue_name = None
