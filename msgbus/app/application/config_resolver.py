"""
Config resolver: turns a setup() call's partial configuration into a ResolvedConfig.

Rules:
- connection: settings profile <- parsed connection string <- caller overrides
- exchanges: absent -> one synthesized default exchange; otherwise normalize entries
- queues: absent -> none; otherwise normalize entries
- a default exchange/queue is recorded only when exactly one results
"""
from __future__ import annotations

from typing import Any, Iterable, Mapping, TypeVar

from loguru import logger
from pydantic import BaseModel, ValidationError

from msgbus.app.config.settings import Settings
from msgbus.app.core import SERVICE_NAME
from msgbus.app.domain.connection_string import ConnectionTarget
from msgbus.app.domain.errors import InvalidConfigurationError
from msgbus.app.domain.models import (
    BindingConfig,
    ConnectionConfig,
    Defaults,
    ExchangeConfig,
    QueueConfig,
    ResolvedConfig,
)

_M = TypeVar("_M", bound=BaseModel)


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


def _normalize(entry: Any, model: type[_M], kind: str) -> _M:
    if isinstance(entry, model):
        return entry
    try:
        if isinstance(entry, str):
            return model(name=entry)
        if isinstance(entry, Mapping):
            return model.model_validate(dict(entry))
    except ValidationError as exc:
        raise InvalidConfigurationError(f"invalid {kind} config {entry!r}: {exc}") from exc
    raise InvalidConfigurationError(f"{kind} must be a name, mapping or {model.__name__}, got {type(entry).__name__}")


def _ensure_unique(names: Iterable[str], kind: str) -> None:
    seen: set[str] = set()
    for name in names:
        if name in seen:
            raise InvalidConfigurationError(f"duplicate {kind} name: {name}")
        seen.add(name)


class ConfigResolver:
    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def base_connection(self) -> dict[str, Any]:
        s = self._settings
        return {
            "name": s.connection_name,
            "reply_queue": s.reply_queue,
            "fail_after": s.fail_after_seconds,
            "retry_limit": s.retry_limit,
            "wait_min": s.wait_min_ms,
            "wait_max": s.wait_max_ms,
            "wait_increment": s.wait_increment_ms,
            "timeout": s.connect_timeout_ms,
            "heartbeat": s.heartbeat_seconds,
        }

    def resolve_connection(self, target: ConnectionTarget, overrides: Mapping[str, Any] | None) -> ConnectionConfig:
        base = ConnectionConfig.model_validate(self.base_connection())
        parsed = {
            "host": target.host,
            "port": target.port,
            "user": target.user,
            "password": target.password,
            "vhost": target.vhost,
            "ssl": target.scheme == "amqps",
        }
        merged = base.model_copy(update=parsed)
        if overrides:
            try:
                # Validate the overrides alone so camelCase keys map onto field names.
                explicit = ConnectionConfig.model_validate(dict(overrides))
            except ValidationError as exc:
                raise InvalidConfigurationError(f"invalid connection config: {exc}") from exc
            merged = merged.model_copy(update={f: getattr(explicit, f) for f in explicit.model_fields_set})
        return merged

    def resolve(
        self,
        raw_config: Mapping[str, Any] | None,
        target: ConnectionTarget,
        defaults: Defaults,
    ) -> ResolvedConfig:
        raw = dict(raw_config or {})
        connection = self.resolve_connection(target, raw.get("connection"))

        raw_exchanges = raw.get("exchanges")
        if raw_exchanges is None:
            exchanges: tuple[ExchangeConfig, ...] = (ExchangeConfig(name=self._settings.default_exchange_name),)
        else:
            exchanges = tuple(_normalize(e, ExchangeConfig, "exchange") for e in raw_exchanges)
        queues = tuple(_normalize(q, QueueConfig, "queue") for q in (raw.get("queues") or ()))
        bindings = tuple(_normalize(b, BindingConfig, "binding") for b in (raw.get("bindings") or ()))

        _ensure_unique((e.name for e in exchanges), "exchange")
        _ensure_unique((q.name for q in queues), "queue")

        defaults.clear()
        if len(exchanges) == 1:
            defaults.default_exchange_name = exchanges[0].name
        if len(queues) == 1:
            defaults.default_queue_name = queues[0].name

        _log(
            "config_resolved",
            exchanges=[e.name for e in exchanges],
            queues=[q.name for q in queues],
            default_exchange=defaults.default_exchange_name,
            default_queue=defaults.default_queue_name,
        )
        return ResolvedConfig(connection=connection, exchanges=exchanges, queues=queues, bindings=bindings)
