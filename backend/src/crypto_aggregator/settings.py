from __future__ import annotations

import os
from functools import cached_property

from pydantic import BaseModel, Field

from .symbols import normalize_symbol


def _split_env(name: str, default: str) -> list[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


def _normalize_symbols(raw: list[str]) -> list[str]:
    out: list[str] = []
    for item in raw:
        normalized = normalize_symbol(item)
        if normalized and normalized not in out:
            out.append(normalized)
    return out


class RabbitMqSettings(BaseModel):
    host: str = os.getenv("RABBITMQ_HOST", "rabbitmq")
    port: int = int(os.getenv("RABBITMQ_PORT", "5672"))
    username: str = os.getenv("RABBITMQ_USER", "guest")
    password: str = os.getenv("RABBITMQ_PASSWORD", "guest")
    virtual_host: str = os.getenv("RABBITMQ_VHOST", "/")
    queue: str = os.getenv("RABBITMQ_QUEUE", "crypto_data_queue")
    connect_retries: int = int(os.getenv("RABBITMQ_CONNECT_RETRIES", "30"))
    connect_retry_delay: float = float(os.getenv("RABBITMQ_CONNECT_RETRY_DELAY", "5"))
    prefetch_count: int = int(os.getenv("RABBITMQ_PREFETCH", "64"))
    publish_timeout: float = float(os.getenv("RABBITMQ_PUBLISH_TIMEOUT", "5"))


class RedisSettings(BaseModel):
    host: str = os.getenv("REDIS_HOST", "redis")
    port: int = int(os.getenv("REDIS_PORT", "6379"))
    password: str | None = os.getenv("REDIS_PASSWORD") or None
    db: int = int(os.getenv("REDIS_DB", "0"))
    data_ttl: int = int(os.getenv("CACHE_DATA_TTL", "60"))
    status_ttl: int = int(os.getenv("CACHE_STATUS_TTL", "300"))


class Settings(BaseModel):
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    symbols: list[str] = Field(
        default_factory=lambda: _normalize_symbols(_split_env("SYMBOLS", "BTCUSDT,ETHUSDT"))
    )
    exchanges: list[str] = Field(default_factory=lambda: _split_env("EXCHANGES", "Binance,KuCoin"))
    reconnect_delay: float = float(os.getenv("RECONNECT_DELAY_SECONDS", "5"))
    ping_interval_ms: int = int(os.getenv("PING_INTERVAL_MS", "18000"))
    http_timeout: float = float(os.getenv("HTTP_TIMEOUT", "10"))
    ws_connect_timeout: float = float(os.getenv("WS_CONNECT_TIMEOUT", "10"))
    volume_ttl: float = float(os.getenv("VOLUME_TTL_SECONDS", "60"))
    rabbitmq: RabbitMqSettings = Field(default_factory=RabbitMqSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)

    @cached_property
    def ping_interval(self) -> float:
        """Fallback keepalive interval in seconds."""
        return max(self.ping_interval_ms, 1) / 1000.0

    @cached_property
    def amqp_url(self) -> str:
        mq = self.rabbitmq
        vhost = "" if mq.virtual_host == "/" else mq.virtual_host.lstrip("/")
        return f"amqp://{mq.username}:{mq.password}@{mq.host}:{mq.port}/{vhost}"


settings = Settings()
