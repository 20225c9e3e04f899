"""Durable RabbitMQ hand-off between the connectors and the aggregator."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

import aio_pika
from aio_pika.abc import (
    AbstractChannel,
    AbstractIncomingMessage,
    AbstractQueue,
    AbstractRobustConnection,
)

from .domain import MarketEvent
from .errors import PoisonMessageError, QueueUnavailableError
from .settings import RabbitMqSettings

logger = logging.getLogger(__name__)

MessageHandler = Callable[[bytes], Awaitable[None]]
Connector = Callable[[str], Awaitable[AbstractRobustConnection]]


class QueueClient:
    """Publish/consume on one well-known durable queue.

    All producers share the publishing channel; the aggregator registers the
    only consumer. Delivery is at-least-once: a message is acknowledged after
    its handler returns and requeued when the handler fails.
    """

    def __init__(
        self,
        cfg: RabbitMqSettings,
        url: str,
        *,
        connect: Connector | None = None,
    ) -> None:
        self._cfg = cfg
        self._url = url
        self._connect = connect or aio_pika.connect_robust
        self._connection: Optional[AbstractRobustConnection] = None
        self._channel: Optional[AbstractChannel] = None
        self._queue: Optional[AbstractQueue] = None

    @property
    def queue_name(self) -> str:
        return self._cfg.queue

    @property
    def connected(self) -> bool:
        return self._channel is not None and not self._channel.is_closed

    @classmethod
    async def create(cls, cfg: RabbitMqSettings, url: str, **kwargs: Any) -> "QueueClient":
        client = cls(cfg, url, **kwargs)
        await client.connect()
        return client

    async def connect(self) -> None:
        """Connect and declare the durable queue, retrying a bounded number of times.

        Raises :class:`QueueUnavailableError` once every attempt failed.
        """

        retries = max(1, self._cfg.connect_retries)
        last_error: BaseException | None = None
        for attempt in range(1, retries + 1):
            logger.info("Connecting to RabbitMQ (%d/%d)", attempt, retries)
            connection = None
            try:
                connection = await self._connect(self._url)
                channel = await connection.channel()
                await channel.set_qos(prefetch_count=self._cfg.prefetch_count)
                queue = await channel.declare_queue(self._cfg.queue, durable=True)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                last_error = exc
                if connection is not None:
                    await self._safe_close(connection)
                if attempt >= retries:
                    break
                logger.warning(
                    "RabbitMQ connection failed (%s); retrying in %.1fs",
                    exc,
                    self._cfg.connect_retry_delay,
                )
                await asyncio.sleep(self._cfg.connect_retry_delay)
                continue
            self._connection = connection
            self._channel = channel
            self._queue = queue
            logger.info("Connected to RabbitMQ, queue '%s' declared", self._cfg.queue)
            return
        logger.error("RabbitMQ connection attempts exhausted (%d)", retries)
        raise QueueUnavailableError(
            f"RabbitMQ unreachable after {retries} attempt(s)"
        ) from last_error

    async def publish(self, event: MarketEvent) -> bool:
        """Publish ``event``; returns ``False`` instead of raising when it was dropped."""

        if self._channel is None:
            logger.warning("Queue client is not connected; dropping %s %s", event.kind, event.symbol)
            return False
        message = aio_pika.Message(
            body=event.to_json().encode("utf-8"),
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
        )
        try:
            await asyncio.wait_for(
                self._channel.default_exchange.publish(message, routing_key=self._cfg.queue),
                timeout=self._cfg.publish_timeout,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(
                "Failed to publish %s %s:%s, dropping it: %r",
                event.kind,
                event.symbol,
                event.exchange,
                exc,
            )
            return False
        logger.debug("Published %s %s:%s", event.kind, event.symbol, event.exchange)
        return True

    async def consume(self, handler: MessageHandler) -> None:
        """Feed every delivered message to ``handler`` until cancelled."""

        if self._queue is None:
            raise QueueUnavailableError("queue client is not connected")
        async with self._queue.iterator() as messages:
            async for message in messages:
                await self._dispatch(message, handler)

    async def _dispatch(self, message: AbstractIncomingMessage, handler: MessageHandler) -> None:
        try:
            await handler(message.body)
        except asyncio.CancelledError:
            raise
        except PoisonMessageError as exc:
            logger.warning("Dropping undecodable message: %s", exc)
            await message.ack()
            return
        except Exception:
            logger.exception("Error processing message from RabbitMQ; requeueing")
            await message.nack(requeue=True)
            return
        await message.ack()

    async def close(self) -> None:
        channel, connection = self._channel, self._connection
        self._queue = None
        self._channel = None
        self._connection = None
        if channel is not None:
            await self._safe_close(channel)
        if connection is not None:
            await self._safe_close(connection)

    async def __aenter__(self) -> "QueueClient":
        if self._connection is None:
            await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @staticmethod
    async def _safe_close(resource) -> None:
        try:
            await resource.close()
        except Exception:
            logger.warning("Error while closing RabbitMQ resource", exc_info=True)
