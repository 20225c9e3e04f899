from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Protocol, Sequence

import websockets

from ..domain import ConnectionStatus, ExchangeName, MarketEvent, Symbol
from ..errors import DecodeError

logger = logging.getLogger(__name__)


class EventSink(Protocol):
    async def publish(self, event: MarketEvent) -> bool:
        ...


class StatusSink(Protocol):
    async def set_status(self, exchange: ExchangeName, status: ConnectionStatus) -> Any:
        ...


class ConnectorState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    STREAMING = "streaming"
    CLOSING = "closing"
    FAULTED = "faulted"


@dataclass(frozen=True)
class Session:
    """Where to connect and how often to ping, as resolved by the handshake."""

    url: str
    ping_interval: float


@dataclass(frozen=True)
class ConnectorSpec:
    """Exchange connector registration.

    ``options`` maps the application settings to the connector specific
    keyword arguments of ``factory``.
    """

    name: ExchangeName
    factory: Callable[..., "StreamConnector"]
    options: Callable[[Any], Dict[str, Any]] | None = None


class StreamConnector(ABC):
    """One long-lived streaming session to one exchange.

    ``run`` cycles through Connecting -> Subscribed -> Streaming until the
    task is cancelled. Every other exit from Streaming marks the exchange
    Disconnected, sleeps ``reconnect_delay`` and starts over with a fresh
    handshake and the full subscription set.

    Subclasses implement the protocol specific parts: ``prepare`` (handshake),
    ``subscribe``, ``decode`` and ``send_ping``.
    """

    def __init__(
        self,
        *,
        name: ExchangeName,
        symbols: Sequence[Symbol],
        sink: EventSink,
        status: StatusSink,
        reconnect_delay: float = 5.0,
        ping_interval: float = 18.0,
        connect_timeout: float = 10.0,
        connect: Callable[..., Any] | None = None,
    ) -> None:
        self.name = name
        self.symbols: List[Symbol] = list(dict.fromkeys(symbols))
        self._sink = sink
        self._status = status
        self._reconnect_delay = reconnect_delay
        self._ping_interval = ping_interval
        self._connect_timeout = connect_timeout
        self._connect = connect or websockets.connect
        self.state = ConnectorState.DISCONNECTED

    @abstractmethod
    async def prepare(self) -> Session:
        """Pre-connect handshake; returns the endpoint and keepalive interval."""

    @abstractmethod
    async def subscribe(self, ws) -> None:
        ...

    @abstractmethod
    async def decode(self, raw: str | bytes) -> List[MarketEvent]:
        """Turn one frame into zero or more normalized events."""

    @abstractmethod
    async def send_ping(self, ws) -> None:
        ...

    async def aclose(self) -> None:
        """Release connector-owned resources other than the socket."""

    async def run(self) -> None:
        if not self.symbols:
            logger.warning("%s: no symbols configured, connector idle", self.name)
            return
        try:
            while True:
                try:
                    await self._run_session()
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    self._set_state(ConnectorState.FAULTED)
                    logger.warning(
                        "%s stream error, reconnecting in %.1fs: %r",
                        self.name,
                        self._reconnect_delay,
                        exc,
                    )
                else:
                    self._set_state(ConnectorState.FAULTED)
                    logger.warning(
                        "%s stream closed by remote, reconnecting in %.1fs",
                        self.name,
                        self._reconnect_delay,
                    )
                self._set_state(ConnectorState.DISCONNECTED)
                await self._report(ConnectionStatus.DISCONNECTED)
                await asyncio.sleep(self._reconnect_delay)
        except asyncio.CancelledError:
            reported = self.state is ConnectorState.DISCONNECTED
            self._set_state(ConnectorState.CLOSING)
            if not reported:
                await asyncio.shield(self._report(ConnectionStatus.DISCONNECTED))
            self._set_state(ConnectorState.DISCONNECTED)
            raise
        finally:
            await self.aclose()

    async def _run_session(self) -> None:
        self._set_state(ConnectorState.CONNECTING)
        session = await self.prepare()
        async with self._connect(
            session.url,
            ping_interval=None,
            open_timeout=self._connect_timeout,
            close_timeout=5,
            max_queue=None,
        ) as ws:
            logger.info("%s connected to %s", self.name, _redact(session.url))
            await self._report(ConnectionStatus.CONNECTED)
            await self.subscribe(ws)
            self._set_state(ConnectorState.SUBSCRIBED)
            keepalive = asyncio.create_task(self._keepalive(ws, session.ping_interval))
            receiver = asyncio.create_task(self._receive(ws))
            try:
                done, _ = await asyncio.wait(
                    {keepalive, receiver}, return_when=asyncio.FIRST_COMPLETED
                )
            finally:
                keepalive.cancel()
                receiver.cancel()
                await asyncio.gather(keepalive, receiver, return_exceptions=True)
            self._set_state(ConnectorState.CLOSING)
            for task in done:
                task.result()

    async def _receive(self, ws) -> None:
        self._set_state(ConnectorState.STREAMING)
        async for raw in ws:
            for event in await self._decode_safely(raw):
                await self._sink.publish(event)

    async def _keepalive(self, ws, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.send_ping(ws)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                raise ConnectionError(f"{self.name} ping failed") from exc

    async def _decode_safely(self, raw) -> List[MarketEvent]:
        try:
            return await self.decode(raw)
        except DecodeError as exc:
            logger.warning("Dropping %s message: %s", self.name, exc)
            return []
        except Exception:
            logger.exception("Failed to decode %s message", self.name)
            return []

    async def _report(self, status: ConnectionStatus) -> None:
        try:
            await self._status.set_status(self.name, status)
        except Exception:
            logger.exception("Failed to write %s status for %s", status.value, self.name)

    def _set_state(self, state: ConnectorState) -> None:
        if state is not self.state:
            logger.debug("%s: %s -> %s", self.name, self.state.value, state.value)
            self.state = state


def _redact(url: str) -> str:
    return url.split("?", 1)[0]
