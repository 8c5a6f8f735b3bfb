"""
Connection Manager: one authenticated channel per active session.

A channel owns an ``EventDispatcher`` built from the handlers given to
``connect``; the dispatcher is cleared whenever the channel is torn down,
so a reconnect never delivers an event twice.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping, Protocol

import aiohttp

from rapidfire import protocol
from rapidfire.errors import TransportError

logger = logging.getLogger(__name__)

Handler = Callable[[dict], Any]


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


class Socket(Protocol):
    async def send_json(self, payload: dict) -> None: ...

    def frames(self) -> AsyncIterator[dict]: ...

    async def close(self) -> None: ...


class Transport(Protocol):
    async def open(self, session_id: str, auth_token: str) -> Socket: ...


class AiohttpSocket:
    def __init__(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        self._ws = ws

    async def send_json(self, payload: dict) -> None:
        try:
            await self._ws.send_json(payload)
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as exc:
            raise TransportError(str(exc)) from exc

    async def frames(self) -> AsyncIterator[dict]:
        async for message in self._ws:
            if message.type == aiohttp.WSMsgType.TEXT:
                try:
                    payload = message.json()
                except ValueError:
                    logger.warning("Skipping malformed frame")
                    continue
                if isinstance(payload, dict):
                    yield payload
            elif message.type == aiohttp.WSMsgType.ERROR:
                raise TransportError(str(self._ws.exception()))

    async def close(self) -> None:
        await self._ws.close()


class WebSocketTransport:
    """Opens session channels with aiohttp."""

    def __init__(self, base_url: str, http: aiohttp.ClientSession | None = None, heartbeat: float = 15.0) -> None:
        self.base_url = base_url.rstrip("/")
        self._http = http
        self.heartbeat = heartbeat

    def channel_url(self, session_id: str) -> str:
        url = f"{self.base_url}/ws/rapidfire/{session_id}"
        if url.startswith("https://"):
            return "wss://" + url[len("https://"):]
        if url.startswith("http://"):
            return "ws://" + url[len("http://"):]
        return url

    async def open(self, session_id: str, auth_token: str) -> AiohttpSocket:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession()
        try:
            ws = await self._http.ws_connect(
                self.channel_url(session_id),
                params={"token": auth_token},
                heartbeat=self.heartbeat,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            raise TransportError(f"Could not open channel: {exc}") from exc
        return AiohttpSocket(ws)

    async def close(self) -> None:
        if self._http is not None and not self._http.closed:
            await self._http.close()


class EventDispatcher:
    """Maps an event name to its state-transition function."""

    def __init__(self, handlers: Mapping[str, Handler] | None = None) -> None:
        self._handlers: dict[str, Handler] = dict(handlers or {})

    def register(self, event_type: str, handler: Handler) -> None:
        self._handlers[event_type] = handler

    def clear(self) -> None:
        self._handlers.clear()

    def __len__(self) -> int:
        return len(self._handlers)

    async def dispatch(self, message: dict) -> bool:
        event_type = message.get("type")
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.debug("No handler for event %s", event_type)
            return False
        data = message.get("data")
        result = handler(data if isinstance(data, dict) else {})
        if inspect.isawaitable(result):
            await result
        return True


class Channel:
    def __init__(self, session_id: str, socket: Socket, dispatcher: EventDispatcher) -> None:
        self.session_id = session_id
        self.socket = socket
        self.dispatcher = dispatcher
        self.closed = False
        self.listener: asyncio.Task | None = None

    async def send(self, message_type: str, data: dict | None = None) -> None:
        if self.closed:
            raise TransportError("Channel is closed")
        await self.socket.send_json(protocol.frame(message_type, data))

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.dispatcher.clear()
        try:
            await self.socket.close()
        except (TransportError, ConnectionError, aiohttp.ClientError) as exc:
            logger.debug("Error while closing channel: %s", exc)


class ConnectionManager:
    def __init__(
        self,
        transport: Transport,
        max_attempts: int = 5,
        base_delay: float = 0.5,
        max_delay: float = 8.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_status: Callable[["ConnectionStatus", int], None] | None = None,
    ) -> None:
        self.transport = transport
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep
        self._on_status = on_status
        self.status = ConnectionStatus.DISCONNECTED
        self.attempt = 0
        self.channel: Channel | None = None
        self._target: tuple[str, str, Mapping[str, Handler]] | None = None
        self._reconnect_task: asyncio.Task | None = None

    def backoff_delay(self, attempt: int) -> float:
        return min(self.max_delay, self.base_delay * 2 ** (attempt - 1))

    def _set_status(self, status: ConnectionStatus) -> None:
        self.status = status
        logger.info("Connection %s (attempt %s)", status.value, self.attempt)
        if self._on_status:
            self._on_status(status, self.attempt)

    async def connect(self, session_id: str, auth_token: str, handlers: Mapping[str, Handler]) -> Channel:
        """Attach a channel to ``session_id``, replacing any previous one."""
        await self.disconnect()
        self._target = (session_id, auth_token, handlers)
        self.attempt = 0
        self._set_status(ConnectionStatus.CONNECTING)
        try:
            return await self._attach()
        except TransportError:
            logger.warning("Initial connect to session %s failed", session_id)
        channel = await self._reconnect()
        if channel is None:
            raise TransportError("Could not connect to the session channel")
        return channel

    async def disconnect(self, channel: Channel | None = None) -> None:
        if channel is not None and channel is not self.channel:
            await channel.close()
            return
        self._target = None
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        await self._teardown()
        if self.status != ConnectionStatus.DISCONNECTED:
            self._set_status(ConnectionStatus.DISCONNECTED)

    async def send(self, message_type: str, data: dict | None = None) -> None:
        if self.channel is None or self.status != ConnectionStatus.CONNECTED:
            raise TransportError("Not connected")
        await self.channel.send(message_type, data)

    async def _teardown(self) -> None:
        channel, self.channel = self.channel, None
        if channel is None:
            return
        listener = channel.listener
        await channel.close()
        if listener is not None and not listener.done() and listener is not asyncio.current_task():
            listener.cancel()

    async def _attach(self) -> Channel:
        session_id, auth_token, handlers = self._target
        await self._teardown()
        socket = await self.transport.open(session_id, auth_token)
        channel = Channel(session_id, socket, EventDispatcher(handlers))
        self.channel = channel
        try:
            await channel.send(protocol.JOIN_SESSION, {"session_id": session_id})
        except TransportError:
            await self._teardown()
            raise
        channel.listener = asyncio.get_running_loop().create_task(self._listen(channel))
        self.attempt = 0
        self._set_status(ConnectionStatus.CONNECTED)
        return channel

    async def _listen(self, channel: Channel) -> None:
        try:
            async for message in channel.socket.frames():
                if channel.closed:
                    return
                await channel.dispatcher.dispatch(message)
        except TransportError as exc:
            logger.warning("Channel for session %s dropped: %s", channel.session_id, exc)
        if channel.closed or channel is not self.channel or self._target is None:
            return
        self._reconnect_task = asyncio.current_task()
        await self._reconnect()

    async def _reconnect(self) -> Channel | None:
        await self._teardown()
        for attempt in range(1, self.max_attempts + 1):
            if self._target is None:
                return None
            self.attempt = attempt
            self._set_status(ConnectionStatus.RECONNECTING)
            await self._sleep(self.backoff_delay(attempt))
            if self._target is None:
                return None
            try:
                return await self._attach()
            except TransportError as exc:
                logger.warning("Reconnect attempt %s/%s failed: %s", attempt, self.max_attempts, exc)
        self._set_status(ConnectionStatus.FAILED)
        logger.error("Giving up on session channel after %s attempts", self.max_attempts)
        return None
