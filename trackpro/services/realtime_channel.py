"""
Realtime Channel

Client side of the persistent bidirectional channel to the tracking API.
Maintains a websocket with bounded reconnect backoff, dispatches incoming
events to registered handlers, and publishes outgoing events.

Message protocol matches the server's websocket endpoint:
    {"type": "<event>", "data": {...}, "timestamp": "..."}
"""

import asyncio
import inspect
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, Optional, Set

import aiohttp

from trackpro.config import Settings, settings as default_settings
from trackpro.exceptions import TransportError

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Any]

CONNECTED = "connected"
DISCONNECTED = "disconnected"


class RealtimeChannel:
    """
    Websocket channel with event-emitter style handlers.

    Handlers may be plain functions or coroutines; a failing handler is
    logged and never breaks the read loop.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        params: Optional[Dict[str, str]] = None,
        config: Optional[Settings] = None,
    ):
        cfg = config or default_settings
        self.url = url or cfg.REALTIME_URL
        self.params = params or {}
        self.reconnect_delay = cfg.REALTIME_RECONNECT_DELAY_SECONDS
        self.reconnect_delay_max = cfg.REALTIME_RECONNECT_DELAY_MAX_SECONDS
        self.max_reconnect_attempts = cfg.REALTIME_MAX_RECONNECT_ATTEMPTS
        self.token = cfg.API_TOKEN

        self._listeners: Dict[str, Set[Handler]] = {}
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._runner: Optional[asyncio.Task] = None
        self._handler_tasks: Set[asyncio.Task] = set()
        self._rooms: Set[str] = set()
        self._closing = False
        self.reconnect_attempts = 0

    # ==================== Connection ====================

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def connect(self) -> None:
        """Start the connection loop in the background."""
        if self._runner and not self._runner.done():
            return
        self._closing = False
        self._runner = asyncio.create_task(self._run())

    async def close(self) -> None:
        self._closing = True
        if self._ws is not None:
            await self._ws.close()
        if self._runner:
            self._runner.cancel()
            try:
                await self._runner
            except asyncio.CancelledError:
                pass
            self._runner = None
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def _run(self) -> None:
        delay = self.reconnect_delay
        while not self._closing:
            try:
                await self._open()
                self.reconnect_attempts = 0
                delay = self.reconnect_delay
                await self._read_loop()
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                self.reconnect_attempts += 1
                logger.warning(
                    f"Realtime connection error ({self.reconnect_attempts}/"
                    f"{self.max_reconnect_attempts}): {e}"
                )
                self._emit("error", e)
            finally:
                if self._ws is not None:
                    ws, self._ws = self._ws, None
                    if not ws.closed:
                        await ws.close()
                    logger.info("Realtime channel disconnected")
                    self._emit(DISCONNECTED, None)

            if self._closing:
                break
            if self.reconnect_attempts >= self.max_reconnect_attempts:
                logger.error("Realtime channel giving up after max reconnect attempts")
                break
            await asyncio.sleep(delay)
            delay = min(delay * 2, self.reconnect_delay_max)

    async def _open(self) -> None:
        if self._session is None:
            headers = {"Authorization": f"Bearer {self.token}"} if self.token else None
            self._session = aiohttp.ClientSession(headers=headers)
        self._ws = await self._session.ws_connect(self.url, params=self.params, heartbeat=30)
        logger.info(f"Realtime channel connected: {self.url}")
        if self._rooms:
            await self._ws.send_json({"type": "subscribe", "rooms": sorted(self._rooms)})
        self._emit(CONNECTED, None)

    async def _read_loop(self) -> None:
        async for msg in self._ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    message = msg.json()
                except ValueError:
                    logger.warning("Ignoring non-JSON realtime message")
                    continue
                self.dispatch(message)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                logger.warning(f"Realtime channel error: {self._ws.exception()}")
                break

    # ==================== Events ====================

    def on(self, event: str, handler: Handler) -> None:
        self._listeners.setdefault(event, set()).add(handler)

    def off(self, event: str, handler: Handler) -> None:
        if event in self._listeners:
            self._listeners[event].discard(handler)

    def dispatch(self, message: dict) -> None:
        """Route an incoming {"type", "data"} message to its handlers."""
        event_type = message.get("type")
        if not event_type:
            return
        self._emit(event_type, message.get("data"))

    def _emit(self, event: str, data: Any) -> None:
        for handler in list(self._listeners.get(event, ())):
            try:
                result = handler(data)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._handler_tasks.add(task)
                    task.add_done_callback(self._handler_done)
            except Exception as e:
                logger.error(f"Error in realtime handler for {event}: {e}", exc_info=True)

    def _handler_done(self, task: asyncio.Task) -> None:
        self._handler_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Realtime handler failed: {task.exception()}")

    # ==================== Outgoing ====================

    async def publish(self, event_type: str, data: dict) -> None:
        """Send one event. Raises TransportError when not deliverable."""
        if not self.is_connected:
            raise TransportError("Realtime channel not connected")
        message = {
            "type": event_type,
            "data": data,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        try:
            await self._ws.send_json(message)
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
            raise TransportError(f"Realtime publish failed: {e}") from e

    async def subscribe(self, rooms: Iterable[str]) -> None:
        """Join broadcast rooms; remembered and re-sent after reconnect."""
        rooms = set(rooms)
        self._rooms |= rooms
        await self._send_control({"type": "subscribe", "rooms": sorted(rooms)})

    async def unsubscribe(self, rooms: Iterable[str]) -> None:
        rooms = set(rooms)
        self._rooms -= rooms
        await self._send_control({"type": "unsubscribe", "rooms": sorted(rooms)})

    async def _send_control(self, message: dict) -> None:
        # Room membership is re-sent on reconnect, so a lost control frame is not fatal
        if not self.is_connected:
            return
        try:
            await self._ws.send_json(message)
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
            logger.warning(f"Failed to send {message['type']} to realtime channel: {e}")

    def get_connection_status(self) -> dict:
        return {
            "connected": self.is_connected,
            "url": self.url,
            "reconnect_attempts": self.reconnect_attempts,
            "rooms": sorted(self._rooms),
        }
