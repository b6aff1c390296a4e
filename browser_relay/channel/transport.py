"""Channel transports between the relay and the capture agent.

A Channel is a minimal text-frame duplex pipe. Two dialers produce them:

- InboundDialer hands over sockets accepted by the relay's own WebSocket
  endpoint (the usual case: the DevTools extension connects to the relay).
- AiohttpDialer connects out to an agent listening on a WebSocket URL.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Callable, Optional

import aiohttp
from starlette.websockets import WebSocket

logger = logging.getLogger(__name__)


class Channel(ABC):
    """Text-frame duplex channel."""

    def __init__(self) -> None:
        self._closed = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    async def wait_closed(self) -> None:
        await self._closed.wait()

    def _mark_closed(self) -> None:
        self._closed.set()

    @abstractmethod
    async def send_text(self, text: str) -> None:
        """Send one frame; raises ConnectionError if the channel is gone."""

    @abstractmethod
    async def receive_text(self) -> Optional[str]:
        """Receive one frame; returns None once the peer has closed."""

    @abstractmethod
    async def close(self, code: int = 1000, reason: str = "") -> None:
        """Close the channel. Safe to call more than once."""


class StarletteChannel(Channel):
    """Channel over a WebSocket accepted by the relay's FastAPI endpoint."""

    def __init__(self, websocket: WebSocket):
        super().__init__()
        self.websocket = websocket

    async def send_text(self, text: str) -> None:
        if self.closed:
            raise ConnectionError("Channel is closed")
        try:
            await self.websocket.send_text(text)
        except RuntimeError as e:
            # Starlette raises RuntimeError once the socket is closed
            self._mark_closed()
            raise ConnectionError(str(e)) from e

    async def receive_text(self) -> Optional[str]:
        if self.closed:
            return None
        try:
            message = await self.websocket.receive()
        except RuntimeError:
            self._mark_closed()
            return None

        if message["type"] == "websocket.disconnect":
            self._mark_closed()
            return None

        if message.get("text") is not None:
            return message["text"]
        if message.get("bytes") is not None:
            return message["bytes"].decode("utf-8", errors="replace")
        return ""

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self.closed:
            return
        self._mark_closed()
        try:
            await self.websocket.close(code=code, reason=reason)
        except RuntimeError as e:
            logger.debug(f"WebSocket already closed: {e}")


class AiohttpChannel(Channel):
    """Channel over an outbound aiohttp WebSocket connection."""

    def __init__(self, session: aiohttp.ClientSession, websocket: aiohttp.ClientWebSocketResponse):
        super().__init__()
        self.session = session
        self.websocket = websocket

    async def send_text(self, text: str) -> None:
        if self.closed or self.websocket.closed:
            raise ConnectionError("Channel is closed")
        try:
            await self.websocket.send_str(text)
        except (aiohttp.ClientError, ConnectionResetError) as e:
            self._mark_closed()
            raise ConnectionError(str(e)) from e

    async def receive_text(self) -> Optional[str]:
        if self.closed:
            return None
        message = await self.websocket.receive()
        if message.type == aiohttp.WSMsgType.TEXT:
            return message.data
        if message.type == aiohttp.WSMsgType.BINARY:
            return message.data.decode("utf-8", errors="replace")
        if message.type == aiohttp.WSMsgType.ERROR:
            logger.warning(f"Agent WebSocket error: {self.websocket.exception()}")
        self._mark_closed()
        await self.session.close()
        return None

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self.closed:
            return
        self._mark_closed()
        try:
            await self.websocket.close(code=code, message=reason.encode())
        finally:
            await self.session.close()


class Dialer(ABC):
    """Produces a fresh channel to the capture agent."""

    @abstractmethod
    async def dial(self) -> Channel:
        """Wait for or establish a channel."""


class InboundDialer(Dialer):
    """Dialer fed by agent sockets accepted on the relay's endpoint."""

    def __init__(self) -> None:
        self._queue: "asyncio.Queue[Channel]" = asyncio.Queue()

    async def offer(self, channel: Channel) -> None:
        """Hand an accepted socket to the next dial() call.

        Older sockets still waiting to be picked up are closed; only the
        most recent agent socket is kept.
        """
        while not self._queue.empty():
            stale = self._queue.get_nowait()
            logger.info("Dropping stale agent socket superseded by a newer one")
            await stale.close(code=1001, reason="superseded")
        await self._queue.put(channel)

    async def dial(self) -> Channel:
        while True:
            channel = await self._queue.get()
            if not channel.closed:
                return channel


class AiohttpDialer(Dialer):
    """Dialer connecting out to a WebSocket URL."""

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        session_factory: Optional[Callable[[], aiohttp.ClientSession]] = None
    ):
        self.url = url
        self.timeout = timeout
        self._session_factory = session_factory or aiohttp.ClientSession

    async def dial(self) -> Channel:
        session = self._session_factory()
        try:
            websocket = await asyncio.wait_for(session.ws_connect(self.url), timeout=self.timeout)
        except BaseException:
            await session.close()
            raise
        logger.info(f"Connected to agent at {self.url}")
        return AiohttpChannel(session, websocket)
