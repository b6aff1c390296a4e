"""Connection management for the capture agent channel.

ConnectionManager owns the single live AgentConnection. Inbound frames
are read by one task and pushed into a per-connection inbox; a second
task drains the inbox and invokes handlers one message at a time, so
handlers observe messages (and finally the close event) in arrival
order. A liveness watchdog closes channels that went silent.

The manager never reconnects on its own. ConnectionSupervisor is the
caller-level loop that re-invokes connect() with exponential backoff.
"""

import asyncio
import inspect
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from ..errors import ConnectionLost, NotConnected
from .backoff import BackoffState
from .transport import Channel, Dialer

logger = logging.getLogger(__name__)

MessageHandler = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]
CloseHandler = Callable[[str], Union[None, Awaitable[None]]]

HEARTBEAT = "heartbeat"
HEARTBEAT_RESPONSE = "heartbeat-response"
HANDSHAKE = "extension-handshake"

# Close reasons where a replacement channel is already waiting
HANDOVER_REASONS = frozenset({"superseded", "replaced"})


class ConnectionState(str, Enum):
    """Lifecycle state of the agent channel."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass
class AgentConnection:
    """The live channel to the capture agent."""
    connection_id: str
    channel: Channel
    opened_at: float
    last_activity: float
    is_open: bool = True
    close_reason: Optional[str] = None
    agent_info: Dict[str, Any] = field(default_factory=dict)


@dataclass
class _Closed:
    reason: str


@dataclass
class _Link:
    """Tasks and inbox bound to one connection."""
    connection: AgentConnection
    inbox: "asyncio.Queue[Union[Dict[str, Any], _Closed]]"
    reader: Optional[asyncio.Task] = None
    worker: Optional[asyncio.Task] = None
    watchdog: Optional[asyncio.Task] = None


class ConnectionManager:
    """Owns exactly one logical full-duplex channel to the capture agent."""

    def __init__(
        self,
        dialer: Dialer,
        liveness_timeout: float = 60.0,
        connect_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        """Initialize connection manager.

        Args:
            dialer: Source of fresh channels
            liveness_timeout: Seconds without inbound traffic before the
                channel is closed proactively
            connect_timeout: Maximum wait in connect(); None waits forever
            clock: Monotonic time source
        """
        self.dialer = dialer
        self.liveness_timeout = liveness_timeout
        self.connect_timeout = connect_timeout
        self._clock = clock

        self._state = ConnectionState.DISCONNECTED
        self._link: Optional[_Link] = None
        self._message_handlers: List[MessageHandler] = []
        self._close_handlers: List[CloseHandler] = []
        self._closed_event = asyncio.Event()
        self._closed_event.set()

    @property
    def clock(self) -> Callable[[], float]:
        return self._clock

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def connection(self) -> Optional[AgentConnection]:
        """The live connection, if any."""
        if self._link is None or not self._link.connection.is_open:
            return None
        return self._link.connection

    def on_message(self, handler: MessageHandler) -> Callable[[], None]:
        """Register a handler for inbound envelopes; returns an unsubscribe callable."""
        self._message_handlers.append(handler)
        return lambda: self._message_handlers.remove(handler)

    def on_close(self, handler: CloseHandler) -> Callable[[], None]:
        """Register a handler called with the close reason."""
        self._close_handlers.append(handler)
        return lambda: self._close_handlers.remove(handler)

    async def connect(self) -> AgentConnection:
        """Establish the agent channel, or return the live one.

        Returns:
            The live AgentConnection

        Raises:
            RuntimeError: If another connect() is already in progress
            asyncio.TimeoutError: If connect_timeout elapses first
        """
        if self._state == ConnectionState.CONNECTED and self._link is not None:
            return self._link.connection
        if self._state == ConnectionState.CONNECTING:
            raise RuntimeError("connect() already in progress")

        self._state = ConnectionState.CONNECTING
        try:
            # Previous connection's close handlers must finish first
            await self._drain_previous()
            if self.connect_timeout is not None:
                channel = await asyncio.wait_for(self.dialer.dial(), timeout=self.connect_timeout)
            else:
                channel = await self.dialer.dial()
        except BaseException:
            self._state = ConnectionState.DISCONNECTED
            raise

        now = self._clock()
        connection = AgentConnection(
            connection_id=uuid.uuid4().hex[:12],
            channel=channel,
            opened_at=now,
            last_activity=now
        )
        link = _Link(connection=connection, inbox=asyncio.Queue())
        link.reader = asyncio.create_task(self._read_loop(link))
        link.worker = asyncio.create_task(self._process_inbox(link))
        link.watchdog = asyncio.create_task(self._watch_liveness(link))

        self._link = link
        self._state = ConnectionState.CONNECTED
        self._closed_event.clear()

        logger.info(f"Agent connection {connection.connection_id} established")
        return connection

    async def send(self, message: Dict[str, Any]) -> None:
        """Send an envelope to the agent.

        Raises:
            NotConnected: If no channel is live
            ConnectionLost: If the channel broke while sending
        """
        link = self._link
        if self._state != ConnectionState.CONNECTED or link is None or not link.connection.is_open:
            raise NotConnected()

        text = json.dumps(message, default=str)
        try:
            await link.connection.channel.send_text(text)
        except ConnectionError as e:
            self._mark_disconnected(link, "send_failed")
            raise ConnectionLost(reason="send_failed") from e

    async def close(self, reason: str = "closed") -> None:
        """Close the live channel and wait until close handlers ran."""
        link = self._link
        if link is None:
            return
        await self._close_link(link, reason)
        if link.worker is not None and link.worker is not asyncio.current_task():
            await asyncio.gather(link.worker, return_exceptions=True)

    async def wait_closed(self) -> None:
        """Wait until no connection is live and its close handlers ran."""
        await self._closed_event.wait()

    def _mark_disconnected(self, link: _Link, reason: str) -> None:
        """Flip state synchronously and queue the close event behind pending messages."""
        connection = link.connection
        if not connection.is_open:
            return
        connection.is_open = False
        connection.close_reason = reason
        if self._link is link:
            self._state = ConnectionState.DISCONNECTED
        link.inbox.put_nowait(_Closed(reason))
        logger.info(f"Agent connection {connection.connection_id} closed ({reason})")

    async def _close_link(self, link: _Link, reason: str) -> None:
        self._mark_disconnected(link, reason)
        current = asyncio.current_task()
        for task in (link.reader, link.watchdog):
            if task is not None and task is not current and not task.done():
                task.cancel()
        await link.connection.channel.close(code=1000, reason=reason)

    async def _drain_previous(self) -> None:
        link = self._link
        if link is None:
            return
        if link.connection.is_open:
            await self._close_link(link, "replaced")
        if link.worker is not None:
            await asyncio.gather(link.worker, return_exceptions=True)

    async def _read_loop(self, link: _Link) -> None:
        connection = link.connection
        channel = connection.channel
        reason = "remote_closed"

        try:
            while True:
                text = await channel.receive_text()
                if text is None:
                    break
                connection.last_activity = self._clock()

                try:
                    message = json.loads(text)
                except ValueError:
                    logger.warning(f"Discarding non-JSON frame from agent: {text[:100]}")
                    continue
                if not isinstance(message, dict):
                    logger.warning("Discarding non-object frame from agent")
                    continue

                message_type = message.get("type")
                if message_type == HEARTBEAT:
                    await channel.send_text(json.dumps({"type": HEARTBEAT_RESPONSE}))
                    continue
                if message_type == HANDSHAKE:
                    connection.agent_info = message.get("payload") or message.get("data") or {}
                    logger.info(f"Agent handshake: {connection.agent_info}")
                    continue

                link.inbox.put_nowait(message)
        except asyncio.CancelledError:
            raise
        except ConnectionError as e:
            logger.warning(f"Agent channel failed: {e}")
            reason = "channel_error"
        except Exception as e:
            logger.error(f"Error reading from agent channel: {e}", exc_info=True)
            reason = "read_error"

        self._mark_disconnected(link, reason)
        await channel.close(code=1000, reason=reason)

    async def _process_inbox(self, link: _Link) -> None:
        try:
            while True:
                item = await link.inbox.get()
                if isinstance(item, _Closed):
                    for handler in list(self._close_handlers):
                        await self._invoke(handler, item.reason)
                    break
                for handler in list(self._message_handlers):
                    await self._invoke(handler, item)
        finally:
            if self._link is link:
                self._closed_event.set()

    async def _watch_liveness(self, link: _Link) -> None:
        connection = link.connection
        interval = min(self.liveness_timeout / 4, 1.0)
        while connection.is_open:
            await asyncio.sleep(interval)
            idle = self._clock() - connection.last_activity
            if idle > self.liveness_timeout:
                logger.warning(
                    f"No agent traffic for {idle:.1f}s on {connection.connection_id}, closing"
                )
                await self._close_link(link, "liveness_timeout")
                return

    @staticmethod
    async def _invoke(handler: Callable[[Any], Any], argument: Any) -> None:
        try:
            result = handler(argument)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Error in connection handler {handler!r}: {e}", exc_info=True)


class ConnectionSupervisor:
    """Keeps the agent channel up by re-invoking connect() with backoff."""

    def __init__(
        self,
        manager: ConnectionManager,
        backoff: Optional[BackoffState] = None,
        stable_after: float = 10.0
    ):
        """Initialize supervisor.

        Args:
            manager: Connection manager to supervise
            backoff: Backoff policy between attempts
            stable_after: A connection that lived at least this long resets
                the backoff when it drops
        """
        self.manager = manager
        self.backoff = backoff or BackoffState()
        self.stable_after = stable_after
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        if self.running:
            return self._task
        self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def run(self) -> None:
        """Connect, wait for the close, back off, repeat until cancelled."""
        while True:
            try:
                connection = await self.manager.connect()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                delay = self.backoff.record_failure(type(e).__name__)
                logger.warning(f"Agent connect failed ({e!r}); retrying in {delay:.1f}s")
                await asyncio.sleep(delay)
                continue

            await self.manager.wait_closed()

            lifetime = self.manager.clock() - connection.opened_at
            if lifetime >= self.stable_after or connection.close_reason in HANDOVER_REASONS:
                self.backoff.reset()
                continue

            delay = self.backoff.record_failure(connection.close_reason)
            logger.info(f"Agent connection dropped after {lifetime:.1f}s; reconnecting in {delay:.1f}s")
            await asyncio.sleep(delay)
