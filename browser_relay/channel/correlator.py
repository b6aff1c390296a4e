"""Request/response correlation over the agent channel.

Every outbound request carries a fresh correlation id. The agent answers
asynchronously and in any order; inbound envelopes carrying an id
resolve the matching pending entry, all others fan out to subscribers.
"""

import asyncio
import inspect
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from ..errors import AgentRequestError, ConnectionLost, RequestTimeoutError
from .connection import ConnectionManager

logger = logging.getLogger(__name__)

SubscriberHandler = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]

CORRELATION_KEYS = ("correlationId", "requestId")


@dataclass
class PendingRequest:
    """An outstanding request awaiting the agent's answer."""
    correlation_id: str
    request_type: str
    issued_at: float
    deadline: float
    future: asyncio.Future
    timer: Optional[asyncio.TimerHandle] = None

    @property
    def done(self) -> bool:
        return self.future.done()


def correlation_id_of(message: Dict[str, Any]) -> Optional[str]:
    """Return the correlation id of an inbound envelope, if any."""
    for key in CORRELATION_KEYS:
        value = message.get(key)
        if value:
            return str(value)
    return None


def _mark_retrieved(future: asyncio.Future) -> None:
    # Failures of submitted requests nobody awaits are not reported as lost
    if not future.cancelled():
        future.exception()


class RequestCorrelator:
    """Matches agent responses to the requests that caused them."""

    def __init__(self, manager: ConnectionManager, default_timeout: float = 10.0):
        """Initialize correlator.

        Args:
            manager: Connection manager carrying the envelopes
            default_timeout: Deadline used when dispatch() gets none
        """
        self.manager = manager
        self.default_timeout = default_timeout
        self._pending: Dict[str, PendingRequest] = {}
        self._subscribers: List[SubscriberHandler] = []

        manager.on_message(self._handle_message)
        manager.on_close(self._handle_close)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def subscribe(self, handler: SubscriberHandler) -> Callable[[], None]:
        """Register a handler for envelopes that carry no correlation id."""
        self._subscribers.append(handler)
        return lambda: self._subscribers.remove(handler)

    async def submit(
        self,
        request_type: str,
        payload: Any = None,
        timeout: Optional[float] = None
    ) -> PendingRequest:
        """Record and send a request without waiting for its result.

        Raises:
            NotConnected: If the channel is not live
            ConnectionLost: If the channel broke while sending
        """
        timeout = self.default_timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()

        correlation_id = uuid.uuid4().hex
        while correlation_id in self._pending:
            correlation_id = uuid.uuid4().hex

        now = time.monotonic()
        pending = PendingRequest(
            correlation_id=correlation_id,
            request_type=request_type,
            issued_at=now,
            deadline=now + timeout,
            future=loop.create_future()
        )
        pending.future.add_done_callback(_mark_retrieved)
        pending.timer = loop.call_later(timeout, self._expire, correlation_id, timeout)
        self._pending[correlation_id] = pending

        try:
            await self.manager.send({
                "type": request_type,
                "correlationId": correlation_id,
                "payload": payload if payload is not None else {}
            })
        except BaseException:
            self._discard(correlation_id)
            raise

        logger.debug(f"Sent {request_type} request {correlation_id}")
        return pending

    async def dispatch(
        self,
        request_type: str,
        payload: Any = None,
        timeout: Optional[float] = None
    ) -> Any:
        """Send a request and wait for the matching response.

        Args:
            request_type: Envelope type understood by the agent
            payload: Request parameters
            timeout: Seconds to wait; defaults to default_timeout

        Returns:
            The response payload

        Raises:
            NotConnected: If the channel is not live
            RequestTimeoutError: If no response arrived in time
            ConnectionLost: If the channel closed first
            AgentRequestError: If the agent answered with an error
        """
        pending = await self.submit(request_type, payload, timeout)
        try:
            return await pending.future
        finally:
            self._discard(pending.correlation_id)

    def cancel(self, correlation_id: str) -> bool:
        """Withdraw a pending request; a late answer is then discarded."""
        pending = self._pending.get(correlation_id)
        if pending is None:
            return False
        if not pending.future.done():
            pending.future.cancel()
        self._discard(correlation_id)
        return True

    def _discard(self, correlation_id: str) -> None:
        pending = self._pending.pop(correlation_id, None)
        if pending is not None and pending.timer is not None:
            pending.timer.cancel()

    def _expire(self, correlation_id: str, timeout: float) -> None:
        pending = self._pending.pop(correlation_id, None)
        if pending is None or pending.future.done():
            return
        logger.warning(f"{pending.request_type} request {correlation_id} timed out after {timeout}s")
        pending.future.set_exception(RequestTimeoutError(
            f"No response to {pending.request_type} within {timeout}s",
            timeout=timeout,
            correlation_id=correlation_id
        ))

    async def _handle_message(self, message: Dict[str, Any]) -> None:
        correlation_id = correlation_id_of(message)
        if correlation_id is None:
            for handler in list(self._subscribers):
                try:
                    result = handler(message)
                    if inspect.isawaitable(result):
                        await result
                except Exception as e:
                    logger.error(f"Subscriber failed on {message.get('type')}: {e}", exc_info=True)
            return

        pending = self._pending.pop(correlation_id, None)
        if pending is None:
            logger.debug(f"Discarding response for unknown request {correlation_id}")
            return
        if pending.timer is not None:
            pending.timer.cancel()
        if pending.future.done():
            return

        error = message.get("error")
        if error:
            if isinstance(error, dict):
                error = error.get("message") or str(error)
            pending.future.set_exception(AgentRequestError(str(error), request_type=pending.request_type))
            return

        payload = message.get("payload", message.get("data"))
        pending.future.set_result(payload)

    def _handle_close(self, reason: str) -> None:
        if not self._pending:
            return
        outstanding = list(self._pending.values())
        self._pending.clear()
        logger.warning(f"Agent channel closed ({reason}); failing {len(outstanding)} pending requests")
        for pending in outstanding:
            if pending.timer is not None:
                pending.timer.cancel()
            if not pending.future.done():
                pending.future.set_exception(ConnectionLost(reason=reason))
