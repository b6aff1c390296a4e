"""Unit tests for request/response correlation."""

import asyncio
import gc

import pytest

from browser_relay.channel import ConnectionManager, InboundDialer, RequestCorrelator
from browser_relay.channel.correlator import correlation_id_of
from browser_relay.errors import AgentRequestError, ConnectionLost, NotConnected, RequestTimeoutError
from tests.fakes import wait_for_condition


def test_correlation_id_of_accepts_alias():
    assert correlation_id_of({"correlationId": "a"}) == "a"
    assert correlation_id_of({"requestId": "b"}) == "b"
    assert correlation_id_of({"type": "console-log"}) is None


class TestRequestCorrelator:
    """Tests for RequestCorrelator."""

    @pytest.mark.asyncio
    async def test_dispatch_resolves_with_payload(self, correlator):
        correlator, channel = correlator

        task = asyncio.create_task(correlator.dispatch("get-cookies", {"domain": "example.com"}))
        request = await channel.next_sent()

        assert request["type"] == "get-cookies"
        assert request["payload"] == {"domain": "example.com"}
        assert correlator.pending_count == 1

        channel.respond(request, [{"name": "a", "value": "1"}])

        assert await task == [{"name": "a", "value": "1"}]
        assert correlator.pending_count == 0

    @pytest.mark.asyncio
    async def test_out_of_order_responses(self, correlator):
        correlator, channel = correlator

        first = asyncio.create_task(correlator.dispatch("get-current-url"))
        first_request = await channel.next_sent()
        second = asyncio.create_task(correlator.dispatch("get-local-storage"))
        second_request = await channel.next_sent()

        channel.respond(second_request, {"theme": "dark"})
        channel.respond(first_request, {"url": "https://example.com"})

        assert await first == {"url": "https://example.com"}
        assert await second == {"theme": "dark"}

    @pytest.mark.asyncio
    async def test_request_id_and_data_alias(self, correlator):
        correlator, channel = correlator

        task = asyncio.create_task(correlator.dispatch("get-current-url"))
        request = await channel.next_sent()
        channel.push({
            "type": "current-url-response",
            "requestId": request["correlationId"],
            "data": {"url": "https://example.com"}
        })

        assert await task == {"url": "https://example.com"}

    @pytest.mark.asyncio
    async def test_error_response_raises_agent_error(self, correlator):
        correlator, channel = correlator

        task = asyncio.create_task(correlator.dispatch("click-element", {"selector": "#missing"}))
        request = await channel.next_sent()
        channel.respond(request, error={"message": "Element not found"})

        with pytest.raises(AgentRequestError) as exc_info:
            await task

        assert exc_info.value.message == "Element not found"
        assert exc_info.value.request_type == "click-element"

    @pytest.mark.asyncio
    async def test_timeout_then_late_response_is_discarded(self, correlator):
        correlator, channel = correlator
        received = []
        correlator.subscribe(received.append)

        with pytest.raises(RequestTimeoutError) as exc_info:
            await correlator.dispatch("take-screenshot", timeout=0.05)

        assert exc_info.value.timeout == 0.05
        assert correlator.pending_count == 0

        request = await channel.next_sent()
        channel.respond(request, {"data": "late"})

        # The connection keeps working after the stray response
        task = asyncio.create_task(correlator.dispatch("get-current-url"))
        follow_up = await channel.next_sent()
        channel.respond(follow_up, {"url": "https://example.com"})

        assert await task == {"url": "https://example.com"}
        assert received == []

    @pytest.mark.asyncio
    async def test_pending_requests_fail_on_close(self, correlator):
        correlator, channel = correlator

        tasks = [
            asyncio.create_task(correlator.dispatch("get-cookies", timeout=30))
            for _ in range(3)
        ]
        for _ in range(3):
            await channel.next_sent()
        assert correlator.pending_count == 3

        channel.remote_close()
        results = await asyncio.wait_for(
            asyncio.gather(*tasks, return_exceptions=True),
            timeout=1.0
        )

        assert all(isinstance(result, ConnectionLost) for result in results)
        assert all(result.reason == "remote_closed" for result in results)
        assert correlator.pending_count == 0

    @pytest.mark.asyncio
    async def test_dispatch_without_connection(self):
        manager = ConnectionManager(InboundDialer())
        correlator = RequestCorrelator(manager)

        with pytest.raises(NotConnected):
            await correlator.dispatch("get-cookies")

        assert correlator.pending_count == 0

    @pytest.mark.asyncio
    async def test_send_failure_leaves_nothing_pending(self, correlator):
        correlator, channel = correlator
        channel.fail_sends = True

        with pytest.raises(ConnectionLost):
            await correlator.dispatch("get-cookies")

        assert correlator.pending_count == 0

    @pytest.mark.asyncio
    async def test_cancelled_caller_releases_entry(self, correlator):
        correlator, channel = correlator

        task = asyncio.create_task(correlator.dispatch("get-cookies"))
        request = await channel.next_sent()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

        assert correlator.pending_count == 0
        channel.respond(request, [])
        await asyncio.sleep(0.05)
        assert correlator.pending_count == 0

    @pytest.mark.asyncio
    async def test_cancel_withdraws_submitted_request(self, correlator):
        correlator, channel = correlator

        pending = await correlator.submit("get-cookies")

        assert correlator.cancel(pending.correlation_id)
        assert pending.future.cancelled()
        assert correlator.pending_count == 0
        assert not correlator.cancel(pending.correlation_id)

    @pytest.mark.asyncio
    async def test_unawaited_submit_failure_is_not_reported(self, correlator):
        correlator, channel = correlator
        loop = asyncio.get_running_loop()
        reported = []
        loop.set_exception_handler(lambda loop, context: reported.append(context))
        try:
            pending = await correlator.submit("get-cookies", timeout=0.01)
            await wait_for_condition(lambda: pending.done)
            await asyncio.sleep(0)

            del pending
            gc.collect()

            assert reported == []
        finally:
            loop.set_exception_handler(None)

    @pytest.mark.asyncio
    async def test_uncorrelated_messages_go_to_subscribers(self, correlator):
        correlator, channel = correlator
        received = []
        correlator.subscribe(received.append)

        channel.push({"type": "console-log", "message": "hello"})

        await wait_for_condition(lambda: received)
        assert received == [{"type": "console-log", "message": "hello"}]

    @pytest.mark.asyncio
    async def test_correlation_ids_are_unique(self, correlator):
        correlator, channel = correlator

        pendings = [await correlator.submit("get-cookies") for _ in range(25)]

        ids = {pending.correlation_id for pending in pendings}
        assert len(ids) == 25
        for pending in pendings:
            correlator.cancel(pending.correlation_id)
