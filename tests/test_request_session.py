"""
Tests for RequestSession - the per-request state machine and its
notification channel.
"""

import asyncio

import aiohttp
import pytest

from codek.models.schemas import ToolCall
from codek.models.states import SessionState
from codek.services import request_session as request_session_module
from codek.services.request_session import ChannelClosed, NotificationChannel, RequestSession
from codek.streaming.decoder import decode_stream
from codek.streaming.errors import InvalidTransitionError, StreamConnectionError
from codek.streaming.notifications import (
    BlockExtended,
    BlockFinalized,
    BlockKind,
    BlockOpened,
    Terminal,
)

from conftest import DONE, ScriptedClient, collect, delta, make_request, sse


async def run_session(client, capacity: int = 64):
    session = RequestSession("ctx-1", make_request(), client, channel_capacity=capacity)
    session.start()
    notifications = await collect(session.handle)
    await asyncio.gather(session.task, return_exceptions=True)
    return session, notifications


def content_of(notifications) -> str:
    return "".join(n.content for n in notifications if isinstance(n, BlockFinalized))


# ============================================================================
# NOTIFICATION CHANNEL TESTS
# ============================================================================

@pytest.mark.unit
class TestNotificationChannel:
    """Bounded single-producer, single-consumer channel"""

    @pytest.mark.asyncio
    async def test_delivers_in_order(self):
        channel = NotificationChannel(capacity=4)
        items = [BlockOpened(1, BlockKind.PARAGRAPH), BlockExtended(1, "a"), BlockExtended(1, "b")]

        for item in items:
            assert await channel.send(item) is True
        channel.close(Terminal(SessionState.COMPLETED))

        received = [await channel.receive() for _ in range(4)]

        assert received == items + [Terminal(SessionState.COMPLETED)]

    @pytest.mark.asyncio
    async def test_send_waits_while_full(self):
        channel = NotificationChannel(capacity=1)
        await channel.send(BlockExtended(1, "first"))

        pending = asyncio.create_task(channel.send(BlockExtended(1, "second")))
        await asyncio.sleep(0)
        assert not pending.done()

        assert await channel.receive() == BlockExtended(1, "first")
        assert await pending is True
        assert await channel.receive() == BlockExtended(1, "second")

    @pytest.mark.asyncio
    async def test_close_discards_pending_and_wakes_sender(self):
        channel = NotificationChannel(capacity=1)
        await channel.send(BlockExtended(1, "buffered"))
        pending = asyncio.create_task(channel.send(BlockExtended(1, "blocked")))
        await asyncio.sleep(0)

        channel.close(Terminal(SessionState.CANCELLED), discard_pending=True)

        assert await pending is False
        assert await channel.receive() == Terminal(SessionState.CANCELLED)
        assert len(channel) == 0

    @pytest.mark.asyncio
    async def test_terminal_gets_a_slot_when_full(self):
        channel = NotificationChannel(capacity=1)
        await channel.send(BlockExtended(1, "kept"))

        channel.close(Terminal(SessionState.FAILED, reason="boom", error_kind="upstream"))

        assert await channel.receive() == BlockExtended(1, "kept")
        assert (await channel.receive()).state is SessionState.FAILED

    @pytest.mark.asyncio
    async def test_send_after_close_is_dropped(self):
        channel = NotificationChannel()
        channel.close(Terminal(SessionState.COMPLETED))

        assert await channel.send(BlockExtended(1, "late")) is False
        assert channel.close(Terminal(SessionState.FAILED)) is False
        assert await channel.receive() == Terminal(SessionState.COMPLETED)

        with pytest.raises(ChannelClosed):
            await channel.receive()

    def test_capacity_must_be_positive(self):
        with pytest.raises(ValueError):
            NotificationChannel(capacity=0)


# ============================================================================
# LIFECYCLE TESTS
# ============================================================================

@pytest.mark.unit
class TestSessionLifecycle:
    """End-to-end behaviour over a scripted stream"""

    @pytest.mark.asyncio
    async def test_hello_world_completes(self, hello_world_client):
        session, notifications = await run_session(hello_world_client)

        assert notifications[0] == BlockOpened(1, BlockKind.PARAGRAPH)
        assert notifications[-1] == Terminal(SessionState.COMPLETED)
        assert content_of(notifications) == "Hello world"
        assert session.handle.content == "Hello world"
        assert session.state is SessionState.COMPLETED
        assert hello_world_client.closed == 1

        extended = "".join(n.text for n in notifications if isinstance(n, BlockExtended))
        assert extended == "Hello world"

        (block,) = [n for n in notifications if isinstance(n, BlockFinalized)]
        assert block.html == "<p>Hello world</p>\n"

    @pytest.mark.asyncio
    async def test_event_stream_closed_before_body(self, monkeypatch):
        """Events after the terminal one are never read; the decoder closes first"""
        order = []
        client = ScriptedClient([sse(delta("Hi"), DONE, delta("ignored"))], hold=asyncio.Event())

        async def tracking_decode(chunks):
            try:
                async for event in decode_stream(chunks):
                    yield event
            finally:
                order.append(("events closed", client.closed))

        monkeypatch.setattr(request_session_module, "decode_stream", tracking_decode)

        session, notifications = await run_session(client)

        assert notifications[-1] == Terminal(SessionState.COMPLETED)
        assert session.handle.content == "Hi"
        assert order == [("events closed", 0)]
        assert client.closed == 1

    @pytest.mark.asyncio
    async def test_exactly_one_terminal(self, hello_world_client):
        _, notifications = await run_session(hello_world_client)

        assert sum(isinstance(n, Terminal) for n in notifications) == 1

    @pytest.mark.asyncio
    async def test_connection_drop_keeps_partial_content(self):
        client = ScriptedClient([sse(delta("Hello "))])

        session, notifications = await run_session(client)

        assert notifications[-1] == Terminal(
            SessionState.FAILED, reason="stream closed unexpectedly", error_kind="connection"
        )
        assert content_of(notifications) == "Hello "
        assert session.handle.content == "Hello "

    @pytest.mark.asyncio
    async def test_upstream_error(self):
        client = ScriptedClient([sse(delta("Par"), {"type": "error", "message": "rate limited"})])

        session, notifications = await run_session(client)

        assert notifications[-1] == Terminal(SessionState.FAILED, reason="rate limited", error_kind="upstream")
        assert content_of(notifications) == "Par"

    @pytest.mark.asyncio
    async def test_decode_error(self):
        client = ScriptedClient([sse("{broken")])

        _, notifications = await run_session(client)

        assert notifications[-1].state is SessionState.FAILED
        assert notifications[-1].error_kind == "decode"

    @pytest.mark.asyncio
    async def test_http_status_error(self):
        client = ScriptedClient(open_error=StreamConnectionError("API error: 500 - boom", status=500))

        session, notifications = await run_session(client)

        assert notifications == [
            Terminal(SessionState.FAILED, reason="API error: 500 - boom", error_kind="connection")
        ]
        assert client.opened == 0

    @pytest.mark.asyncio
    async def test_transport_error_mid_stream(self):
        client = ScriptedClient([sse(delta("a")), aiohttp.ClientPayloadError("connection reset")])

        _, notifications = await run_session(client)

        assert notifications[-1].error_kind == "connection"
        assert "connection reset" in notifications[-1].reason
        assert client.closed == 1

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_internal_failure(self):
        client = ScriptedClient([sse(delta("a")), RuntimeError("boom")])

        session, notifications = await run_session(client)

        assert notifications[-1] == Terminal(SessionState.FAILED, reason="internal error: boom", error_kind="internal")
        assert session.task.exception() is None

    @pytest.mark.asyncio
    async def test_tool_calls_are_exposed(self):
        client = ScriptedClient([sse(
            {"choices": [{"delta": {"tool_calls": [
                {"index": 0, "id": "call_1", "function": {"name": "lookup", "arguments": '{"q": '}}
            ]}}]},
            {"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"arguments": "1}"}}]}}]},
            {"choices": [{"delta": {}, "finish_reason": "tool_calls"}]},
        )])

        session, notifications = await run_session(client)

        assert notifications == [Terminal(SessionState.COMPLETED)]
        assert session.handle.tool_calls == [ToolCall(id="call_1", name="lookup", arguments='{"q": 1}')]

    @pytest.mark.asyncio
    async def test_small_channel_delivers_everything(self):
        """Backpressure slows the producer but loses nothing"""
        text = "# Plan\n\n- step one\n- step two\n\n```py\nprint('ok')\n```\n"
        chunks = [sse(delta(text[i:i + 3])) for i in range(0, len(text), 3)] + [sse(DONE)]

        session, notifications = await run_session(ScriptedClient(chunks), capacity=1)

        assert notifications[-1] == Terminal(SessionState.COMPLETED)
        assert content_of(notifications) == text
        assert [n.kind for n in notifications if isinstance(n, BlockFinalized)] == [
            BlockKind.HEADING, BlockKind.LIST, BlockKind.CODE_FENCE,
        ]

    @pytest.mark.asyncio
    async def test_wait_returns_terminal(self, hello_world_client):
        session = RequestSession("ctx-1", make_request(), hello_world_client)
        session.start()

        terminal = await session.handle.drain()

        assert terminal == Terminal(SessionState.COMPLETED)
        assert await session.handle.wait() == terminal


# ============================================================================
# CANCELLATION AND STATE MACHINE TESTS
# ============================================================================

@pytest.mark.unit
class TestCancellation:
    """Cancellation discards undelivered notifications"""

    @pytest.mark.asyncio
    async def test_cancel_discards_buffered_notifications(self):
        client = ScriptedClient([sse(delta("# A\n# B\n# C\n# D\n"))], hold=asyncio.Event())
        session = RequestSession("ctx-1", make_request(), client, channel_capacity=2)
        session.start()

        await asyncio.wait_for(_until(lambda: len(session.channel) == 2), timeout=1)

        assert session.cancel() is True
        notifications = await collect(session.handle)
        await asyncio.gather(session.task, return_exceptions=True)

        assert notifications == [Terminal(SessionState.CANCELLED, reason="cancelled by user")]
        assert session.state is SessionState.CANCELLED
        assert client.closed == 1

    @pytest.mark.asyncio
    async def test_cancel_before_first_byte(self, held_client):
        session = RequestSession("ctx-1", make_request(), held_client)
        session.start()

        assert session.cancel("user pressed stop") is True
        assert session.state is SessionState.CANCELLED

        notifications = await collect(session.handle)
        assert notifications == [Terminal(SessionState.CANCELLED, reason="user pressed stop")]

    @pytest.mark.asyncio
    async def test_cancel_through_handle(self, held_client):
        session = RequestSession("ctx-1", make_request(), held_client)
        session.start()
        await asyncio.sleep(0)

        assert session.handle.cancel() is True
        assert session.handle.cancel() is False
        assert (await session.handle.drain()).state is SessionState.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_after_completion_is_noop(self, hello_world_client):
        session, _ = await run_session(hello_world_client)

        assert session.cancel() is False
        assert session.state is SessionState.COMPLETED

    @pytest.mark.asyncio
    async def test_start_twice_raises(self, hello_world_client):
        session = RequestSession("ctx-1", make_request(), hello_world_client)
        session.start()

        with pytest.raises(RuntimeError):
            session.start()

        await session.handle.drain()

    @pytest.mark.asyncio
    async def test_start_after_cancel_does_not_connect(self, hello_world_client):
        session = RequestSession("ctx-1", make_request(), hello_world_client)
        session.cancel()

        assert session.start() is None
        assert session.task is None
        assert await session.handle.drain() == Terminal(SessionState.CANCELLED, reason="cancelled by user")
        assert hello_world_client.requests == []

    @pytest.mark.asyncio
    async def test_terminal_states_are_sticky(self, hello_world_client):
        session, _ = await run_session(hello_world_client)

        with pytest.raises(InvalidTransitionError):
            session._transition(SessionState.STREAMING)
        with pytest.raises(InvalidTransitionError):
            session._transition(SessionState.FAILED)


async def _until(predicate):
    while not predicate():
        await asyncio.sleep(0)
