# src/codek/services/request_session.py
import asyncio
import logging
import uuid
from collections import deque
from contextlib import aclosing
from typing import Deque, Iterable, List, Optional

import aiohttp

from ..models.schemas import CompletionRequest, ToolCall
from ..models.states import AssemblerState, SessionState, TRANSITIONS
from ..streaming.assembler import ContentBuffer, FragmentAssembler
from ..streaming.decoder import decode_stream
from ..streaming.errors import (
    InvalidTransitionError,
    StreamConnectionError,
    StreamError,
    error_for_source,
)
from ..streaming.events import STREAM_CLOSED_UNEXPECTEDLY
from ..streaming.notifications import Notification, RenderDiff, Terminal
from ..streaming.renderer import IncrementalRenderer

logger = logging.getLogger(__name__)


class ChannelClosed(Exception):
    """Raised when receiving from a channel whose terminal was already delivered."""


class NotificationChannel:
    """
    Bounded single-producer, single-consumer queue of notifications.

    ``send`` suspends while the queue is full. ``close`` is synchronous and
    always makes room for the terminal notification; when asked to, it drops
    everything that has not been delivered yet.
    """

    def __init__(self, capacity: int = 64):
        if capacity < 1:
            raise ValueError("channel capacity must be at least 1")
        self._capacity = capacity
        self._items: Deque[Notification] = deque()
        self._closed = False
        self._drained = False
        self._not_empty = asyncio.Event()
        self._not_full = asyncio.Event()
        self._not_full.set()

    def __len__(self) -> int:
        return len(self._items)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def capacity(self) -> int:
        return self._capacity

    async def send(self, notification: Notification) -> bool:
        """Queue a notification; returns False if the channel was closed meanwhile."""
        while not self._closed and len(self._items) >= self._capacity:
            self._not_full.clear()
            await self._not_full.wait()
        if self._closed:
            return False
        self._items.append(notification)
        self._not_empty.set()
        return True

    def close(self, terminal: Terminal, discard_pending: bool = False) -> bool:
        if self._closed:
            return False
        self._closed = True
        if discard_pending and self._items:
            logger.debug(f"Discarding {len(self._items)} undelivered notification(s)")
            self._items.clear()
        self._items.append(terminal)
        self._not_empty.set()
        self._not_full.set()
        return True

    async def receive(self) -> Notification:
        while not self._items:
            if self._drained:
                raise ChannelClosed("terminal notification already delivered")
            self._not_empty.clear()
            await self._not_empty.wait()
        notification = self._items.popleft()
        if isinstance(notification, Terminal):
            self._drained = True
        self._not_full.set()
        return notification


class SessionHandle:
    """
    Caller-side view of one session: an ordered async iterator of
    notifications ending with exactly one Terminal.
    """

    def __init__(self, session: "RequestSession"):
        self._session = session

    @property
    def session_id(self) -> str:
        return self._session.id

    @property
    def context_id(self) -> str:
        return self._session.context_id

    @property
    def state(self) -> SessionState:
        return self._session.state

    @property
    def terminal(self) -> Optional[Terminal]:
        return self._session.terminal

    @property
    def content(self) -> str:
        """Text assembled so far."""
        return self._session.buffer.getvalue()

    @property
    def tool_calls(self) -> List[ToolCall]:
        return self._session.assembler.tool_calls

    def cancel(self) -> bool:
        return self._session.cancel()

    def __aiter__(self):
        return self

    async def __anext__(self) -> Notification:
        try:
            return await self._session.channel.receive()
        except ChannelClosed:
            raise StopAsyncIteration

    async def wait(self) -> Terminal:
        """Wait for the terminal state without consuming notifications."""
        await self._session.terminated.wait()
        return self._session.terminal

    async def drain(self) -> Terminal:
        """Consume and discard the remaining notifications; return the terminal."""
        terminal = None
        async for notification in self:
            if isinstance(notification, Terminal):
                terminal = notification
        return terminal or self._session.terminal


class RequestSession:
    """
    Owns one in-flight completion request: connection, decoder, assembler,
    renderer and delivery all run on a single asyncio task.

    States move PENDING -> STREAMING -> COMPLETED | CANCELLED | FAILED and
    never leave a terminal state. The caller sees failures only as the
    Terminal notification; nothing is raised across the handle.
    """

    def __init__(
        self,
        context_id: str,
        request: CompletionRequest,
        client,
        channel_capacity: int = 64,
        session_id: Optional[str] = None,
    ):
        self.id = session_id or str(uuid.uuid4())
        self.context_id = context_id
        self.request = request
        self._client = client
        self.state = SessionState.PENDING
        self.terminal: Optional[Terminal] = None
        self.buffer = ContentBuffer()
        self.assembler = FragmentAssembler(self.buffer)
        self.renderer = IncrementalRenderer()
        self.channel = NotificationChannel(channel_capacity)
        self.terminated = asyncio.Event()
        self.handle = SessionHandle(self)
        self._task: Optional[asyncio.Task] = None

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    def start(self) -> Optional[asyncio.Task]:
        """Spawn the task that drives this session; None if it was cancelled first."""
        if self._task is not None:
            raise RuntimeError(f"Session {self.id} already started")
        if self.state.is_terminal:
            logger.debug(f"Session {self.id} not started: already {self.state.value}")
            return None
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._drive(), name=f"codek-session-{self.id}")
        return self._task

    def cancel(self, reason: str = "cancelled by user") -> bool:
        """Cancel synchronously; returns False if the session had already terminated."""
        if not self._terminate(Terminal(SessionState.CANCELLED, reason=reason)):
            return False
        if self._task is not None and not self._task.done():
            self._task.cancel()
        logger.info(f"Cancelled session {self.id} for context {self.context_id}: {reason}")
        return True

    def _transition(self, new_state: SessionState) -> None:
        if new_state not in TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"Illegal session transition {self.state.value} -> {new_state.value}"
            )
        logger.debug(f"Session {self.id}: {self.state.value} -> {new_state.value}")
        self.state = new_state

    def _terminate(self, terminal: Terminal) -> bool:
        if self.state.is_terminal:
            return False
        self._transition(terminal.state)
        self.terminal = terminal
        self.channel.close(terminal, discard_pending=terminal.state is SessionState.CANCELLED)
        self.terminated.set()
        return True

    async def _emit(self, diffs: Iterable[RenderDiff]) -> bool:
        for diff in diffs:
            if not await self.channel.send(diff):
                return False
        return True

    async def _drive(self) -> None:
        try:
            await self._stream()
        except asyncio.CancelledError:
            if not self.state.is_terminal:
                self._terminate(Terminal(SessionState.CANCELLED, reason="session task cancelled"))
            raise
        except StreamError as e:
            await self._fail(e.reason, e.error_kind)
        except asyncio.TimeoutError:
            await self._fail("Idle timeout: no data received from the completion stream",
                             StreamConnectionError.error_kind)
        except aiohttp.ClientError as e:
            await self._fail(f"Connection error: {e}", StreamConnectionError.error_kind)
        except Exception as e:
            logger.exception(f"Unexpected error in session {self.id}")
            await self._fail(f"internal error: {e}", "internal")

    async def _stream(self) -> None:
        logger.info(f"Starting session {self.id} for context {self.context_id}")

        async with self._client.open_stream(self.request) as chunks:
            self._transition(SessionState.STREAMING)
            async with aclosing(decode_stream(chunks)) as events:
                async for event in events:
                    growth = self.assembler.consume(event)
                    if growth is not None:
                        await self._emit(self.renderer.apply(growth))
                    if self.assembler.is_terminal:
                        break

        if self.assembler.state is AssemblerState.COMPLETED:
            await self._emit(self.renderer.finish())
            if self._terminate(Terminal(SessionState.COMPLETED)):
                logger.info(f"Session {self.id} completed ({len(self.buffer)} chars)")
        elif self.assembler.state is AssemblerState.FAILED:
            failure = self.assembler.failure
            raise error_for_source(failure.source, failure.reason)
        else:
            raise StreamConnectionError(STREAM_CLOSED_UNEXPECTEDLY)

    async def _fail(self, reason: str, error_kind: str) -> None:
        if self.state.is_terminal:
            return
        # Content already delivered stays valid; close the open block
        if not self.renderer.finished:
            await self._emit(self.renderer.finish())
        if self._terminate(Terminal(SessionState.FAILED, reason=reason, error_kind=error_kind)):
            logger.warning(f"Session {self.id} failed ({error_kind}): {reason}")
