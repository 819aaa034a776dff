"""
Central test configuration and fixtures for the Codek streaming pipeline.
This file provides reusable test fixtures and utilities.
"""

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any, Iterable, List, Optional, Union

import pytest

from codek.config.settings import Settings
from codek.models.schemas import ChatMessage, CompletionRequest
from codek.services.conversation_service import ConversationService
from codek.services.supervisor import SessionSupervisor


# ============================================================================
# UTILITY FUNCTIONS
# ============================================================================

def sse(*payloads: Union[str, dict]) -> bytes:
    """Encode payloads as event-stream records, one ``data:`` line each."""
    records = []
    for payload in payloads:
        data = payload if isinstance(payload, str) else json.dumps(payload, ensure_ascii=False)
        records.append(f"data: {data}\n\n")
    return "".join(records).encode("utf-8")


def delta(text: str) -> dict:
    return {"type": "delta", "content": text}


DONE = {"type": "done"}


def split_every(data: bytes, size: int) -> List[bytes]:
    return [data[i:i + size] for i in range(0, len(data), size)]


def make_request(prompt: str = "Explain this function", **options: Any) -> CompletionRequest:
    return CompletionRequest(messages=[ChatMessage(role="user", content=prompt)], **options)


async def collect(handle) -> list:
    """Consume a session handle to its terminal notification."""
    return [notification async for notification in handle]


async def settle(rounds: int = 10) -> None:
    """Let pending callbacks and ready tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class ScriptedClient:
    """
    Stands in for CompletionClient: replays scripted body chunks.

    Exceptions in ``chunks`` are raised at that point of the body. With
    ``hold`` set, the body stays open after the last chunk until the event
    is set, the way a slow backend would.
    """

    def __init__(
        self,
        chunks: Iterable[Union[bytes, BaseException]] = (),
        open_error: Optional[BaseException] = None,
        hold: Optional[asyncio.Event] = None,
    ):
        self.chunks = list(chunks)
        self.open_error = open_error
        self.hold = hold
        self.requests: List[CompletionRequest] = []
        self.opened = 0
        self.closed = 0

    @asynccontextmanager
    async def open_stream(self, request: CompletionRequest):
        self.requests.append(request)
        await asyncio.sleep(0)
        if self.open_error is not None:
            raise self.open_error
        self.opened += 1
        chunks = self._iter_chunks()
        try:
            yield chunks
        finally:
            await chunks.aclose()
            self.closed += 1

    async def _iter_chunks(self):
        for chunk in self.chunks:
            await asyncio.sleep(0)
            if isinstance(chunk, BaseException):
                raise chunk
            yield chunk
        if self.hold is not None:
            await self.hold.wait()


# ============================================================================
# SERVICE FIXTURES
# ============================================================================

@pytest.fixture
def request_payload():
    """Single-message completion request"""
    return make_request()


@pytest.fixture
def hello_world_client():
    """Client that streams 'Hello world' and completes"""
    return ScriptedClient([sse(delta("Hello "), delta("world"), DONE)])


@pytest.fixture
def held_client():
    """Client whose stream stays open until the test releases it"""
    return ScriptedClient([sse(delta("Thinking"))], hold=asyncio.Event())


@pytest.fixture
async def supervisor(held_client):
    """Supervisor over a stream that never finishes on its own"""
    supervisor = SessionSupervisor(held_client, channel_capacity=8)
    yield supervisor
    await supervisor.shutdown()


@pytest.fixture
async def conversation_service():
    """Conversation service for testing"""
    service = ConversationService()
    yield service
    # Cleanup after test
    await service.cleanup()


@pytest.fixture
def settings(tmp_path):
    """Settings isolated from any config files in the working directory"""
    return Settings(
        config_file_path=str(tmp_path / "missing.yaml"),
        system_prompt_path=str(tmp_path / "missing.md"),
        system_prompt="You are a terse reviewer.",
        api_url="http://backend.invalid/v1/chat/completions",
    )


# ============================================================================
# PYTEST MARKERS
# ============================================================================

def pytest_configure(config):
    """Configure custom pytest markers"""
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests (fast, isolated)"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests (local HTTP server)"
    )
