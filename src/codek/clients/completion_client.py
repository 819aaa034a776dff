from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, AsyncIterator, Dict, Optional
import asyncio
import logging

import aiohttp

from ..config.settings import Settings
from ..models.schemas import CompletionRequest
from ..streaming.errors import StreamConnectionError

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})


class CompletionClient:
    """HTTP client for a streaming chat-completions endpoint.

    ``open_stream`` establishes the connection (retrying connection-level
    failures before any byte of the body has been read) and yields an async
    iterator over raw body chunks. Leaving the context closes the connection.
    """

    def __init__(
        self,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        defaults: Optional[Dict[str, Any]] = None,
        connect_timeout: float = 10.0,
        max_retries: int = 0,
        retry_delay: float = 1.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.api_url = api_url
        self.api_key = api_key
        self.defaults = defaults or {}
        self.connect_timeout = connect_timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._session = session

    @classmethod
    def from_settings(cls, settings: Settings, session: Optional[aiohttp.ClientSession] = None) -> "CompletionClient":
        return cls(
            api_url=settings.api_url,
            api_key=settings.api_key,
            defaults=settings.get_request_defaults(),
            connect_timeout=settings.connect_timeout,
            max_retries=settings.connect_retries,
            retry_delay=settings.retry_delay,
            session=session,
        )

    def _get_headers(self) -> dict:
        """Get headers for streaming requests."""
        headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def build_payload(self, request: CompletionRequest) -> Dict[str, Any]:
        return request.to_payload(self.defaults)

    @asynccontextmanager
    async def open_stream(self, request: CompletionRequest) -> AsyncGenerator[AsyncIterator[bytes], None]:
        if not self.api_url:
            raise StreamConnectionError("API URL is not configured")

        payload = self.build_payload(request)
        timeout = aiohttp.ClientTimeout(
            total=None,
            connect=self.connect_timeout,
            sock_read=request.resolve_idle_timeout(self.defaults),
        )

        async with self._client_session() as http:
            response = await self._connect(http, payload, timeout)
            chunks = _iter_chunks(response)
            try:
                yield chunks
            finally:
                await chunks.aclose()
                response.close()

    @asynccontextmanager
    async def _client_session(self) -> AsyncGenerator[aiohttp.ClientSession, None]:
        if self._session is not None:
            yield self._session
        else:
            async with aiohttp.ClientSession() as session:
                yield session

    async def _connect(
        self,
        http: aiohttp.ClientSession,
        payload: Dict[str, Any],
        timeout: aiohttp.ClientTimeout,
    ) -> aiohttp.ClientResponse:
        attempts = self.max_retries + 1
        for attempt in range(attempts):
            last_attempt = attempt == attempts - 1
            try:
                response = await http.post(self.api_url, json=payload, headers=self._get_headers(), timeout=timeout)
            except asyncio.TimeoutError as e:
                error = StreamConnectionError(f"Timed out connecting to {self.api_url}")
                error.__cause__ = e
            except aiohttp.ClientError as e:
                error = StreamConnectionError(f"Connection error: {e}")
                error.__cause__ = e
            else:
                if 200 <= response.status < 300:
                    logger.debug(f"Stream opened: {self.api_url} ({response.status})")
                    return response
                error_text = await response.text()
                response.release()
                error = StreamConnectionError(f"API error: {response.status} - {error_text}", status=response.status)
                if response.status not in RETRYABLE_STATUSES:
                    raise error

            if last_attempt:
                raise error
            logger.error(f"Streaming request error (attempt {attempt + 1}/{attempts}): {error.reason}")
            await asyncio.sleep(self.retry_delay)

        raise StreamConnectionError("No connection attempt was made")


async def _iter_chunks(response: aiohttp.ClientResponse) -> AsyncGenerator[bytes, None]:
    try:
        async for chunk in response.content.iter_any():
            yield chunk
    except asyncio.TimeoutError as e:
        raise StreamConnectionError("Idle timeout: no data received from the completion stream") from e
    except aiohttp.ClientError as e:
        raise StreamConnectionError(f"Connection error while reading stream: {e}") from e
