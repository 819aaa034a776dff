# src/codek/services/supervisor.py
import asyncio
import logging
from typing import Any, Dict, Optional, Set

from ..models.schemas import CompletionRequest
from .request_session import RequestSession, SessionHandle

logger = logging.getLogger(__name__)


class SessionSupervisor:
    """
    Registry of in-flight sessions keyed by conversation context.

    A context owns at most one non-terminal session. Starting a new request
    for a context cancels the previous session before the new one exists.
    """

    def __init__(self, client, channel_capacity: int = 64):
        self._client = client
        self._channel_capacity = channel_capacity
        self._active: Dict[str, RequestSession] = {}
        self._tasks: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, client, settings) -> "SessionSupervisor":
        return cls(client, channel_capacity=settings.channel_capacity)

    def start(self, context_id: str, request: CompletionRequest) -> SessionHandle:
        """Cancel the context's active session, then start a new one for ``request``."""
        previous = self._active.pop(context_id, None)
        if previous is not None and previous.cancel("superseded by a new request"):
            logger.info(f"Superseded session {previous.id} for context {context_id}")

        session = RequestSession(
            context_id,
            request,
            self._client,
            channel_capacity=self._channel_capacity,
        )
        self._active[context_id] = session

        task = session.start()
        self._tasks.add(task)
        task.add_done_callback(lambda t, s=session: self._on_session_done(s, t))
        return session.handle

    def cancel(self, context_id: str) -> bool:
        """Cancel the context's active session; False when nothing was active."""
        session = self._active.pop(context_id, None)
        if session is None:
            return False
        return session.cancel()

    def get_active(self, context_id: str) -> Optional[SessionHandle]:
        session = self._active.get(context_id)
        if session is None or session.state.is_terminal:
            return None
        return session.handle

    def _on_session_done(self, session: RequestSession, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        # A superseding session may already own the slot
        if self._active.get(session.context_id) is session:
            del self._active[session.context_id]
        logger.debug(f"Session {session.id} released ({session.state.value})")

    def get_stats(self) -> Dict[str, Any]:
        """Get statistics about in-flight sessions (for monitoring)."""
        return {
            "active_sessions": len(self._active),
            "running_tasks": len(self._tasks),
            "sessions": [
                {
                    "id": session.id,
                    "context_id": context_id,
                    "state": session.state.value,
                    "content_length": len(session.buffer),
                }
                for context_id, session in self._active.items()
            ],
        }

    async def shutdown(self) -> None:
        """Cancel every session and wait for the driving tasks to finish."""
        sessions = list(self._active.values())
        self._active.clear()
        for session in sessions:
            session.cancel("supervisor shutting down")

        tasks = list(self._tasks)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"Supervisor shut down ({len(sessions)} active session(s) cancelled)")
