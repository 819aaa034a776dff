# src/codek/services/chat_service.py
import logging
from typing import Any, Dict, List, Optional

from ..config.settings import Settings
from ..models.schemas import ChatMessage, CompletionRequest, ToolCall
from ..models.states import SessionState
from .conversation_service import ConversationService
from .request_session import SessionHandle
from .supervisor import SessionSupervisor

logger = logging.getLogger(__name__)


class ChatService:
    """Builds completion requests from conversation history and records the replies.

    A turn that ends in tool calls is recorded with those calls. The caller
    runs the tools and hands the results to ``submit_tool_results``, which
    starts the follow-up completion.
    """

    def __init__(
        self,
        supervisor: SessionSupervisor,
        conversations: ConversationService,
        settings: Settings,
        tools: Optional[List[Dict[str, Any]]] = None,
    ):
        self.supervisor = supervisor
        self.conversations = conversations
        self.settings = settings
        self.tools = tools

    async def build_messages(self, context_id: str, prompt: Optional[str] = None) -> List[ChatMessage]:
        messages = []
        if self.settings.system_prompt:
            messages.append(ChatMessage(role="system", content=self.settings.system_prompt))

        if await self.conversations.conversation_exists(context_id):
            for entry in await self.conversations.get_history(context_id):
                messages.append(ChatMessage(
                    role=entry["role"],
                    content=entry["content"],
                    tool_calls=entry.get("tool_calls", []),
                    tool_call_id=entry.get("tool_call_id"),
                ))

        if prompt is not None:
            messages.append(ChatMessage(role="user", content=prompt))
        return messages

    def _start(self, context_id: str, messages: List[ChatMessage], options: Dict[str, Any]) -> SessionHandle:
        if self.tools and "tools" not in options:
            options["tools"] = self.tools
        request = CompletionRequest(messages=messages, **options)
        handle = self.supervisor.start(context_id, request)
        logger.info(f"Started session {handle.session_id} for conversation {context_id}")
        return handle

    async def ask(self, context_id: str, prompt: str, **options: Any) -> SessionHandle:
        """Start a completion for ``prompt`` in the given conversation.

        Any request already streaming for the conversation is cancelled first.
        ``options`` are CompletionRequest fields (model, temperature, tools, ...).
        """
        if not prompt or not prompt.strip():
            raise ValueError("Prompt must not be empty")

        if not await self.conversations.conversation_exists(context_id):
            await self.conversations.create_conversation(context_id)

        return self._start(context_id, await self.build_messages(context_id, prompt), options)

    async def record(self, context_id: str, prompt: Optional[str], handle: SessionHandle) -> bool:
        """Wait for ``handle`` to finish and store the exchange if it completed.

        ``prompt`` is None for a follow-up turn after tool results.
        """
        terminal = await handle.wait()
        if terminal.state is not SessionState.COMPLETED:
            logger.info(f"Not recording session {handle.session_id}: {terminal.state.value}")
            return False

        content = handle.content
        tool_calls = [call for call in handle.tool_calls if call.is_complete]
        if not content.strip() and not tool_calls:
            logger.info(f"Not recording session {handle.session_id}: empty response")
            return False

        if prompt is not None:
            await self.conversations.add_message(context_id, "user", prompt)
        await self.conversations.add_message(
            context_id,
            "assistant",
            content or None,
            tool_calls=[call.model_dump() for call in tool_calls],
        )
        if tool_calls:
            logger.info(f"Session {handle.session_id} requested {len(tool_calls)} tool call(s)")
        return True

    async def pending_tool_calls(self, context_id: str) -> List[ToolCall]:
        """Tool calls of the latest assistant turn that have no result yet."""
        answered = set()
        for entry in reversed(await self.conversations.get_history(context_id)):
            if entry["role"] == "tool":
                answered.add(entry.get("tool_call_id"))
                continue
            if entry["role"] == "assistant" and entry.get("tool_calls"):
                return [ToolCall(**call) for call in entry["tool_calls"] if call["id"] not in answered]
            break
        return []

    async def submit_tool_results(self, context_id: str, results: Dict[str, str], **options: Any) -> SessionHandle:
        """Record a result for every pending tool call and start the follow-up completion.

        ``results`` maps tool call id to the text returned to the model; a
        failed tool should still report its error as text.
        """
        pending = await self.pending_tool_calls(context_id)
        if not pending:
            raise ValueError(f"Conversation {context_id} has no pending tool calls")

        pending_ids = {call.id for call in pending}
        unknown = set(results) - pending_ids
        if unknown:
            raise ValueError(f"Unknown tool call id(s): {', '.join(sorted(unknown))}")
        missing = pending_ids - set(results)
        if missing:
            raise ValueError(f"Missing results for tool call id(s): {', '.join(sorted(missing))}")

        for call in pending:
            await self.conversations.add_message(context_id, "tool", results[call.id], tool_call_id=call.id)

        return self._start(context_id, await self.build_messages(context_id), options)
