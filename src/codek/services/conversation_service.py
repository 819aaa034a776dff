# src/codek/services/conversation_service.py
import uuid
import asyncio
from typing import Dict, List, Any, Optional
from datetime import datetime, timezone
import logging

logger = logging.getLogger(__name__)

class ConversationService:
    """
    Service to manage conversation contexts and their message history.
    History is kept in memory for the lifetime of the process.
    """

    def __init__(self):
        self._conversations: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def create_conversation(self, context_id: Optional[str] = None) -> str:
        """Create a conversation and return its context ID."""
        context_id = context_id or str(uuid.uuid4())

        async with self._lock:
            if context_id in self._conversations:
                raise ValueError(f"Conversation {context_id} already exists")
            now = datetime.now(timezone.utc)
            self._conversations[context_id] = {
                "id": context_id,
                "created_at": now,
                "last_activity": now,
                "messages": [],
            }

        logger.info(f"Created conversation: {context_id}")
        return context_id

    async def conversation_exists(self, context_id: str) -> bool:
        async with self._lock:
            return context_id in self._conversations

    async def delete_conversation(self, context_id: str) -> None:
        async with self._lock:
            if context_id not in self._conversations:
                raise ValueError(f"Conversation {context_id} not found")

            del self._conversations[context_id]

        logger.info(f"Deleted conversation: {context_id}")

    async def add_message(
        self,
        context_id: str,
        role: str,
        content: Optional[str],
        tool_calls: Optional[List[Dict[str, Any]]] = None,
        tool_call_id: Optional[str] = None,
    ) -> None:
        """Append a message to the conversation history.

        Assistant turns that requested tools carry ``tool_calls``; tool results
        carry the ``tool_call_id`` they answer.
        """
        message: Dict[str, Any] = {
            "role": role,
            "content": content,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if tool_calls:
            message["tool_calls"] = tool_calls
        if tool_call_id is not None:
            message["tool_call_id"] = tool_call_id

        async with self._lock:
            conversation = self._conversations.get(context_id)
            if conversation is None:
                raise ValueError(f"Conversation {context_id} not found")
            conversation["messages"].append(message)
            conversation["last_activity"] = datetime.now(timezone.utc)

        logger.debug(f"Added {role} message to conversation {context_id}")

    async def get_history(self, context_id: str) -> List[Dict[str, Any]]:
        async with self._lock:
            conversation = self._conversations.get(context_id)
            if conversation is None:
                raise ValueError(f"Conversation {context_id} not found")
            return list(conversation["messages"])

    async def cleanup(self) -> None:
        async with self._lock:
            conversation_count = len(self._conversations)
            self._conversations.clear()

        logger.info(f"Cleaned up {conversation_count} conversations")

    async def get_stats(self) -> Dict[str, Any]:
        """Get statistics about stored conversations (for monitoring)."""
        async with self._lock:
            return {
                "total_conversations": len(self._conversations),
                "conversations": [
                    {
                        "id": context_id,
                        "created_at": data["created_at"].isoformat(),
                        "last_activity": data["last_activity"].isoformat(),
                        "message_count": len(data["messages"]),
                    }
                    for context_id, data in self._conversations.items()
                ],
            }
