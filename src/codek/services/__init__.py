from .request_session import NotificationChannel, RequestSession, SessionHandle
from .supervisor import SessionSupervisor
from .conversation_service import ConversationService
from .chat_service import ChatService

__all__ = [
    "NotificationChannel",
    "RequestSession",
    "SessionHandle",
    "SessionSupervisor",
    "ConversationService",
    "ChatService",
]
