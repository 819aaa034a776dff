from .schemas import ChatMessage, CompletionRequest, ToolCall
from .states import AssemblerState, SessionState

__all__ = ["ChatMessage", "CompletionRequest", "ToolCall", "AssemblerState", "SessionState"]
