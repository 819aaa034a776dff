# src/codek/models/schemas.py
from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any, Literal, Union

class ToolCall(BaseModel):
    """A tool call requested by the model, assembled from streamed fragments."""
    id: Optional[str] = Field(None, description="Tool call identifier assigned by the backend")
    name: Optional[str] = Field(None, description="Function name to invoke")
    arguments: str = Field(default="", description="Raw JSON arguments string")

    @property
    def is_complete(self) -> bool:
        return bool(self.id and self.name)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }

class ChatMessage(BaseModel):
    """One message of a conversation sent to the completion backend."""
    role: Literal["system", "user", "assistant", "tool"] = Field(..., description="Message author role")
    content: Optional[str] = Field(None, description="Message text")
    tool_calls: List[ToolCall] = Field(default_factory=list, description="Tool calls made by the assistant")
    tool_call_id: Optional[str] = Field(None, description="Tool call this message answers")

    def to_payload(self) -> Dict[str, Any]:
        """Serialize in the chat-completions wire shape."""
        payload: Dict[str, Any] = {"role": self.role}
        if self.tool_calls and self.role == "assistant":
            payload["tool_calls"] = [call.to_payload() for call in self.tool_calls]
            payload["content"] = None
        elif self.role == "tool":
            payload["tool_call_id"] = self.tool_call_id
            payload["content"] = self.content or ""
        elif self.content is not None:
            payload["content"] = self.content
        else:
            payload["content"] = None if self.role == "assistant" else ""
        return payload

class CompletionRequest(BaseModel):
    """Request payload for one streamed completion.

    Options left unset fall back to the configured completion defaults.
    """
    messages: List[ChatMessage] = Field(..., min_length=1, description="Conversation sent to the model")
    model: Optional[str] = Field(None, description="Model identifier")
    temperature: Optional[float] = Field(None, ge=0.0, le=2.0, description="Sampling temperature")
    max_tokens: Optional[int] = Field(None, gt=0, description="Maximum tokens to generate")
    idle_timeout: Optional[float] = Field(None, gt=0, description="Seconds without bytes before the stream fails")
    tools: Optional[List[Dict[str, Any]]] = Field(None, description="Function tools the model may call")
    tool_choice: Optional[Union[str, Dict[str, Any]]] = Field(None, description="Tool selection; \"auto\" when tools are given")

    model_config = {
        "json_schema_extra": {
            "example": {
                "messages": [{"role": "user", "content": "Explain this function"}],
                "model": "claude-3.7-sonnet",
                "temperature": 0.2,
                "max_tokens": 2048,
                "idle_timeout": 30.0,
            }
        }
    }

    def to_payload(self, defaults: Dict[str, Any]) -> Dict[str, Any]:
        """Build the JSON body sent to the backend, filling unset options from ``defaults``."""
        max_tokens = self.max_tokens if self.max_tokens is not None else defaults.get("max_tokens")
        body: Dict[str, Any] = {
            "model": self.model or defaults.get("model"),
            "temperature": self.temperature if self.temperature is not None else defaults.get("temperature"),
            "stream": True,
            "messages": [message.to_payload() for message in self.messages],
        }
        if max_tokens is not None:
            body["max_tokens"] = max_tokens
        if self.tools:
            body["tools"] = self.tools
            body["tool_choice"] = self.tool_choice or "auto"
        return body

    def resolve_idle_timeout(self, defaults: Dict[str, Any]) -> Optional[float]:
        return self.idle_timeout if self.idle_timeout is not None else defaults.get("idle_timeout")
