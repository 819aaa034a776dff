"""
Protocol events decoded from a completion event-stream.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union


class EventType(Enum):
    """Wire-level ``type`` discriminators understood by the decoder."""
    DELTA = "delta"
    DONE = "done"
    ERROR = "error"
    TOOL_CALL = "tool_call"


class ErrorSource(Enum):
    """Where a stream failure originated."""
    DECODE = "decode"
    UPSTREAM = "upstream"
    CONNECTION = "connection"


@dataclass(frozen=True)
class Delta:
    """A fragment of generated text."""
    text: str


@dataclass(frozen=True)
class ToolCallDelta:
    """A fragment of a streamed tool call, merged by ``index``."""
    index: int
    call_id: Optional[str] = None
    name: Optional[str] = None
    arguments: str = ""


@dataclass(frozen=True)
class ErrorEvent:
    """Terminal failure event."""
    reason: str
    source: str = ErrorSource.UPSTREAM.value


@dataclass(frozen=True)
class Done:
    """Terminal success event."""
    finish_reason: Optional[str] = None


StreamEvent = Union[Delta, ToolCallDelta, ErrorEvent, Done]

STREAM_CLOSED_UNEXPECTEDLY = "stream closed unexpectedly"


def is_terminal(event: StreamEvent) -> bool:
    """Return True for events that end a stream."""
    return isinstance(event, (Done, ErrorEvent))
