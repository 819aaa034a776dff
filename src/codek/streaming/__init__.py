"""
Streaming pipeline: event-stream decoding, fragment assembly and incremental rendering.
"""
from .decoder import EventDecoder, decode_stream
from .assembler import ContentBuffer, FragmentAssembler, Growth
from .renderer import IncrementalRenderer, RenderNode, RenderTree
from .events import (
    StreamEvent,
    Delta,
    ToolCallDelta,
    ErrorEvent,
    Done,
    is_terminal,
)
from .notifications import (
    BlockKind,
    BlockOpened,
    BlockExtended,
    BlockFinalized,
    Terminal,
    RenderDiff,
    Notification,
)
from .errors import (
    StreamError,
    DecodeError,
    StreamConnectionError,
    UpstreamError,
    InvalidTransitionError,
)

__all__ = [
    "EventDecoder",
    "decode_stream",
    "ContentBuffer",
    "FragmentAssembler",
    "Growth",
    "IncrementalRenderer",
    "RenderNode",
    "RenderTree",
    "StreamEvent",
    "Delta",
    "ToolCallDelta",
    "ErrorEvent",
    "Done",
    "is_terminal",
    "BlockKind",
    "BlockOpened",
    "BlockExtended",
    "BlockFinalized",
    "Terminal",
    "RenderDiff",
    "Notification",
    "StreamError",
    "DecodeError",
    "StreamConnectionError",
    "UpstreamError",
    "InvalidTransitionError",
]
