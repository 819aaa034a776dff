"""
Fragment assembly: ordered StreamEvents into an append-only content buffer.
"""
from dataclasses import dataclass
from typing import Dict, List, Optional
import logging

from ..models.schemas import ToolCall
from ..models.states import AssemblerState
from .events import Delta, Done, ErrorEvent, StreamEvent, ToolCallDelta

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Growth:
    """Notification that the buffer grew by ``text`` starting at ``offset``."""
    offset: int
    text: str

    @property
    def length(self) -> int:
        return len(self.text)

    @property
    def end(self) -> int:
        return self.offset + len(self.text)


class ContentBuffer:
    """Append-only text accumulated for one request."""

    def __init__(self):
        self._fragments: List[str] = []
        self._length = 0

    def __len__(self) -> int:
        return self._length

    def append(self, text: str) -> Growth:
        growth = Growth(offset=self._length, text=text)
        self._fragments.append(text)
        self._length += len(text)
        return growth

    def getvalue(self) -> str:
        if len(self._fragments) > 1:
            self._fragments = ["".join(self._fragments)]
        return self._fragments[0] if self._fragments else ""

    def view(self, start: int = 0, end: Optional[int] = None) -> str:
        """Read-only slice of the buffer."""
        return self.getvalue()[start:end]


class _PendingToolCall:
    def __init__(self):
        self.call_id: Optional[str] = None
        self.name: Optional[str] = None
        self.arguments: List[str] = []

    def merge(self, fragment: ToolCallDelta):
        if self.call_id is None and fragment.call_id is not None:
            self.call_id = fragment.call_id
        if self.name is None and fragment.name is not None:
            self.name = fragment.name
        self.arguments.append(fragment.arguments)

    def build(self) -> ToolCall:
        return ToolCall(id=self.call_id, name=self.name, arguments="".join(self.arguments))


class FragmentAssembler:
    """Interprets decoded events as the content stream of one request.

    ``consume`` returns a Growth for every non-empty delta, in decode order,
    and stops consuming once ``done`` or ``error`` has been seen.
    """

    def __init__(self, buffer: Optional[ContentBuffer] = None):
        self.buffer = buffer if buffer is not None else ContentBuffer()
        self.state = AssemblerState.ASSEMBLING
        self.failure: Optional[ErrorEvent] = None
        self.finish_reason: Optional[str] = None
        self._tool_calls: Dict[int, _PendingToolCall] = {}

    @property
    def is_terminal(self) -> bool:
        return self.state is not AssemblerState.ASSEMBLING

    @property
    def tool_calls(self) -> List[ToolCall]:
        """Merged tool calls, ordered by index; only those with id and name."""
        calls = [self._tool_calls[index].build() for index in sorted(self._tool_calls)]
        return [call for call in calls if call.is_complete]

    def consume(self, event: StreamEvent) -> Optional[Growth]:
        if self.is_terminal:
            logger.warning(f"Ignoring {type(event).__name__} after assembler reached {self.state.value}")
            return None

        if isinstance(event, Delta):
            if not event.text:
                return None
            return self.buffer.append(event.text)
        elif isinstance(event, ToolCallDelta):
            self._tool_calls.setdefault(event.index, _PendingToolCall()).merge(event)
            return None
        elif isinstance(event, ErrorEvent):
            self.state = AssemblerState.FAILED
            self.failure = event
            logger.info(f"Stream failed ({event.source}): {event.reason}")
            return None
        elif isinstance(event, Done):
            self.state = AssemblerState.COMPLETED
            self.finish_reason = event.finish_reason
            if event.finish_reason == "tool_calls" and not self.tool_calls:
                logger.warning("Model finished with tool_calls but no complete tool call was received")
            return None
        else:
            raise TypeError(f"Unsupported stream event: {event!r}")
