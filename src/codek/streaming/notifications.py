"""
Notifications delivered to the UI for one session: incremental render diffs
followed by exactly one Terminal.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Union

from ..models.states import SessionState


class BlockKind(Enum):
    """Kinds of rendered markdown blocks."""
    DOCUMENT = "document"
    PARAGRAPH = "paragraph"
    HEADING = "heading"
    CODE_FENCE = "code_fence"
    LIST = "list"
    BLOCKQUOTE = "blockquote"
    TABLE = "table"
    THEMATIC_BREAK = "thematic_break"
    BLANK = "blank"


@dataclass(frozen=True)
class BlockOpened:
    id: int
    kind: BlockKind


@dataclass(frozen=True)
class BlockExtended:
    """``text`` is the newly appended part of the open block."""
    id: int
    text: str


@dataclass(frozen=True)
class BlockFinalized:
    """The block is immutable from here on; ``content`` is its full source text."""
    id: int
    kind: BlockKind
    content: str
    html: str = ""
    info: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Terminal:
    """Final notification of a session; sent exactly once."""
    state: SessionState
    reason: Optional[str] = None
    error_kind: Optional[str] = None

    def __post_init__(self):
        if not self.state.is_terminal:
            raise ValueError(f"Terminal notification requires a terminal state, got {self.state.value}")


RenderDiff = Union[BlockOpened, BlockExtended, BlockFinalized]
Notification = Union[BlockOpened, BlockExtended, BlockFinalized, Terminal]
