"""
Incremental markdown renderer.

The renderer keeps every finalized block immutable and only re-examines the
open region: the text after the last finalized offset. Each growth
notification resumes scanning at the start of the current line of that
region, so an append to an in-progress paragraph never walks earlier blocks.

Block nodes live in an arena (``RenderTree.nodes``) and refer to each other
by integer id.
"""
import bisect
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, NamedTuple, Optional

from markdown_it import MarkdownIt

from .assembler import Growth
from .notifications import (
    BlockExtended,
    BlockFinalized,
    BlockKind,
    BlockOpened,
    RenderDiff,
)

logger = logging.getLogger(__name__)

_FENCE = re.compile(r"^ {0,3}(?P<fence>`{3,}|~{3,})(?P<info>.*)$")
_CLOSING_FENCE = re.compile(r"^ {0,3}(?P<fence>`+|~+)[ \t]*$")
_HEADING = re.compile(r"^ {0,3}(?P<hashes>#{1,6})(?:[ \t]|$)")
_THEMATIC_BREAK = re.compile(r"^ {0,3}([-*_])(?:[ \t]*\1){2,}[ \t]*$")
_BULLET_ITEM = re.compile(r"^ {0,3}[-+*](?:[ \t]|$)")
_ORDERED_ITEM = re.compile(r"^ {0,3}(?P<number>\d{1,9})[.)](?:[ \t]|$)")
_BLOCKQUOTE = re.compile(r"^ {0,3}>")
_TABLE_ROW = re.compile(r"^ {0,3}\|")
_CITATION = re.compile(r"^(?P<start>\d+):(?P<end>\d+):(?P<path>\S.*)$")

_SETEXT_UNDERLINE = re.compile(r"^ {0,3}(?P<char>=|-)(?P=char)*[ \t]*$")

# Partial lines that could still turn into a different kind of block.
# A backtick fence stays undecided until its info string is complete,
# since a later backtick in it means the line is not a fence.
_AMBIGUOUS_PREFIXES = (
    re.compile(r"^ {0,3}(?:`{1,2}|`{3,}[^`]*|~+)$"),
    re.compile(r"^ {0,3}#{1,6}$"),
    re.compile(r"^ {0,3}([-*_+])(?:[ \t]*\1)*[ \t]*$"),
    re.compile(r"^ {0,3}\d{1,9}[.)]?$"),
)

_SINGLE_LINE_KINDS = (BlockKind.HEADING, BlockKind.THEMATIC_BREAK)

_markdown = MarkdownIt("commonmark", {"html": False}).enable("table")


class _LineClass(NamedTuple):
    kind: Optional[BlockKind]  # None while a partial line is ambiguous
    meta: Dict[str, Any]


_AMBIGUOUS = _LineClass(None, {})
_BLANK = _LineClass(BlockKind.BLANK, {})

# Scanner actions
_HOLD = "hold"
_GAP = "gap"
_OPEN = "open"
_CONTINUE = "continue"
_DEFER = "defer"
_CLOSE = "close"
_SPLIT = "split"


@dataclass
class RenderNode:
    """A node of the render tree with a span over the content buffer."""
    id: int
    kind: BlockKind
    start: int
    end: int
    parent: Optional[int] = None
    children: List[int] = field(default_factory=list)
    finalized: bool = False
    info: Dict[str, Any] = field(default_factory=dict)


class RenderTree:
    """Arena of render nodes; node 0 is the document root."""

    def __init__(self):
        self.nodes: List[RenderNode] = [RenderNode(id=0, kind=BlockKind.DOCUMENT, start=0, end=0)]

    @property
    def root(self) -> RenderNode:
        return self.nodes[0]

    def get(self, node_id: int) -> RenderNode:
        return self.nodes[node_id]

    def add_block(self, kind: BlockKind, start: int) -> RenderNode:
        node = RenderNode(id=len(self.nodes), kind=kind, start=start, end=start, parent=self.root.id)
        self.nodes.append(node)
        self.root.children.append(node.id)
        return node

    def extend(self, node_id: int, end: int) -> RenderNode:
        node = self.nodes[node_id]
        if node.finalized:
            raise ValueError(f"Render node {node_id} is finalized")
        node.end = end
        self.root.end = max(self.root.end, end)
        return node

    def finalize(self, node_id: int, end: int, info: Optional[Dict[str, Any]] = None) -> RenderNode:
        node = self.extend(node_id, end)
        node.finalized = True
        if info:
            node.info.update(info)
        return node

    def blocks(self) -> List[RenderNode]:
        return [self.nodes[node_id] for node_id in self.root.children]

    def leaves(self) -> List[RenderNode]:
        leaves: List[RenderNode] = []
        stack = list(reversed(self.root.children))
        while stack:
            node = self.nodes[stack.pop()]
            if node.children:
                stack.extend(reversed(node.children))
            else:
                leaves.append(node)
        return leaves


class RegionText:
    """
    Text of the open region kept as the appended pieces.

    Positions are relative to the region start. Appending never copies
    earlier text, and reads only touch the pieces they overlap.
    """

    def __init__(self):
        self._pieces: List[str] = []
        self._starts: List[int] = []  # absolute offset of each piece
        self._start = 0
        self._end = 0

    def __len__(self) -> int:
        return self._end - self._start

    def append(self, text: str):
        if text:
            self._pieces.append(text)
            self._starts.append(self._end)
            self._end += len(text)

    def _piece_at(self, position: int) -> int:
        return bisect.bisect_right(self._starts, position) - 1

    def slice(self, start: int, end: Optional[int] = None) -> str:
        first = self._start + start
        last = self._end if end is None else min(self._start + end, self._end)
        if last <= first:
            return ""
        parts = []
        index = self._piece_at(first)
        while index < len(self._pieces) and self._starts[index] < last:
            offset = self._starts[index]
            parts.append(self._pieces[index][max(first - offset, 0):last - offset])
            index += 1
        return "".join(parts)

    def find(self, char: str, start: int) -> int:
        position = self._start + start
        if position >= self._end:
            return -1
        index = self._piece_at(position)
        while index < len(self._pieces):
            offset = self._starts[index]
            found = self._pieces[index].find(char, max(position - offset, 0))
            if found != -1:
                return offset + found - self._start
            index += 1
        return -1

    def drop(self, count: int):
        """Forget the first ``count`` characters."""
        self._start = min(self._start + count, self._end)
        index = self._piece_at(self._start)
        if index > 0:
            del self._pieces[:index]
            del self._starts[:index]


@dataclass
class _OpenBlock:
    node_id: int
    kind: BlockKind
    meta: Dict[str, Any]
    first_line: int  # region index of the block's opening line
    emitted: int = 0  # region chars already sent as BlockExtended
    held_from: Optional[int] = None  # start of blank lines not yet attributed


class IncrementalRenderer:
    """Turns content-buffer growth into ordered block diffs."""

    def __init__(self):
        self.tree = RenderTree()
        self._region = RegionText()
        self._cursor = 0
        self._line_start = 0
        self._open: Optional[_OpenBlock] = None
        self._finished = False

    @property
    def end_offset(self) -> int:
        return self._cursor + len(self._region)

    @property
    def finalized_offset(self) -> int:
        return self._cursor

    @property
    def finished(self) -> bool:
        return self._finished

    def apply(self, growth: Growth) -> List[RenderDiff]:
        """Re-evaluate the open block after the buffer grew."""
        if self._finished:
            raise RuntimeError("renderer already finished")
        if growth.offset != self.end_offset:
            raise ValueError(
                f"growth at offset {growth.offset} does not continue the buffer end {self.end_offset}"
            )
        diffs: List[RenderDiff] = []
        if not growth.text:
            return diffs
        self._region.append(growth.text)
        self._advance(diffs, final=False)
        return diffs

    def finish(self) -> List[RenderDiff]:
        """Force-finalize whatever is still open at end of stream."""
        if self._finished:
            return []
        diffs: List[RenderDiff] = []
        self._advance(diffs, final=True)
        if self._open is not None:
            self._open.held_from = None
            self._finalize(diffs, len(self._region))
        elif self._region:
            self._open_block(diffs, _BLANK)
            self._finalize(diffs, len(self._region))
        self._finished = True
        logger.debug(f"Renderer finished with {len(self.tree.root.children)} blocks")
        return diffs

    def _advance(self, diffs: List[RenderDiff], final: bool):
        visible_end: Optional[int] = None
        while self._line_start < len(self._region):
            region = self._region
            newline = region.find("\n", self._line_start)
            complete = newline != -1 or final
            line_end = newline + 1 if newline != -1 else len(region)
            body = region.slice(self._line_start, line_end).rstrip("\r\n")
            block = self._open

            if block is not None and self._line_start == block.first_line:
                if not complete:
                    visible_end = len(region)
                    break
                self._line_start = line_end
                if block.kind in _SINGLE_LINE_KINDS:
                    self._finalize(diffs, line_end)
                continue

            action, line_class = self._decide(block, body, complete)
            if action == _HOLD:
                break
            elif action == _GAP:
                self._line_start = line_end
            elif action == _OPEN:
                self._open_block(diffs, line_class)
            elif action == _DEFER:
                if block.held_from is None:
                    block.held_from = self._line_start
                self._line_start = line_end
            elif action == _CONTINUE:
                block.held_from = None
                if not complete:
                    visible_end = len(region)
                    break
                self._line_start = line_end
            elif action == _CLOSE:
                self._line_start = line_end
                self._finalize(diffs, line_end)
            elif action == _SPLIT:
                split_at = block.held_from if block.held_from is not None else self._line_start
                self._finalize(diffs, split_at)

        if self._open is not None:
            if visible_end is None:
                held = self._open.held_from
                visible_end = held if held is not None else self._line_start
            self._emit(diffs, visible_end)

    def _decide(self, block: Optional[_OpenBlock], body: str, complete: bool):
        line_class = _classify(body, complete)
        if block is None:
            if line_class.kind is None:
                return _HOLD, line_class
            if line_class.kind is BlockKind.BLANK:
                return _GAP, line_class
            return _OPEN, line_class

        kind = block.kind
        if kind is BlockKind.CODE_FENCE:
            fence = block.meta["fence"]
            closing = _CLOSING_FENCE.match(body)
            if closing and closing.group("fence")[0] == fence[0]:
                if not complete:
                    return _HOLD, line_class
                if len(closing.group("fence")) >= len(fence):
                    return _CLOSE, line_class
            return _CONTINUE, line_class

        if line_class.kind is None:
            return _HOLD, line_class

        if kind is BlockKind.PARAGRAPH:
            if complete and _SETEXT_UNDERLINE.match(body):
                return _CLOSE, line_class
            if line_class.kind is BlockKind.BLANK or _interrupts_paragraph(line_class):
                return _SPLIT, line_class
            return _CONTINUE, line_class
        elif kind is BlockKind.LIST:
            if line_class.kind is BlockKind.BLANK:
                return _DEFER, line_class
            if line_class.kind is BlockKind.LIST or _indent(body) >= 2:
                return _CONTINUE, line_class
            if block.held_from is None and line_class.kind is BlockKind.PARAGRAPH:
                return _CONTINUE, line_class
            return _SPLIT, line_class
        elif kind is BlockKind.BLOCKQUOTE:
            if line_class.kind in (BlockKind.BLOCKQUOTE, BlockKind.PARAGRAPH):
                return _CONTINUE, line_class
            return _SPLIT, line_class
        elif kind is BlockKind.TABLE:
            if line_class.kind is BlockKind.TABLE:
                return _CONTINUE, line_class
            return _SPLIT, line_class
        return _SPLIT, line_class

    def _open_block(self, diffs: List[RenderDiff], line_class: _LineClass):
        node = self.tree.add_block(line_class.kind, self._cursor)
        self._open = _OpenBlock(
            node_id=node.id,
            kind=line_class.kind,
            meta=dict(line_class.meta),
            first_line=self._line_start,
        )
        diffs.append(BlockOpened(id=node.id, kind=node.kind))

    def _emit(self, diffs: List[RenderDiff], visible_end: int):
        block = self._open
        if visible_end > block.emitted:
            diffs.append(BlockExtended(id=block.node_id, text=self._region.slice(block.emitted, visible_end)))
            block.emitted = visible_end
        # The open node spans the whole unsettled suffix
        self.tree.extend(block.node_id, self.end_offset)

    def _finalize(self, diffs: List[RenderDiff], end: int):
        block = self._open
        if end > block.emitted:
            diffs.append(BlockExtended(id=block.node_id, text=self._region.slice(block.emitted, end)))
            block.emitted = end

        content = self._region.slice(0, end)
        info = _block_info(block, content)
        self.tree.finalize(block.node_id, self._cursor + end, info)
        diffs.append(BlockFinalized(
            id=block.node_id,
            kind=block.kind,
            content=content,
            html=_render_html(block, content, info),
            info=info,
        ))

        self._region.drop(end)
        self._cursor += end
        self._line_start -= end
        self._open = None


def _classify(body: str, complete: bool) -> _LineClass:
    if not body.strip():
        return _BLANK if complete else _AMBIGUOUS
    if not complete and any(pattern.match(body) for pattern in _AMBIGUOUS_PREFIXES):
        return _AMBIGUOUS

    match = _FENCE.match(body)
    if match and not (match.group("fence")[0] == "`" and "`" in match.group("info")):
        return _LineClass(BlockKind.CODE_FENCE, {"fence": match.group("fence")})
    match = _HEADING.match(body)
    if match:
        return _LineClass(BlockKind.HEADING, {"level": len(match.group("hashes"))})
    if _THEMATIC_BREAK.match(body):
        return _LineClass(BlockKind.THEMATIC_BREAK, {})
    if _BULLET_ITEM.match(body):
        return _LineClass(BlockKind.LIST, {"ordered": False})
    match = _ORDERED_ITEM.match(body)
    if match:
        return _LineClass(BlockKind.LIST, {"ordered": True, "start": int(match.group("number"))})
    if _BLOCKQUOTE.match(body):
        return _LineClass(BlockKind.BLOCKQUOTE, {})
    if _TABLE_ROW.match(body):
        return _LineClass(BlockKind.TABLE, {})
    return _LineClass(BlockKind.PARAGRAPH, {})


def _interrupts_paragraph(line_class: _LineClass) -> bool:
    if line_class.kind is BlockKind.LIST:
        # An ordered list may only interrupt a paragraph when it starts at 1
        return not line_class.meta["ordered"] or line_class.meta["start"] == 1
    return line_class.kind in (
        BlockKind.HEADING,
        BlockKind.CODE_FENCE,
        BlockKind.BLOCKQUOTE,
        BlockKind.THEMATIC_BREAK,
        BlockKind.TABLE,
    )


def _indent(body: str) -> int:
    expanded = body.expandtabs(4)
    return len(expanded) - len(expanded.lstrip(" "))


def _block_info(block: _OpenBlock, content: str) -> Dict[str, Any]:
    kind = block.kind
    if kind is BlockKind.HEADING:
        return {"level": block.meta["level"]}
    if kind is BlockKind.LIST:
        info = {"ordered": block.meta["ordered"]}
        if block.meta["ordered"]:
            info["start"] = block.meta["start"]
        return info
    if kind is BlockKind.PARAGRAPH:
        lines = content.splitlines()
        underline = _SETEXT_UNDERLINE.match(lines[-1]) if len(lines) > 1 else None
        if underline and lines[-2].strip():
            return {"level": 1 if underline.group("char") == "=" else 2}
        return {}
    if kind is not BlockKind.CODE_FENCE:
        return {}

    lines = content.splitlines()
    fence = block.meta["fence"]
    opening_index = next(i for i, line in enumerate(lines) if line.strip())
    info_string = _FENCE.match(lines[opening_index]).group("info").strip()
    closing = _CLOSING_FENCE.match(lines[-1]) if len(lines) > opening_index + 1 else None
    closed = bool(closing and closing.group("fence")[0] == fence[0] and len(closing.group("fence")) >= len(fence))

    info: Dict[str, Any] = {"language": "", "closed": closed}
    citation = _CITATION.match(info_string)
    if citation:
        info["citation"] = {
            "start_line": int(citation.group("start")),
            "end_line": int(citation.group("end")),
            "path": citation.group("path").strip(),
        }
    elif info_string:
        info["language"] = info_string.split()[0]
    return info


def _render_html(block: _OpenBlock, content: str, info: Dict[str, Any]) -> str:
    source = content
    if block.kind is BlockKind.BLANK:
        return ""
    if block.kind is BlockKind.CODE_FENCE and not info.get("closed"):
        # Best effort for a fence cut off by the end of the stream
        if not source.endswith("\n"):
            source += "\n"
        source += block.meta["fence"] + "\n"
    return _markdown.render(source)
