"""
Event-stream decoder: raw response bytes in, StreamEvents out.

Framing follows the standard event-stream rules (``data:`` lines, blank-line
dispatch, ``:`` comments, CR/LF/CRLF endings). Payloads are JSON objects in
either the native ``{"type": ...}`` shape or the OpenAI-compatible
``{"choices": [{"delta": ...}]}`` chunk shape; the literal ``[DONE]`` ends
the stream.
"""
import codecs
import json
import logging
import re
from typing import Any, AsyncGenerator, AsyncIterable, Dict, List, Optional

from .errors import DecodeError
from .events import (
    STREAM_CLOSED_UNEXPECTEDLY,
    Delta,
    Done,
    ErrorEvent,
    ErrorSource,
    EventType,
    StreamEvent,
    ToolCallDelta,
    is_terminal,
)

logger = logging.getLogger(__name__)

_LINE_END = re.compile(r"\r\n|\r|\n")
DONE_SENTINEL = "[DONE]"


class EventDecoder:
    """Incremental decoder for one connection.

    ``feed`` may be called with arbitrarily split chunks; partial lines and
    partial events are kept until their terminator arrives. Once a terminal
    event has been produced the decoder ignores further input.
    """

    def __init__(self):
        self._utf8 = codecs.getincrementaldecoder("utf-8")()
        self._buffer = ""
        self._data_lines: List[str] = []
        self._event_name = ""
        self._finished = False
        self.last_event_id = ""
        self.retry: Optional[int] = None

    @property
    def finished(self) -> bool:
        return self._finished

    def feed(self, chunk: bytes) -> List[StreamEvent]:
        """Decode one network chunk into zero or more events."""
        if self._finished or not chunk:
            return []
        try:
            text = self._utf8.decode(chunk)
        except UnicodeDecodeError as e:
            logger.warning(f"Invalid UTF-8 in event stream: {e}")
            return self._fail(f"invalid UTF-8 in event stream: {e.reason}")
        return self._consume_text(text)

    def close(self) -> List[StreamEvent]:
        """Flush pending input at end of stream.

        A stream that ends without ``done``/``error`` yields a synthesized
        connection error.
        """
        if self._finished:
            return []
        try:
            tail = self._utf8.decode(b"", final=True)
        except UnicodeDecodeError as e:
            return self._fail(f"invalid UTF-8 in event stream: {e.reason}")

        events = self._consume_text(tail)
        if not self._finished and self._buffer:
            line = self._buffer[:-1] if self._buffer.endswith("\r") else self._buffer
            self._buffer = ""
            events.extend(self._process_line(line))
        if not self._finished:
            events.extend(self._dispatch())
        if not self._finished:
            logger.info("Event stream ended without a terminal event")
            self._finished = True
            events.append(ErrorEvent(STREAM_CLOSED_UNEXPECTEDLY, ErrorSource.CONNECTION.value))
        return events

    def _consume_text(self, text: str) -> List[StreamEvent]:
        self._buffer += text
        events: List[StreamEvent] = []
        while not self._finished:
            match = _LINE_END.search(self._buffer)
            if match is None:
                break
            # A lone CR at the very end may be the first half of CRLF
            if match.group() == "\r" and match.end() == len(self._buffer):
                break
            line = self._buffer[:match.start()]
            self._buffer = self._buffer[match.end():]
            events.extend(self._process_line(line))
        return events

    def _process_line(self, line: str) -> List[StreamEvent]:
        if line == "":
            return self._dispatch()
        if line.startswith(":"):
            return []

        field, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]

        if field == "data":
            self._data_lines.append(value)
        elif field == "event":
            self._event_name = value
        elif field == "id":
            if "\0" not in value:
                self.last_event_id = value
        elif field == "retry":
            if value.isdigit():
                self.retry = int(value)
        else:
            logger.debug(f"Ignoring unknown event-stream field: {field!r}")
        return []

    def _dispatch(self) -> List[StreamEvent]:
        if not self._data_lines:
            self._event_name = ""
            return []
        data = "\n".join(self._data_lines)
        event_name = self._event_name or "message"
        self._data_lines = []
        self._event_name = ""
        return self._parse_payload(data, event_name)

    def _parse_payload(self, data: str, event_name: str) -> List[StreamEvent]:
        stripped = data.strip()
        if stripped == DONE_SENTINEL:
            self._finished = True
            return [Done()]

        try:
            payload = json.loads(stripped)
        except json.JSONDecodeError as e:
            logger.warning(f"Failed to parse event payload: {data!r}")
            return self._fail(f"malformed event payload: {e.msg}")

        try:
            if not isinstance(payload, dict):
                raise DecodeError("malformed event payload: expected a JSON object")
            if "type" in payload:
                events = self._from_typed(payload)
            elif "choices" in payload or "error" in payload:
                events = self._from_chunk(payload)
            else:
                raise DecodeError("malformed event payload: no type discriminator")
        except DecodeError as e:
            logger.warning(f"Rejected {event_name} event: {e.reason}")
            return self._fail(e.reason)

        accepted: List[StreamEvent] = []
        for event in events:
            accepted.append(event)
            if is_terminal(event):
                self._finished = True
                break
        logger.debug(f"Decoded {len(accepted)} event(s) from {event_name} record")
        return accepted

    def _from_typed(self, payload: Dict[str, Any]) -> List[StreamEvent]:
        event_type = payload.get("type")

        if event_type == EventType.DELTA.value:
            content = payload.get("content", "")
            if not isinstance(content, str):
                raise DecodeError("malformed event payload: delta content must be a string")
            return [Delta(content)] if content else []
        elif event_type == EventType.DONE.value:
            finish_reason = payload.get("finish_reason")
            return [Done(finish_reason if isinstance(finish_reason, str) else None)]
        elif event_type == EventType.ERROR.value:
            return [ErrorEvent(_error_reason(payload), ErrorSource.UPSTREAM.value)]
        elif event_type == EventType.TOOL_CALL.value:
            return [_tool_call_delta(payload)]
        else:
            logger.debug(f"Unknown event type '{event_type}', skipping")
            return []

    def _from_chunk(self, payload: Dict[str, Any]) -> List[StreamEvent]:
        error = payload.get("error")
        if error is not None:
            return [ErrorEvent(_error_reason(error), ErrorSource.UPSTREAM.value)]

        choices = payload.get("choices")
        if not isinstance(choices, list):
            raise DecodeError("malformed event payload: choices must be a list")
        if not choices:
            # Usage-only chunks carry no choices
            return []
        choice = choices[0]
        if not isinstance(choice, dict):
            raise DecodeError("malformed event payload: choice must be an object")

        delta = choice.get("delta") or {}
        if not isinstance(delta, dict):
            raise DecodeError("malformed event payload: delta must be an object")

        events: List[StreamEvent] = []
        tool_calls = delta.get("tool_calls")
        if tool_calls:
            if not isinstance(tool_calls, list):
                raise DecodeError("malformed event payload: tool_calls must be a list")
            events.extend(_tool_call_delta(entry) for entry in tool_calls)

        content = delta.get("content")
        if content is not None:
            if not isinstance(content, str):
                raise DecodeError("malformed event payload: delta content must be a string")
            if content:
                events.append(Delta(content))

        finish_reason = choice.get("finish_reason")
        if finish_reason is not None:
            events.append(Done(str(finish_reason)))
        return events

    def _fail(self, reason: str) -> List[StreamEvent]:
        self._finished = True
        return [ErrorEvent(reason, ErrorSource.DECODE.value)]


def _error_reason(error: Any) -> str:
    if isinstance(error, str) and error:
        return error
    if isinstance(error, dict):
        for key in ("reason", "message", "content"):
            value = error.get(key)
            if isinstance(value, str) and value:
                return value
        nested = error.get("error")
        if nested is not None and nested is not error:
            return _error_reason(nested)
    return "unknown upstream error"


def _tool_call_delta(entry: Any) -> ToolCallDelta:
    if not isinstance(entry, dict):
        raise DecodeError("malformed event payload: tool call fragment must be an object")

    index = entry.get("index", 0)
    if isinstance(index, bool) or not isinstance(index, int):
        raise DecodeError("malformed event payload: tool call index must be an integer")

    function = entry.get("function")
    source = function if isinstance(function, dict) else entry
    name = source.get("name")
    arguments = source.get("arguments")
    if arguments is None:
        arguments = ""
    elif not isinstance(arguments, str):
        arguments = json.dumps(arguments)

    call_id = entry.get("id")
    return ToolCallDelta(
        index=index,
        call_id=call_id if isinstance(call_id, str) else None,
        name=name if isinstance(name, str) else None,
        arguments=arguments,
    )


async def decode_stream(
    chunks: AsyncIterable[bytes],
    decoder: Optional[EventDecoder] = None,
) -> AsyncGenerator[StreamEvent, None]:
    """Lazily decode an async byte stream; stops after the terminal event."""
    decoder = decoder or EventDecoder()
    async for chunk in chunks:
        for event in decoder.feed(chunk):
            yield event
        if decoder.finished:
            return
    for event in decoder.close():
        yield event
