"""
Error taxonomy for the streaming completion pipeline.
"""
from typing import Optional


class StreamError(Exception):
    """Base class for failures that terminate a completion stream."""

    error_kind = "internal"

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class DecodeError(StreamError):
    """Malformed event framing or payload."""

    error_kind = "decode"


class StreamConnectionError(StreamError):
    """DNS/TCP/TLS failure, non-2xx HTTP status or idle-read timeout."""

    error_kind = "connection"

    def __init__(self, reason: str, status: Optional[int] = None):
        super().__init__(reason)
        self.status = status


class UpstreamError(StreamError):
    """The completion backend reported an error event."""

    error_kind = "upstream"


class InvalidTransitionError(StreamError):
    """A session state transition that the state machine does not allow."""


ERROR_KINDS = {
    DecodeError.error_kind: DecodeError,
    StreamConnectionError.error_kind: StreamConnectionError,
    UpstreamError.error_kind: UpstreamError,
}


def error_for_source(source: str, reason: str) -> StreamError:
    """Build the exception matching an ErrorEvent source."""
    error_class = ERROR_KINDS.get(source, StreamError)
    return error_class(reason)
