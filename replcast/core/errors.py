"""Error types raised by replcast."""

from typing import List, Optional


class ReplcastError(Exception):
    """Base class for all replcast errors."""


class ConfigError(ReplcastError):
    """Raised when the server address cannot be resolved."""


class ServerUnreachable(ReplcastError):
    """Raised when no connection can be opened to the nREPL server."""


class ResponseTimeout(ReplcastError):
    """Raised when a request gets no message back within the hard ceiling."""


class ProtocolError(ReplcastError):
    """Raised when the byte stream cannot be decoded."""


class MalformedEncoding(ProtocolError):
    """Raised for bytes that are not valid bencode."""


class TruncatedStream(ProtocolError):
    """Raised when the stream ends in the middle of a value."""


class UnbalancedSource(ReplcastError):
    """Raised when source text has unterminated strings or delimiters."""


class SessionCloneFailed(ReplcastError):
    """Raised when a clone exchange returns no session token."""


class Cancelled(ReplcastError):
    """Raised when the run was interrupted by the user."""


class RemoteEvaluationError(ReplcastError):
    """Raised when the server reports an exception for evaluated code."""

    remote_class: str
    remote_message: str
    frames: List[str]

    def __init__(
        self,
        remote_class: str,
        remote_message: str,
        frames: Optional[List[str]] = None,
    ) -> None:
        """
        Initialize a remote exception wrapper.

        Args:
            remote_class: Exception class name reported by the server
            remote_message: Exception message reported by the server
            frames: Formatted stack frames fetched via ``stacktrace``
        """
        self.remote_class = remote_class
        self.remote_message = remote_message
        self.frames = list(frames or [])
        formatted = f"{remote_class}: {remote_message}"
        if self.frames:
            formatted += "\n" + "\n".join(f"  at {frame}" for frame in self.frames)
        super().__init__(formatted)
