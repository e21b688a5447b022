"""Bencode wire format for nREPL messages.

nREPL frames every message as a bencoded map. Four value types exist:

    byte-string:  <length>:<raw bytes>      e.g. 4:spam
    integer:      i<decimal digits>e        e.g. i42e
    list:         l<encoded values>e        e.g. l4:spami42ee
    map:          d<key><value>...e         e.g. d2:op5:clonee

Map keys are byte-strings emitted in lexicographic order, which keeps the
encoding canonical: the same request always produces the same bytes.

Decoding is streaming. ``BencodeDecoder`` consumes exactly the bytes of one
value from a file-like object and stops, leaving the stream positioned at the
next message. The transport relies on this to pull messages off a live socket
one at a time without knowing where they end in advance.
"""

import io
import uuid
from typing import Any, Dict, List, Optional, Union

from replcast.core.errors import MalformedEncoding, TruncatedStream

Message = Dict[str, Any]
BencodeValue = Union[bytes, int, List[Any], Dict[str, Any]]

_DIGITS = b"0123456789"


def encode(value: Any) -> bytes:
    """
    Encode a value to bencode.

    Args:
        value: dict, list/tuple, int, str or bytes (str is UTF-8 encoded)

    Returns:
        Encoded bytes

    Raises:
        TypeError: If the value (or a nested value) has no bencode form
    """
    out = bytearray()
    _encode_into(value, out)
    return bytes(out)


def _encode_into(value: Any, out: bytearray) -> None:
    if isinstance(value, bool):
        raise TypeError("Booleans have no bencode representation")
    if isinstance(value, str):
        value = value.encode("utf-8")
    if isinstance(value, (bytes, bytearray)):
        out += str(len(value)).encode("ascii") + b":" + value
    elif isinstance(value, int):
        out += b"i" + str(value).encode("ascii") + b"e"
    elif isinstance(value, (list, tuple)):
        out += b"l"
        for item in value:
            _encode_into(item, out)
        out += b"e"
    elif isinstance(value, dict):
        out += b"d"
        keys = {}
        for key in value:
            raw = key.encode("utf-8") if isinstance(key, str) else bytes(key)
            keys[raw] = key
        for raw in sorted(keys):
            _encode_into(raw, out)
            _encode_into(value[keys[raw]], out)
        out += b"e"
    else:
        raise TypeError(f"Cannot bencode value of type {type(value).__name__}")


def new_message_id() -> str:
    """Return a fresh request id."""
    return str(uuid.uuid4())


def build_request(op: str, **fields: Any) -> Message:
    """
    Build a request map for ``op``.

    Fields whose value is None are left out. A request id is generated
    unless one is supplied, so that ``interrupt`` can refer back to an
    earlier ``eval``.

    Args:
        op: nREPL operation name (clone, eval, stdin, interrupt, ...)
        **fields: Additional request fields; underscores become dashes

    Returns:
        Request dictionary
    """
    request: Message = {"op": op}
    for key, value in fields.items():
        if value is None:
            continue
        request[key.replace("_", "-")] = value
    request.setdefault("id", new_message_id())
    return request


def serialize_request(op: str, **fields: Any) -> bytes:
    """Build and encode a request in one step."""
    return encode(build_request(op, **fields))


class _Frame:
    """An open list or map on the decoder's stack."""

    __slots__ = ("container", "key")

    def __init__(self, container: Union[List[Any], Dict[str, Any]]):
        self.container = container
        self.key: Optional[str] = None


class BencodeDecoder:
    """
    Streaming bencode parser over a file-like object.

    The parser keeps the current lookahead byte as explicit state instead of
    passing it through recursive calls: the discriminator of a byte-string is
    the first digit of its length, so it has to be handed on to the length
    parser rather than read twice. Nesting is tracked with an explicit stack,
    so deeply nested responses cannot exhaust the interpreter's recursion
    limit.

    Args:
        stream: Anything with ``read(n) -> bytes``
    """

    def __init__(self, stream):
        self._stream = stream
        self._lookahead: Optional[bytes] = None

    def decode(self) -> BencodeValue:
        """
        Read exactly one value from the stream.

        Raises:
            TruncatedStream: If the stream ends before the value is complete
            MalformedEncoding: If an invalid byte is encountered
        """
        stack: List[_Frame] = []
        while True:
            marker = self._advance()

            if marker == b"d":
                self._lookahead = None
                stack.append(_Frame({}))
                continue
            if marker == b"l":
                self._lookahead = None
                stack.append(_Frame([]))
                continue

            if marker == b"e":
                self._lookahead = None
                if not stack:
                    raise MalformedEncoding("Unexpected end marker")
                frame = stack.pop()
                if frame.key is not None:
                    raise MalformedEncoding(f"Map key '{frame.key}' has no value")
                value: BencodeValue = frame.container
            elif marker == b"i":
                self._lookahead = None
                value = self._read_integer()
            elif marker in _DIGITS:
                value = self._read_bytes()
            else:
                raise MalformedEncoding(f"Unexpected byte {marker!r}")

            if not stack:
                return value

            frame = stack[-1]
            if isinstance(frame.container, list):
                frame.container.append(value)
            elif frame.key is None:
                if not isinstance(value, bytes):
                    raise MalformedEncoding("Map keys must be byte-strings")
                frame.key = value.decode("utf-8", errors="replace")
            else:
                frame.container[frame.key] = value
                frame.key = None

    def _advance(self) -> bytes:
        """Load the next byte into the lookahead slot and return it."""
        if self._lookahead is None:
            byte = self._stream.read(1)
            if not byte:
                raise TruncatedStream("Stream ended before value was complete")
            self._lookahead = byte
        return self._lookahead

    def _read_integer(self) -> int:
        digits = bytearray()
        while True:
            byte = self._advance()
            self._lookahead = None
            if byte == b"e":
                break
            if byte not in _DIGITS and not (byte == b"-" and not digits):
                raise MalformedEncoding(f"Invalid byte {byte!r} in integer")
            digits += byte
        if not digits or digits == b"-":
            raise MalformedEncoding("Empty integer")
        return int(digits)

    def _read_bytes(self) -> bytes:
        # The lookahead holds the first digit of the length.
        digits = bytearray()
        while True:
            byte = self._advance()
            self._lookahead = None
            if byte == b":":
                break
            if byte not in _DIGITS:
                raise MalformedEncoding(f"Invalid byte {byte!r} in string length")
            digits += byte
        length = int(digits)
        data = self._read_exact(length)
        return data

    def _read_exact(self, length: int) -> bytes:
        chunks = []
        remaining = length
        while remaining > 0:
            chunk = self._stream.read(remaining)
            if not chunk:
                raise TruncatedStream(
                    f"Expected {length} bytes, stream ended after {length - remaining}"
                )
            chunks.append(chunk)
            remaining -= len(chunk)
        return b"".join(chunks)


def decode(data: bytes) -> BencodeValue:
    """
    Decode a complete bencoded value.

    Raises:
        MalformedEncoding: If bytes remain after the value
    """
    stream = io.BytesIO(data)
    value = BencodeDecoder(stream).decode()
    if stream.read(1):
        raise MalformedEncoding("Trailing bytes after value")
    return value


def deserialize_response(data: bytes) -> Message:
    """Decode bytes that must hold a single map."""
    value = decode(data)
    if not isinstance(value, dict):
        raise MalformedEncoding("Response is not a map")
    return value


def message_text(message: Message, key: str, default: str = "") -> str:
    """
    Return a message field as text.

    Byte-string values are decoded as UTF-8; other values are converted
    with ``str``. Missing keys give ``default``.
    """
    value = message.get(key)
    if value is None:
        return default
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def message_status(message: Message) -> List[str]:
    """Return the ``status`` field of a message as a list of strings."""
    status = message.get("status")
    if status is None:
        return []
    if isinstance(status, (bytes, str)):
        status = [status]
    return [s.decode("utf-8", errors="replace") if isinstance(s, bytes) else str(s) for s in status]
