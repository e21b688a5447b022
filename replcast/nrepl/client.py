"""Socket transport for nREPL requests.

Each call to ``NreplClient.send`` opens a fresh TCP connection, writes one
bencoded request and reads response messages until the completion policy
says the batch is over. Connections are never reused.

Usage:
    client = NreplClient("127.0.0.1", 7888)
    session = client.clone()
    for message in client.eval(session, "(+ 1 2)"):
        ...
    client.close(session)
"""

import logging
import select
import socket
import time
from typing import Callable, List, Optional

from replcast.core.cancel import CancelToken
from replcast.core.errors import (
    MalformedEncoding,
    ResponseTimeout,
    ServerUnreachable,
    SessionCloneFailed,
    TruncatedStream,
)
from replcast.nrepl.completion import AdaptiveCompletion, CompletionDetector
from replcast.nrepl.protocol import (
    BencodeDecoder,
    Message,
    build_request,
    encode,
    message_text,
)

logger = logging.getLogger(__name__)

# Granularity of blocking waits, so cancellation is noticed promptly.
POLL_INTERVAL = 0.1


class _SocketStream:
    """
    Buffered reader over a socket that knows whether bytes are pending.

    ``socket.makefile`` would hide buffered bytes from ``select``; this
    reader keeps its own buffer so the transport can tell "nothing yet"
    apart from "already received but not decoded".
    """

    def __init__(
        self,
        sock: socket.socket,
        cancel: Optional[CancelToken],
        hard_timeout: float,
    ):
        self._sock = sock
        self._cancel = cancel
        self._hard_timeout = hard_timeout
        self._buffer = bytearray()
        self.eof = False

    def wait(self, timeout: Optional[float]) -> bool:
        """
        Wait until at least one byte (or EOF) is available.

        Args:
            timeout: Seconds to wait; None waits up to the hard ceiling

        Returns:
            False if the wait elapsed with nothing available
        """
        if self._buffer or self.eof:
            return True
        limit = self._hard_timeout if timeout is None else min(timeout, self._hard_timeout)
        deadline = time.monotonic() + limit
        while True:
            if self._cancel is not None:
                self._cancel.raise_if_cancelled()
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            readable, _, _ = select.select([self._sock], [], [], min(remaining, POLL_INTERVAL))
            if readable:
                self._fill()
                return True

    @property
    def exhausted(self) -> bool:
        return self.eof and not self._buffer

    def read(self, size: int) -> bytes:
        if not self._buffer and not self.eof:
            if not self.wait(None):
                raise ResponseTimeout(
                    f"Server stopped sending mid-message for {self._hard_timeout:.0f}s"
                )
        chunk = bytes(self._buffer[:size])
        del self._buffer[:size]
        return chunk

    def _fill(self) -> None:
        data = self._sock.recv(65536)
        if not data:
            self.eof = True
        else:
            self._buffer += data


class NreplClient:
    """
    One-request-per-connection nREPL client.

    Args:
        host: Server host
        port: Server port
        cancel: Token checked while waiting for the server
        hard_timeout: Seconds to wait for the first message of a batch, and
            for each later one while waiting on ``done``
        connect_timeout: Seconds to wait for the TCP connection
    """

    def __init__(
        self,
        host: str,
        port: int,
        cancel: Optional[CancelToken] = None,
        hard_timeout: float = 30.0,
        connect_timeout: float = 5.0,
    ):
        self.host = host
        self.port = port
        self.cancel = cancel
        self.hard_timeout = hard_timeout
        self.connect_timeout = connect_timeout
        # Set once any reply carries ``status``; batches then end on ``done``.
        self.status_seen = False

    def adaptive_completion(
        self, min_wait: float = 0.005, max_wait: float = 2.0
    ) -> AdaptiveCompletion:
        """Adaptive policy that waits for ``done`` if this server sends it."""
        return AdaptiveCompletion(min_wait, max_wait, expect_status=self.status_seen)

    def send(
        self,
        request: Message,
        completion: Optional[CompletionDetector] = None,
        on_message: Optional[Callable[[Message], None]] = None,
        cancellable: bool = True,
    ) -> List[Message]:
        """
        Send one request and collect its response batch.

        Args:
            request: Request map; must contain ``op``
            completion: Policy deciding when the batch is over
                (default: one message)
            on_message: Called with each message as it arrives
            cancellable: Abort with ``Cancelled`` when the token trips;
                cleanup requests pass False

        Returns:
            Messages in arrival order. Messages with ``ex`` are returned,
            not raised.

        Raises:
            ServerUnreachable: If the connection cannot be opened
            ResponseTimeout: If no message arrives within the hard ceiling
            MalformedEncoding, TruncatedStream: On undecodable responses
            Cancelled: If the token trips while waiting
        """
        completion = completion or CompletionDetector()
        completion.reset()

        try:
            sock = socket.create_connection(
                (self.host, self.port), timeout=self.connect_timeout
            )
        except OSError as e:
            raise ServerUnreachable(
                f"Cannot connect to nREPL server at {self.host}:{self.port}: {e}"
            ) from e

        logger.debug(f"-> {request}")
        batch: List[Message] = []
        try:
            sock.settimeout(self.hard_timeout)
            sock.sendall(encode(request))

            stream = _SocketStream(
                sock, self.cancel if cancellable else None, self.hard_timeout
            )
            decoder = BencodeDecoder(stream)

            while True:
                timeout = completion.wait_timeout() if batch else None
                if not stream.wait(timeout):
                    if not batch:
                        raise ResponseTimeout(
                            f"No response to '{request.get('op')}' within "
                            f"{self.hard_timeout:.0f}s"
                        )
                    if timeout is None:
                        raise ResponseTimeout(
                            f"'{request.get('op')}' went silent for "
                            f"{self.hard_timeout:.0f}s before finishing"
                        )
                    break

                if stream.exhausted:
                    if not batch:
                        raise TruncatedStream(
                            f"Connection closed before '{request.get('op')}' got a reply"
                        )
                    break

                message = decoder.decode()
                if not isinstance(message, dict):
                    raise MalformedEncoding("Response message is not a map")

                logger.debug(f"<- {message}")
                if "status" in message:
                    self.status_seen = True
                batch.append(message)
                if on_message is not None:
                    on_message(message)
                if not completion.observe(message):
                    break
            return batch
        finally:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            sock.close()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def clone(self) -> str:
        """
        Open a new session.

        Returns:
            The ``new-session`` token

        Raises:
            SessionCloneFailed: If no token is returned
        """
        messages = self.send(build_request("clone"))
        for message in messages:
            token = message_text(message, "new-session")
            if token:
                return token
        raise SessionCloneFailed("Server returned no session for clone")

    def eval(
        self,
        session: str,
        code: str,
        ns: Optional[str] = None,
        completion: Optional[CompletionDetector] = None,
        on_message: Optional[Callable[[Message], None]] = None,
        request_id: Optional[str] = None,
    ) -> List[Message]:
        """Evaluate ``code`` in ``session``."""
        request = build_request("eval", session=session, code=code, ns=ns, id=request_id)
        return self.send(request, completion or self.adaptive_completion(), on_message)

    def stdin(self, session: str, data: str) -> List[Message]:
        """Deliver input to an evaluation waiting on ``*in*``."""
        return self.send(build_request("stdin", session=session, stdin=data))

    def interrupt(self, session: str, interrupt_id: Optional[str] = None) -> List[Message]:
        """Ask the server to stop the running evaluation. Advisory only."""
        request = build_request("interrupt", session=session, interrupt_id=interrupt_id)
        return self.send(request, cancellable=False)

    def stacktrace(self, session: str) -> List[Message]:
        """Fetch the stack trace of the session's last exception."""
        request = build_request("stacktrace", session=session)
        return self.send(request, self.adaptive_completion(), cancellable=False)

    def close(self, session: str) -> List[Message]:
        """Close ``session``. The token must not be used afterwards."""
        return self.send(build_request("close", session=session), cancellable=False)


def first_exception(messages: List[Message]) -> Optional[Message]:
    """Return the first message carrying a non-empty ``ex`` field."""
    for message in messages:
        if message_text(message, "ex"):
            return message
    return None


def connection_closing(message: Message) -> bool:
    """True when an ``ex`` only reports the server closing our socket."""
    text = message_text(message, "ex") + message_text(message, "root-ex")
    return "SocketException" in text or "connection closing" in text.lower()
