"""Policies deciding when a response batch is complete.

An nREPL request can produce any number of response messages, and the client
does not always know how many to expect. The transport asks a
``CompletionDetector`` after every message whether more are coming and how
long to wait for the next one.

Two policies exist:

- ``AdaptiveCompletion`` keeps a wait window that shrinks while output is
  streaming and widens otherwise. Used for evaluations of unknown length.
- ``CountedCompletion`` stops after a fixed number of messages. Used for
  small exchanges with a known shape, such as namespace declarations.

Neither is a guarantee. A remote evaluation that stays silent for longer
than the window looks finished, so the window is only used for servers
that never send ``status``. Servers that do are waited on until ``done``.
"""

from typing import Optional

from replcast.nrepl.protocol import Message, message_status


class CompletionDetector:
    """Base policy: one message per request."""

    def reset(self) -> None:
        """Prepare for a new batch."""

    def wait_timeout(self) -> Optional[float]:
        """
        Seconds to wait for the next message.

        Returns:
            None to block until a message arrives
        """
        return None

    def observe(self, message: Message) -> bool:
        """
        Record an arrived message.

        Returns:
            True if more messages are expected
        """
        return False


class AdaptiveCompletion(CompletionDetector):
    """
    Adaptive wait window.

    Before the first message the transport blocks, since a reply is always
    sent eventually. After a message with ``out`` or ``err`` the window is
    halved toward ``min_wait``: more output is probably on its way. After any
    other message it doubles toward ``max_wait``, so slow evaluations are not
    cut short.

    The window only applies to servers that never send ``status``. Once the
    server is known to send it (``expect_status``, or a message in this batch
    carried one), the transport blocks until ``done`` arrives, bounded only
    by its hard ceiling.

    Args:
        min_wait: Smallest window in seconds
        max_wait: Largest window in seconds
        honour_status: End the batch on ``status: done``
        expect_status: The server has already been seen sending ``status``
    """

    def __init__(
        self,
        min_wait: float = 0.005,
        max_wait: float = 2.0,
        honour_status: bool = True,
        expect_status: bool = False,
    ):
        if min_wait <= 0 or max_wait < min_wait:
            raise ValueError("Require 0 < min_wait <= max_wait")
        self.min_wait = min_wait
        self.max_wait = max_wait
        self.honour_status = honour_status
        self.expect_status = expect_status
        self.reset()

    def reset(self) -> None:
        self._window: Optional[float] = None
        self._status_seen = False
        self.received = 0

    def wait_timeout(self) -> Optional[float]:
        if self.honour_status and (self.expect_status or self._status_seen):
            return None
        return self._window

    def observe(self, message: Message) -> bool:
        self.received += 1

        status = message_status(message)
        if status:
            self._status_seen = True
        if self.honour_status and "done" in status:
            return False

        current = self._window if self._window is not None else self.min_wait
        if "out" in message or "err" in message:
            self._window = max(self.min_wait, current / 2)
        else:
            self._window = min(self.max_wait, current * 2)
        return True


class CountedCompletion(CompletionDetector):
    """
    Stop after exactly ``expected`` messages.

    A message carrying ``ex`` ends the batch immediately, whatever the count.
    """

    def __init__(self, expected: int, timeout: Optional[float] = None):
        if expected < 1:
            raise ValueError("expected must be at least 1")
        self.expected = expected
        self.timeout = timeout
        self.reset()

    def reset(self) -> None:
        self.received = 0

    def wait_timeout(self) -> Optional[float]:
        # Block for the first message; afterwards use the fixed timeout.
        if self.received == 0:
            return None
        return self.timeout

    def observe(self, message: Message) -> bool:
        self.received += 1
        if "ex" in message:
            return False
        return self.received < self.expected
