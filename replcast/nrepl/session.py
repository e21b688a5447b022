"""Drive one program through an nREPL session.

    Idle -> Cloned -> Evaluating(ns) -> Evaluating(body) -> Closed
                           \\                 /
                            -> Interrupting -

The orchestrator clones a session, evaluates the program's namespace
declaration (or switches to the baseline namespace), evaluates the rest of
the program as one request and closes the session. The session is closed and
the pipes are removed on every exit path, including errors and user
cancellation.
"""

from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
import logging
import sys
from typing import BinaryIO, Callable, Iterator, List, Optional

from replcast.core.cancel import CancelToken
from replcast.core.configs import RunContext
from replcast.core.errors import (
    Cancelled,
    RemoteEvaluationError,
    ReplcastError,
)
from replcast.core.forms import namespace_declaration, split_forms
from replcast.core.wrapping import bind_command_line_args, do_block, in_namespace
from replcast.nrepl.client import NreplClient, connection_closing, first_exception
from replcast.nrepl.completion import CountedCompletion
from replcast.nrepl.protocol import Message, message_status, message_text, new_message_id
from replcast.tools.pipes import PipeMultiplexer, should_multiplex

logger = logging.getLogger(__name__)


class SessionState(Enum):
    IDLE = "idle"
    CLONED = "cloned"
    EVALUATING_NS = "evaluating-ns"
    EVALUATING_BODY = "evaluating-body"
    INTERRUPTING = "interrupting"
    CLOSED = "closed"


class OutcomeStatus(Enum):
    SUCCESS = 0
    REMOTE_ERROR = 1
    FAILED = 2
    CANCELLED = 130

    @property
    def exit_code(self) -> int:
        return self.value


@dataclass
class RunOutcome:
    """Result of a run, for the CLI to map onto an exit status."""
    status: OutcomeStatus
    error: Optional[ReplcastError] = None
    values: List[str] = field(default_factory=list)
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status is OutcomeStatus.SUCCESS


class SessionOrchestrator:
    """
    Runs a program in a fresh nREPL session.

    Args:
        client: Transport used for every request
        context: Per-run settings
        stdin: Local input stream (binary)
        stdout: Local output stream (binary)
        stderr: Local error stream (binary)
        read_input: Returns one line when the server asks for input
            (default: a line from stdin)
    """

    def __init__(
        self,
        client: NreplClient,
        context: Optional[RunContext] = None,
        stdin: Optional[BinaryIO] = None,
        stdout: Optional[BinaryIO] = None,
        stderr: Optional[BinaryIO] = None,
        read_input: Optional[Callable[[], str]] = None,
    ):
        self.client = client
        self.context = context or RunContext()
        if client.cancel is None:
            client.cancel = CancelToken()
        self.cancel: CancelToken = client.cancel
        self.stdin = stdin if stdin is not None else sys.stdin.buffer
        self.stdout = stdout if stdout is not None else sys.stdout.buffer
        self.stderr = stderr if stderr is not None else sys.stderr.buffer
        self.read_input = read_input or self._read_stdin_line

        self.state = SessionState.IDLE
        self.session: Optional[str] = None
        self._eval_id: Optional[str] = None
        self._multiplexed = False
        self._values: List[str] = []

    def _transition(self, state: SessionState) -> None:
        logger.debug(f"{self.state.value} -> {state.value} ({self.context.elapsed():.3f}s)")
        self.state = state

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(self, source: str, argv: Optional[List[str]] = None) -> List[str]:
        """
        Evaluate ``source`` with ``argv`` bound to ``*command-line-args*``.

        Returns:
            Printed values returned by the server for the program body

        Raises:
            UnbalancedSource: Before any network activity
            SessionCloneFailed, ServerUnreachable, ResponseTimeout,
            ProtocolError: On client or transport failure
            RemoteEvaluationError: If the program threw
            Cancelled: If the cancel token tripped
        """
        if self.state is not SessionState.IDLE:
            raise RuntimeError("An orchestrator runs a single program")

        forms = split_forms(source)
        argv = list(argv or [])
        self._values = []

        with self._session() as session:
            namespace = namespace_declaration(forms)
            if namespace is not None:
                self._eval_namespace(session, forms[0])
                body_forms = forms[1:]
            else:
                self._eval_namespace(session, in_namespace())
                body_forms = forms

            self.cancel.raise_if_cancelled()
            self._eval_body(session, body_forms, argv, namespace)
            # A cancel that arrived after the body batch still counts.
            self.cancel.raise_if_cancelled()

        return list(self._values)

    def execute(self, source: str, argv: Optional[List[str]] = None) -> RunOutcome:
        """Run and fold the result or error into a RunOutcome."""
        try:
            values = self.run(source, argv)
        except RemoteEvaluationError as e:
            return self._outcome(OutcomeStatus.REMOTE_ERROR, e)
        except Cancelled as e:
            return self._outcome(OutcomeStatus.CANCELLED, e)
        except ReplcastError as e:
            return self._outcome(OutcomeStatus.FAILED, e)
        return self._outcome(OutcomeStatus.SUCCESS, values=values)

    def _outcome(
        self,
        status: OutcomeStatus,
        error: Optional[ReplcastError] = None,
        values: Optional[List[str]] = None,
    ) -> RunOutcome:
        return RunOutcome(
            status=status,
            error=error,
            values=values if values is not None else list(self._values),
            elapsed=self.context.elapsed(),
        )

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    @contextmanager
    def _session(self) -> Iterator[str]:
        self.session = self.client.clone()
        self._transition(SessionState.CLONED)
        try:
            yield self.session
        except Cancelled:
            self._interrupt()
            raise
        finally:
            self._close_session()

    def _interrupt(self) -> None:
        if self.state is SessionState.INTERRUPTING:
            return
        self._transition(SessionState.INTERRUPTING)
        if self.session is None:
            return
        try:
            self.client.interrupt(self.session, self._eval_id)
        except ReplcastError as e:
            logger.warning(f"Interrupt request failed: {e}")

    def _close_session(self) -> None:
        session, self.session = self.session, None
        if session is not None:
            try:
                self.client.close(session)
            except ReplcastError as e:
                logger.warning(f"Failed to close session {session}: {e}")
        self._transition(SessionState.CLOSED)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def _eval_namespace(self, session: str, code: str) -> None:
        self._transition(SessionState.EVALUATING_NS)
        self._eval_id = new_message_id()
        messages = self.client.eval(
            session,
            code,
            completion=CountedCompletion(2, timeout=self.context.namespace_timeout),
            on_message=self._on_message,
            request_id=self._eval_id,
        )
        self._raise_for_exception(session, messages)

    def _eval_body(
        self,
        session: str,
        forms: List[str],
        argv: List[str],
        namespace: Optional[str],
    ) -> None:
        self._transition(SessionState.EVALUATING_BODY)
        body = bind_command_line_args(do_block(forms) if forms else "nil", argv)

        force = self.context.force_pipes
        use_pipes = force if force is not None else should_multiplex(self.stdin)

        if use_pipes:
            with PipeMultiplexer(
                stdin=self.stdin,
                stdout=self.stdout,
                stderr=self.stderr,
                cancel=self.cancel,
                directory=self.context.pipe_dir,
            ) as mux:
                mux.start()
                self._multiplexed = True
                try:
                    messages = self._send_body(session, mux.binding_form(body), namespace)
                except Cancelled:
                    # Interrupt while the shuttles still run; leaving the
                    # block then stops them.
                    self._interrupt()
                    raise
                finally:
                    self._multiplexed = False
                mux.finish(self.context.pipe_grace)
        else:
            messages = self._send_body(session, body, namespace)

        self._values.extend(
            message_text(m, "value") for m in messages if "value" in m
        )
        self._raise_for_exception(session, messages)

    def _send_body(self, session: str, code: str, namespace: Optional[str]) -> List[Message]:
        self._eval_id = new_message_id()
        return self.client.eval(
            session,
            code,
            ns=namespace,
            completion=self.client.adaptive_completion(
                self.context.min_wait, self.context.max_wait
            ),
            on_message=self._on_message,
            request_id=self._eval_id,
        )

    def _on_message(self, message: Message) -> None:
        # Output arriving over the socket rather than the pipes.
        for key, sink in (("out", self.stdout), ("err", self.stderr)):
            if key in message:
                sink.write(message_text(message, key).encode("utf-8"))
                sink.flush()

        if "need-input" in message_status(message) and not self._multiplexed:
            try:
                line = self.read_input()
            except KeyboardInterrupt:
                self.cancel.cancel()
                raise Cancelled("Interrupted while reading input")
            if self.session is not None:
                self.client.stdin(self.session, line)

    def _read_stdin_line(self) -> str:
        return self.stdin.readline().decode("utf-8", errors="replace")

    def _raise_for_exception(self, session: str, messages: List[Message]) -> None:
        failure = first_exception(messages)
        if failure is None or connection_closing(failure):
            return
        raise self._remote_error(session, failure)

    def _remote_error(self, session: str, failure: Message) -> RemoteEvaluationError:
        """Fetch the stack trace for ``failure`` and build the error."""
        remote_class = message_text(failure, "root-ex") or message_text(failure, "ex")
        remote_message = ""
        frames: List[str] = []

        try:
            trace = self.client.stacktrace(session)
        except ReplcastError as e:
            logger.warning(f"Could not fetch stack trace: {e}")
            trace = []
        self.cancel.raise_if_cancelled()

        for message in trace:
            if not message_text(message, "class"):
                continue
            remote_class = message_text(message, "class")
            remote_message = message_text(message, "message")
            frames = [format_frame(frame) for frame in message.get("stacktrace") or []]
            break

        return RemoteEvaluationError(remote_class, remote_message, frames)


def format_frame(frame) -> str:
    """Render one ``stacktrace`` frame map as text."""
    if not isinstance(frame, dict):
        return message_text({"frame": frame}, "frame")
    name = message_text(frame, "name") or message_text(frame, "fn") or "?"
    file_name = message_text(frame, "file")
    line = message_text(frame, "line")
    if file_name and line:
        return f"{name} ({file_name}:{line})"
    if file_name:
        return f"{name} ({file_name})"
    return name
