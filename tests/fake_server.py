"""
In-process stand-in for an nREPL server, used by the transport and session tests.

It understands just enough of the protocol to script replies: clone, eval,
stdin, interrupt, stacktrace and close, plus a few ops that misbehave on
purpose (silent, stalled, truncated, garbage, chatty).
"""

import re
import socketserver
import threading
import time
from typing import Any, Dict, List

from replcast.nrepl.protocol import BencodeDecoder, encode, message_text

SESSION_TOKEN = "3d90108f-96cf-4b46-b0ca-e9f0c3379b5e"

# Gap between lines of output in the pausing eval.
PAUSE = 0.1

_OUT_PATH = re.compile(r'FileOutputStream\. "([^"]+)"')
_IN_PATH = re.compile(r'FileInputStream\. "([^"]+)"')
_MARKER = re.compile("(\x04replcast-eos-[0-9a-f]+\x04)")


class _Handler(socketserver.StreamRequestHandler):
    def handle(self):
        server: "FakeNreplServer" = self.server
        try:
            request = BencodeDecoder(self.rfile).decode()
        except Exception:
            return
        server.record(request)

        op = message_text(request, "op")
        handler = getattr(server, f"op_{op.replace('-', '_')}", None)
        try:
            if handler is None:
                replies: List[Any] = []
            else:
                replies = handler(request)
            for reply in replies:
                if isinstance(reply, bytes):
                    self.wfile.write(reply)
                else:
                    reply.setdefault("id", message_text(request, "id"))
                    self.wfile.write(encode(reply))
                self.wfile.flush()
            if op in ("truncated", "garbage"):
                return
            # Keep the connection open until the client hangs up.
            self.rfile.read(1)
        except OSError:
            pass


class FakeNreplServer(socketserver.ThreadingTCPServer):
    """Scriptable fake nREPL server bound to an ephemeral port."""

    daemon_threads = True
    allow_reuse_address = True

    def __init__(self):
        super().__init__(("127.0.0.1", 0), _Handler)
        self.requests: List[Dict[str, Any]] = []
        self.interrupted = threading.Event()
        self.eval_started = threading.Event()
        self.clone_fails = False
        self._lock = threading.Lock()
        self._thread = threading.Thread(target=self.serve_forever, daemon=True)

    @property
    def port(self) -> int:
        return self.server_address[1]

    def start(self) -> "FakeNreplServer":
        self._thread.start()
        return self

    def stop(self) -> None:
        self.interrupted.set()
        self.shutdown()
        self.server_close()

    def record(self, request: Dict[str, Any]) -> None:
        with self._lock:
            self.requests.append(request)

    def ops(self) -> List[str]:
        with self._lock:
            return [message_text(r, "op") for r in self.requests]

    def requests_for(self, op: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [r for r in self.requests if message_text(r, "op") == op]

    # ------------------------------------------------------------------
    # Protocol ops
    # ------------------------------------------------------------------

    def op_clone(self, request):
        if self.clone_fails:
            return [{"status": ["done"]}]
        return [{"new-session": SESSION_TOKEN, "status": ["done"]}]

    def op_close(self, request):
        return [{"session": message_text(request, "session"), "status": ["done", "session-closed"]}]

    def op_interrupt(self, request):
        self.interrupted.set()
        return [{"session": message_text(request, "session"), "status": ["done"]}]

    def op_stdin(self, request):
        return [{"status": ["done"]}]

    def op_stacktrace(self, request):
        return [
            {
                "class": "clojure.lang.ExceptionInfo",
                "message": "boom",
                "stacktrace": [
                    {"name": "user/eval1234", "file": "NO_SOURCE_FILE", "line": 1},
                    {"name": "clojure.lang.Compiler.eval", "file": "Compiler.java", "line": 7177},
                ],
            },
            {"status": ["done"]},
        ]

    def op_eval(self, request):
        code = message_text(request, "code")
        session = message_text(request, "session")

        if "(throw" in code:
            return [
                {"session": session, "err": "Execution error (ExceptionInfo) at user/eval1234.\nboom\n"},
                {"session": session, "ex": "class clojure.lang.ExceptionInfo",
                 "root-ex": "class clojure.lang.ExceptionInfo", "status": ["eval-error"]},
                {"session": session, "status": ["done"]},
            ]

        if "(dotimes" in code:
            return self._eval_with_pauses(session)

        if "Thread/sleep" in code:
            self.eval_started.set()
            self.interrupted.wait(10)
            return [
                {"session": session, "status": ["interrupted"]},
                {"session": session, "status": ["done"]},
            ]

        if "read-line" in code and _IN_PATH.search(code):
            return self._eval_with_pipes(session, code)

        if "(println" in code:
            return [
                {"session": session, "out": "3\n"},
                {"session": session, "value": "nil", "ns": "user"},
                {"session": session, "status": ["done"]},
            ]

        return [
            {"session": session, "value": "3", "ns": "user"},
            {"session": session, "status": ["done"]},
        ]

    def _eval_with_pauses(self, session):
        # Prints a line, then pauses, three times over.
        for i in range(3):
            yield {"session": session, "out": f"{i}\n"}
            time.sleep(PAUSE)
        yield {"session": session, "value": "nil", "ns": "user"}
        yield {"session": session, "status": ["done"]}

    def _eval_with_pipes(self, session, code):
        # Behave like the wrapped code: echo a line of *in* to *out* in
        # upper case and leave a note on *err*.
        out_path, err_path = _OUT_PATH.findall(code)[:2]
        in_path = _IN_PATH.search(code).group(1)
        marker = _MARKER.search(code).group(1).encode("utf-8")

        with open(out_path, "wb") as out, open(err_path, "wb") as err:
            with open(in_path, "rb") as stdin:
                data = stdin.read()
            out.write(data.upper())
            out.write(marker)
            err.write(b"warning: shouting\n")
            err.write(marker)
        return [
            {"session": session, "value": "nil", "ns": "user"},
            {"session": session, "status": ["done"]},
        ]

    # ------------------------------------------------------------------
    # Misbehaving ops
    # ------------------------------------------------------------------

    def op_chatty(self, request):
        # No terminal status: only the adaptive window ends this batch.
        return [{"out": "a"}, {"out": "b"}, {"value": "nil"}]

    def op_stalled(self, request):
        # Reports status but never finishes.
        return [{"status": ["need-input"]}]

    def op_truncated(self, request):
        return [b"d2:op5:clo"]

    def op_garbage(self, request):
        return [b"x"]
