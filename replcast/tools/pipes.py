"""Local stdin/stdout/stderr for remote evaluation over named pipes.

The nREPL server runs on this machine, so evaluated code can open files in
our temp directory. Three FIFOs are created before evaluation:

    in   local stdin   -> remote *in*
    out  remote *out*  -> local stdout
    err  remote *err*  -> local stderr

Three threads shuttle bytes between the real streams and the FIFOs while the
eval request blocks. A drain cannot rely on EOF: it holds a write end of its
own FIFO open so that reading never returns EOF before the remote side has
connected. Instead the remote side writes a per-run end-of-stream marker
when evaluation finishes, and the drain stops when it sees it.

Usage:
    with PipeMultiplexer() as mux:
        mux.start()
        client.eval(session, mux.binding_form(code))
        mux.finish()
"""

import errno
import logging
import os
import select
import shutil
import sys
import tempfile
import threading
import uuid
from pathlib import Path
from typing import BinaryIO, Dict, List, Optional

from replcast.core.cancel import CancelToken
from replcast.core.wrapping import clojure_string_literal

logger = logging.getLogger(__name__)

CHANNELS = ("in", "out", "err")
CHUNK_SIZE = 4096
POLL_INTERVAL = 0.05


def should_multiplex(stdin: Optional[BinaryIO] = None, force: bool = False) -> bool:
    """
    Decide whether pipes are needed.

    Pipes are used when stdin is not a terminal (piped input or nothing at
    all), or when forced by configuration.
    """
    if force:
        return True
    stream = stdin if stdin is not None else sys.stdin
    if stream is None:
        return True
    try:
        return not os.isatty(stream.fileno())
    except (AttributeError, ValueError, OSError):
        return True


class PipeMultiplexer:
    """
    Three FIFO channels plus the threads that feed and drain them.

    Args:
        stdin: Binary stream read for remote *in* (default: sys.stdin.buffer)
        stdout: Binary stream receiving remote *out* (default: sys.stdout.buffer)
        stderr: Binary stream receiving remote *err* (default: sys.stderr.buffer)
        cancel: Token whose trip force-terminates the shuttles
        directory: Parent directory for the FIFO directory
    """

    def __init__(
        self,
        stdin: Optional[BinaryIO] = None,
        stdout: Optional[BinaryIO] = None,
        stderr: Optional[BinaryIO] = None,
        cancel: Optional[CancelToken] = None,
        directory: Optional[str] = None,
    ):
        self.stdin = stdin if stdin is not None else sys.stdin.buffer
        self.stdout = stdout if stdout is not None else sys.stdout.buffer
        self.stderr = stderr if stderr is not None else sys.stderr.buffer
        self.cancel_token = cancel
        self.directory = directory

        self.marker = f"\x04replcast-eos-{uuid.uuid4().hex}\x04"
        self.root: Optional[Path] = None
        self.paths: Dict[str, Path] = {}
        self._threads: List[threading.Thread] = []
        self._stop = threading.Event()
        self._lock = threading.Lock()

        if cancel is not None:
            cancel.on_cancel(self._stop.set)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def __enter__(self) -> "PipeMultiplexer":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None:
            self.cancel()
        else:
            self.close()

    def open(self) -> None:
        """Create the private directory and the three FIFOs."""
        with self._lock:
            if self.root is not None:
                return
            self.root = Path(tempfile.mkdtemp(prefix="replcast-", dir=self.directory))
            try:
                for name in CHANNELS:
                    path = self.root / name
                    os.mkfifo(path, 0o600)
                    self.paths[name] = path
            except OSError:
                shutil.rmtree(self.root, ignore_errors=True)
                self.root = None
                self.paths = {}
                raise
        logger.debug(f"Created pipes in {self.root}")

    def start(self) -> None:
        """Start the stdin feeder and the two drains."""
        if self.root is None:
            self.open()
        targets = [
            ("replcast-stdin", self._feed, (self.stdin, self.paths["in"])),
            ("replcast-stdout", self._drain, (self.paths["out"], self.stdout)),
            ("replcast-stderr", self._drain, (self.paths["err"], self.stderr)),
        ]
        for name, target, args in targets:
            thread = threading.Thread(target=target, args=args, name=name, daemon=True)
            thread.start()
            self._threads.append(thread)

    def finish(self, grace: float = 2.0) -> bool:
        """
        Wait for the shuttles after evaluation completed, then clean up.

        The remote side writes the end-of-stream markers before the eval
        reply arrives, so the drains normally stop on their own. Shuttles
        still running after ``grace`` seconds (for example when the code
        failed to compile and never opened the pipes) are stopped.

        Returns:
            True if every shuttle ended on its own
        """
        clean = self._join(grace)
        if not clean:
            logger.debug("Pipe shuttles still running after grace period; stopping")
            self._stop.set()
            self._join(1.0)
        self.close()
        return clean

    def cancel(self) -> None:
        """Stop the shuttles immediately and remove the pipes."""
        self._stop.set()
        self._join(1.0)
        self.close()

    def close(self) -> None:
        """Remove the FIFOs and their directory. Safe to call repeatedly."""
        with self._lock:
            root = self.root
            self.root = None
            self.paths = {}
        if root is not None:
            shutil.rmtree(root, ignore_errors=True)
            logger.debug(f"Removed pipes in {root}")

    @property
    def active(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def _join(self, timeout: float) -> bool:
        for thread in self._threads:
            thread.join(timeout)
        return not self.active

    # ------------------------------------------------------------------
    # Remote side
    # ------------------------------------------------------------------

    def binding_form(self, body: str) -> str:
        """
        Wrap Clojure ``body`` so *in*, *out* and *err* use the pipes.

        The pipe writers get the end-of-stream marker and are closed in a
        ``finally`` block, so the binding is undone on every exit path,
        including exceptions thrown by ``body``.
        """
        if self.root is None:
            raise RuntimeError("Pipes are not open")
        in_path = clojure_string_literal(str(self.paths["in"]))
        out_path = clojure_string_literal(str(self.paths["out"]))
        err_path = clojure_string_literal(str(self.paths["err"]))
        marker = clojure_string_literal(self.marker)
        return (
            f"(let [pipe-out (java.io.OutputStreamWriter. (java.io.FileOutputStream. {out_path}) \"UTF-8\")\n"
            f"      pipe-err (java.io.OutputStreamWriter. (java.io.FileOutputStream. {err_path}) \"UTF-8\")\n"
            f"      pipe-in (clojure.lang.LineNumberingPushbackReader.\n"
            f"                (java.io.InputStreamReader. (java.io.FileInputStream. {in_path}) \"UTF-8\"))]\n"
            f"  (try\n"
            f"    (binding [*in* pipe-in *out* pipe-out *err* pipe-err]\n"
            f"      {body})\n"
            f"    (finally\n"
            f"      (doseq [w [pipe-out pipe-err]]\n"
            f"        (.write w {marker}) (.flush w) (.close w))\n"
            f"      (.close pipe-in))))"
        )

    # ------------------------------------------------------------------
    # Shuttles
    # ------------------------------------------------------------------

    def _feed(self, source: BinaryIO, path: Path) -> None:
        """Copy local stdin into the ``in`` pipe, then close it."""
        fd = self._open_writer(path)
        if fd is None:
            return
        try:
            for chunk in self._read_source(source):
                if not self._write_all(fd, chunk):
                    return
        except OSError as e:
            if e.errno != errno.EPIPE:
                logger.warning(f"stdin feed stopped: {e}")
        finally:
            os.close(fd)

    def _read_source(self, source: BinaryIO):
        try:
            fd = source.fileno()
        except (AttributeError, ValueError, OSError):
            fd = None

        while not self._stop.is_set():
            if fd is None:
                chunk = source.read(CHUNK_SIZE)
            else:
                readable, _, _ = select.select([fd], [], [], POLL_INTERVAL)
                if not readable:
                    continue
                chunk = os.read(fd, CHUNK_SIZE)
            if not chunk:
                return
            yield chunk

    def _open_writer(self, path: Path) -> Optional[int]:
        # A non-blocking open for writing fails with ENXIO until the remote
        # side opens the pipe for reading.
        while not self._stop.is_set():
            try:
                return os.open(path, os.O_WRONLY | os.O_NONBLOCK)
            except FileNotFoundError:
                return None
            except OSError as e:
                if e.errno not in (errno.ENXIO, errno.EINTR):
                    raise
            self._stop.wait(POLL_INTERVAL)
        return None

    def _write_all(self, fd: int, data: bytes) -> bool:
        view = memoryview(data)
        while view:
            if self._stop.is_set():
                return False
            _, writable, _ = select.select([], [fd], [], POLL_INTERVAL)
            if not writable:
                continue
            try:
                written = os.write(fd, view)
            except BlockingIOError:
                continue
            view = view[written:]
        return True

    def _drain(self, path: Path, sink: BinaryIO) -> None:
        """Copy the pipe to ``sink`` until the end-of-stream marker."""
        marker = self.marker.encode("utf-8")
        try:
            fd = os.open(path, os.O_RDONLY | os.O_NONBLOCK)
        except FileNotFoundError:
            return
        try:
            keeper = os.open(path, os.O_WRONLY | os.O_NONBLOCK)
        except OSError:
            os.close(fd)
            raise
        pending = b""
        try:
            while not self._stop.is_set():
                readable, _, _ = select.select([fd], [], [], POLL_INTERVAL)
                if not readable:
                    continue
                try:
                    chunk = os.read(fd, CHUNK_SIZE)
                except BlockingIOError:
                    continue
                if not chunk:
                    break
                pending += chunk
                index = pending.find(marker)
                if index >= 0:
                    self._emit(sink, pending[:index])
                    pending = b""
                    return
                # Hold back a tail that could be the start of the marker.
                safe = len(pending) - (len(marker) - 1)
                if safe > 0:
                    self._emit(sink, pending[:safe])
                    pending = pending[safe:]
            if pending:
                self._emit(sink, pending)
        finally:
            os.close(keeper)
            os.close(fd)

    @staticmethod
    def _emit(sink: BinaryIO, data: bytes) -> None:
        if not data:
            return
        sink.write(data)
        sink.flush()
