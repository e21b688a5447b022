"""
Tests for tools/pipes.py - the named-pipe I/O multiplexer.

A helper thread plays the remote side: it opens the FIFOs the way the
wrapped Clojure code does and writes the end-of-stream marker when done.
"""

import io
import os
import shutil
import stat
import tempfile
import threading
import time
import unittest
from unittest.mock import patch

from replcast.core.cancel import CancelToken
from replcast.core.forms import split_forms
from replcast.tools.pipes import PipeMultiplexer, should_multiplex


def _stdin_pipe(data: bytes = b"", keep_open: bool = False):
    """Return (reader, writer_fd) for a pipe preloaded with ``data``."""
    read_fd, write_fd = os.pipe()
    if data:
        os.write(write_fd, data)
    if not keep_open:
        os.close(write_fd)
        write_fd = None
    return os.fdopen(read_fd, "rb", buffering=0), write_fd


class FakeRemote(threading.Thread):
    """Echoes *in* to *out* upper-cased, like an evaluated program would."""

    def __init__(self, mux: PipeMultiplexer, err_text: bytes = b"", split_marker: bool = False):
        super().__init__(daemon=True)
        self.paths = dict(mux.paths)
        self.marker = mux.marker.encode("utf-8")
        self.err_text = err_text
        self.split_marker = split_marker
        self.received = b""

    def run(self):
        with open(self.paths["out"], "wb", buffering=0) as out, \
                open(self.paths["err"], "wb", buffering=0) as err:
            with open(self.paths["in"], "rb") as stdin:
                self.received = stdin.read()
            out.write(self.received.upper())
            if self.split_marker:
                half = len(self.marker) // 2
                out.write(self.marker[:half])
                time.sleep(0.2)
                out.write(self.marker[half:])
            else:
                out.write(self.marker)
            err.write(self.err_text)
            err.write(self.marker)


class TestPipeMultiplexer(unittest.TestCase):
    """Test cases for PipeMultiplexer."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.stdout = io.BytesIO()
        self.stderr = io.BytesIO()
        self._fds = []

    def tearDown(self):
        for fd in self._fds:
            try:
                os.close(fd)
            except OSError:
                pass
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _mux(self, stdin, cancel=None) -> PipeMultiplexer:
        return PipeMultiplexer(
            stdin=stdin,
            stdout=self.stdout,
            stderr=self.stderr,
            cancel=cancel,
            directory=self.temp_dir,
        )

    def test_open_creates_fifos_and_close_removes_them(self):
        stdin, _ = _stdin_pipe()
        mux = self._mux(stdin)
        mux.open()
        self.assertEqual(sorted(mux.paths), ["err", "in", "out"])
        for path in mux.paths.values():
            self.assertTrue(stat.S_ISFIFO(os.stat(path).st_mode))
        root = mux.root

        mux.close()
        mux.close()
        self.assertFalse(root.exists())
        self.assertEqual(os.listdir(self.temp_dir), [])
        stdin.close()

    def test_stdin_and_output_round_trip(self):
        stdin, _ = _stdin_pipe(b"hello\nworld\n")
        mux = self._mux(stdin)
        mux.open()
        mux.start()
        remote = FakeRemote(mux, err_text=b"careful\n")
        remote.start()

        self.assertTrue(mux.finish(grace=5.0))
        remote.join(5.0)

        self.assertEqual(remote.received, b"hello\nworld\n")
        self.assertEqual(self.stdout.getvalue(), b"HELLO\nWORLD\n")
        self.assertEqual(self.stderr.getvalue(), b"careful\n")
        self.assertEqual(os.listdir(self.temp_dir), [])
        stdin.close()

    def test_marker_split_across_writes_is_not_printed(self):
        stdin, _ = _stdin_pipe(b"abc")
        mux = self._mux(stdin)
        mux.open()
        mux.start()
        FakeRemote(mux, split_marker=True).start()

        self.assertTrue(mux.finish(grace=5.0))
        self.assertEqual(self.stdout.getvalue(), b"ABC")
        self.assertEqual(self.stderr.getvalue(), b"")
        stdin.close()

    def test_cancel_stops_blocked_shuttles_and_removes_pipes(self):
        # Nobody ever opens the pipes and stdin never ends.
        stdin, write_fd = _stdin_pipe(keep_open=True)
        self._fds.append(write_fd)
        mux = self._mux(stdin)
        mux.open()
        mux.start()
        time.sleep(0.2)
        self.assertTrue(mux.active)

        mux.cancel()
        self.assertFalse(mux.active)
        self.assertIsNone(mux.root)
        self.assertEqual(os.listdir(self.temp_dir), [])
        stdin.close()

    def test_cancel_token_stops_shuttles(self):
        stdin, write_fd = _stdin_pipe(keep_open=True)
        self._fds.append(write_fd)
        token = CancelToken()
        mux = self._mux(stdin, cancel=token)
        mux.open()
        mux.start()

        token.cancel()
        self.assertTrue(mux._join(2.0))
        mux.close()
        self.assertEqual(os.listdir(self.temp_dir), [])
        stdin.close()

    def test_finish_without_remote_gives_up_after_grace(self):
        stdin, _ = _stdin_pipe()
        mux = self._mux(stdin)
        mux.open()
        mux.start()

        self.assertFalse(mux.finish(grace=0.2))
        self.assertFalse(mux.active)
        self.assertEqual(os.listdir(self.temp_dir), [])
        stdin.close()

    def test_context_manager_cleans_up_on_error(self):
        stdin, _ = _stdin_pipe()
        with self.assertRaises(RuntimeError):
            with self._mux(stdin) as mux:
                mux.start()
                raise RuntimeError("evaluation failed")
        self.assertFalse(mux.active)
        self.assertEqual(os.listdir(self.temp_dir), [])
        stdin.close()

    def test_binding_form_is_one_balanced_form(self):
        stdin, _ = _stdin_pipe()
        with self._mux(stdin) as mux:
            form = mux.binding_form('(println "hi")')
            self.assertEqual(split_forms(form), [form])
            for path in mux.paths.values():
                self.assertIn(str(path), form)
            self.assertIn(mux.marker, form)
            self.assertIn("*in* pipe-in", form)
        stdin.close()

    def test_binding_form_requires_open_pipes(self):
        with self.assertRaises(RuntimeError):
            PipeMultiplexer(stdin=io.BytesIO()).binding_form("(f)")


class TestShouldMultiplex(unittest.TestCase):
    def test_forced(self):
        self.assertTrue(should_multiplex(io.BytesIO(), force=True))

    def test_stream_without_descriptor(self):
        self.assertTrue(should_multiplex(io.BytesIO()))

    def test_pipe_is_not_a_terminal(self):
        stdin, _ = _stdin_pipe()
        try:
            self.assertTrue(should_multiplex(stdin))
        finally:
            stdin.close()

    def test_terminal_is_not_multiplexed(self):
        stdin, _ = _stdin_pipe()
        try:
            with patch("replcast.tools.pipes.os.isatty", return_value=True):
                self.assertFalse(should_multiplex(stdin))
        finally:
            stdin.close()


if __name__ == "__main__":
    unittest.main()
