"""
Tests for core/cancel.py - the cancellation token.
"""

import unittest

from replcast.core.cancel import CancelToken
from replcast.core.errors import Cancelled


class TestCancelToken(unittest.TestCase):
    def test_starts_clear(self):
        token = CancelToken()
        self.assertFalse(token.cancelled)
        token.raise_if_cancelled()
        self.assertFalse(token.wait(0.01))

    def test_cancel_sets_flag_and_raises(self):
        token = CancelToken()
        token.cancel()
        self.assertTrue(token.cancelled)
        with self.assertRaises(Cancelled):
            token.raise_if_cancelled()

    def test_callbacks_run_once(self):
        token = CancelToken()
        calls = []
        token.on_cancel(lambda: calls.append(1))
        token.cancel()
        token.cancel()
        self.assertEqual(calls, [1])
        self.assertEqual(token.signals, 2)

    def test_late_callback_runs_immediately(self):
        token = CancelToken()
        token.cancel()
        calls = []
        token.on_cancel(lambda: calls.append(1))
        self.assertEqual(calls, [1])


if __name__ == "__main__":
    unittest.main()
