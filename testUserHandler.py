# testUserHandler.py

import io
import logging
import unittest
from unittest.mock import MagicMock

from chatcommon import ChatFailure, Failure, Message, RunFlag
from userhandler import UserHandler

test_logger = logging.getLogger("test.userhandler")


class FakeServerOutput(io.BytesIO):
    """Collects what the UserHandler sends, readable after close()."""
    def __init__(self, fail=False):
        super().__init__()
        self.fail = fail
        self.final = b""

    def write(self, data):
        if self.fail:
            raise ConnectionResetError("server went away")
        return super().write(data)

    def close(self):
        if not self.closed:
            self.final = self.getvalue()
        super().close()

    def sent(self):
        data = self.final if self.closed else self.getvalue()
        return [Message.from_json(line) for line in data.decode("utf-8").splitlines()]


class TestUserHandler(unittest.TestCase):

    def setUp(self):
        self.common_run = RunFlag()
        self.server_out = FakeServerOutput()

    def make(self, user_in):
        return UserHandler("bob", user_in, self.server_out, self.common_run, test_logger)

    def test_sends_each_line(self):
        handler = self.make(io.StringIO("hello\n\n   \nhow is everyone?\n"))
        handler.run()

        sent = self.server_out.sent()
        self.assertEqual([m.content for m in sent], ["hello", "how is everyone?"])
        self.assertTrue(all(m.author == "bob" for m in sent))
        self.assertTrue(all(m.date for m in sent))
        self.assertEqual(handler.sent, 2)
        # end of input stops the session for both handlers
        self.assertFalse(self.common_run.is_running())

    def test_bye_ends_session(self):
        handler = self.make(io.StringIO("hello\nBye\nnever sent\n"))
        handler.run()

        self.assertEqual([m.content for m in self.server_out.sent()], ["hello", "Bye"])
        self.assertFalse(self.common_run.is_running())

    def test_stopped_by_server_handler(self):
        user_in = MagicMock()
        self.common_run.clear_if_set()
        self.make(user_in).run()
        user_in.readline.assert_not_called()
        self.assertEqual(self.server_out.sent(), [])

    def test_no_send_after_stop_while_reading(self):
        """The ServerHandler stops while we wait on the user: the line is dropped."""
        def readline():
            self.common_run.clear_if_set()
            return "too late\n"
        user_in = MagicMock()
        user_in.readline.side_effect = readline

        self.make(user_in).run()

        self.assertEqual(self.server_out.sent(), [])

    def test_send_failure_stops(self):
        self.server_out = FakeServerOutput(fail=True)
        handler = self.make(io.StringIO("hello\nagain\n"))
        with self.assertLogs(test_logger, level="WARNING"):
            handler.run()
        self.assertEqual(handler.sent, 0)
        self.assertFalse(self.common_run.is_running())

    def test_unexpected_error_still_clears_flag(self):
        user_in = MagicMock()
        user_in.readline.side_effect = TypeError("unexpected")
        with self.assertLogs(test_logger, level="ERROR"):
            self.make(user_in).run()
        self.assertFalse(self.common_run.is_running())

    def test_cleanup_closes_server_output_only(self):
        user_in = io.StringIO("")
        handler = self.make(user_in)
        handler.run()
        handler.cleanup()
        self.assertTrue(self.server_out.closed)
        self.assertFalse(user_in.closed)

    def test_cleanup_logs_close_failure(self):
        handler = self.make(io.StringIO(""))
        handler.server_out = MagicMock()
        handler.server_out.close.side_effect = BrokenPipeError("broken pipe")
        with self.assertLogs(test_logger, level="ERROR"):
            handler.cleanup()


class TestUserHandlerConstruction(unittest.TestCase):

    def test_failures(self):
        closed = io.BytesIO()
        closed.close()
        cases = [
            ((None, io.BytesIO(), RunFlag()), Failure.OTHER),
            ((io.StringIO(), None, RunFlag()), Failure.CLIENT_CONNECTION),
            ((io.StringIO(), closed, RunFlag()), Failure.CLIENT_CONNECTION),
            ((io.StringIO(), io.BytesIO(), None), Failure.MISSING_RUN_FLAG),
        ]
        for args, failure in cases:
            with self.subTest(failure=failure):
                with self.assertRaises(ChatFailure) as ctx:
                    UserHandler("bob", *args, parent_logger=test_logger)
                self.assertIs(ctx.exception.failure, failure)


if __name__ == '__main__':
    unittest.main()
