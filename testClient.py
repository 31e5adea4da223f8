#!/usr/bin/env python3
"""
testClient.py

Unit and integration tests for the console chat client: argument parsing,
connecting, and a whole session over a socket pair standing in for the
server connection.

Usage:
  python -m unittest testClient.py
"""

import gc
import io
import logging
import os
import socket
import unittest
from unittest.mock import patch

import client
from chatcommon import ChatFailure, Failure, Message, UserOutputType, encode_line
from serverhandler import ExitReason

test_logger = logging.getLogger("test.client")


class CapturingBytesIO(io.BytesIO):
    def __init__(self):
        super().__init__()
        self.final = b""

    def close(self):
        if not self.closed:
            self.final = self.getvalue()
        super().close()

    def contents(self):
        return self.final if self.closed else self.getvalue()


M1 = Message("hello", author="alice")
M2 = Message("hi alice", author="bob")
M3 = Message("how are you?", author="alice")


# -------------------------------------------------------------------
# UNIT TESTS
# -------------------------------------------------------------------
class TestClientArgs(unittest.TestCase):

    def test_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            args = client.parse_args([])
        self.assertEqual(args.host, "127.0.0.1")
        self.assertEqual(args.port, 65432)
        self.assertEqual(args.name, "anonymous")
        self.assertEqual(args.output, "text")
        self.assertFalse(args.verbose)

    def test_environment(self):
        env = {"CHAT_SERVER_HOST": "10.0.0.5", "CHAT_SERVER_PORT": "7000", "CHAT_USER_NAME": "carol"}
        with patch.dict(os.environ, env, clear=True):
            args = client.parse_args([])
        self.assertEqual((args.host, args.port, args.name), ("10.0.0.5", 7000, "carol"))

    def test_command_line_wins(self):
        with patch.dict(os.environ, {"CHAT_USER_NAME": "carol"}):
            args = client.parse_args(["--name", "dave", "--output", "object", "-v"])
        self.assertEqual(args.name, "dave")
        self.assertEqual(args.output, "object")
        self.assertTrue(args.verbose)

    def test_bad_output_type(self):
        with patch("sys.stderr", new_callable=io.StringIO):
            with self.assertRaises(SystemExit):
                client.parse_args(["--output", "xml"])


class TestClientConnect(unittest.TestCase):

    def test_connection_refused(self):
        with patch("client.socket.create_connection", side_effect=ConnectionRefusedError("refused")):
            with self.assertLogs("client", level="ERROR"):
                with self.assertRaises(ChatFailure) as ctx:
                    client.connect("127.0.0.1", 1)
        self.assertIs(ctx.exception.failure, Failure.CLIENT_CONNECTION)

    def test_main_returns_failure_code(self):
        with patch("client.connect", side_effect=ChatFailure(Failure.CLIENT_CONNECTION, "refused")):
            code = client.main(["--host", "nowhere"], user_in=io.StringIO(), user_out=io.BytesIO())
        self.assertEqual(code, Failure.CLIENT_CONNECTION.value)


# -------------------------------------------------------------------
# INTEGRATION TESTS
# -------------------------------------------------------------------
class TestClientSession(unittest.TestCase):

    def setUp(self):
        self.ours, self.theirs = socket.socketpair()
        self.addCleanup(self.theirs.close)
        self.addCleanup(self.ours.close)

    def test_server_closes_connection(self):
        """Server sends three messages and hangs up while the user is idle."""
        self.theirs.sendall(encode_line(M1) + encode_line(M2) + encode_line(M3))
        self.theirs.shutdown(socket.SHUT_WR)
        read_fd, write_fd = os.pipe()
        user_in = os.fdopen(read_fd, "r")
        self.addCleanup(user_in.close)
        self.addCleanup(os.close, write_fd)
        user_out = CapturingBytesIO()

        handler = client.run_session(self.ours, "alice", UserOutputType.TEXT, user_in, user_out, test_logger)

        self.assertIs(handler.exit_reason, ExitReason.EOF)
        self.assertEqual(user_out.contents().decode("utf-8").splitlines(),
                         ["alice > hello", "bob > hi alice", "alice > how are you?"])
        self.assertTrue(user_out.closed)
        self.assertEqual(self.ours.fileno(), -1)

    def test_user_says_bye(self):
        user_out = CapturingBytesIO()
        handler = client.run_session(self.ours, "bob", UserOutputType.OBJECT,
                                     io.StringIO("hello\nbye\nnot sent\n"), user_out, test_logger)

        self.assertIn(handler.exit_reason, (ExitReason.EOF, ExitReason.EXTERNAL_STOP))
        received = self.theirs.makefile("rb").read().decode("utf-8").splitlines()
        contents = [Message.from_json(line).content for line in received]
        self.assertEqual(contents, ["hello", "bye"])

    def test_bad_handler_closes_socket(self):
        """The UserHandler fails after the ServerHandler wrapped user_out: user_out stays open."""
        user_out = CapturingBytesIO()
        with self.assertRaises(ChatFailure) as ctx:
            client.run_session(self.ours, "bob", UserOutputType.TEXT, None, user_out, test_logger)
        self.assertIs(ctx.exception.failure, Failure.OTHER)
        self.assertEqual(self.ours.fileno(), -1)
        gc.collect()
        self.assertFalse(user_out.closed)

    def test_main_runs_session(self):
        self.theirs.sendall(encode_line(M1))
        with patch("client.connect", return_value=self.ours), \
             patch("sys.stderr", new_callable=io.StringIO):
            code = client.main(["--name", "bob"], user_in=io.StringIO("bye\n"), user_out=CapturingBytesIO())
        self.assertEqual(code, 0)
        self.assertEqual(self.ours.fileno(), -1)


if __name__ == '__main__':
    unittest.main()
