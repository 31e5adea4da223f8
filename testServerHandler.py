#!/usr/bin/env python3
"""
testServerHandler.py

Unit and integration tests for the ServerHandler, the thread relaying
messages from the server to the user.
We feed it fake server streams (BytesIO or small stream classes) and read
back what it wrote on the user side.

Usage:
  python -m unittest testServerHandler.py
"""

import gc
import io
import json
import logging
import socket
import threading
import unittest
from unittest.mock import MagicMock, patch

from chatcommon import ChatFailure, Failure, Message, RunFlag, UserOutputType, encode_line
from serverhandler import ExitReason, MessageReader, ObjectSink, ServerHandler, TextSink

test_logger = logging.getLogger("test.serverhandler")


# -------------------------------------------------------------------
# Fake streams
# -------------------------------------------------------------------
class CapturingBytesIO(io.BytesIO):
    """A BytesIO that remembers what was written even after close()."""
    def __init__(self):
        super().__init__()
        self.final = b""

    def close(self):
        if not self.closed:
            self.final = self.getvalue()
        super().close()

    def contents(self):
        return self.final if self.closed else self.getvalue()


class FlakyWriter(CapturingBytesIO):
    """Fails on the n-th write, like a user pipe going away."""
    def __init__(self, fail_on):
        super().__init__()
        self.fail_on = fail_on
        self.writes = 0

    def write(self, data):
        self.writes += 1
        if self.writes >= self.fail_on:
            raise BrokenPipeError("user output went away")
        return super().write(data)


class GatedStream:
    """A server stream whose reads block until the test opens the gate."""
    def __init__(self, lines):
        self.lines = list(lines)
        self.gate = threading.Event()
        self.waiting = threading.Event()
        self.reads = 0

    def readable(self):
        return True

    def readline(self):
        self.waiting.set()
        self.gate.wait(5)
        self.reads += 1
        if self.lines:
            return self.lines.pop(0)
        return b""

    def close(self):
        pass


def server_stream(*messages):
    return io.BytesIO(b"".join(encode_line(m) for m in messages))


def object_lines(data):
    return [Message.from_json(line) for line in data.decode("utf-8").splitlines()]


M1 = Message("hello", author="alice")
M2 = Message("hi alice", author="bob")
M3 = Message("how are you?", author="alice")
M4 = Message("fine", author="bob")


# -------------------------------------------------------------------
# CONSTRUCTION
# -------------------------------------------------------------------
class TestServerHandlerConstruction(unittest.TestCase):

    def make(self, server_in=None, user_out=None, out_type=UserOutputType.TEXT, common_run=None):
        return ServerHandler("alice", server_in, user_out, out_type, common_run, test_logger)

    def test_missing_input_stream(self):
        with self.assertRaises(ChatFailure) as ctx:
            self.make(None, io.BytesIO(), common_run=RunFlag())
        self.assertIs(ctx.exception.failure, Failure.CLIENT_INPUT_STREAM)

    def test_unreadable_input_stream(self):
        unreadable = MagicMock()
        unreadable.readable.return_value = False
        for server_in in [unreadable, object()]:
            with self.subTest(server_in=server_in):
                with self.assertRaises(ChatFailure) as ctx:
                    self.make(server_in, io.BytesIO(), common_run=RunFlag())
                self.assertIs(ctx.exception.failure, Failure.CLIENT_INPUT_STREAM)

    def test_missing_output_stream(self):
        with self.assertRaises(ChatFailure) as ctx:
            self.make(io.BytesIO(), None, common_run=RunFlag())
        self.assertIs(ctx.exception.failure, Failure.USER_OUTPUT_STREAM)

    def test_closed_output_stream(self):
        closed = io.BytesIO()
        closed.close()
        with self.assertRaises(ChatFailure) as ctx:
            self.make(io.BytesIO(), closed, common_run=RunFlag())
        self.assertIs(ctx.exception.failure, Failure.USER_OUTPUT_STREAM)

    def test_object_output_needs_bytes(self):
        with self.assertRaises(ChatFailure) as ctx:
            self.make(io.BytesIO(), io.StringIO(), UserOutputType.OBJECT, RunFlag())
        self.assertIs(ctx.exception.failure, Failure.USER_OUTPUT_STREAM)

    def test_missing_run_flag(self):
        with self.assertRaises(ChatFailure) as ctx:
            self.make(io.BytesIO(), io.BytesIO(), common_run=None)
        self.assertIs(ctx.exception.failure, Failure.MISSING_RUN_FLAG)

    def test_unknown_output_type(self):
        with self.assertRaises(ChatFailure) as ctx:
            self.make(io.BytesIO(), io.BytesIO(), "xml", RunFlag())
        self.assertIs(ctx.exception.failure, Failure.OTHER)

    def test_output_type_picks_one_sink(self):
        text = self.make(io.BytesIO(), io.BytesIO(), UserOutputType.TEXT, RunFlag())
        self.assertIsInstance(text.sink, TextSink)
        obj = self.make(io.BytesIO(), io.BytesIO(), "object", RunFlag())
        self.assertIsInstance(obj.sink, ObjectSink)
        self.assertIs(obj.out_type, UserOutputType.OBJECT)

    def test_failed_construction_starts_no_thread(self):
        with patch("serverhandler.threading.Thread") as thread_class:
            with self.assertRaises(ChatFailure):
                self.make(io.BytesIO(), io.BytesIO(), common_run=None)
        thread_class.assert_not_called()

    def test_failed_construction_leaves_user_output_open(self):
        """A failed handler must hand the caller's output back untouched."""
        unreadable = MagicMock()
        unreadable.readable.return_value = False
        cases = [
            (io.BytesIO(), UserOutputType.TEXT, None),
            (io.BytesIO(), "xml", RunFlag()),
            (None, UserOutputType.TEXT, RunFlag()),
            (unreadable, UserOutputType.TEXT, RunFlag()),
        ]
        for server_in, out_type, common_run in cases:
            with self.subTest(out_type=out_type, common_run=common_run):
                out = CapturingBytesIO()
                with self.assertRaises(ChatFailure):
                    self.make(server_in, out, out_type, common_run)
                gc.collect()
                self.assertFalse(out.closed)
                out.write(b"still usable\n")

    def test_detach_gives_output_back(self):
        out = CapturingBytesIO()
        handler = self.make(io.BytesIO(), out, UserOutputType.TEXT, RunFlag())
        handler.detach()
        del handler
        gc.collect()
        self.assertFalse(out.closed)

    def test_text_output_accepts_text_stream(self):
        out = io.StringIO()
        handler = self.make(server_stream(M1), out, UserOutputType.TEXT, RunFlag())
        handler.run()
        self.assertEqual(out.getvalue(), "alice > hello\n")


# -------------------------------------------------------------------
# RELAY LOOP
# -------------------------------------------------------------------
class TestServerHandlerRun(unittest.TestCase):

    def setUp(self):
        self.common_run = RunFlag()

    def make(self, server_in, user_out, out_type=UserOutputType.TEXT):
        return ServerHandler("alice", server_in, user_out, out_type, self.common_run, test_logger)

    def test_text_relay_until_eof(self):
        """Server sends three messages then closes: all three arrive, in order."""
        out = CapturingBytesIO()
        handler = self.make(server_stream(M1, M2, M3), out)

        reason = handler.run()

        self.assertIs(reason, ExitReason.EOF)
        self.assertEqual(handler.delivered, 3)
        self.assertEqual(out.contents().decode("utf-8"),
                         "alice > hello\nbob > hi alice\nalice > how are you?\n")
        self.assertFalse(self.common_run.is_running())

    def test_object_relay_until_eof(self):
        out = CapturingBytesIO()
        handler = self.make(server_stream(M1, M2, M3), out, UserOutputType.OBJECT)

        handler.run()

        self.assertEqual(object_lines(out.contents()), [M1, M2, M3])
        first = json.loads(out.contents().splitlines()[0])
        self.assertEqual(first, {"content": "hello", "author": "alice"})

    def test_delivery_failure_stops_relay(self):
        """The user side breaks while forwarding M3: only M1 and M2 got through."""
        out = FlakyWriter(fail_on=3)
        handler = self.make(server_stream(M1, M2, M3, M4), out, UserOutputType.OBJECT)

        with self.assertLogs(test_logger, level="WARNING"):
            reason = handler.run()

        self.assertIs(reason, ExitReason.WRITE_ERROR)
        self.assertEqual(object_lines(out.contents()), [M1, M2])
        self.assertEqual(out.writes, 3)
        self.assertEqual(handler.delivered, 2)
        self.assertFalse(self.common_run.is_running())

    def test_order_kept_up_to_first_failure(self):
        messages = [Message(f"message {i}", author="bob") for i in range(6)]
        for fail_on in range(1, 7):
            with self.subTest(fail_on=fail_on):
                self.common_run = RunFlag()
                out = FlakyWriter(fail_on=fail_on)
                handler = self.make(server_stream(*messages), out, UserOutputType.OBJECT)
                with self.assertLogs(test_logger, level="WARNING"):
                    handler.run()
                self.assertEqual(object_lines(out.contents()), messages[:fail_on - 1])

    def test_malformed_message_stops_relay(self):
        data = encode_line(M1) + b"{this is not json\n" + encode_line(M2)
        server_in = io.BytesIO(data)
        out = CapturingBytesIO()
        handler = self.make(server_in, out)

        with self.assertLogs(test_logger, level="WARNING") as logs:
            reason = handler.run()

        self.assertIs(reason, ExitReason.READ_ERROR)
        self.assertEqual(handler.delivered, 1)
        # M2 was never read
        self.assertEqual(server_in.read(), encode_line(M2))
        self.assertIn("could not read message", "\n".join(logs.output))

    def test_null_message_stops_relay(self):
        data = encode_line(M1) + b"null\n" + encode_line(M2)
        out = CapturingBytesIO()
        handler = self.make(io.BytesIO(data), out)

        with self.assertLogs(test_logger, level="WARNING") as logs:
            reason = handler.run()

        self.assertIs(reason, ExitReason.NULL_MESSAGE)
        self.assertEqual(out.contents().decode("utf-8"), "alice > hello\n")
        self.assertIn("null input read", "\n".join(logs.output))
        self.assertFalse(self.common_run.is_running())

    def test_blank_lines_are_skipped(self):
        data = b"\n" + encode_line(M1) + b"  \n" + encode_line(M2)
        out = CapturingBytesIO()
        handler = self.make(io.BytesIO(data), out, UserOutputType.OBJECT)
        handler.run()
        self.assertEqual(object_lines(out.contents()), [M1, M2])

    def test_read_error_stops_relay(self):
        server_in = MagicMock()
        server_in.readable.return_value = True
        server_in.readline.side_effect = ConnectionResetError("reset by peer")
        handler = self.make(server_in, CapturingBytesIO())

        with self.assertLogs(test_logger, level="WARNING"):
            reason = handler.run()

        self.assertIs(reason, ExitReason.READ_ERROR)
        self.assertEqual(server_in.readline.call_count, 1)
        self.assertFalse(self.common_run.is_running())

    def test_flag_already_cleared_reads_nothing(self):
        server_in = MagicMock()
        server_in.readable.return_value = True
        handler = self.make(server_in, CapturingBytesIO())
        self.common_run.clear_if_set()

        reason = handler.run()

        self.assertIs(reason, ExitReason.EXTERNAL_STOP)
        server_in.readline.assert_not_called()
        self.assertFalse(self.common_run.is_running())

    def test_sibling_stops_during_read(self):
        """
        The UserHandler clears the flag while we are blocked on a read:
        the read completes, then the loop notices and reads no more.
        """
        server_in = GatedStream([encode_line(M1), encode_line(M2)])
        out = CapturingBytesIO()
        handler = self.make(server_in, out)

        thread = handler.start()
        self.assertTrue(server_in.waiting.wait(5))
        self.assertTrue(self.common_run.clear_if_set())
        server_in.gate.set()
        thread.join(5)

        self.assertFalse(thread.is_alive())
        self.assertEqual(server_in.reads, 1)
        self.assertIs(handler.exit_reason, ExitReason.EXTERNAL_STOP)
        self.assertEqual(out.contents().decode("utf-8"), "alice > hello\n")

    def test_text_delivery_failure_stops_relay(self):
        """Same as above with text output: the failing write marks the sink in error."""
        out = FlakyWriter(fail_on=3)
        handler = self.make(server_stream(M1, M2, M3, M4), out)

        with self.assertLogs(test_logger, level="WARNING"):
            reason = handler.run()

        self.assertIs(reason, ExitReason.WRITE_ERROR)
        self.assertEqual(out.contents().decode("utf-8"), "alice > hello\nbob > hi alice\n")
        self.assertEqual(handler.delivered, 2)
        self.assertTrue(handler.sink.check_error())
        self.assertFalse(self.common_run.is_running())

    def test_unexpected_decode_error_still_clears_flag(self):
        """A message nested too deep for json makes decoding raise RecursionError."""
        depth = 100000
        data = encode_line(M1) + b'{"content": ' + b"[" * depth + b"]" * depth + b"}\n"
        handler = self.make(io.BytesIO(data), CapturingBytesIO())

        with self.assertLogs(test_logger, level="ERROR"):
            reason = handler.run()

        self.assertIs(reason, ExitReason.READ_ERROR)
        self.assertIs(handler.exit_reason, ExitReason.READ_ERROR)
        self.assertEqual(handler.delivered, 1)
        self.assertFalse(self.common_run.is_running())

    def test_unexpected_delivery_error_still_clears_flag(self):
        handler = self.make(server_stream(M1, M2), CapturingBytesIO())
        handler.sink.deliver = MagicMock(side_effect=TypeError("unexpected"))

        with self.assertLogs(test_logger, level="ERROR"):
            reason = handler.run()

        self.assertIs(reason, ExitReason.WRITE_ERROR)
        handler.sink.deliver.assert_called_once_with(M1)
        self.assertFalse(self.common_run.is_running())

    def test_run_only_once(self):
        handler = self.make(server_stream(M1), CapturingBytesIO())
        handler.run()
        with self.assertRaises(RuntimeError):
            handler.run()

    def test_stop_signal_is_idempotent(self):
        handler = self.make(server_stream(), CapturingBytesIO())
        self.common_run.clear_if_set()
        handler.run()
        self.assertFalse(self.common_run.is_running())
        self.assertFalse(self.common_run.clear_if_set())


# -------------------------------------------------------------------
# SINKS
# -------------------------------------------------------------------
class TestSinks(unittest.TestCase):

    def test_text_sink_error_is_sticky(self):
        sink = TextSink(io.BytesIO())
        sink.writer = MagicMock()
        sink.writer.write.side_effect = OSError("disk full")
        self.assertFalse(sink.check_error())
        with self.assertRaises(OSError):
            sink.deliver(M1)
        self.assertTrue(sink.check_error())
        # stays set even if later writes work
        sink.writer.write.side_effect = None
        sink.deliver(M2)
        self.assertTrue(sink.check_error())

    def test_object_sink_flushes_each_message(self):
        out = MagicMock()
        out.writable.return_value = True
        sink = ObjectSink(out)
        sink.deliver(M1)
        out.write.assert_called_once_with(encode_line(M1))
        out.flush.assert_called_once()

    def test_reader_eof(self):
        reader = MessageReader(io.BytesIO(b""))
        with self.assertRaises(EOFError):
            reader.read_message()


# -------------------------------------------------------------------
# CLEANUP
# -------------------------------------------------------------------
class TestServerHandlerCleanup(unittest.TestCase):

    def make(self, out_type):
        return ServerHandler("alice", server_stream(M1), CapturingBytesIO(), out_type, RunFlag(), test_logger)

    def test_closes_reader_and_text_sink(self):
        handler = self.make(UserOutputType.TEXT)
        with patch.object(handler.reader, "close") as reader_close, \
             patch.object(handler.sink, "close") as sink_close:
            handler.cleanup()
        reader_close.assert_called_once()
        sink_close.assert_called_once()

    def test_closes_object_sink(self):
        handler = self.make(UserOutputType.OBJECT)
        handler.run()
        handler.cleanup()
        self.assertTrue(handler.reader.stream.closed)
        self.assertTrue(handler.sink.out.closed)
        self.assertEqual(object_lines(handler.sink.out.contents()), [M1])

    def test_text_cleanup_flushes_and_closes(self):
        handler = self.make(UserOutputType.TEXT)
        out = handler.sink.writer.buffer
        handler.run()
        handler.cleanup()
        self.assertTrue(out.closed)
        self.assertEqual(out.contents(), b"alice > hello\n")

    def test_close_failures_are_logged_not_raised(self):
        handler = self.make(UserOutputType.TEXT)
        handler.sink.writer = MagicMock()
        handler.sink.writer.close.side_effect = OSError("broken pipe")
        with patch.object(handler.reader, "close", side_effect=OSError("already gone")):
            with self.assertLogs(test_logger, level="ERROR") as logs:
                handler.cleanup()
        output = "\n".join(logs.output)
        self.assertIn("closing server input reader failed", output)
        self.assertIn("closing user output failed", output)
        self.assertIn("closed user text output has errors", output)

    def test_reader_failure_still_closes_sink(self):
        handler = self.make(UserOutputType.OBJECT)
        with patch.object(handler.reader, "close", side_effect=ValueError("closed file")), \
             patch.object(handler.sink, "close") as sink_close:
            with self.assertLogs(test_logger, level="ERROR"):
                handler.cleanup()
        sink_close.assert_called_once()


# -------------------------------------------------------------------
# INTEGRATION (real sockets)
# -------------------------------------------------------------------
class TestServerHandlerIntegration(unittest.TestCase):

    def test_relay_over_socket(self):
        ours, theirs = socket.socketpair()
        self.addCleanup(ours.close)
        self.addCleanup(theirs.close)
        common_run = RunFlag()
        out = CapturingBytesIO()
        handler = ServerHandler("alice", ours.makefile("rb"), out, UserOutputType.TEXT, common_run, test_logger)

        thread = handler.start()
        theirs.sendall(encode_line(M1) + encode_line(M2))
        theirs.sendall(encode_line(M3))
        theirs.shutdown(socket.SHUT_WR)
        thread.join(5)

        self.assertFalse(thread.is_alive())
        self.assertIs(handler.exit_reason, ExitReason.EOF)
        self.assertFalse(common_run.is_running())
        handler.cleanup()
        self.assertEqual(out.contents().decode("utf-8").splitlines(),
                         ["alice > hello", "bob > hi alice", "alice > how are you?"])


if __name__ == '__main__':
    unittest.main()
