"""
serverhandler.py

Reads the stream of messages coming from the chat server and hands each one
to the user side of the client. The user side accepts either
  - plain text, one rendered line per message (console client)
  - message objects, one JSON object per line (GUI or scripted clients)

The ServerHandler shares a RunFlag with the UserHandler: whichever stops first
clears it so the other one stops too.
"""

import enum
import io
import threading

from chatcommon import (
    ChatFailure,
    Failure,
    UserOutputType,
    child_logger,
    decode_line,
    encode_line,
)


class ExitReason(enum.Enum):
    EOF = "eof"
    READ_ERROR = "read_error"
    NULL_MESSAGE = "null_message"
    WRITE_ERROR = "write_error"
    EXTERNAL_STOP = "external_stop"


# =========================
#   SERVER INPUT
# =========================
class MessageReader:
    """Reads JSON Lines messages from the server's byte stream."""

    def __init__(self, stream):
        if not stream.readable():
            raise ValueError("server stream is not readable")
        self.stream = stream

    def read_message(self):
        """
        Block until the next message arrives.

        Raises EOFError when the server closes the connection, ValueError on
        a line that is not a message. Returns None if the server sent null.
        """
        while True:
            line = self.stream.readline()
            if not line:
                raise EOFError("server closed the connection")
            if line.strip():
                return decode_line(line)

    def close(self):
        self.stream.close()


# =========================
#   USER OUTPUT
# =========================
class TextSink:
    """Prints each message as one line of text."""

    def __init__(self, out):
        if not out.writable():
            raise ValueError("user stream is not writable")
        self.wrapped = not isinstance(out, io.TextIOBase)
        if self.wrapped:
            self.writer = io.TextIOWrapper(out, encoding="utf-8", newline="\n", write_through=True)
        else:
            self.writer = out
        # Sticky, like a PrintWriter's error state
        self.error = False

    def deliver(self, message):
        try:
            self.writer.write(f"{message}\n")
            self.writer.flush()
        except Exception:
            self.error = True
            raise

    def check_error(self):
        return self.error

    def detach(self):
        # Dropping our TextIOWrapper would close the caller's stream
        if self.wrapped:
            self.writer.detach()

    def close(self):
        try:
            self.writer.close()
        except (OSError, ValueError):
            self.error = True
            raise


class ObjectSink:
    """Writes each message as a JSON object on its own line."""

    def __init__(self, out):
        if isinstance(out, io.TextIOBase):
            raise ValueError("object output needs a byte stream")
        if not out.writable():
            raise ValueError("user stream is not writable")
        self.out = out

    def deliver(self, message):
        self.out.write(encode_line(message))
        self.out.flush()

    def detach(self):
        pass

    def close(self):
        self.out.close()


def open_sink(out, out_type):
    if out_type is UserOutputType.OBJECT:
        return ObjectSink(out)
    return TextSink(out)


# =========================
#   SERVER HANDLER
# =========================
class ServerHandler:
    def __init__(self, name, server_in, user_out, out_type, common_run, parent_logger=None):
        """
        name: our user name on the server (only used in log lines)
        server_in: byte stream coming from the server
        user_out: byte stream going to the user
        out_type: UserOutputType for user_out
        common_run: RunFlag shared with the UserHandler
        parent_logger: logger the handler logs under

        Raises ChatFailure if one of the streams or the run flag is unusable.
        Nothing is started here, the caller runs run() on its own thread.
        """
        self.name = name
        self.logger = child_logger(parent_logger, "ServerHandler")
        self.exit_reason = None
        self.delivered = 0
        self._started = False

        # Checks that need no stream come first, so a failure never leaves
        # a wrapper around the caller's streams behind
        if common_run is None:
            self.logger.error("%s: no common run state", name)
            raise ChatFailure(Failure.MISSING_RUN_FLAG, "no common run state")
        self.common_run = common_run
        try:
            out_type = UserOutputType(out_type)
        except ValueError as e:
            self.logger.error("%s: unknown user output type %r", name, out_type)
            raise ChatFailure(Failure.OTHER, str(e)) from e
        self.out_type = out_type

        if server_in is None:
            self.logger.error("%s: no server input stream", name)
            raise ChatFailure(Failure.CLIENT_INPUT_STREAM, "no server input stream")
        self.logger.info("%s: creating server input reader", name)
        try:
            self.reader = MessageReader(server_in)
        except (AttributeError, OSError, ValueError) as e:
            self.logger.error("%s: %s", name, Failure.CLIENT_INPUT_STREAM.name)
            raise ChatFailure(Failure.CLIENT_INPUT_STREAM, str(e)) from e

        if user_out is None:
            self.logger.error("%s: no user output stream", name)
            raise ChatFailure(Failure.USER_OUTPUT_STREAM, "no user output stream")
        self.logger.info("%s: creating %s user output", name, out_type.value)
        try:
            self.sink = open_sink(user_out, out_type)
        except (AttributeError, OSError, ValueError) as e:
            self.logger.error("%s: %s", name, Failure.USER_OUTPUT_STREAM.name)
            raise ChatFailure(Failure.USER_OUTPUT_STREAM, str(e)) from e

    def detach(self):
        """
        Give the user output back to the caller without closing it, for when
        the session is abandoned before run(). The handler is unusable after.
        """
        self.sink.detach()

    def start(self):

        """Run the relay loop on a new daemon thread and return that thread."""
        thread = threading.Thread(target=self.run, name=f"ServerHandler-{self.name}", daemon=True)
        thread.start()
        return thread

    def run(self):
        """
        Read messages from the server and deliver them to the user until the
        run flag drops or anything goes wrong. The first failure ends the loop,
        then the run flag is cleared so the UserHandler stops as well.
        """
        if self._started:
            raise RuntimeError("a ServerHandler can only be run once")
        self._started = True

        reason = ExitReason.EXTERNAL_STOP
        try:
            while self.common_run.is_running():
                try:
                    message = self.reader.read_message()
                except EOFError:
                    self.logger.warning("%s: server closed the connection", self.name)
                    reason = ExitReason.EOF
                    break
                except (OSError, ValueError) as e:
                    self.logger.warning("%s: could not read message from server: %s", self.name, e)
                    reason = ExitReason.READ_ERROR
                    break
                except Exception:
                    self.logger.exception("%s: unexpected error reading from server", self.name)
                    reason = ExitReason.READ_ERROR
                    break

                if message is None:
                    self.logger.warning("%s: null input read", self.name)
                    reason = ExitReason.NULL_MESSAGE
                    break

                try:
                    self.sink.deliver(message)
                except (OSError, ValueError) as e:
                    self.logger.warning("%s: could not send message to user: %s", self.name, e)
                    reason = ExitReason.WRITE_ERROR
                    break
                except Exception:
                    self.logger.exception("%s: unexpected error sending message to user", self.name)
                    reason = ExitReason.WRITE_ERROR
                    break
                self.delivered += 1
        finally:
            # Whatever ended the loop, the UserHandler must be told to stop
            self.exit_reason = reason
            self.logger.info("%s: relay stopped (%s) after %d messages",
                             self.name, reason.value, self.delivered)
            if self.common_run.clear_if_set():
                self.logger.info("%s: run state cleared", self.name)
        return reason


    def cleanup(self):
        """Close both streams. Failures are logged, never raised."""
        self.logger.info("%s: closing server input reader", self.name)
        try:
            self.reader.close()
        except (OSError, ValueError) as e:
            self.logger.error("%s: closing server input reader failed: %s", self.name, e)

        self.logger.info("%s: closing user output", self.name)
        try:
            self.sink.close()
        except (OSError, ValueError) as e:
            self.logger.error("%s: closing user output failed: %s", self.name, e)

        if isinstance(self.sink, TextSink) and self.sink.check_error():
            self.logger.error("%s: closed user text output has errors", self.name)
