"""
userhandler.py

Reads what the user types and sends it to the chat server, one message per
line. Typing "bye" sends it and ends the session.
"""

from chatcommon import ChatFailure, Failure, Message, child_logger, encode_line

QUIT_WORD = "bye"


class UserHandler:
    def __init__(self, name, user_in, server_out, common_run, parent_logger=None):
        self.name = name
        self.logger = child_logger(parent_logger, "UserHandler")
        self.sent = 0

        if user_in is None:
            self.logger.error("%s: no user input stream", name)
            raise ChatFailure(Failure.OTHER, "no user input stream")
        self.user_in = user_in

        if server_out is None:
            self.logger.error("%s: no server output stream", name)
            raise ChatFailure(Failure.CLIENT_CONNECTION, "no server output stream")
        try:
            writable = server_out.writable()
        except (AttributeError, OSError, ValueError) as e:
            raise ChatFailure(Failure.CLIENT_CONNECTION, str(e)) from e
        if not writable:
            raise ChatFailure(Failure.CLIENT_CONNECTION, "server stream is not writable")
        self.server_out = server_out

        if common_run is None:
            self.logger.error("%s: no common run state", name)
            raise ChatFailure(Failure.MISSING_RUN_FLAG, "no common run state")
        self.common_run = common_run

    def run(self):
        try:
            self._relay()
        except Exception:
            self.logger.exception("%s: unexpected error relaying user input", self.name)
        finally:
            if self.common_run.clear_if_set():
                self.logger.info("%s: run state cleared", self.name)

    def _relay(self):
        while self.common_run.is_running():
            try:
                line = self.user_in.readline()
            except (OSError, ValueError) as e:
                self.logger.warning("%s: could not read user input: %s", self.name, e)
                break
            if not line:
                self.logger.info("%s: end of user input", self.name)
                break
            if isinstance(line, bytes):
                line = line.decode("utf-8", errors="replace")

            content = line.strip()
            if not content:
                continue
            # The server side may have stopped while we were waiting on the user
            if not self.common_run.is_running():
                break

            try:
                self.server_out.write(encode_line(Message.now(content, author=self.name)))
                self.server_out.flush()
            except (OSError, ValueError) as e:
                self.logger.warning("%s: could not send message to server: %s", self.name, e)
                break
            self.sent += 1

            if content.lower() == QUIT_WORD:
                self.logger.info("%s: leaving the chat", self.name)
                break

    def cleanup(self):
        # user_in belongs to the caller (usually stdin), leave it open
        self.logger.info("%s: closing server output", self.name)
        try:
            self.server_out.close()
        except (OSError, ValueError) as e:
            self.logger.error("%s: closing server output failed: %s", self.name, e)
