# testServer.py

import io
import socket
import threading
import unittest
from unittest.mock import MagicMock

import client
from chatcommon import Message, UserOutputType, encode_line
from server import ChatServer


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


###############################################################################
#                              BROADCAST TESTS                                #
###############################################################################
class TestBroadcast(unittest.TestCase):
    """Unit tests with fake client writers, no sockets involved."""

    def setUp(self):
        self.server = ChatServer("127.0.0.1", 0)
        self.addCleanup(self.server.close)

    def test_skips_sender(self):
        alice, bob = MagicMock(), MagicMock()
        self.server.clients = {"alice": alice, "bob": bob}
        message = Message("hello", author="alice")

        self.server.broadcast(message, sender="alice")

        bob.write.assert_called_once_with(encode_line(message))
        alice.write.assert_not_called()

    def test_drops_broken_client(self):
        broken, bob = MagicMock(), MagicMock()
        broken.write.side_effect = BrokenPipeError("gone")
        self.server.clients = {"broken": broken, "bob": bob}

        with self.assertLogs("server", level="WARNING"):
            self.server.broadcast(Message("hello"))

        self.assertEqual(list(self.server.clients), ["bob"])
        bob.write.assert_called_once()
        broken.close.assert_called_once()
        bob.close.assert_not_called()


###############################################################################
#                             INTEGRATION TESTS                               #
###############################################################################
class TestServerIntegration(unittest.TestCase):

    def setUp(self):
        self.server = ChatServer("127.0.0.1", 0)
        self.thread = threading.Thread(target=self.server.serve_forever, daemon=True)
        self.thread.start()
        self.addCleanup(self.thread.join, 5)
        self.addCleanup(self.server.close)

    def connect(self, timeout=5):
        sock = socket.create_connection(self.server.address[:2], timeout=timeout)
        self.addCleanup(sock.close)
        return sock

    def wait_for_clients(self, count):
        for _ in range(500):
            with self.server.lock:
                if len(self.server.clients) == count:
                    return
            threading.Event().wait(0.01)
        self.fail(f"expected {count} connected clients")

    def test_message_reaches_other_client(self):
        alice, bob = self.connect(), self.connect()
        self.wait_for_clients(2)
        bob_reader = bob.makefile("rb")
        self.addCleanup(bob_reader.close)

        alice.sendall(encode_line(Message("hi bob", author="alice")))

        received = Message.from_json(bob_reader.readline())
        self.assertEqual(received, Message("hi bob", author="alice"))

    def test_client_session_against_server(self):
        """Alice runs a real client session, hears bob, then says bye."""
        bob = self.connect()
        alice_sock = self.connect(timeout=None)
        self.wait_for_clients(2)
        user_out = CapturingBytesIO()
        read_end, write_end = socket.socketpair()
        self.addCleanup(write_end.close)
        self.addCleanup(read_end.close)
        user_in = read_end.makefile("r")
        self.addCleanup(user_in.close)

        result = {}
        runner = threading.Thread(
            target=lambda: result.update(handler=client.run_session(
                alice_sock, "alice", UserOutputType.TEXT, user_in, user_out)),
            daemon=True,
        )
        runner.start()
        bob.sendall(encode_line(Message("welcome alice", author="bob")))
        for _ in range(500):
            if user_out.contents():
                break
            threading.Event().wait(0.01)
        write_end.sendall(b"bye\n")
        runner.join(5)

        self.assertFalse(runner.is_alive())
        self.assertEqual(user_out.contents().decode("utf-8").splitlines(), ["bob > welcome alice"])
        self.assertEqual(result["handler"].delivered, 1)
        bob_reader = bob.makefile("rb")
        self.addCleanup(bob_reader.close)
        self.assertEqual(Message.from_json(bob_reader.readline()).content, "bye")



if __name__ == '__main__':
    unittest.main()
