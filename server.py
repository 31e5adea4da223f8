import argparse
import logging
import os
import socket
import threading

from chatcommon import decode_line, encode_line

HOST = '127.0.0.1'
PORT = 65432

logger = logging.getLogger("server")


class ChatServer:
    """Minimal chat server: every message is broadcast to the other clients."""

    def __init__(self, host=HOST, port=PORT):
        self.clients = {}  # addr -> writer
        self.lock = threading.Lock()
        self.server_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.server_socket.bind((host, port))
        self.server_socket.listen()
        self.address = self.server_socket.getsockname()

    def broadcast(self, message, sender=None):
        line = encode_line(message)
        # Holding the lock keeps lines from two senders from interleaving
        with self.lock:
            for addr, writer in list(self.clients.items()):
                if addr == sender:
                    continue
                try:
                    writer.write(line)
                    writer.flush()
                except OSError as e:
                    logger.warning("Error sending message to %s: %s", addr, e)
                    del self.clients[addr]
                    try:
                        writer.close()
                    except OSError as close_error:
                        logger.debug("Closing writer for %s: %s", addr, close_error)

    def handle_client(self, conn, addr):
        """Handles communication with a single client."""
        logger.info("New connection from %s", addr)
        reader = conn.makefile("rb")
        writer = conn.makefile("wb")
        with self.lock:
            self.clients[addr] = writer

        try:
            for line in reader:
                if not line.strip():
                    continue
                try:
                    message = decode_line(line)
                except ValueError as e:
                    logger.warning("Client %s sent an invalid message: %s", addr, e)
                    continue
                if message is None:
                    continue
                self.broadcast(message, sender=addr)
                if str(message.content).lower() == "bye":
                    break
        except OSError as e:
            logger.info("Client %s disconnected: %s", addr, e)

        with self.lock:
            self.clients.pop(addr, None)
        for stream in (reader, writer):
            try:
                stream.close()
            except OSError as e:
                logger.debug("Closing stream for %s: %s", addr, e)
        conn.close()
        logger.info("Connection with %s closed.", addr)

    def serve_forever(self):
        logger.info("Chat server listening on %s:%s", *self.address[:2])
        while True:
            try:
                conn, addr = self.server_socket.accept()
            except OSError:
                break  # listening socket was closed
            threading.Thread(target=self.handle_client, args=(conn, addr), daemon=True).start()

    def close(self):
        try:
            self.server_socket.shutdown(socket.SHUT_RDWR)
        except OSError as e:
            logger.debug("Listening socket shutdown: %s", e)
        self.server_socket.close()


def main(argv=None):
    parser = argparse.ArgumentParser(description="Start the chat server.")
    parser.add_argument("--host", default=os.getenv("CHAT_SERVER_HOST", HOST), help="Server hostname or IP")
    parser.add_argument("--port", type=int, default=int(os.getenv("CHAT_SERVER_PORT", PORT)), help="Port number")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    chat_server = ChatServer(args.host, args.port)
    try:
        chat_server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Stopping server")
    finally:
        chat_server.close()


if __name__ == '__main__':
    main()
