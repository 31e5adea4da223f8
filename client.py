import argparse
import logging
import os
import socket
import sys
import threading

from chatcommon import ChatFailure, Failure, RunFlag, UserOutputType
from serverhandler import ServerHandler
from userhandler import QUIT_WORD, UserHandler

HOST = '127.0.0.1'
PORT = 65432

# stdin can't be interrupted, so we don't wait long for the UserHandler
USER_JOIN_TIMEOUT = 0.5

logger = logging.getLogger("client")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Connect to the chat server.")
    parser.add_argument("--host", default=os.getenv("CHAT_SERVER_HOST", HOST), help="Server hostname or IP")
    parser.add_argument("--port", type=int, default=int(os.getenv("CHAT_SERVER_PORT", PORT)), help="Port number")
    parser.add_argument("--name", default=os.getenv("CHAT_USER_NAME", os.getenv("USER", "anonymous")),
                        help="User name shown to the other users")
    parser.add_argument("--output", choices=[t.value for t in UserOutputType], default=UserOutputType.TEXT.value,
                        help="text: one line per message, object: one JSON object per line")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")
    return parser.parse_args(argv)


def connect(host, port):
    try:
        return socket.create_connection((host, port))
    except OSError as e:
        logger.error("could not connect to %s:%s: %s", host, port, e)
        raise ChatFailure(Failure.CLIENT_CONNECTION, str(e)) from e


def run_session(sock, name, out_type, user_in, user_out, parent_logger=None):
    """
    Relay messages both ways over sock until either side stops.

    Returns the ServerHandler once both handlers are cleaned up.
    Raises ChatFailure (after closing sock) if a handler can't be built.
    """
    parent_logger = parent_logger or logger
    common_run = RunFlag()
    server_in = sock.makefile("rb")
    server_out = sock.makefile("wb")
    server_handler = None
    try:
        server_handler = ServerHandler(name, server_in, user_out, out_type, common_run, parent_logger)
        user_handler = UserHandler(name, user_in, server_out, common_run, parent_logger)
    except ChatFailure:
        # user_out still belongs to the caller
        if server_handler is not None:
            server_handler.detach()
        server_in.close()
        server_out.close()
        sock.close()
        raise

    server_thread = server_handler.start()
    user_thread = threading.Thread(target=user_handler.run, name=f"UserHandler-{name}", daemon=True)
    user_thread.start()

    common_run.wait()
    # Wakes up the ServerHandler if it is still blocked on a read
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError as e:
        parent_logger.debug("socket shutdown: %s", e)

    server_thread.join()
    user_thread.join(USER_JOIN_TIMEOUT)

    server_handler.cleanup()
    user_handler.cleanup()
    sock.close()
    return server_handler


def main(argv=None, user_in=None, user_out=None):
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    if user_in is None:
        user_in = sys.stdin
    if user_out is None:
        # Let the handler close its output without closing our stdout
        user_out = open(sys.stdout.fileno(), "wb", closefd=False)

    try:
        sock = connect(args.host, args.port)
        print(f"Connected to chat at {args.host}:{args.port} as {args.name}. Type '{QUIT_WORD}' to leave.",
              file=sys.stderr)
        run_session(sock, args.name, UserOutputType(args.output), user_in, user_out)
    except ChatFailure as e:
        logger.error("client stopped: %s", e)
        return e.failure.value
    except KeyboardInterrupt:
        print("Exiting...", file=sys.stderr)
    return 0


if __name__ == '__main__':
    sys.exit(main())
