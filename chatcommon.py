import enum
import json
import logging
import threading
from datetime import datetime


class UserOutputType(enum.Enum):
    """How messages coming from the server are handed to the user."""
    TEXT = "text"      # one rendered line per message (console client)
    OBJECT = "object"  # one JSON object per line (GUI or scripted clients)


class Failure(enum.IntEnum):
    """Unrecoverable setup failures. The value doubles as the process exit code."""
    OTHER = 1
    CLIENT_CONNECTION = 2
    CLIENT_INPUT_STREAM = 3
    USER_OUTPUT_STREAM = 4
    MISSING_RUN_FLAG = 5


class ChatFailure(Exception):
    def __init__(self, failure, detail=""):
        self.failure = failure
        self.detail = detail
        text = failure.name if not detail else f"{failure.name}: {detail}"
        super().__init__(text)


def child_logger(parent_logger, name):
    """Handlers log under their caller's logger when one is given."""
    if parent_logger is None:
        return logging.getLogger(name)
    return parent_logger.getChild(name)


# =========================
#   MESSAGES
# =========================
class Message:
    """A chat message as it travels on the wire (one JSON object)."""

    def __init__(self, content, author=None, date=None):
        self.content = content
        self.author = author
        self.date = date

    @classmethod
    def now(cls, content, author=None):
        return cls(content, author=author, date=datetime.now().isoformat(timespec="seconds"))

    def to_dict(self):
        json_message = {"content": self.content}
        if self.author is not None:
            json_message["author"] = self.author
        if self.date is not None:
            json_message["date"] = self.date
        return json_message

    def to_json(self):
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, text):
        """
        Decode one JSON object into a Message.

        Returns None when the server sent the JSON literal null.
        Raises ValueError for anything that is not a message object.
        """
        data = json.loads(text)
        if data is None:
            return None
        if not isinstance(data, dict):
            raise ValueError(f"expected a JSON object, got {type(data).__name__}")
        if "content" not in data:
            raise ValueError("message has no 'content' field")
        return cls(data["content"], author=data.get("author"), date=data.get("date"))

    def __eq__(self, other):
        if not isinstance(other, Message):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self):
        return f"Message({self.content!r}, author={self.author!r}, date={self.date!r})"

    def __str__(self):
        parts = []
        if self.date:
            parts.append(f"[{self.date}]")
        if self.author:
            parts.append(f"{self.author} >")
        parts.append(str(self.content))
        return " ".join(parts)


def encode_line(message):
    """JSON Lines framing: one object, utf-8, newline terminated."""
    return (message.to_json() + "\n").encode("utf-8")


def decode_line(line):
    if isinstance(line, bytes):
        line = line.decode("utf-8")
    return Message.from_json(line)


# =========================
#   SHARED RUN FLAG
# =========================
class RunFlag:
    """
    Run state shared by the ServerHandler and the UserHandler.

    Starts out running and can only ever be cleared, once. Reads take no lock;
    clearing is serialized so exactly one caller performs the transition.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._stopped = threading.Event()

    def is_running(self):
        return not self._stopped.is_set()

    def clear_if_set(self):
        """Clear the flag. Returns True only for the call that actually cleared it."""
        with self._lock:
            if self._stopped.is_set():
                return False
            self._stopped.set()
            return True

    def wait(self, timeout=None):
        """Block until the flag is cleared (or timeout). Returns True once cleared."""
        return self._stopped.wait(timeout)

    def __bool__(self):
        return self.is_running()

    def __repr__(self):
        return f"RunFlag(running={self.is_running()})"
