# testChatCommon.py

import json
import threading
import unittest

from chatcommon import (
    ChatFailure,
    Failure,
    Message,
    RunFlag,
    UserOutputType,
    decode_line,
    encode_line,
)


###############################################################################
#                              RUN FLAG TESTS                                 #
###############################################################################
class TestRunFlag(unittest.TestCase):

    def test_starts_running(self):
        flag = RunFlag()
        self.assertTrue(flag.is_running())
        self.assertTrue(flag)

    def test_clear_only_once(self):
        """The first clear does the transition, later ones are no-ops."""
        flag = RunFlag()
        self.assertTrue(flag.clear_if_set())
        self.assertFalse(flag.is_running())
        self.assertFalse(flag.clear_if_set())
        self.assertFalse(flag.clear_if_set())
        self.assertFalse(flag.is_running())

    def test_concurrent_clears_have_one_winner(self):
        flag = RunFlag()
        barrier = threading.Barrier(16)
        results = []
        lock = threading.Lock()

        def clear():
            barrier.wait()
            cleared = flag.clear_if_set()
            with lock:
                results.append(cleared)

        threads = [threading.Thread(target=clear) for _ in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(5)

        self.assertEqual(len(results), 16)
        self.assertEqual(results.count(True), 1)
        self.assertFalse(flag.is_running())

    def test_reads_never_go_back_to_running(self):
        flag = RunFlag()
        observed = [flag.is_running()]
        flag.clear_if_set()
        for _ in range(5):
            observed.append(flag.is_running())
            flag.clear_if_set()
        self.assertEqual(observed, [True] + [False] * 5)

    def test_wait(self):
        flag = RunFlag()
        self.assertFalse(flag.wait(0.01))
        threading.Timer(0.05, flag.clear_if_set).start()
        self.assertTrue(flag.wait(5))


###############################################################################
#                               MESSAGE TESTS                                 #
###############################################################################
class TestMessage(unittest.TestCase):

    def test_str_with_everything(self):
        message = Message("hello", author="alice", date="2024-02-01T10:00:00")
        self.assertEqual(str(message), "[2024-02-01T10:00:00] alice > hello")

    def test_str_content_only(self):
        self.assertEqual(str(Message("server is going down")), "server is going down")

    def test_now_sets_date(self):
        message = Message.now("hi", author="bob")
        self.assertIsNotNone(message.date)
        self.assertEqual(message.author, "bob")

    def test_to_dict_leaves_out_missing_fields(self):
        self.assertEqual(Message("hi").to_dict(), {"content": "hi"})

    def test_from_json(self):
        message = Message.from_json('{"content": "hi", "author": "bob"}')
        self.assertEqual(message, Message("hi", author="bob"))

    def test_from_json_null(self):
        self.assertIsNone(Message.from_json("null"))

    def test_from_json_rejects_garbage(self):
        for text in ["{not json", "[1, 2]", '"hello"', '{"author": "bob"}']:
            with self.subTest(text=text):
                with self.assertRaises(ValueError):
                    Message.from_json(text)

    def test_encode_line(self):
        line = encode_line(Message("hi", author="bob"))
        self.assertTrue(line.endswith(b"\n"))
        self.assertEqual(line.count(b"\n"), 1)
        self.assertEqual(json.loads(line), {"content": "hi", "author": "bob"})

    def test_decode_line_bytes(self):
        self.assertEqual(decode_line(b'{"content": "caf\xc3\xa9"}\n'), Message("café"))


class TestFailure(unittest.TestCase):

    def test_codes_are_distinct(self):
        codes = [f.value for f in Failure]
        self.assertEqual(len(codes), len(set(codes)))
        self.assertNotIn(0, codes)

    def test_chat_failure_carries_kind(self):
        error = ChatFailure(Failure.CLIENT_INPUT_STREAM, "no server input stream")
        self.assertIs(error.failure, Failure.CLIENT_INPUT_STREAM)
        self.assertIn("CLIENT_INPUT_STREAM", str(error))

    def test_output_type_from_value(self):
        self.assertIs(UserOutputType("object"), UserOutputType.OBJECT)
        self.assertIs(UserOutputType(UserOutputType.TEXT), UserOutputType.TEXT)


if __name__ == '__main__':
    unittest.main()
