import unittest

from commands import Publish, Subscribe, Unsubscribe
from errors import InvalidTopic


class TestCommands(unittest.TestCase):
    def test_publish_encodes_text(self):
        self.assertEqual(Publish("a/b", "héllo").payload, "héllo".encode("utf-8"))

    def test_publish_accepts_bytearray(self):
        cmd = Publish("a/b", bytearray(b"\x00\x01"))
        self.assertIsInstance(cmd.payload, bytes)
        self.assertEqual(cmd.payload, b"\x00\x01")

    def test_publish_rejects_other_payloads(self):
        with self.assertRaises(TypeError):
            Publish("a/b", 42)

    def test_publish_needs_concrete_topic(self):
        with self.assertRaises(InvalidTopic):
            Publish("a/#", b"x")

    def test_publish_qos(self):
        with self.assertRaises(ValueError):
            Publish("a/b", b"x", qos=3)

    def test_subscribe_validation(self):
        self.assertEqual(Subscribe("a/+/c", 2).qos, 2)
        with self.assertRaises(InvalidTopic):
            Subscribe("a/b#")
        with self.assertRaises(ValueError):
            Subscribe("a/b", -1)
        with self.assertRaises(InvalidTopic):
            Unsubscribe("")


if __name__ == "__main__":
    unittest.main()
