import unittest

from message_store import Message, MessageStore, TopicHistory
from topics import SubscriptionRegistry


class TestTopicHistory(unittest.TestCase):
    def test_oldest_entry_evicted_at_capacity(self):
        history = TopicHistory("a", limit=3)
        for i in range(4):
            history.append(Message("a", str(i).encode()))

        self.assertEqual(len(history), 3)
        self.assertEqual([m.payload for m in history.snapshot()], [b"1", b"2", b"3"])

    def test_limit_must_be_positive(self):
        with self.assertRaises(ValueError):
            TopicHistory("a", limit=0)


class TestMessageStore(unittest.TestCase):
    """Ingest, retention and discard accounting"""

    def setUp(self):
        self.registry = SubscriptionRegistry()
        self.registry.add("sensors/+/temp", 1)
        self.registry.add("sensors/#", 0)
        self.store = MessageStore(self.registry, history_limit=5)

    def test_ingest_returns_effective_qos(self):
        self.assertEqual(self.store.ingest(Message("sensors/a/temp", b"21")), 1)
        self.assertEqual(self.store.ingest(Message("sensors/a/humidity", b"40")), 0)

    def test_effective_qos_follows_newest_ingest(self):
        self.store.ingest(Message("sensors/a/temp", b"21"))
        self.assertEqual(self.store.effective_qos("sensors/a/temp"), 1)

        self.registry.remove("sensors/+/temp")
        self.store.ingest(Message("sensors/a/temp", b"22"))
        self.assertEqual(self.store.effective_qos("sensors/a/temp"), 0)
        self.assertIsNone(self.store.effective_qos("sensors/a/humidity"))

        self.store.clear()
        self.assertIsNone(self.store.effective_qos("sensors/a/temp"))

    def test_unmatched_message_discarded(self):
        self.assertIsNone(self.store.ingest(Message("garage/door", b"open")))
        self.assertEqual(self.store.discarded, 1)
        self.assertEqual(self.store.snapshot("garage/door"), ())
        self.assertEqual(self.store.topics(), [])

    def test_history_bounded(self):
        for i in range(6):
            self.store.ingest(Message("sensors/a/temp", str(i).encode()))

        snap = self.store.snapshot("sensors/a/temp")
        self.assertEqual(len(snap), 5)
        self.assertEqual(snap[0].payload, b"1")
        self.assertEqual(snap[-1].payload, b"5")

    def test_retained_replaced_and_both_in_history(self):
        first = Message("sensors/a/temp", b"20", retain=True)
        second = Message("sensors/a/temp", b"22", retain=True)
        self.store.ingest(first)
        self.store.ingest(second)

        self.assertIs(self.store.retained("sensors/a/temp"), second)
        self.assertEqual(self.store.snapshot("sensors/a/temp"), (first, second))

    def test_non_retained_leaves_retained_slot(self):
        retained = Message("sensors/a/temp", b"20", retain=True)
        self.store.ingest(retained)
        self.store.ingest(Message("sensors/a/temp", b"21"))

        self.assertIs(self.store.retained("sensors/a/temp"), retained)

    def test_empty_retained_payload_clears_slot(self):
        self.store.ingest(Message("sensors/a/temp", b"20", retain=True))
        self.store.ingest(Message("sensors/a/temp", b"", retain=True))

        self.assertIsNone(self.store.retained("sensors/a/temp"))
        self.assertEqual(len(self.store.snapshot("sensors/a/temp")), 2)

    def test_snapshot_unaffected_by_later_ingest(self):
        self.store.ingest(Message("sensors/a/temp", b"1"))
        snap = self.store.snapshot("sensors/a/temp")
        self.store.ingest(Message("sensors/a/temp", b"2"))

        self.assertEqual(len(snap), 1)

    def test_topics_sorted(self):
        self.store.ingest(Message("sensors/b/temp", b"1"))
        self.store.ingest(Message("sensors/a/temp", b"1"))

        self.assertEqual(self.store.topics(), ["sensors/a/temp", "sensors/b/temp"])

    def test_clear_keeps_discard_count(self):
        self.store.ingest(Message("sensors/a/temp", b"1", retain=True))
        self.store.ingest(Message("garage/door", b"open"))
        self.store.clear()

        self.assertEqual(self.store.topics(), [])
        self.assertIsNone(self.store.retained("sensors/a/temp"))
        self.assertEqual(self.store.discarded, 1)

    def test_unsubscribed_topic_stops_ingesting(self):
        self.store.ingest(Message("sensors/a/temp", b"1"))
        self.registry.clear()

        self.assertIsNone(self.store.ingest(Message("sensors/a/temp", b"2")))
        self.assertEqual(len(self.store.snapshot("sensors/a/temp")), 1)


class TestMessage(unittest.TestCase):
    def test_text_replaces_invalid_utf8(self):
        msg = Message("a", b"ok \xff")
        self.assertEqual(msg.text, "ok �")

    def test_frozen(self):
        msg = Message("a", b"x")
        with self.assertRaises(AttributeError):
            msg.topic = "b"


if __name__ == "__main__":
    unittest.main()
