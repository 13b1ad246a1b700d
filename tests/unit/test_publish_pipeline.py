import unittest

from errors import PipelineFull
from publish_pipeline import MAX_PACKET_ID, Phase, PublishPipeline


class TestPacketIdentifiers(unittest.TestCase):
    def setUp(self):
        self.pipeline = PublishPipeline()

    def test_qos0_untracked(self):
        transmit = self.pipeline.publish("a", b"x", 0, False, now=0)

        self.assertIsNone(transmit.packet_id)
        self.assertFalse(transmit.dup)
        self.assertEqual(len(self.pipeline), 0)

    def test_ids_increase_from_one(self):
        ids = [self.pipeline.publish("a", b"x", 1, False, now=0).packet_id for _ in range(3)]
        self.assertEqual(ids, [1, 2, 3])

    def test_ids_wrap_after_maximum(self):
        self.pipeline._next_id = MAX_PACKET_ID
        self.assertEqual(self.pipeline.publish("a", b"x", 1, False, 0).packet_id, MAX_PACKET_ID)
        self.assertEqual(self.pipeline.publish("a", b"x", 1, False, 0).packet_id, 1)

    def test_pending_ids_skipped(self):
        self.pipeline.publish("a", b"x", 1, False, 0)        # 1, still pending
        self.pipeline.publish("a", b"x", 1, False, 0)        # 2
        self.pipeline.acknowledge(2)
        self.pipeline._next_id = 1

        self.assertEqual(self.pipeline.publish("a", b"x", 1, False, 0).packet_id, 2)

    def test_full(self):
        for _ in range(MAX_PACKET_ID):
            self.pipeline.publish("a", b"x", 1, False, 0)
        with self.assertRaises(PipelineFull):
            self.pipeline.publish("a", b"x", 1, False, 0)


class TestQos1(unittest.TestCase):
    """PUBACK tracking and retries"""

    def setUp(self):
        self.pipeline = PublishPipeline(retry_interval=5.0, max_retries=3)
        self.transmit = self.pipeline.publish("out/a", b"hello", 1, True, now=0)
        self.pid = self.transmit.packet_id

    def test_pending_record(self):
        pending = self.pipeline.get(self.pid)
        self.assertEqual(pending.phase, Phase.AWAITING_PUBACK)
        self.assertEqual(pending.next_retry_at, 5.0)
        self.assertEqual(pending.retry_count, 0)
        self.assertTrue(self.transmit.retain)

    def test_acknowledge(self):
        pending = self.pipeline.acknowledge(self.pid)

        self.assertEqual(pending.packet_id, self.pid)
        self.assertNotIn(self.pid, self.pipeline)
        self.assertIsNone(self.pipeline.acknowledge(self.pid))

    def test_not_due_before_deadline(self):
        self.assertEqual(self.pipeline.due(4.9), ([], []))

    def test_retry_with_dup_then_fail(self):
        for attempt, now in enumerate((5.0, 10.0, 15.0), start=1):
            resends, failures = self.pipeline.due(now)
            self.assertEqual(len(resends), 1)
            self.assertTrue(resends[0].dup)
            self.assertEqual(resends[0].packet_id, self.pid)
            self.assertEqual(failures, [])
            self.assertEqual(self.pipeline.get(self.pid).retry_count, attempt)
            self.assertTrue(self.pipeline.get(self.pid).message.dup)

        self.assertEqual(self.pipeline.due(19.9), ([], []))

        resends, failures = self.pipeline.due(20.0)
        self.assertEqual(resends, [])
        self.assertEqual([p.packet_id for p in failures], [self.pid])
        self.assertEqual(len(self.pipeline), 0)

    def test_ack_after_retry(self):
        self.pipeline.due(5.0)
        self.assertIsNotNone(self.pipeline.acknowledge(self.pid))
        self.assertEqual(self.pipeline.due(100.0), ([], []))


class TestQos2(unittest.TestCase):
    """PUBREC / PUBCOMP phases"""

    def setUp(self):
        self.pipeline = PublishPipeline(retry_interval=5.0, max_retries=2)
        self.pid = self.pipeline.publish("out/b", b"x", 2, False, now=0).packet_id

    def test_starts_awaiting_pubrec(self):
        self.assertEqual(self.pipeline.get(self.pid).phase, Phase.AWAITING_PUBREC)

    def test_puback_ignored(self):
        self.assertIsNone(self.pipeline.acknowledge(self.pid))
        self.assertIn(self.pid, self.pipeline)

    def test_full_handshake(self):
        pending = self.pipeline.received(self.pid, now=1.0)
        self.assertEqual(pending.phase, Phase.AWAITING_PUBCOMP)
        self.assertEqual(pending.next_retry_at, 6.0)

        self.assertIsNotNone(self.pipeline.complete(self.pid))
        self.assertEqual(len(self.pipeline), 0)

    def test_pubrec_resets_retries(self):
        self.pipeline.due(5.0)
        self.assertEqual(self.pipeline.get(self.pid).retry_count, 1)

        self.pipeline.received(self.pid, now=6.0)
        self.assertEqual(self.pipeline.get(self.pid).retry_count, 0)

    def test_unreleased_publish_not_resent(self):
        resends, failures = self.pipeline.due(5.0)
        self.assertEqual(resends, [])
        self.assertEqual(failures, [])
        self.assertEqual(self.pipeline.get(self.pid).retry_count, 1)
        self.assertFalse(self.pipeline.get(self.pid).message.dup)

        self.pipeline.due(10.0)
        resends, failures = self.pipeline.due(15.0)
        self.assertEqual(resends, [])
        self.assertEqual([p.packet_id for p in failures], [self.pid])

    def test_released_publish_not_resent(self):
        self.pipeline.received(self.pid, now=0.0)

        resends, failures = self.pipeline.due(5.0)
        self.assertEqual(resends, [])
        self.assertEqual(failures, [])
        self.assertEqual(self.pipeline.get(self.pid).retry_count, 1)

        self.pipeline.due(10.0)
        resends, failures = self.pipeline.due(15.0)
        self.assertEqual([p.packet_id for p in failures], [self.pid])

    def test_duplicate_pubrec_ignored(self):
        self.pipeline.received(self.pid, now=0.0)
        self.assertIsNone(self.pipeline.received(self.pid, now=1.0))

    def test_unknown_ids_ignored(self):
        self.assertIsNone(self.pipeline.complete(999))
        self.assertIsNone(self.pipeline.received(999, now=0.0))


class TestReconnect(unittest.TestCase):
    def setUp(self):
        self.pipeline = PublishPipeline(retry_interval=5.0)
        self.qos1 = self.pipeline.publish("a", b"1", 1, False, now=0).packet_id
        self.qos2 = self.pipeline.publish("b", b"2", 2, False, now=0).packet_id

    def test_without_session_abandons_qos2(self):
        abandoned = self.pipeline.session_restarted(False, now=3.0)

        self.assertEqual([p.packet_id for p in abandoned], [self.qos2])
        self.assertNotIn(self.qos2, self.pipeline)
        self.assertTrue(self.pipeline.get(self.qos1).message.dup)
        self.assertEqual(self.pipeline.get(self.qos1).next_retry_at, 8.0)

    def test_with_session_keeps_everything(self):
        self.pipeline.received(self.qos2, now=1.0)
        abandoned = self.pipeline.session_restarted(True, now=3.0)

        self.assertEqual(abandoned, [])
        self.assertTrue(self.pipeline.get(self.qos1).message.dup)
        released = self.pipeline.get(self.qos2)
        self.assertEqual(released.phase, Phase.AWAITING_PUBCOMP)
        self.assertFalse(released.message.dup)
        self.assertEqual(released.next_retry_at, 8.0)

    def test_abandon_all(self):
        abandoned = self.pipeline.abandon_all()

        self.assertEqual(sorted(p.packet_id for p in abandoned), [self.qos1, self.qos2])
        self.assertEqual(len(self.pipeline), 0)

    def test_snapshot_is_a_copy(self):
        snap = self.pipeline.snapshot()
        snap[self.qos1].retry_count = 99

        self.assertEqual(self.pipeline.get(self.qos1).retry_count, 0)


if __name__ == "__main__":
    unittest.main()
