import importlib.util
import unittest

from message_store import Message

HAS_QT = importlib.util.find_spec("PyQt6") is not None

if HAS_QT:
    from PyQt6.QtCore import QCoreApplication, Qt

    from models import TopicHistoryModel


@unittest.skipUnless(HAS_QT, "PyQt6 not installed")
class TestTopicHistoryModel(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.app = QCoreApplication.instance() or QCoreApplication([])

    def setUp(self):
        self.model = TopicHistoryModel()
        self.messages = (
            Message("sensors/a/temp", b"21.5", qos=1),
            Message("sensors/a/temp", b'{"alarm": true}', retain=True),
        )

    def test_set_messages_reports_change(self):
        self.assertTrue(self.model.set_messages(self.messages))
        self.assertFalse(self.model.set_messages(list(self.messages)))
        self.assertEqual(self.model.rowCount(), 2)
        self.assertEqual(self.model.columnCount(), 6)

    def test_display_data(self):
        self.model.set_messages(self.messages)

        payload = self.model.data(self.model.index(0, 2), Qt.ItemDataRole.DisplayRole)
        qos = self.model.data(self.model.index(0, 3), Qt.ItemDataRole.DisplayRole)
        retain = self.model.data(self.model.index(1, 4), Qt.ItemDataRole.DisplayRole)
        self.assertEqual((payload, qos, retain), ("21.5", "1", "R"))

    def test_long_payload_truncated(self):
        self.model.set_messages([Message("a", b"x" * 500)])
        shown = self.model.data(self.model.index(0, 2), Qt.ItemDataRole.DisplayRole)
        self.assertEqual(len(shown), 118)
        self.assertTrue(shown.endswith("…"))

    def test_filter(self):
        self.model.set_messages(self.messages)
        self.model.set_filter("ALARM")

        self.assertEqual(self.model.rowCount(), 1)
        self.assertEqual(self.model.total_count, 2)
        self.assertIs(self.model.message_at(0), self.messages[1])

        self.model.set_filter("")
        self.assertEqual(self.model.rowCount(), 2)

    def test_header(self):
        header = self.model.headerData(1, Qt.Orientation.Horizontal, Qt.ItemDataRole.DisplayRole)
        self.assertEqual(header, "Topic")

    def test_clear(self):
        self.model.set_messages(self.messages)
        self.model.clear()
        self.assertEqual(self.model.rowCount(), 0)
        self.assertIsNone(self.model.message_at(0))


if __name__ == "__main__":
    unittest.main()
