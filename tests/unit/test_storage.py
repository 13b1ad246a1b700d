import tempfile
import unittest
from pathlib import Path

from message_store import Message
from storage import FileLogger


class TestFileLogger(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.directory = Path(self._tmp.name)

    def tearDown(self):
        self._tmp.cleanup()

    def test_one_line_per_message(self):
        logger = FileLogger(directory=self.directory, filename="session.txt")
        logger.store_message(Message("sensors/a/temp", b"21.5", qos=1, retain=True))
        logger.store_message(Message("notes", b"line one\nline two"))
        logger.close()

        lines = (self.directory / "session.txt").read_text(encoding="utf-8").splitlines()
        records = [line for line in lines if line and not line.startswith("#")]
        self.assertEqual(len(records), 2)
        self.assertIn("QoS=1  R     sensors/a/temp  21.5", records[0])
        self.assertTrue(records[1].endswith("notes  line one\\nline two"))
        self.assertTrue(lines[-1].startswith("# Session ended"))

    def test_auto_named_file(self):
        logger = FileLogger(directory=self.directory / "logs")
        try:
            self.assertEqual(logger.path.parent, self.directory / "logs")
            self.assertTrue(logger.path.name.startswith("mqtt_"))
            self.assertEqual(logger.info, str(logger.path))
        finally:
            logger.close()

    def test_absolute_filename_ignores_directory(self):
        target = self.directory / "abs.txt"
        logger = FileLogger(directory="unused", filename=target)
        logger.close()
        self.assertTrue(target.exists())

    def test_close_twice(self):
        logger = FileLogger(directory=self.directory, filename="x.txt")
        logger.close()
        logger.close()


if __name__ == "__main__":
    unittest.main()
