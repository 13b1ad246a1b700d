"""
MQTT Monitor — Entry Point
"""
import logging
import sys

from PyQt6.QtWidgets import QApplication

from main_window import MainWindow
from version import APP_NAME, __version__


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = QApplication(sys.argv)
    app.setApplicationName(APP_NAME)
    app.setApplicationVersion(__version__)

    window = MainWindow()
    window.show()

    sys.exit(app.exec())


if __name__ == "__main__":
    main()
