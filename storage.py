"""
Storage backends for MQTT messages.

Architecture:
    StorageBackend (ABC)
        └── FileLogger — appends timestamped .txt files per session

Usage:
    sink = FileLogger(directory="logs")
    session = SessionCore(sink=sink)
"""
from __future__ import annotations

import os
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from message_store import Message


class StorageBackend(ABC):
    """Receives every message the session core stores."""

    @abstractmethod
    def store_message(self, msg: "Message") -> None:
        """Persist a single MQTT message."""

    @abstractmethod
    def close(self) -> None:
        """Flush and release any held resources."""

    @property
    @abstractmethod
    def info(self) -> str:
        """Short human-readable description (shown in status bar)."""


class FileLogger(StorageBackend):
    """
    Appends every stored message to a plain-text log file.

    *filename* behaviour:
    - Omitted / empty string → auto-name: ``<directory>/mqtt_<YYYYMMDD_HHMMSS>.txt``
    - Relative path          → placed inside *directory*
    - Absolute path          → used as-is (*directory* is ignored)

    Each line has the format:
        <ISO timestamp>  QoS=<n>  <R?>  <D?>  <topic>  <payload>
    """

    def __init__(
        self,
        directory: str | os.PathLike = "logs",
        filename: str | os.PathLike = "",
    ) -> None:
        filename = str(filename).strip()

        if filename and Path(filename).is_absolute():
            self._path = Path(filename)
        else:
            directory = Path(directory)
            if filename:
                self._path = directory / filename
            else:
                session_ts = datetime.now().strftime("%Y%m%d_%H%M%S")
                self._path = directory / f"mqtt_{session_ts}.txt"
        self._path.parent.mkdir(parents=True, exist_ok=True)

        self._file = self._path.open("a", encoding="utf-8", buffering=1)  # line-buffered
        self._file.write(
            f"# MQTT Monitor log, session started {datetime.now().isoformat()}\n"
            "# Columns: timestamp | QoS | Retain | Dup | topic | payload\n\n"
        )

    def store_message(self, msg: "Message") -> None:
        retain_flag = "R" if msg.retain else " "
        dup_flag = "D" if msg.dup else " "
        # Keep one message per line.
        payload = msg.text.replace("\r", "\\r").replace("\n", "\\n")
        self._file.write(
            f"{msg.timestamp.isoformat(timespec='milliseconds')}  "
            f"QoS={msg.qos}  {retain_flag}  {dup_flag}  "
            f"{msg.topic}  {payload}\n"
        )

    def close(self) -> None:
        if not self._file.closed:
            self._file.write(f"\n# Session ended {datetime.now().isoformat()}\n")
            self._file.flush()
            self._file.close()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def info(self) -> str:
        return str(self._path)
