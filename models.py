"""
Data models for the MQTT message table.
"""
from __future__ import annotations

from typing import Any, Sequence

from PyQt6.QtCore import (
    QAbstractTableModel,
    QModelIndex,
    Qt,
    QVariant,
)

from message_store import Message

_COLUMNS = ["Timestamp", "Topic", "Payload", "QoS", "Retain", "Dup"]
_COL_TS, _COL_TOPIC, _COL_PAYLOAD, _COL_QOS, _COL_RETAIN, _COL_DUP = range(6)

# Longest payload shown in a table cell.
_PAYLOAD_PREVIEW = 120


class TopicHistoryModel(QAbstractTableModel):
    """
    Read-only view of one topic history snapshot.

    The window hands over a fresh snapshot every frame; the model only
    resets itself when the snapshot actually changed.  A substring filter
    matches against topic and payload.
    """

    def __init__(self, parent=None) -> None:
        super().__init__(parent)

        self._messages: tuple[Message, ...] = ()
        self._visible: list[Message] = []
        self._filter: str = ""

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def set_messages(self, messages: Sequence[Message]) -> bool:
        """Show *messages*.  Returns True if the view changed."""
        messages = tuple(messages)
        if messages == self._messages:
            return False
        self.beginResetModel()
        self._messages = messages
        self._visible = [m for m in messages if self._matches_filter(m)]
        self.endResetModel()
        return True

    def clear(self) -> None:
        self.set_messages(())

    def set_filter(self, text: str) -> None:
        """Rebuild filtered view for *text* (substring, case-insensitive)."""
        self.beginResetModel()
        self._filter = text.lower()
        self._visible = [m for m in self._messages if self._matches_filter(m)]
        self.endResetModel()

    def message_at(self, visual_row: int) -> Message | None:
        """Return the Message shown at *visual_row* in the filtered view."""
        if 0 <= visual_row < len(self._visible):
            return self._visible[visual_row]
        return None

    @property
    def total_count(self) -> int:
        return len(self._messages)

    # ------------------------------------------------------------------
    # QAbstractTableModel overrides
    # ------------------------------------------------------------------

    def rowCount(self, parent: QModelIndex = QModelIndex()) -> int:
        if parent.isValid():
            return 0
        return len(self._visible)

    def columnCount(self, parent: QModelIndex = QModelIndex()) -> int:
        if parent.isValid():
            return 0
        return len(_COLUMNS)

    def headerData(
        self,
        section: int,
        orientation: Qt.Orientation,
        role: int = Qt.ItemDataRole.DisplayRole,
    ) -> Any:
        if role == Qt.ItemDataRole.DisplayRole and orientation == Qt.Orientation.Horizontal:
            return _COLUMNS[section]
        return QVariant()

    def data(self, index: QModelIndex, role: int = Qt.ItemDataRole.DisplayRole) -> Any:
        if not index.isValid():
            return QVariant()

        msg = self.message_at(index.row())
        if msg is None:
            return QVariant()

        if role == Qt.ItemDataRole.DisplayRole:
            return self._display_data(msg, index.column())

        if role == Qt.ItemDataRole.TextAlignmentRole:
            if index.column() in (_COL_QOS, _COL_RETAIN, _COL_DUP):
                return Qt.AlignmentFlag.AlignCenter

        if role == Qt.ItemDataRole.UserRole:
            return msg

        return QVariant()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _display_data(self, msg: Message, col: int) -> str:
        match col:
            case _ if col == _COL_TS:
                return msg.timestamp.strftime("%H:%M:%S.%f")[:-3]
            case _ if col == _COL_TOPIC:
                return msg.topic
            case _ if col == _COL_PAYLOAD:
                p = msg.text
                return p if len(p) <= _PAYLOAD_PREVIEW else p[:_PAYLOAD_PREVIEW - 3] + "…"
            case _ if col == _COL_QOS:
                return str(msg.qos)
            case _ if col == _COL_RETAIN:
                return "R" if msg.retain else ""
            case _ if col == _COL_DUP:
                return "D" if msg.dup else ""
            case _:
                return ""

    def _matches_filter(self, msg: Message) -> bool:
        if not self._filter:
            return True
        return self._filter in msg.topic.lower() or self._filter in msg.text.lower()
