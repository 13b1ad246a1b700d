"""
Main Window — MQTT Monitor GUI.

A thin consumer of ``SessionCore``: user actions become commands, and a
timer polls the core once per frame and redraws from its snapshots.
"""
from __future__ import annotations

import json
import logging

from PyQt6.QtCore import Qt, QTimer, pyqtSlot
from PyQt6.QtGui import QAction, QKeySequence, QShortcut
from PyQt6.QtWidgets import (
    QAbstractItemView,
    QCheckBox,
    QComboBox,
    QFormLayout,
    QGroupBox,
    QHBoxLayout,
    QLabel,
    QLineEdit,
    QListWidget,
    QListWidgetItem,
    QMainWindow,
    QPlainTextEdit,
    QPushButton,
    QSpinBox,
    QSplitter,
    QStatusBar,
    QTableView,
    QTextEdit,
    QVBoxLayout,
    QWidget,
)

from connection_state import Disconnected, Failed, describe
from endpoint import BrokerEndpoint, TlsConfig
from errors import MqttMonitorError
from events import LogLine, Outcome, PublishOutcome, StateChanged, SubscriptionRejected
from models import TopicHistoryModel
from session import SessionCore
from storage import FileLogger

# Render cadence of the poll timer.
_FRAME_MS = 50


def _qos_combo() -> QComboBox:
    combo = QComboBox()
    combo.addItems(["QoS 0", "QoS 1", "QoS 2"])
    return combo


class MainWindow(QMainWindow):
    def __init__(self, session: SessionCore | None = None) -> None:
        super().__init__()
        self.setWindowTitle("MQTT Monitor")
        self.setMinimumSize(900, 600)

        self._session = session or SessionCore()
        self._model = TopicHistoryModel(self)
        self._topic: str | None = None
        self._shown_topics: list[str] = []

        self._build_menu()
        self._build_ui()
        self._build_status_bar()
        self._connect_signals()

        self._session.start()

        self._frame_timer = QTimer(self)
        self._frame_timer.setInterval(_FRAME_MS)
        self._frame_timer.timeout.connect(self._on_frame)
        self._frame_timer.start()

    # ------------------------------------------------------------------
    # UI construction
    # ------------------------------------------------------------------

    def _build_menu(self) -> None:
        file_menu = self.menuBar().addMenu("&File")
        act_quit = QAction("&Quit", self)
        act_quit.setShortcut(QKeySequence("Ctrl+Q"))
        act_quit.triggered.connect(self.close)
        file_menu.addAction(act_quit)

    def _build_ui(self) -> None:
        splitter = QSplitter(Qt.Orientation.Horizontal)
        self.setCentralWidget(splitter)

        left_panel = QWidget()
        left_panel.setMinimumWidth(220)
        left_panel.setMaximumWidth(320)
        left_layout = QVBoxLayout(left_panel)
        left_layout.addWidget(self._build_connection_group())
        left_layout.addWidget(self._build_subscriptions_group())
        left_layout.addWidget(self._build_topics_group(), stretch=1)
        splitter.addWidget(left_panel)

        right_panel = QWidget()
        right_layout = QVBoxLayout(right_panel)
        right_layout.addLayout(self._build_toolbar_row())
        self.lbl_retained = QLabel("Retained: –")
        right_layout.addWidget(self.lbl_retained)
        right_layout.addWidget(self._build_message_table(), stretch=3)
        right_layout.addWidget(self._build_detail_panel(), stretch=1)
        right_layout.addWidget(self._build_publish_group())
        right_layout.addWidget(self._build_console())
        splitter.addWidget(right_panel)
        splitter.setSizes([260, 700])

    def _build_connection_group(self) -> QGroupBox:
        grp = QGroupBox("Connection")
        form = QFormLayout(grp)

        self.le_host = QLineEdit("localhost")
        self.sp_port = QSpinBox()
        self.sp_port.setRange(1, 65535)
        self.sp_port.setValue(1883)
        self.le_user = QLineEdit()
        self.le_pass = QLineEdit()
        self.le_pass.setEchoMode(QLineEdit.EchoMode.Password)
        self.le_client_id = QLineEdit()
        self.le_client_id.setPlaceholderText("(auto-generated)")
        self.sp_keepalive = QSpinBox()
        self.sp_keepalive.setRange(5, 3600)
        self.sp_keepalive.setValue(60)
        self.sp_keepalive.setSuffix(" s")

        form.addRow("Host", self.le_host)
        form.addRow("Port", self.sp_port)
        form.addRow("User", self.le_user)
        form.addRow("Password", self.le_pass)
        form.addRow("Client ID", self.le_client_id)
        form.addRow("Keepalive", self.sp_keepalive)

        self.chk_tls = QCheckBox("TLS")
        self.chk_persistent = QCheckBox("Resume session")
        self.chk_persistent.setToolTip("Keep the broker session across reconnects (needs a client ID)")
        flags = QHBoxLayout()
        flags.addWidget(self.chk_tls)
        flags.addWidget(self.chk_persistent)
        form.addRow(flags)

        self.btn_connect = QPushButton("Connect")
        self.btn_connect.clicked.connect(self._toggle_connection)
        form.addRow(self.btn_connect)

        return grp

    def _build_subscriptions_group(self) -> QGroupBox:
        grp = QGroupBox("Subscriptions")
        layout = QVBoxLayout(grp)

        sub_row = QHBoxLayout()
        self.le_sub_topic = QLineEdit()
        self.le_sub_topic.setPlaceholderText("sensors/+/temp")
        self.cb_sub_qos = _qos_combo()
        sub_row.addWidget(self.le_sub_topic, stretch=3)
        sub_row.addWidget(self.cb_sub_qos, stretch=1)
        layout.addLayout(sub_row)

        self.lst_subscriptions = QListWidget()
        self.lst_subscriptions.setMinimumHeight(80)

        buttons = QHBoxLayout()
        for label, slot in (("Add", self._subscribe), ("Remove", self._unsubscribe)):
            btn = QPushButton(label)
            btn.clicked.connect(slot)
            buttons.addWidget(btn)

        layout.addLayout(buttons)
        layout.addWidget(self.lst_subscriptions)
        return grp

    def _build_topics_group(self) -> QGroupBox:
        grp = QGroupBox("Topics")
        layout = QVBoxLayout(grp)
        self.lst_topics = QListWidget()
        self.lst_topics.currentItemChanged.connect(self._on_topic_selected)
        layout.addWidget(self.lst_topics)
        return grp

    def _build_toolbar_row(self) -> QHBoxLayout:
        row = QHBoxLayout()

        self.le_filter = QLineEdit()
        self.le_filter.setPlaceholderText("Filter by topic or payload…")
        self.le_filter.setClearButtonEnabled(True)
        self.le_filter.textChanged.connect(self._model.set_filter)
        row.addWidget(self.le_filter, stretch=3)

        self.chk_autoscroll = QCheckBox("Auto-scroll")
        self.chk_autoscroll.setChecked(True)
        row.addWidget(self.chk_autoscroll)

        self.chk_log = QCheckBox("Log to file")
        self.chk_log.toggled.connect(self._toggle_logging)
        row.addWidget(self.chk_log)

        btn_clear = QPushButton("Clear")
        btn_clear.setToolTip("Ctrl+L")
        btn_clear.clicked.connect(self._clear_messages)
        row.addWidget(btn_clear)

        return row

    def _build_message_table(self) -> QTableView:
        self.table = QTableView()
        self.table.setModel(self._model)
        self.table.setAlternatingRowColors(True)
        self.table.setSelectionBehavior(QAbstractItemView.SelectionBehavior.SelectRows)
        self.table.setSelectionMode(QAbstractItemView.SelectionMode.SingleSelection)
        self.table.setEditTriggers(QAbstractItemView.EditTrigger.NoEditTriggers)
        self.table.verticalHeader().setVisible(False)
        self.table.horizontalHeader().setStretchLastSection(True)
        self.table.selectionModel().selectionChanged.connect(self._on_row_selected)
        return self.table

    def _build_detail_panel(self) -> QTextEdit:
        self.detail_panel = QTextEdit()
        self.detail_panel.setReadOnly(True)
        self.detail_panel.setPlaceholderText("Select a row to see the full payload…")
        self.detail_panel.setMaximumHeight(160)
        return self.detail_panel

    def _build_publish_group(self) -> QGroupBox:
        grp = QGroupBox("Publish")
        form = QFormLayout(grp)

        self.le_pub_topic = QLineEdit()
        self.te_pub_payload = QPlainTextEdit()
        self.te_pub_payload.setMaximumHeight(80)
        self.cb_pub_qos = _qos_combo()
        self.chk_pub_retain = QCheckBox("Retain")
        send = QPushButton("Send")
        send.setToolTip("Ctrl+Return")
        send.clicked.connect(self._publish)

        options = QHBoxLayout()
        options.addWidget(self.cb_pub_qos)
        options.addWidget(self.chk_pub_retain)
        options.addStretch()
        options.addWidget(send)

        form.addRow("Topic", self.le_pub_topic)
        form.addRow("Payload", self.te_pub_payload)
        form.addRow(options)
        return grp

    def _build_console(self) -> QPlainTextEdit:
        self.console = QPlainTextEdit()
        self.console.setReadOnly(True)
        self.console.setMaximumBlockCount(500)
        self.console.setMaximumHeight(100)
        return self.console

    def _build_status_bar(self) -> None:
        sb = QStatusBar()
        self.setStatusBar(sb)
        self.lbl_status_conn = QLabel("Disconnected")
        sb.addWidget(self.lbl_status_conn)
        self.lbl_status_msgs = QLabel("Messages: 0")
        sb.addWidget(self.lbl_status_msgs)
        self.lbl_status_discarded = QLabel("Discarded: 0")
        sb.addWidget(self.lbl_status_discarded)
        self.lbl_status_pending = QLabel("In flight: 0")
        sb.addWidget(self.lbl_status_pending)
        self.lbl_status_log = QLabel("Logging: OFF")
        sb.addWidget(self.lbl_status_log, 1)

    def _connect_signals(self) -> None:
        QShortcut(QKeySequence("Ctrl+L"), self).activated.connect(self._clear_messages)
        QShortcut(QKeySequence("Ctrl+Return"), self).activated.connect(self._publish)
        self.le_sub_topic.returnPressed.connect(self._subscribe)

    # ------------------------------------------------------------------
    # Frame: poll the session, then redraw from snapshots
    # ------------------------------------------------------------------

    @pyqtSlot()
    def _on_frame(self) -> None:
        for notice in self._session.poll():
            self._show_notice(notice)
        self._refresh_subscriptions()
        self._refresh_topics()
        self._refresh_history()
        self._refresh_status()

    def _show_notice(self, notice) -> None:
        match notice:
            case StateChanged(state=state):
                self._on_state(state)
            case PublishOutcome(outcome=Outcome.DELIVERED, topic=topic, packet_id=pid):
                self._log(f"Publish {pid} to '{topic}' acknowledged")
            case PublishOutcome(outcome=outcome, topic=topic, reason=reason):
                self._on_error(f"Publish to '{topic}' {outcome.value}: {reason}")
            case SubscriptionRejected(topic_filter=topic_filter):
                self._on_error(f"Subscription to '{topic_filter}' rejected")
            case LogLine(text=text, level=level):
                self._log(text)
                if level >= logging.WARNING:
                    self.statusBar().showMessage(text, 5000)

    def _on_state(self, state) -> None:
        self.lbl_status_conn.setText(describe(state))
        idle = isinstance(state, (Disconnected, Failed))
        self.btn_connect.setText("Connect" if idle else "Disconnect")
        for widget in (
            self.le_host,
            self.sp_port,
            self.le_user,
            self.le_pass,
            self.le_client_id,
            self.sp_keepalive,
            self.chk_tls,
            self.chk_persistent,
        ):
            widget.setEnabled(idle)

    def _refresh_subscriptions(self) -> None:
        subs = self._session.current_subscriptions
        labels = [f"{f}  (QoS {q})" for f, q in sorted(subs.items())]
        current = [self.lst_subscriptions.item(i).text() for i in range(self.lst_subscriptions.count())]
        if labels == current:
            return
        self.lst_subscriptions.clear()
        for (topic_filter, _), label in zip(sorted(subs.items()), labels):
            item = QListWidgetItem(label)
            item.setData(Qt.ItemDataRole.UserRole, topic_filter)
            self.lst_subscriptions.addItem(item)

    def _refresh_topics(self) -> None:
        topics = self._session.topics()
        if topics == self._shown_topics:
            return
        self._shown_topics = topics
        self.lst_topics.blockSignals(True)
        self.lst_topics.clear()
        self.lst_topics.addItems(topics)
        if self._topic in topics:
            self.lst_topics.setCurrentRow(topics.index(self._topic))
        self.lst_topics.blockSignals(False)

    def _refresh_history(self) -> None:
        if self._topic is None:
            return
        changed = self._model.set_messages(self._session.topic_snapshot(self._topic))
        retained = self._session.retained(self._topic)
        qos = self._session.effective_qos(self._topic)
        self.lbl_retained.setText(
            (f"Retained: {retained.text}" if retained is not None else "Retained: –")
            + (f"   Subscribed at QoS {qos}" if qos is not None else "")
        )
        if changed and self.chk_autoscroll.isChecked():
            self.table.scrollToBottom()

    def _refresh_status(self) -> None:
        total = self._model.total_count
        visible = self._model.rowCount()
        self.lbl_status_msgs.setText(
            f"Messages: {visible}/{total}" if visible != total else f"Messages: {total}"
        )
        self.lbl_status_discarded.setText(f"Discarded: {self._session.discarded_count}")
        self.lbl_status_pending.setText(f"In flight: {len(self._session.pending_publishes)}")

    # ------------------------------------------------------------------
    # User actions
    # ------------------------------------------------------------------

    @pyqtSlot()
    def _toggle_connection(self) -> None:
        state = self._session.current_connection_state
        if not isinstance(state, (Disconnected, Failed)):
            self._session.disconnect()
            return
        try:
            endpoint = BrokerEndpoint(
                host=self.le_host.text().strip(),
                port=self.sp_port.value(),
                client_id=self.le_client_id.text().strip(),
                username=self.le_user.text().strip(),
                password=self.le_pass.text(),
                keepalive=self.sp_keepalive.value(),
                tls=TlsConfig() if self.chk_tls.isChecked() else None,
                clean_session=not self.chk_persistent.isChecked(),
            )
        except MqttMonitorError as exc:
            self._on_error(str(exc))
            return
        self._session.connect(endpoint)

    @pyqtSlot()
    def _subscribe(self) -> None:
        topic = self.le_sub_topic.text().strip()
        if not topic:
            return
        try:
            self._session.subscribe(topic, self.cb_sub_qos.currentIndex())
        except ValueError as exc:
            self._on_error(str(exc))
            return
        self.le_sub_topic.clear()

    @pyqtSlot()
    def _unsubscribe(self) -> None:
        for item in self.lst_subscriptions.selectedItems():
            self._session.unsubscribe(item.data(Qt.ItemDataRole.UserRole))

    @pyqtSlot()
    def _publish(self) -> None:
        topic = self.le_pub_topic.text().strip()
        if not topic:
            self._on_error("Publish topic cannot be empty.")
            return
        try:
            self._session.publish(
                topic,
                self.te_pub_payload.toPlainText(),
                qos=self.cb_pub_qos.currentIndex(),
                retain=self.chk_pub_retain.isChecked(),
            )
        except ValueError as exc:
            self._on_error(str(exc))

    def _on_topic_selected(self, current, _previous) -> None:
        self._topic = current.text() if current is not None else None
        self.detail_panel.clear()
        self._model.clear()
        self._refresh_history()

    def _on_row_selected(self, selected, _deselected) -> None:
        indexes = selected.indexes()
        if not indexes:
            self.detail_panel.clear()
            return
        msg = self._model.message_at(indexes[0].row())
        if msg is None:
            return

        try:
            pretty = json.dumps(json.loads(msg.payload), indent=2, ensure_ascii=False)
        except (json.JSONDecodeError, UnicodeDecodeError):
            pretty = msg.text

        header = (
            f"Topic:   {msg.topic}\n"
            f"Time:    {msg.timestamp.isoformat(timespec='milliseconds')}\n"
            f"QoS:     {msg.qos}    Retain: {'Yes' if msg.retain else 'No'}"
            f"    Dup: {'Yes' if msg.dup else 'No'}\n"
            f"{'-' * 60}\n"
        )
        self.detail_panel.setPlainText(header + pretty)

    @pyqtSlot()
    def _clear_messages(self) -> None:
        self._session.clear_history()
        self._model.clear()
        self.detail_panel.clear()

    @pyqtSlot(bool)
    def _toggle_logging(self, enabled: bool) -> None:
        if self._session.sink is not None:
            self._session.sink.close()
            self._session.sink = None
        if enabled:
            try:
                self._session.sink = FileLogger(directory="logs")
            except OSError as exc:
                self._on_error(f"Cannot start logger: {exc}")
                self.chk_log.setChecked(False)
                return
        sink = self._session.sink
        self.lbl_status_log.setText(f"Logging: {sink.info}" if sink else "Logging: OFF")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _log(self, text: str) -> None:
        self.console.appendPlainText(text)

    def _on_error(self, msg: str) -> None:
        self._log(f"Error: {msg}")
        self.statusBar().showMessage(f"Error: {msg}", 5000)

    def closeEvent(self, event) -> None:
        self._frame_timer.stop()
        self._session.close()
        event.accept()
