"""
MQTT Connection Manager — owns the paho-mqtt client on a background thread.

The thread runs paho's network loop (reads, writes, keep-alive pings) and is
the only place that touches the network.  Everything it learns is pushed as
an event onto a bounded queue; everything it does arrives as a command on an
unbounded one.  Reconnects follow an exponential backoff stored as a
deadline in the ``Reconnecting`` state.

A user ``Connect`` builds a fresh paho client.  Automatic reconnects reuse
the existing one through ``reconnect()`` so paho's in-flight store survives:
after CONNACK paho retransmits unacknowledged QoS 1/2 PUBLISH packets (DUP)
and pending PUBRELs under their original message ids.
"""
from __future__ import annotations

import logging
import queue
import re
import ssl
import threading
import time
from typing import Callable

import paho.mqtt.client as mqtt
from paho.mqtt.client import CallbackAPIVersion, Client, MQTTMessage

from commands import Connect, Disconnect, Subscribe, Transmit, Unsubscribe, WireCommand
from connection_state import (
    Backoff,
    Connected,
    Connecting,
    ConnectionState,
    Disconnected,
    Failed,
    Reconnecting,
    check_transition,
)
from endpoint import BrokerEndpoint
from errors import InvalidTopic
from events import (
    Event,
    LogLine,
    MessageArrived,
    PublishAcked,
    PublishCompleted,
    PublishReceived,
    StateChanged,
    SubscriptionRejected,
)
from message_store import Message
from topics import validate_topic

logger = logging.getLogger(__name__)

ClientFactory = Callable[[BrokerEndpoint], Client]

# paho handles PUBREC/PUBREL itself and only reports PUBREC in its log.
_PUBREC_LOG = re.compile(r"Received PUBREC \(Mid: (\d+)\)")

# How long one blocked put() waits before re-checking for shutdown.
_EMIT_WAIT = 0.25


def build_client(endpoint: BrokerEndpoint) -> Client:
    """Create a paho Client configured for *endpoint* (not yet connected)."""
    client = Client(
        CallbackAPIVersion.VERSION2,
        client_id=endpoint.client_id,
        clean_session=endpoint.clean_session,
        transport=endpoint.transport,
        reconnect_on_failure=False,
    )

    if endpoint.transport == "websockets":
        client.ws_set_options(path=endpoint.ws_path)

    if endpoint.username:
        client.username_pw_set(endpoint.username, endpoint.password or None)

    if endpoint.tls is not None:
        tls = endpoint.tls
        client.tls_set(
            ca_certs=tls.ca_certs,
            certfile=tls.certfile,
            keyfile=tls.keyfile,
            cert_reqs=ssl.CERT_NONE if tls.insecure else ssl.CERT_REQUIRED,
        )
        if tls.insecure:
            client.tls_insecure_set(True)

    if endpoint.will is not None:
        will = endpoint.will
        client.will_set(will.topic, will.payload, qos=will.qos, retain=will.retain)

    client.enable_logger(logger.getChild("paho"))
    return client


class ConnectionManager:
    """
    Transport lifecycle and reconnection policy for one broker connection.

    All public methods except ``submit``, ``start`` and ``stop`` must run on
    the protocol thread; tests drive ``step()`` directly instead of
    starting the thread.
    """

    def __init__(
        self,
        events: queue.Queue,
        *,
        backoff: Backoff | None = None,
        stable_after: float = 30.0,
        tick: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
        client_factory: ClientFactory = build_client,
    ) -> None:
        self._events = events
        self._commands: queue.SimpleQueue = queue.SimpleQueue()
        self._backoff = backoff or Backoff()
        self._stable_after = stable_after
        self._tick = tick
        self._clock = clock
        self._client_factory = client_factory

        self._state: ConnectionState = Disconnected()
        self._endpoint: BrokerEndpoint | None = None
        self._client: Client | None = None
        self._connected_at: float | None = None
        self._refusal: str | None = None      # set by on_connect, handled after loop()
        self._lost: str | None = None         # set by on_disconnect, handled after loop()

        self._subscriptions: dict[str, int] = {}              # filter -> qos, wire-side mirror
        self._publish_mids: dict[int, tuple[int, int]] = {}   # paho mid -> (packet_id, qos)
        self._subscribe_mids: dict[int, list[str]] = {}       # paho mid -> filters

        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def submit(self, command: WireCommand) -> None:
        """Queue *command* for the protocol thread.  Never blocks."""
        self._commands.put(command)

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def subscriptions(self) -> dict[str, int]:
        return dict(self._subscriptions)

    def start(self) -> None:
        """Run the protocol loop on a daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="mqtt-connection", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        """
        Stop the loop thread, run any commands still queued and close the
        transport.  If the thread does not exit within *timeout* the client
        is left to it.
        """
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning("Protocol thread still running after %.1f s", timeout)
                return
            self._thread = None
        self._apply_commands()
        self._close_client()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def step(self) -> None:
        """One iteration of the protocol loop."""
        self._apply_commands()

        client = self._client
        if client is not None and isinstance(self._state, (Connecting, Connected)):
            try:
                rc = client.loop(timeout=self._tick)
            except OSError as exc:
                rc = None
                self._lost = self._lost or str(exc) or type(exc).__name__
            if self._client is not client:
                return
            if self._refusal is not None:
                self._fail(self._refusal)
            elif self._lost is not None:
                self._connection_lost(self._lost)
            elif rc is not None and rc != mqtt.MQTT_ERR_SUCCESS:
                self._connection_lost(mqtt.error_string(rc))
            return

        if isinstance(self._state, Reconnecting) and self._clock() >= self._state.next_retry_at:
            self._open(self._state.attempt)
            return

        self._wait_for_command()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def _apply_commands(self) -> None:
        while True:
            try:
                command = self._commands.get_nowait()
            except queue.Empty:
                return
            self._execute(command)

    def _wait_for_command(self) -> None:
        try:
            if self._tick > 0:
                command = self._commands.get(timeout=self._tick)
            else:
                command = self._commands.get_nowait()
        except queue.Empty:
            return
        self._execute(command)

    def _execute(self, command: WireCommand) -> None:
        match command:
            case Connect(endpoint=endpoint):
                self._connect(endpoint)
            case Disconnect():
                self._disconnect()
            case Subscribe(topic_filter=topic_filter, qos=qos):
                self._subscribe(topic_filter, qos)
            case Unsubscribe(topic_filter=topic_filter):
                self._unsubscribe(topic_filter)
            case Transmit():
                self._transmit(command)
            case _:
                logger.error("Ignoring unknown command %r", command)

    def _connect(self, endpoint: BrokerEndpoint) -> None:
        self._close_client()
        if isinstance(self._state, (Connecting, Connected, Reconnecting)):
            self._set_state(Disconnected("new connection requested", requested=True))
        self._endpoint = endpoint
        self._backoff.reset()
        self._open(attempt=0)

    def _disconnect(self) -> None:
        self._endpoint = None
        self._connected_at = None
        self._close_client()
        if not isinstance(self._state, Disconnected):
            self._set_state(Disconnected("disconnect requested", requested=True))
            self._line("Disconnected cleanly.")

    def _subscribe(self, topic_filter: str, qos: int) -> None:
        self._subscriptions[topic_filter] = qos
        if self._client is not None and isinstance(self._state, Connected):
            rc, mid = self._client.subscribe(topic_filter, qos)
            if rc == mqtt.MQTT_ERR_SUCCESS:
                self._subscribe_mids[mid] = [topic_filter]
            else:
                self._line(f"Subscribe to '{topic_filter}' failed (rc={rc})", logging.ERROR)

    def _unsubscribe(self, topic_filter: str) -> None:
        self._subscriptions.pop(topic_filter, None)
        if self._client is not None and isinstance(self._state, Connected):
            self._client.unsubscribe(topic_filter)
            self._line(f"Unsubscribed from '{topic_filter}'")

    def _transmit(self, cmd: Transmit) -> None:
        if self._client is None or not isinstance(self._state, Connected):
            self._line("Cannot publish: not connected.", logging.WARNING)
            return
        info = self._client.publish(cmd.topic, cmd.payload, qos=cmd.qos, retain=cmd.retain)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            self._line(f"Publish failed (rc={info.rc}) on '{cmd.topic}'", logging.ERROR)
            return
        if cmd.packet_id is not None:
            self._publish_mids[info.mid] = (cmd.packet_id, cmd.qos)
        self._line(
            f"{'Re-published' if cmd.dup else 'Published'} to '{cmd.topic}' "
            f"QoS={cmd.qos} retain={cmd.retain}",
            logging.DEBUG,
        )

    # ------------------------------------------------------------------
    # Transport lifecycle
    # ------------------------------------------------------------------

    def _open(self, attempt: int) -> None:
        """Build a client and connect, or reconnect the one we already have."""
        endpoint = self._endpoint
        self._refusal = None
        self._lost = None
        self._subscribe_mids.clear()
        self._set_state(Connecting(attempt))
        self._line(f"Connecting to {endpoint.label} …")
        try:
            if self._client is None:
                client = self._client_factory(endpoint)
                self._install_callbacks(client)
                self._client = client
                client.connect(endpoint.host, endpoint.port, endpoint.keepalive)
            else:
                self._client.reconnect()
        except OSError as exc:
            # DNS failure, refused connection, TLS or websocket handshake.
            self._connection_lost(str(exc) or type(exc).__name__)
        except ValueError as exc:
            self._fail(f"Invalid connection settings: {exc}")

    def _install_callbacks(self, client: Client) -> None:
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        client.on_publish = self._on_publish
        client.on_subscribe = self._on_subscribe
        client.on_log = self._on_log

    def _close_client(self) -> None:
        """Discard the client together with its in-flight message ids."""
        client, self._client = self._client, None
        self._publish_mids.clear()
        self._subscribe_mids.clear()
        if client is None:
            return
        try:
            # Also closes the socket.  On a live connection the clean
            # DISCONNECT tells the broker to discard our will.
            client.disconnect()
        except OSError as exc:
            logger.debug("Ignoring error while disconnecting: %s", exc)

    def _connection_lost(self, reason: str) -> None:
        now = self._clock()
        if (
            isinstance(self._state, Connected)
            and self._connected_at is not None
            and now - self._connected_at >= self._stable_after
        ):
            self._backoff.reset()
        self._connected_at = None
        self._set_state(Disconnected(reason))
        self._line(f"Disconnected unexpectedly: {reason}", logging.WARNING)

        if self._endpoint is None:
            self._close_client()
            return
        # Kept for reconnect(), which replaces the socket and keeps in-flight messages.
        delay = self._backoff.next_delay()
        self._set_state(Reconnecting(self._backoff.attempts, now + delay))
        self._line(f"Reconnecting in {delay:g} s (attempt {self._backoff.attempts})")

    def _fail(self, reason: str) -> None:
        self._connected_at = None
        self._close_client()
        self._set_state(Failed(reason))
        self._line(reason, logging.ERROR)

    def _resubscribe_all(self, client: Client) -> None:
        """Re-issue every remembered filter (called after each connect)."""
        if not self._subscriptions:
            return
        filters = list(self._subscriptions.items())
        rc, mid = client.subscribe(filters)
        if rc != mqtt.MQTT_ERR_SUCCESS:
            self._line(f"Re-subscribe failed (rc={rc})", logging.ERROR)
            return
        self._subscribe_mids[mid] = [topic_filter for topic_filter, _ in filters]
        for topic_filter, qos in filters:
            self._line(f"Re-subscribed to '{topic_filter}' QoS={qos}")

    # ------------------------------------------------------------------
    # paho callbacks: these run inside client.loop() on the protocol thread.
    # ------------------------------------------------------------------

    def _on_connect(self, client, userdata, flags, reason_code, properties) -> None:
        if client is not self._client:
            return
        if reason_code.is_failure:
            self._refusal = f"Connection refused: {reason_code}"
            return
        session_present = bool(getattr(flags, "session_present", False))
        if not session_present:
            # A new broker session has no state for our QoS 2 ids.
            self._forget_qos(2)
        self._connected_at = self._clock()
        self._resubscribe_all(client)
        self._set_state(Connected(session_present=session_present))
        self._line(f"Connected to {self._endpoint.label}.")

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties) -> None:
        if client is not self._client:
            return
        self._lost = str(reason_code)

    def _on_message(self, client, userdata, msg: MQTTMessage) -> None:
        try:
            topic = validate_topic(msg.topic)
        except (UnicodeDecodeError, InvalidTopic) as exc:
            logger.warning("Dropping malformed PUBLISH: %s", exc)
            return
        message = Message(
            topic=topic,
            payload=bytes(msg.payload),
            qos=msg.qos,
            retain=bool(msg.retain),
            dup=bool(msg.dup),
            packet_id=msg.mid if msg.qos > 0 else None,
        )
        self._emit(MessageArrived(message))

    def _on_publish(self, client, userdata, mid, reason_code, properties) -> None:
        entry = self._publish_mids.get(mid)
        if entry is None:
            return
        packet_id, qos = entry
        self._forget_packet(packet_id)
        self._emit(PublishAcked(packet_id) if qos == 1 else PublishCompleted(packet_id))

    def _on_subscribe(self, client, userdata, mid, reason_code_list, properties) -> None:
        filters = self._subscribe_mids.pop(mid, [])
        for topic_filter, code in zip(filters, reason_code_list):
            if code.is_failure:
                self._subscriptions.pop(topic_filter, None)
                self._line(f"Subscription to '{topic_filter}' rejected: {code}", logging.WARNING)
                self._emit(SubscriptionRejected(topic_filter, str(code)))
            else:
                self._line(f"Subscribed to '{topic_filter}' QoS={code.value}")

    def _on_log(self, client, userdata, level, buf) -> None:
        match = _PUBREC_LOG.match(buf)
        if match is None:
            return
        entry = self._publish_mids.get(int(match.group(1)))
        if entry is not None:
            self._emit(PublishReceived(entry[0]))

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _forget_packet(self, packet_id: int) -> None:
        """Drop every paho mid used for *packet_id*, including resends."""
        for mid in [m for m, (pid, _) in self._publish_mids.items() if pid == packet_id]:
            del self._publish_mids[mid]

    def _forget_qos(self, qos: int) -> None:
        for mid in [m for m, (_, q) in self._publish_mids.items() if q == qos]:
            del self._publish_mids[mid]

    def _set_state(self, new: ConnectionState) -> None:
        check_transition(self._state, new)
        self._state = new
        logger.info("Connection state: %s", new)
        self._emit(StateChanged(new))

    def _line(self, text: str, level: int = logging.INFO) -> None:
        logger.log(level, text)
        self._emit(LogLine(text, level))

    def _emit(self, event: Event) -> None:
        """Hand *event* to the session core, waiting while the queue is full."""
        while True:
            try:
                self._events.put(event, timeout=_EMIT_WAIT)
                return
            except queue.Full:
                if self._stop.is_set():
                    logger.warning("Event queue full at shutdown; dropped %s", type(event).__name__)
                    return

    def _run(self) -> None:
        logger.info("MQTT event loop started.")
        while not self._stop.is_set():
            try:
                self.step()
            except Exception as exc:
                logger.exception("Protocol loop error")
                self._line(f"Protocol loop error: {exc}", logging.ERROR)
                self._stop.wait(self._tick or _EMIT_WAIT)
        logger.info("MQTT event loop ended.")
