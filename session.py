"""
Session Core — the one object the presentation layer talks to.

Commands go in through ``submit()`` (or the helpers wrapping it) from any
thread.  ``poll()`` is called once per render cycle; it applies queued
commands, drains the protocol thread's events into the registry, store and
pipeline, and returns the notices the window should show.  The snapshot
accessors only copy in-memory state and never block.
"""
from __future__ import annotations

import logging
import queue
import time
from typing import Callable

from commands import (
    Connect,
    Disconnect,
    Publish,
    Subscribe,
    Unsubscribe,
    UserCommand,
)
from connection_state import Backoff, Connected, ConnectionState, Disconnected, Failed
from endpoint import BrokerEndpoint, SessionConfig
from errors import PipelineFull
from events import (
    LogLine,
    MessageArrived,
    Notice,
    Outcome,
    PublishAcked,
    PublishCompleted,
    PublishOutcome,
    PublishReceived,
    StateChanged,
    SubscriptionRejected,
)
from message_store import Message, MessageStore
from mqtt_client import ClientFactory, ConnectionManager, build_client
from publish_pipeline import PendingPublish, PublishPipeline
from storage import StorageBackend
from topics import SubscriptionRegistry

logger = logging.getLogger(__name__)

_USER_COMMANDS = (Connect, Disconnect, Subscribe, Unsubscribe, Publish)


class SessionCore:
    """
    Owns the subscription registry, message store, publish pipeline and the
    mirrored connection state.  All of them are mutated only by ``poll()``,
    so ``poll()`` and the accessors must be called from one thread.
    """

    def __init__(
        self,
        config: SessionConfig | None = None,
        *,
        sink: StorageBackend | None = None,
        clock: Callable[[], float] = time.monotonic,
        client_factory: ClientFactory = build_client,
    ) -> None:
        self.config = config or SessionConfig()
        self.sink = sink
        self._clock = clock

        self._commands: queue.SimpleQueue = queue.SimpleQueue()
        self._events: queue.Queue = queue.Queue(maxsize=self.config.event_queue_size)

        self._registry = SubscriptionRegistry()
        self._store = MessageStore(self._registry, self.config.history_limit)
        self._pipeline = PublishPipeline(
            retry_interval=self.config.retry_interval,
            max_retries=self.config.max_publish_retries,
        )
        self._manager = ConnectionManager(
            self._events,
            backoff=Backoff(self.config.backoff_base, self.config.backoff_max),
            stable_after=self.config.stable_after,
            tick=self.config.tick,
            clock=clock,
            client_factory=client_factory,
        )
        self._state: ConnectionState = Disconnected()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the background protocol loop."""
        self._manager.start()

    def close(self) -> list[Notice]:
        """
        Disconnect, stop the protocol loop and close the sink.

        Returns the last notices, among them an ABANDONED outcome for every
        publish still waiting for its acknowledgment.
        """
        self._commands.put(Disconnect())
        notices = self.poll()
        # stop() runs the forwarded Disconnect if the thread has not.
        self._manager.stop()
        notices += self.poll(max_events=self._events.qsize())
        if self.sink is not None:
            self.sink.close()
            self.sink = None
        return notices

    def __enter__(self) -> SessionCore:
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def manager(self) -> ConnectionManager:
        return self._manager

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def submit(self, command: UserCommand) -> None:
        """Queue *command*; it takes effect on the next ``poll()``."""
        if not isinstance(command, _USER_COMMANDS):
            raise TypeError(f"Not a session command: {command!r}")
        self._commands.put(command)

    def connect(self, endpoint: BrokerEndpoint | str) -> None:
        """Connect to *endpoint*, a ``BrokerEndpoint`` or an ``mqtt://`` URL."""
        if isinstance(endpoint, str):
            endpoint = BrokerEndpoint.from_url(endpoint)
        self.submit(Connect(endpoint))

    def disconnect(self) -> None:
        self.submit(Disconnect())

    def subscribe(self, topic_filter: str, qos: int = 0) -> None:
        self.submit(Subscribe(topic_filter, qos))

    def unsubscribe(self, topic_filter: str) -> None:
        self.submit(Unsubscribe(topic_filter))

    def publish(
        self,
        topic: str,
        payload: bytes | str = b"",
        qos: int = 0,
        retain: bool = False,
    ) -> None:
        self.submit(Publish(topic, payload, qos, retain))

    # ------------------------------------------------------------------
    # Processing cycle
    # ------------------------------------------------------------------

    def poll(self, max_events: int | None = None) -> list[Notice]:
        """
        Apply pending commands and at most *max_events* background events.

        Never blocks.  Returns the notices produced during this cycle, in
        order.
        """
        notices: list[Notice] = []
        now = self._clock()

        while True:
            try:
                command = self._commands.get_nowait()
            except queue.Empty:
                break
            self._apply_command(command, now, notices)

        limit = self.config.max_events_per_poll if max_events is None else max_events
        for _ in range(limit):
            try:
                event = self._events.get_nowait()
            except queue.Empty:
                break
            self._apply_event(event, now, notices)

        if isinstance(self._state, Connected):
            resends, failures = self._pipeline.due(now)
            for transmit in resends:
                self._manager.submit(transmit)
            for pending in failures:
                notices.append(
                    _outcome(
                        pending,
                        Outcome.FAILED,
                        f"no acknowledgment after {pending.retry_count} retries",
                    )
                )
        return notices

    def _apply_command(self, command: UserCommand, now: float, notices: list[Notice]) -> None:
        match command:
            case Connect() | Disconnect():
                self._manager.submit(command)
            case Subscribe(topic_filter=topic_filter, qos=qos):
                if self._registry.add(topic_filter, qos):
                    self._manager.submit(command)
            case Unsubscribe(topic_filter=topic_filter):
                if self._registry.remove(topic_filter):
                    self._manager.submit(command)
            case Publish(topic=topic, payload=payload, qos=qos, retain=retain):
                if not isinstance(self._state, Connected):
                    notices.append(
                        PublishOutcome(topic, Outcome.FAILED, reason="not connected")
                    )
                    return
                try:
                    transmit = self._pipeline.publish(topic, payload, qos, retain, now)
                except PipelineFull as exc:
                    notices.append(PublishOutcome(topic, Outcome.FAILED, reason=str(exc)))
                    return
                self._manager.submit(transmit)

    def _apply_event(self, event, now: float, notices: list[Notice]) -> None:
        match event:
            case MessageArrived(message=msg):
                self._ingest(msg, notices)
            case StateChanged(state=state):
                self._state_changed(state, now, notices)
                notices.append(event)
            case PublishAcked(packet_id=packet_id):
                pending = self._pipeline.acknowledge(packet_id)
                if pending is not None:
                    notices.append(_outcome(pending, Outcome.DELIVERED))
            case PublishReceived(packet_id=packet_id):
                self._pipeline.received(packet_id, now)
            case PublishCompleted(packet_id=packet_id):
                pending = self._pipeline.complete(packet_id)
                if pending is not None:
                    notices.append(_outcome(pending, Outcome.DELIVERED))
            case SubscriptionRejected(topic_filter=topic_filter):
                self._registry.remove(topic_filter)
                notices.append(event)
            case LogLine():
                notices.append(event)
            case _:
                logger.error("Ignoring unknown event %r", event)

    def _ingest(self, msg: Message, notices: list[Notice]) -> None:
        if self._store.ingest(msg) is None or self.sink is None:
            return
        try:
            self.sink.store_message(msg)
        except OSError as exc:
            logger.error("Logger error: %s", exc)
            notices.append(LogLine(f"Logger error: {exc}", logging.ERROR))

    def _state_changed(self, state: ConnectionState, now: float, notices: list[Notice]) -> None:
        self._state = state
        match state:
            case Connected(session_present=session_present) if len(self._pipeline):
                # paho has already retransmitted whatever it still holds.
                for pending in self._pipeline.session_restarted(session_present, now):
                    notices.append(
                        _outcome(pending, Outcome.ABANDONED, "session not resumed after reconnect")
                    )
            case Disconnected(requested=True) | Failed():
                for pending in self._pipeline.abandon_all():
                    notices.append(_outcome(pending, Outcome.ABANDONED, _describe_stop(state)))

    # ------------------------------------------------------------------
    # Snapshots (copies; safe to keep across frames)
    # ------------------------------------------------------------------

    @property
    def current_connection_state(self) -> ConnectionState:
        return self._state

    @property
    def current_subscriptions(self) -> dict[str, int]:
        return self._registry.snapshot()

    def topic_snapshot(self, topic: str) -> tuple[Message, ...]:
        return self._store.snapshot(topic)

    def retained(self, topic: str) -> Message | None:
        return self._store.retained(topic)

    def effective_qos(self, topic: str) -> int | None:
        return self._store.effective_qos(topic)

    def topics(self) -> list[str]:
        return self._store.topics()

    @property
    def discarded_count(self) -> int:
        return self._store.discarded

    @property
    def pending_publishes(self) -> dict[int, PendingPublish]:
        return self._pipeline.snapshot()

    def clear_history(self) -> None:
        """Forget stored messages.  Call from the polling thread."""
        self._store.clear()


def _outcome(pending: PendingPublish, outcome: Outcome, reason: str = "") -> PublishOutcome:
    return PublishOutcome(pending.topic, outcome, pending.packet_id, reason)


def _describe_stop(state: ConnectionState) -> str:
    if isinstance(state, Failed):
        return f"connection failed: {state.reason}"
    return state.reason or "disconnected"
