"""
Message Store — bounded per-topic history plus the latest retained value.
"""
from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime

from topics import SubscriptionRegistry

logger = logging.getLogger(__name__)

# Default number of messages kept per topic.
DEFAULT_HISTORY_LIMIT = 200


@dataclass(frozen=True)
class Message:
    """Immutable record of one MQTT message."""
    topic: str
    payload: bytes
    qos: int = 0
    retain: bool = False
    dup: bool = False
    timestamp: datetime = field(default_factory=datetime.now)
    packet_id: int | None = None

    @property
    def text(self) -> str:
        """Payload decoded as UTF-8; undecodable bytes are replaced."""
        return self.payload.decode("utf-8", errors="replace")


class TopicHistory:
    """Ordered messages of one topic, newest last, holding at most *limit*."""

    def __init__(self, topic: str, limit: int = DEFAULT_HISTORY_LIMIT) -> None:
        if limit < 1:
            raise ValueError("History limit must be at least 1")
        self.topic = topic
        self._messages: deque[Message] = deque(maxlen=limit)

    @property
    def limit(self) -> int:
        return self._messages.maxlen

    def append(self, msg: Message) -> None:
        """Append *msg*; the oldest entry falls out when at capacity."""
        self._messages.append(msg)

    def snapshot(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    def __len__(self) -> int:
        return len(self._messages)


class MessageStore:
    """
    Histories of every topic that received matched traffic.

    Retained messages are also kept in a separate slot per topic, so a
    late subscriber sees the current retained state without waiting for
    new traffic.
    """

    def __init__(
        self,
        registry: SubscriptionRegistry,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> None:
        if history_limit < 1:
            raise ValueError("History limit must be at least 1")
        self._registry = registry
        self._history_limit = history_limit
        self._histories: dict[str, TopicHistory] = {}
        self._retained: dict[str, Message] = {}
        self._effective_qos: dict[str, int] = {}   # topic -> QoS of the last ingest
        self._discarded = 0

    # ------------------------------------------------------------------
    # Ingest
    # ------------------------------------------------------------------

    def ingest(self, msg: Message) -> int | None:
        """
        Record *msg* if an active filter matches its topic.

        Returns the effective delivery QoS (the highest QoS among matching
        filters), or None when the message was discarded.
        """
        effective_qos = self._registry.effective_qos(msg.topic)
        if effective_qos is None:
            self._discarded += 1
            logger.debug("Discarded message on unmatched topic '%s'", msg.topic)
            return None

        history = self._histories.get(msg.topic)
        if history is None:
            history = self._histories[msg.topic] = TopicHistory(
                msg.topic, self._history_limit
            )
        history.append(msg)
        self._effective_qos[msg.topic] = effective_qos

        if msg.retain:
            if msg.payload:
                self._retained[msg.topic] = msg
            else:
                # Empty retained payload deletes the retained value.
                self._retained.pop(msg.topic, None)
        return effective_qos

    def clear(self) -> None:
        """Drop every history and retained value."""
        self._histories.clear()
        self._retained.clear()
        self._effective_qos.clear()

    # ------------------------------------------------------------------
    # Read access (copies only)
    # ------------------------------------------------------------------

    def snapshot(self, topic: str) -> tuple[Message, ...]:
        history = self._histories.get(topic)
        return history.snapshot() if history is not None else ()

    def retained(self, topic: str) -> Message | None:
        return self._retained.get(topic)

    def effective_qos(self, topic: str) -> int | None:
        """Effective QoS the newest stored message on *topic* was matched at."""
        return self._effective_qos.get(topic)

    def topics(self) -> list[str]:
        """Sorted topics that have history or a retained value."""
        return sorted(set(self._histories) | set(self._retained))

    @property
    def discarded(self) -> int:
        """Number of messages dropped because no filter matched."""
        return self._discarded

    @property
    def history_limit(self) -> int:
        return self._history_limit
