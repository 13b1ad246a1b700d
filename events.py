"""
Events crossing from the network thread to the session core, and the
notices the session core hands to the presentation layer.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from connection_state import ConnectionState
from message_store import Message


@dataclass(frozen=True)
class StateChanged:
    state: ConnectionState


@dataclass(frozen=True)
class MessageArrived:
    message: Message


@dataclass(frozen=True)
class PublishAcked:
    """PUBACK for a QoS 1 publish."""
    packet_id: int


@dataclass(frozen=True)
class PublishReceived:
    """PUBREC, first half of the QoS 2 handshake."""
    packet_id: int


@dataclass(frozen=True)
class PublishCompleted:
    """PUBCOMP, end of the QoS 2 handshake."""
    packet_id: int


@dataclass(frozen=True)
class SubscriptionRejected:
    topic_filter: str
    reason: str = ""


@dataclass(frozen=True)
class LogLine:
    """Human-readable line for a debug console."""
    text: str
    level: int = logging.INFO


class Outcome(Enum):
    DELIVERED = "delivered"
    FAILED = "failed"
    ABANDONED = "abandoned"


@dataclass(frozen=True)
class PublishOutcome:
    """Final fate of one publish, reported exactly once."""
    topic: str
    outcome: Outcome
    packet_id: int | None = None
    reason: str = ""


Event = (
    StateChanged
    | MessageArrived
    | PublishAcked
    | PublishReceived
    | PublishCompleted
    | SubscriptionRejected
    | LogLine
)

Notice = StateChanged | PublishOutcome | SubscriptionRejected | LogLine
