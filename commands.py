"""
Commands submitted by the presentation layer and forwarded to the wire.

Every record validates itself on construction, so a bad topic or QoS is
rejected where the user typed it rather than on the network thread.
"""
from __future__ import annotations

from dataclasses import dataclass

from endpoint import BrokerEndpoint
from topics import check_qos, validate_filter, validate_topic


@dataclass(frozen=True)
class Connect:
    endpoint: BrokerEndpoint


@dataclass(frozen=True)
class Disconnect:
    pass


@dataclass(frozen=True)
class Subscribe:
    topic_filter: str
    qos: int = 0

    def __post_init__(self) -> None:
        validate_filter(self.topic_filter)
        check_qos(self.qos)


@dataclass(frozen=True)
class Unsubscribe:
    topic_filter: str

    def __post_init__(self) -> None:
        validate_filter(self.topic_filter)


@dataclass(frozen=True)
class Publish:
    topic: str
    payload: bytes = b""
    qos: int = 0
    retain: bool = False

    def __post_init__(self) -> None:
        validate_topic(self.topic)
        if isinstance(self.payload, str):
            object.__setattr__(self, "payload", self.payload.encode("utf-8"))
        elif not isinstance(self.payload, (bytes, bytearray)):
            raise TypeError("Payload must be str or bytes")
        else:
            object.__setattr__(self, "payload", bytes(self.payload))
        check_qos(self.qos)


@dataclass(frozen=True)
class Transmit:
    """
    One PUBLISH to put on the wire.

    *packet_id* is the pipeline's identifier (None for QoS 0); *dup* marks
    a retransmission.
    """
    topic: str
    payload: bytes
    qos: int = 0
    retain: bool = False
    packet_id: int | None = None
    dup: bool = False


# Commands the presentation layer may submit to the session core.
UserCommand = Connect | Disconnect | Subscribe | Unsubscribe | Publish

# Commands the connection manager executes.
WireCommand = Connect | Disconnect | Subscribe | Unsubscribe | Transmit
