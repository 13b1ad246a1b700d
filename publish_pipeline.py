"""
Publish Pipeline — packet identifiers and acknowledgment tracking for
outbound QoS 1/2 messages.

Retries are explicit deadlines stored on each pending record and checked by
``due(now)`` once per processing cycle; nothing here owns a timer.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum

from commands import Transmit
from errors import PipelineFull
from message_store import Message

logger = logging.getLogger(__name__)

MAX_PACKET_ID = 65535


class Phase(Enum):
    AWAITING_PUBACK = "awaiting PUBACK"     # QoS 1
    AWAITING_PUBREC = "awaiting PUBREC"     # QoS 2, first half
    AWAITING_PUBCOMP = "awaiting PUBCOMP"   # QoS 2, after PUBREL


@dataclass
class PendingPublish:
    message: Message
    packet_id: int
    phase: Phase
    next_retry_at: float
    retry_count: int = 0

    @property
    def topic(self) -> str:
        return self.message.topic

    def transmit(self, dup: bool) -> Transmit:
        msg = self.message
        return Transmit(
            topic=msg.topic,
            payload=msg.payload,
            qos=msg.qos,
            retain=msg.retain,
            packet_id=self.packet_id,
            dup=dup,
        )


class PublishPipeline:
    """
    Outbound publishes waiting for their acknowledgment.

    *retry_interval* seconds after each (re)transmission an unanswered
    QoS 1 publish is sent again with the duplicate flag; after *max_retries*
    unanswered retries it is dropped and reported as failed.

    QoS 2 publishes are never re-published on a live connection.  A second
    PUBLISH would go out under a new wire identifier and the broker would
    deliver it twice.  paho keeps them in its in-flight store and
    retransmits PUBLISH (DUP) or PUBREL with the original identifier when
    the same client reconnects; here their retries only count towards
    failure.
    """

    def __init__(self, retry_interval: float = 5.0, max_retries: int = 3) -> None:
        self.retry_interval = retry_interval
        self.max_retries = max_retries
        self._pending: dict[int, PendingPublish] = {}
        self._next_id = 1

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def publish(
        self,
        topic: str,
        payload: bytes,
        qos: int,
        retain: bool,
        now: float,
    ) -> Transmit:
        """Return the transmission for a new publish, tracking it if qos > 0."""
        if qos == 0:
            return Transmit(topic=topic, payload=payload, qos=0, retain=retain)

        packet_id = self._allocate_id()
        msg = Message(
            topic=topic, payload=payload, qos=qos, retain=retain, packet_id=packet_id
        )
        pending = PendingPublish(
            message=msg,
            packet_id=packet_id,
            phase=Phase.AWAITING_PUBACK if qos == 1 else Phase.AWAITING_PUBREC,
            next_retry_at=now + self.retry_interval,
        )
        self._pending[packet_id] = pending
        return pending.transmit(dup=False)

    def _allocate_id(self) -> int:
        for _ in range(MAX_PACKET_ID):
            candidate = self._next_id
            self._next_id = candidate % MAX_PACKET_ID + 1
            if candidate not in self._pending:
                return candidate
        raise PipelineFull(f"All {MAX_PACKET_ID} packet identifiers are in flight")

    # ------------------------------------------------------------------
    # Acknowledgments
    # ------------------------------------------------------------------

    def acknowledge(self, packet_id: int) -> PendingPublish | None:
        """PUBACK: completes a QoS 1 publish."""
        return self._finish(packet_id, Phase.AWAITING_PUBACK, "PUBACK")

    def received(self, packet_id: int, now: float) -> PendingPublish | None:
        """PUBREC: a QoS 2 publish moves on to the release phase."""
        pending = self._pending.get(packet_id)
        if pending is None or pending.phase is not Phase.AWAITING_PUBREC:
            logger.debug("Ignoring PUBREC for packet %d", packet_id)
            return None
        pending.phase = Phase.AWAITING_PUBCOMP
        pending.retry_count = 0
        pending.next_retry_at = now + self.retry_interval
        return pending

    def complete(self, packet_id: int) -> PendingPublish | None:
        """PUBCOMP: completes a QoS 2 publish."""
        pending = self._pending.get(packet_id)
        if pending is None or pending.message.qos != 2:
            logger.debug("Ignoring PUBCOMP for packet %d", packet_id)
            return None
        return self._pending.pop(packet_id)

    def _finish(self, packet_id: int, phase: Phase, kind: str) -> PendingPublish | None:
        pending = self._pending.get(packet_id)
        if pending is None or pending.phase is not phase:
            logger.debug("Ignoring %s for packet %d", kind, packet_id)
            return None
        return self._pending.pop(packet_id)

    # ------------------------------------------------------------------
    # Deadlines
    # ------------------------------------------------------------------

    def due(self, now: float) -> tuple[list[Transmit], list[PendingPublish]]:
        """
        Handle every pending publish whose deadline has passed.

        Returns ``(resends, failures)``.  Failed entries are removed.  Only
        QoS 1 publishes are re-sent; QoS 2 retries only count towards failure.
        """
        resends: list[Transmit] = []
        failures: list[PendingPublish] = []
        for packet_id, pending in list(self._pending.items()):
            if now < pending.next_retry_at:
                continue
            if pending.retry_count >= self.max_retries:
                del self._pending[packet_id]
                failures.append(pending)
                logger.warning(
                    "Publish %d on '%s' unacknowledged after %d retries",
                    packet_id, pending.topic, pending.retry_count,
                )
                continue
            pending.retry_count += 1
            pending.next_retry_at = now + self.retry_interval
            if pending.message.qos == 1:
                resends.append(self._mark_dup(pending).transmit(dup=True))
        return resends, failures

    def session_restarted(self, session_present: bool, now: float) -> list[PendingPublish]:
        """
        Reconcile pending publishes after the client reconnected.

        paho retransmits its in-flight messages itself (PUBLISH with DUP,
        or PUBREL for a released QoS 2 publish) under their original
        identifiers, so nothing is re-sent from here: the records are
        marked duplicate and their deadlines restart.  Without a resumed
        broker session a QoS 2 handshake cannot be trusted to finish
        exactly once; those entries are removed and returned as abandoned.
        """
        abandoned: list[PendingPublish] = []
        for packet_id, pending in list(self._pending.items()):
            if not session_present and pending.message.qos == 2:
                abandoned.append(self._pending.pop(packet_id))
                continue
            pending.next_retry_at = now + self.retry_interval
            if pending.phase is not Phase.AWAITING_PUBCOMP:
                self._mark_dup(pending)
        return abandoned

    def abandon_all(self) -> list[PendingPublish]:
        """Remove and return every pending publish."""
        abandoned = list(self._pending.values())
        self._pending.clear()
        return abandoned

    @staticmethod
    def _mark_dup(pending: PendingPublish) -> PendingPublish:
        if not pending.message.dup:
            pending.message = replace(pending.message, dup=True)
        return pending

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    def get(self, packet_id: int) -> PendingPublish | None:
        return self._pending.get(packet_id)

    def snapshot(self) -> dict[int, PendingPublish]:
        """Copies of the pending records keyed by packet identifier."""
        return {pid: replace(p) for pid, p in self._pending.items()}

    def __contains__(self, packet_id: object) -> bool:
        return packet_id in self._pending

    def __len__(self) -> int:
        return len(self._pending)
