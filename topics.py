"""
Topic syntax and the Subscription Registry.

Filters are ``/``-delimited patterns.  ``+`` matches exactly one level and
``#`` (only as the last level) matches any number of remaining levels,
including none.
"""
from __future__ import annotations

import logging
from typing import Iterator

from errors import InvalidTopic

logger = logging.getLogger(__name__)

SINGLE_LEVEL = "+"
MULTI_LEVEL = "#"
_SEPARATOR = "/"
_MAX_TOPIC_BYTES = 65535


def _check_common(text: str, kind: str) -> None:
    if not isinstance(text, str):
        raise InvalidTopic(f"{kind} must be a string, got {type(text).__name__}")
    if not text:
        raise InvalidTopic(f"{kind} cannot be empty")
    if "\x00" in text:
        raise InvalidTopic(f"{kind} cannot contain NUL characters")
    if len(text.encode("utf-8")) > _MAX_TOPIC_BYTES:
        raise InvalidTopic(f"{kind} is longer than {_MAX_TOPIC_BYTES} bytes")


def validate_topic(topic: str) -> str:
    """Return *topic* unchanged if it is a valid concrete topic name."""
    _check_common(topic, "Topic")
    if SINGLE_LEVEL in topic or MULTI_LEVEL in topic:
        raise InvalidTopic(f"Topic '{topic}' cannot contain wildcards (+ or #)")
    return topic


def validate_filter(topic_filter: str) -> str:
    """
    Return *topic_filter* unchanged if it is a valid subscription filter.

    ``+`` must occupy a whole level; ``#`` must occupy a whole level and be
    the last one.
    """
    _check_common(topic_filter, "Topic filter")
    segments = topic_filter.split(_SEPARATOR)
    last = len(segments) - 1
    for i, segment in enumerate(segments):
        if SINGLE_LEVEL in segment and segment != SINGLE_LEVEL:
            raise InvalidTopic(
                f"'{topic_filter}': + must occupy an entire topic level"
            )
        if MULTI_LEVEL in segment and (segment != MULTI_LEVEL or i != last):
            raise InvalidTopic(
                f"'{topic_filter}': # must be alone in the last topic level"
            )
    return topic_filter


def topic_matches(topic_filter: str, topic: str) -> bool:
    """True if the concrete *topic* is matched by *topic_filter*."""
    pattern = topic_filter.split(_SEPARATOR)
    levels = topic.split(_SEPARATOR)

    # Wildcards in the first level never match the broker's $-topics.
    if topic.startswith("$") and pattern[0] in (SINGLE_LEVEL, MULTI_LEVEL):
        return False

    for i, segment in enumerate(pattern):
        if segment == MULTI_LEVEL:
            return True
        if i >= len(levels):
            return False
        if segment != SINGLE_LEVEL and segment != levels[i]:
            return False
    return len(pattern) == len(levels)


class SubscriptionRegistry:
    """
    Active topic filters and their QoS.

    One entry per filter: subscribing again to a known filter updates its
    QoS in place.
    """

    def __init__(self) -> None:
        self._filters: dict[str, int] = {}   # filter -> qos

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def add(self, topic_filter: str, qos: int = 0) -> bool:
        """
        Store *topic_filter* with *qos*.

        Returns True when a SUBSCRIBE has to be sent: the filter is new or
        its QoS changed.
        """
        validate_filter(topic_filter)
        check_qos(qos)
        previous = self._filters.get(topic_filter)
        self._filters[topic_filter] = qos
        if previous == qos:
            logger.debug("Filter '%s' already subscribed at QoS %d", topic_filter, qos)
            return False
        return True

    def remove(self, topic_filter: str) -> bool:
        """Forget *topic_filter*.  Returns False if it was not subscribed."""
        return self._filters.pop(topic_filter, None) is not None

    def clear(self) -> None:
        self._filters.clear()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def match(self, topic: str) -> set[tuple[str, int]]:
        """Every stored ``(filter, qos)`` whose filter matches *topic*."""
        return {
            (topic_filter, qos)
            for topic_filter, qos in self._filters.items()
            if topic_matches(topic_filter, topic)
        }

    def effective_qos(self, topic: str) -> int | None:
        """Highest QoS among the filters matching *topic*, or None."""
        matches = self.match(topic)
        if not matches:
            return None
        return max(qos for _, qos in matches)

    def qos(self, topic_filter: str) -> int | None:
        return self._filters.get(topic_filter)

    def snapshot(self) -> dict[str, int]:
        return dict(self._filters)

    def __contains__(self, topic_filter: object) -> bool:
        return topic_filter in self._filters

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._filters))

    def __len__(self) -> int:
        return len(self._filters)


def check_qos(qos: int) -> None:
    if qos not in (0, 1, 2):
        raise ValueError(f"Invalid QoS value: {qos!r}. Must be 0, 1, or 2")
