"""
Exceptions raised by the MQTT session core.

Runtime failures (lost connections, refused CONNECTs, unanswered publishes)
never raise: they become state values and events. The classes below cover
bad input from the caller and broken internal invariants.
"""
from __future__ import annotations


class MqttMonitorError(Exception):
    """Base class for every error raised by this package."""


class InvalidTopic(MqttMonitorError, ValueError):
    """A topic name or topic filter violates MQTT syntax."""


class InvalidEndpoint(MqttMonitorError, ValueError):
    """A broker endpoint or URL cannot be used."""


class InvalidTransition(MqttMonitorError, RuntimeError):
    """A connection state change skipped a required intermediate state."""


class PipelineFull(MqttMonitorError, RuntimeError):
    """Every packet identifier is held by an unacknowledged publish."""
