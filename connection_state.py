"""
Connection state values and the reconnect backoff policy.
"""
from __future__ import annotations

from dataclasses import dataclass

from errors import InvalidTransition


@dataclass(frozen=True)
class Disconnected:
    """No transport.  *requested* marks a user disconnect, which is terminal."""
    reason: str | None = None
    requested: bool = False


@dataclass(frozen=True)
class Connecting:
    attempt: int = 0


@dataclass(frozen=True)
class Connected:
    session_present: bool = False


@dataclass(frozen=True)
class Reconnecting:
    """Waiting for *next_retry_at* (clock seconds) before retry *attempt*."""
    attempt: int
    next_retry_at: float


@dataclass(frozen=True)
class Failed:
    """The broker refused us; only an explicit connect leaves this state."""
    reason: str


ConnectionState = Disconnected | Connecting | Connected | Reconnecting | Failed

_ALLOWED: dict[type, tuple[type, ...]] = {
    Disconnected: (Connecting, Reconnecting),
    Connecting: (Connected, Disconnected, Failed),
    Connected: (Disconnected,),
    Reconnecting: (Connecting, Disconnected),
    Failed: (Connecting, Disconnected),
}


def check_transition(current: ConnectionState, new: ConnectionState) -> None:
    """Raise InvalidTransition if *current* may not be followed by *new*."""
    if type(new) not in _ALLOWED[type(current)]:
        raise InvalidTransition(
            f"{type(current).__name__} cannot change to {type(new).__name__}"
        )


def describe(state: ConnectionState) -> str:
    """One-line human-readable rendering of *state*."""
    match state:
        case Disconnected(reason=None):
            return "Disconnected"
        case Disconnected(reason=reason):
            return f"Disconnected ({reason})"
        case Connecting(attempt=0):
            return "Connecting"
        case Connecting(attempt=attempt):
            return f"Connecting (attempt {attempt})"
        case Connected(session_present=True):
            return "Connected (session resumed)"
        case Connected():
            return "Connected"
        case Reconnecting(attempt=attempt):
            return f"Reconnecting (attempt {attempt})"
        case Failed(reason=reason):
            return f"Failed: {reason}"
    return repr(state)


class Backoff:
    """
    Exponential reconnect delay: *base*, 2*base, 4*base, ... capped at *cap*.
    """

    def __init__(self, base: float = 1.0, cap: float = 60.0) -> None:
        if base <= 0 or cap < base:
            raise ValueError("Backoff requires 0 < base <= cap")
        self.base = base
        self.cap = cap
        self.attempts = 0

    def next_delay(self) -> float:
        """Delay before the next attempt; each call counts as one attempt."""
        # Bounded exponent keeps the float finite on long outages.
        delay = min(self.cap, self.base * 2 ** min(self.attempts, 62))
        self.attempts += 1
        return delay

    def reset(self) -> None:
        self.attempts = 0
