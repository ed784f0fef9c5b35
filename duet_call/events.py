"""
Controller events.

Everything that can change a session arrives as one of these and is processed
serially from the controller mailbox.
"""

from dataclasses import dataclass
from typing import Any, Dict

from .session import SignalMessage


@dataclass
class SignalReceived:
    """A relay delivery."""
    signal: SignalMessage


@dataclass
class ConnectionStateChanged:
    """Peer connection state reported by the adapter ('connected', 'disconnected', ...)."""
    state: str


@dataclass
class TrackReceived:
    """Inbound remote track."""
    track: Any


@dataclass
class LocalCandidate:
    """Locally gathered ICE candidate, to be published to the peer."""
    candidate: Dict[str, Any]


@dataclass
class TimerExpired:
    """A controller timer fired. Stale generations are ignored."""
    name: str
    generation: int = 0
