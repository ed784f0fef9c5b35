"""
Error taxonomy for call sessions.

Everything here is resolved inside the controller; the UI only ever sees the
ErrorKind of a failed session plus an optional reason string.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Classified failure kinds surfaced to the UI layer."""
    MEDIA_ACCESS_DENIED = 'media-access-denied'
    SIGNAL_PUBLISH_FAILED = 'signal-publish-failed'
    NEGOTIATION_TIMEOUT = 'negotiation-timeout'
    TRANSPORT_LOST = 'transport-lost'
    DUPLICATE_OR_STALE_SIGNAL = 'duplicate-or-stale-signal'  # Never surfaced
    BUSY = 'busy'
    INTERNAL = 'internal'


class CallError(Exception):
    """Base class for call errors. Carries the classified kind."""

    kind = ErrorKind.INTERNAL

    def __init__(self, message: str = '', kind: Optional[ErrorKind] = None):
        super().__init__(message or self.__class__.__name__)
        if kind is not None:
            self.kind = kind


class MediaAccessDenied(CallError):
    """Camera, microphone or display capture refused by the user or the OS."""
    kind = ErrorKind.MEDIA_ACCESS_DENIED


class SignalPublishFailed(CallError):
    """Relay write still failing after the retry bound."""
    kind = ErrorKind.SIGNAL_PUBLISH_FAILED


class NegotiationTimeout(CallError):
    """No answer/offer or transport within the negotiation window."""
    kind = ErrorKind.NEGOTIATION_TIMEOUT


class TransportLost(CallError):
    """Peer transport failed or stayed disconnected past the grace window."""
    kind = ErrorKind.TRANSPORT_LOST


class CallBusy(CallError):
    """A call is already in progress for this user."""
    kind = ErrorKind.BUSY


class InvalidCallState(CallError):
    """Operation not allowed in the current session state."""


class RelayError(Exception):
    """A single relay write failed (retried by the controller)."""


class SignalDecodeError(ValueError):
    """Relay payload could not be decoded into a SignalMessage."""
