"""
duet_call - two-party call sessions over an unordered signal relay.

Media and transport come from aiortc; signaling goes through any SignalRelay
implementation (in-memory here, XMPP in duet_xmpp).
"""

from .adapter import PeerConnectionAdapter, RemoteStream
from .controller import CallSessionController
from .errors import (
    CallBusy,
    CallError,
    ErrorKind,
    InvalidCallState,
    MediaAccessDenied,
    NegotiationTimeout,
    RelayError,
    SignalDecodeError,
    SignalPublishFailed,
    TransportLost,
)
from .events import ConnectionStateChanged, LocalCandidate, SignalReceived, TimerExpired, TrackReceived
from .ice_buffer import IceCandidateBuffer
from .media import DeviceMediaSource, LocalMediaTrack, LocalStream, MediaSource, SyntheticMediaSource
from .records import CallRecord, CallRecordSink, LoggingCallRecordSink, MemoryCallRecordSink
from .relay import InMemorySignalRelay, SignalRelay
from .session import CallRole, CallSession, CallStatus, SignalMessage, SignalType

__version__ = "0.1.0"

__all__ = [
    "CallBusy",
    "CallError",
    "CallRecord",
    "CallRecordSink",
    "CallRole",
    "CallSession",
    "CallSessionController",
    "CallStatus",
    "ConnectionStateChanged",
    "DeviceMediaSource",
    "ErrorKind",
    "IceCandidateBuffer",
    "InMemorySignalRelay",
    "InvalidCallState",
    "LocalCandidate",
    "LocalMediaTrack",
    "LocalStream",
    "LoggingCallRecordSink",
    "MediaAccessDenied",
    "MediaSource",
    "MemoryCallRecordSink",
    "NegotiationTimeout",
    "PeerConnectionAdapter",
    "RelayError",
    "RemoteStream",
    "SignalDecodeError",
    "SignalMessage",
    "SignalPublishFailed",
    "SignalReceived",
    "SignalRelay",
    "SignalType",
    "TimerExpired",
    "TrackReceived",
    "TransportLost",
]
