"""
Call session model.

Plain data objects shared by the controller, the relay and the UI layer:
- CallSession: one per active or pending call (owned by one controller)
- SignalMessage: one message exchanged over the signal relay
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class CallStatus(str, Enum):
    """Session lifecycle states."""
    IDLE = 'idle'
    REQUESTING = 'requesting'    # Offer out, waiting for the peer to answer
    NEGOTIATING = 'negotiating'  # Descriptions exchanged, transport coming up
    CONNECTED = 'connected'      # Transport live
    ENDED = 'ended'              # Terminal: normal end
    FAILED = 'failed'            # Terminal: technical error
    DECLINED = 'declined'        # Terminal: callee refused


TERMINAL_STATES = frozenset({CallStatus.ENDED, CallStatus.FAILED, CallStatus.DECLINED})


class CallRole(str, Enum):
    """Negotiation role, fixed when the session is created."""
    OFFERER = 'offerer'
    ANSWERER = 'answerer'


class SignalType(str, Enum):
    """Signal message types carried by the relay."""
    OFFER = 'offer'
    ANSWER = 'answer'
    ICE_CANDIDATE = 'ice-candidate'
    DECLINE = 'decline'  # Callee refused the call
    HANGUP = 'hangup'    # Either side ended the call


SDP_SIGNALS = frozenset({SignalType.OFFER, SignalType.ANSWER})
CONTROL_SIGNALS = frozenset({SignalType.DECLINE, SignalType.HANGUP})


@dataclass
class SignalMessage:
    """
    One signal as delivered by the relay.

    Never retained beyond consumption (the ICE buffer keeps only the payload).
    """

    call_id: str
    from_user_id: str
    to_user_id: str
    type: SignalType
    payload: Dict[str, Any] = field(default_factory=dict)
    sent_at: float = field(default_factory=time.time)


@dataclass
class CallSession:
    """
    State of one call.

    Mutated only by the owning CallSessionController; UI observers receive it
    through on_state_change and must treat terminal states as final.
    """

    call_id: str
    local_user_id: str
    remote_user_id: str
    role: CallRole
    has_video: bool
    status: CallStatus = CallStatus.IDLE

    local_stream: Optional[Any] = None   # LocalStream, released on teardown
    remote_stream: Optional[Any] = None  # RemoteStream, set once from first track

    created_at: float = field(default_factory=time.time)
    connected_at: Optional[float] = None
    ended_at: Optional[float] = None
    end_reason: Optional[str] = None
    error: Optional[Any] = None          # ErrorKind when the call failed

    # In-call control flags (mirrors the adapter)
    is_muted: bool = False
    is_video_off: bool = False
    is_screen_sharing: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    @property
    def was_connected(self) -> bool:
        return self.connected_at is not None

    @property
    def duration(self) -> float:
        """Seconds spent connected (best effort, 0 if the call never connected)."""
        if self.connected_at is None:
            return 0.0
        end = self.ended_at if self.ended_at is not None else time.time()
        return max(0.0, end - self.connected_at)

    def describe(self) -> Dict[str, Any]:
        """Summary dict for logging and diagnostics."""
        return {
            'call_id': self.call_id,
            'role': self.role.value,
            'status': self.status.value,
            'remote_user_id': self.remote_user_id,
            'has_video': self.has_video,
            'duration': round(self.duration, 1),
            'end_reason': self.end_reason,
            'error': self.error.value if self.error is not None else None,
        }
