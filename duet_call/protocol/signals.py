"""
Signal codec.

Converts SignalMessage objects to and from the JSON documents carried by a
relay, and derives the idempotency keys the controller uses to drop duplicate
deliveries.

Payload shapes (opaque to the relay):
    offer/answer:   {"type": "offer", "sdp": "v=0..."}
    ice-candidate:  {"candidate": "candidate:...", "sdpMid": "0", "sdpMLineIndex": 0}
    decline/hangup: {"reason": "busy"}  (optional)
"""

import json
from typing import Any, Dict, Hashable, Optional, Tuple, Union

from ..errors import SignalDecodeError
from ..session import SDP_SIGNALS, SignalMessage, SignalType


REQUIRED_FIELDS = ('call_id', 'from_user_id', 'to_user_id', 'type')


def signal_to_dict(signal: SignalMessage) -> Dict[str, Any]:
    """Convert a signal to a JSON-serialisable dict."""
    return {
        'call_id': signal.call_id,
        'from_user_id': signal.from_user_id,
        'to_user_id': signal.to_user_id,
        'type': signal.type.value,
        'payload': signal.payload,
        'sent_at': signal.sent_at,
    }


def signal_from_dict(data: Dict[str, Any]) -> SignalMessage:
    """
    Build a SignalMessage from a decoded dict.

    Raises:
        SignalDecodeError: Missing fields, unknown type or malformed payload
    """
    if not isinstance(data, dict):
        raise SignalDecodeError(f"Signal must be an object, got {type(data).__name__}")

    missing = [name for name in REQUIRED_FIELDS if not data.get(name)]
    if missing:
        raise SignalDecodeError(f"Signal missing fields: {', '.join(missing)}")

    try:
        signal_type = SignalType(data['type'])
    except ValueError:
        raise SignalDecodeError(f"Unknown signal type: {data['type']!r}")

    payload = data.get('payload') or {}
    if not isinstance(payload, dict):
        raise SignalDecodeError(f"Payload for {signal_type.value} must be an object")
    _validate_payload(signal_type, payload)

    sent_at = data.get('sent_at', 0.0)
    try:
        sent_at = float(sent_at)
    except (TypeError, ValueError):
        raise SignalDecodeError(f"Invalid sent_at: {sent_at!r}")

    return SignalMessage(
        call_id=str(data['call_id']),
        from_user_id=str(data['from_user_id']),
        to_user_id=str(data['to_user_id']),
        type=signal_type,
        payload=payload,
        sent_at=sent_at,
    )


def encode_signal(signal: SignalMessage) -> str:
    """Serialise a signal to a compact JSON string."""
    return json.dumps(signal_to_dict(signal), separators=(',', ':'))


def decode_signal(raw: Union[str, bytes]) -> SignalMessage:
    """
    Parse a JSON document into a SignalMessage.

    Raises:
        SignalDecodeError: Invalid JSON or invalid signal
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise SignalDecodeError(f"Invalid signal JSON: {e}")
    return signal_from_dict(data)


def _validate_payload(signal_type: SignalType, payload: Dict[str, Any]):
    if signal_type in SDP_SIGNALS:
        if not isinstance(payload.get('sdp'), str) or not payload['sdp']:
            raise SignalDecodeError(f"{signal_type.value} payload has no sdp")
        # Some senders omit type inside the description; it is implied by the signal
        if payload.get('type', signal_type.value) != signal_type.value:
            raise SignalDecodeError(
                f"{signal_type.value} payload carries description type {payload.get('type')!r}"
            )
    elif signal_type == SignalType.ICE_CANDIDATE:
        if not isinstance(payload.get('candidate', None), str):
            raise SignalDecodeError("ice-candidate payload has no candidate string")


# ============================================================================
# Idempotency
# ============================================================================

def candidate_key(payload: Dict[str, Any]) -> Tuple[str, Optional[str], Optional[int]]:
    """Content key of an ICE candidate payload (equal candidates share a key)."""
    return (
        payload.get('candidate', '').strip(),
        payload.get('sdpMid'),
        payload.get('sdpMLineIndex'),
    )


def signal_key(signal: SignalMessage) -> Hashable:
    """
    Idempotency key of a signal.

    SDP and control messages are apply-once per (call_id, type); candidates
    are keyed by content.
    """
    if signal.type == SignalType.ICE_CANDIDATE:
        return (signal.call_id, signal.type.value, candidate_key(signal.payload))
    return (signal.call_id, signal.type.value)


# ============================================================================
# SDP helpers
# ============================================================================

def offer_has_video(payload: Dict[str, Any]) -> bool:
    """Whether a description payload negotiates a video media section."""
    sdp = payload.get('sdp') or ''
    for line in sdp.splitlines():
        if line.startswith('m=video') and not line.startswith('m=video 0 '):
            return True
    return False


def description_payload(sdp: str, sdp_type: str) -> Dict[str, str]:
    """Build an offer/answer payload."""
    return {'type': sdp_type, 'sdp': sdp}
