"""
Signal protocol helpers.

Currently supports:
- JSON signal codec (SignalMessage <-> relay document)
- Idempotency keys for duplicate delivery
"""

from .signals import (
    candidate_key,
    decode_signal,
    description_payload,
    encode_signal,
    offer_has_video,
    signal_from_dict,
    signal_key,
    signal_to_dict,
)

__all__ = [
    "candidate_key",
    "decode_signal",
    "description_payload",
    "encode_signal",
    "offer_has_video",
    "signal_from_dict",
    "signal_key",
    "signal_to_dict",
]
